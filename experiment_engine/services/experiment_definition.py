import uuid
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import (
    InvalidAllocation,
    InvalidConfiguration,
    InvalidTransition,
    MissingControl,
    NotFound,
)
from ..models.experiment import (
    AllocationEntry,
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    VariantConfig,
)
from ..models.variant import Variant, VariantStatus, VariantType
from ..models.views import ExperimentDetail
from ..repositories.base import ExperimentRepository, VariantRepository
from ..utils.planning import calculate_test_duration, generate_traffic_allocation
from .traffic_splitter import validate_allocation

logger = logging.getLogger(__name__)

# Fields a free-form update may not touch: identity, the variant set and the
# lifecycle fields owned by transitions
PROTECTED_FIELDS = {
    "id", "created_at", "status", "variants", "control_variant_id", "start_date", "end_date"
}

VARIANT_STATUS_FOR = {
    ExperimentStatus.RUNNING: VariantStatus.ACTIVE,
    ExperimentStatus.PAUSED: VariantStatus.PAUSED,
    ExperimentStatus.STOPPED: VariantStatus.STOPPED,
}


class ExperimentDefinitionService:
    """Creation, lookup and the lifecycle state machine of experiments."""

    def __init__(self, experiments: ExperimentRepository, variants: VariantRepository):
        self.experiments = experiments
        self.variants = variants

    async def create(self, config: Union[ExperimentCreate, Dict[str, Any]]) -> ExperimentDetail:
        """Validate a creation request and persist the experiment with its variants."""
        config = self._parse_config(config)
        variant_ids = self._variant_ids(config.variants)
        allocation = self._initial_allocation(config.variants, variant_ids)
        validate_allocation(allocation)

        control_index = next(
            i for i, v in enumerate(config.variants) if v.type == VariantType.CONTROL
        )
        duration = config.duration or calculate_test_duration(
            config.expected_traffic,
            len(config.variants),
            config.minimum_detectable_effect,
            config.statistical_power
        )

        experiment = Experiment(
            name=config.name,
            description=config.description,
            site_id=config.site_id,
            variants=variant_ids,
            control_variant_id=variant_ids[control_index],
            traffic_allocation=[
                AllocationEntry(variant_id=variant_id, fraction=fraction)
                for variant_id, fraction in allocation
            ],
            duration=duration,
            metrics=config.metrics,
            metric_direction=config.metric_direction,
            confidence_threshold=config.confidence_threshold or settings.DEFAULT_CONFIDENCE_THRESHOLD,
            expected_traffic=config.expected_traffic,
            minimum_detectable_effect=config.minimum_detectable_effect,
            statistical_power=config.statistical_power
        )
        shares = dict(allocation)
        variants = [
            Variant(
                id=variant_id,
                experiment_id=experiment.id,
                name=variant_config.name,
                description=variant_config.description,
                type=variant_config.type,
                traffic_allocation=shares[variant_id],
                changes=variant_config.changes
            )
            for variant_id, variant_config in zip(variant_ids, config.variants)
        ]

        await self.experiments.insert(experiment)
        await self.variants.insert_many(variants)

        logger.info(f"Created experiment: {experiment.id} ({experiment.name}) with {len(variants)} variants")
        return ExperimentDetail(experiment=experiment, variants=variants)

    async def get(self, experiment_id: str) -> Experiment:
        experiment = await self.experiments.get(experiment_id)
        if not experiment:
            logger.warning(f"Experiment not found: {experiment_id}")
            raise NotFound("Experiment", experiment_id)
        return experiment

    async def list_by_site(self, site_id: str, status: Optional[str] = None) -> List[Experiment]:
        return await self.experiments.list(site_id=site_id, status=status)

    async def get_variants(self, experiment_id: str) -> List[Variant]:
        """Variants of an experiment in definition order."""
        experiment = await self.get(experiment_id)
        variants = await self.variants.list_by_experiment(experiment_id)
        order = {variant_id: index for index, variant_id in enumerate(experiment.variants)}
        return sorted(variants, key=lambda v: order.get(v.id, len(order)))

    async def get_variant(self, experiment_id: str, variant_id: str) -> Variant:
        variant = await self.variants.get(variant_id)
        if not variant or variant.experiment_id != experiment_id:
            raise NotFound("Variant", variant_id)
        return variant

    async def get_control(self, experiment_id: str) -> Variant:
        variants = await self.get_variants(experiment_id)
        controls = [v for v in variants if v.is_control]
        if len(controls) != 1:
            raise MissingControl(
                f"No control variant found for test: {experiment_id}",
                {"experiment_id": experiment_id}
            )
        return controls[0]

    async def update(self, experiment_id: str, patch: Dict[str, Any]) -> Experiment:
        """Apply a field patch; the patched document is validated before it is written."""
        experiment = await self.get(experiment_id)
        updates = {key: value for key, value in patch.items() if key not in PROTECTED_FIELDS}

        if "traffic_allocation" in updates:
            if experiment.is_terminal:
                raise InvalidTransition(experiment_id, experiment.status, "reallocate traffic of")
            allocation = [
                AllocationEntry.model_validate(entry) for entry in updates["traffic_allocation"]
            ]
            self._check_allocation_targets(experiment, allocation)
            updates["traffic_allocation"] = allocation

        data = experiment.model_dump()
        data.update(updates)
        data["updated_at"] = datetime.utcnow()
        try:
            updated = Experiment.model_validate(data)
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid update for experiment {experiment_id}: {e}")
        if "duration" in updates and updated.start_date:
            updated.end_date = updated.start_date + timedelta(days=updated.duration)

        await self.experiments.save(updated)
        if "traffic_allocation" in updates:
            await self._refresh_variant_shares(updated)

        logger.info(f"Updated experiment: {experiment_id}")
        return updated

    async def update_allocation(self, experiment_id: str, allocation: List[Any]) -> Experiment:
        """Replace the traffic split of a non-terminal experiment."""
        return await self.update(experiment_id, {"traffic_allocation": allocation})

    async def start(self, experiment_id: str) -> Experiment:
        experiment = await self.get(experiment_id)
        if experiment.status not in (ExperimentStatus.CREATED, ExperimentStatus.PAUSED):
            raise InvalidTransition(experiment_id, experiment.status, "start")

        now = datetime.utcnow()
        experiment.status = ExperimentStatus.RUNNING.value
        experiment.start_date = experiment.start_date or now
        experiment.end_date = experiment.start_date + timedelta(days=experiment.duration)
        experiment.updated_at = now

        await self.experiments.save(experiment)
        await self._sync_variant_status(experiment)
        logger.info(f"Started experiment: {experiment_id}, ends {experiment.end_date.isoformat()}")
        return experiment

    async def pause(self, experiment_id: str) -> Experiment:
        experiment = await self.get(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise InvalidTransition(experiment_id, experiment.status, "pause")
        return await self._transition(experiment, ExperimentStatus.PAUSED)

    async def stop(self, experiment_id: str) -> Experiment:
        """Stop a non-terminal experiment; a terminal one is returned unchanged."""
        experiment = await self.get(experiment_id)
        if experiment.is_terminal:
            logger.info(f"Experiment {experiment_id} already {experiment.status}")
            return experiment
        return await self._transition(experiment, ExperimentStatus.STOPPED)

    async def complete(self, experiment_id: str) -> Experiment:
        experiment = await self.get(experiment_id)
        if experiment.status == ExperimentStatus.COMPLETED:
            return experiment
        if experiment.status not in (ExperimentStatus.RUNNING, ExperimentStatus.STOPPED):
            raise InvalidTransition(experiment_id, experiment.status, "complete")
        return await self._transition(experiment, ExperimentStatus.COMPLETED)

    async def mark_implemented(self, variant: Variant) -> Variant:
        now = datetime.utcnow()
        variant.status = VariantStatus.IMPLEMENTED.value
        variant.implemented_at = variant.implemented_at or now
        variant.updated_at = now
        await self.variants.save(variant)
        return variant

    async def _transition(self, experiment: Experiment, status: ExperimentStatus) -> Experiment:
        previous = experiment.status
        experiment.status = status.value
        experiment.updated_at = datetime.utcnow()
        await self.experiments.save(experiment)
        await self._sync_variant_status(experiment)
        logger.info(f"Experiment {experiment.id}: {previous} -> {status.value}")
        return experiment

    async def _sync_variant_status(self, experiment: Experiment):
        variant_status = VARIANT_STATUS_FOR.get(ExperimentStatus(experiment.status))
        if variant_status is None:
            return
        for variant in await self.variants.list_by_experiment(experiment.id):
            variant.status = variant_status.value
            variant.updated_at = experiment.updated_at
            await self.variants.save(variant)

    async def _refresh_variant_shares(self, experiment: Experiment):
        shares = experiment.allocation_map()
        for variant in await self.variants.list_by_experiment(experiment.id):
            variant.traffic_allocation = shares.get(variant.id)
            variant.updated_at = experiment.updated_at
            await self.variants.save(variant)

    def _check_allocation_targets(self, experiment: Experiment, allocation: List[AllocationEntry]):
        validate_allocation(allocation)
        if sorted(entry.variant_id for entry in allocation) != sorted(experiment.variants):
            raise InvalidAllocation(
                f"Traffic allocation must cover exactly the variants of experiment {experiment.id}",
                {"variants": experiment.variants}
            )

    @staticmethod
    def _parse_config(config: Union[ExperimentCreate, Dict[str, Any]]) -> ExperimentCreate:
        if not isinstance(config, ExperimentCreate):
            try:
                config = ExperimentCreate.model_validate(config)
            except ValidationError as e:
                raise InvalidConfiguration(f"Invalid test configuration: {e}")

        if len(config.variants) < 2:
            raise InvalidConfiguration("Test configuration must include at least 2 variants")
        controls = [v for v in config.variants if v.type == VariantType.CONTROL]
        if not controls:
            raise MissingControl("Test configuration must include a control variant")
        if len(controls) > 1:
            raise InvalidConfiguration("Test configuration must include exactly one control variant")
        return config

    @staticmethod
    def _variant_ids(variants: List[VariantConfig]) -> List[str]:
        variant_ids = [v.id or str(uuid.uuid4()) for v in variants]
        if len(set(variant_ids)) != len(variant_ids):
            raise InvalidConfiguration("Variant ids must be unique")
        return variant_ids

    @staticmethod
    def _initial_allocation(variants: List[VariantConfig], variant_ids: List[str]) -> List[tuple]:
        supplied = [v.traffic_allocation for v in variants]
        if all(share is not None for share in supplied):
            return list(zip(variant_ids, supplied))
        if any(share is not None for share in supplied):
            raise InvalidAllocation("Either every variant or no variant must specify a traffic allocation")
        return generate_traffic_allocation(variant_ids)
