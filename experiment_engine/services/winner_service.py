import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional

from ..core.config import settings
from ..core.errors import AlreadyRolledBack, InsufficientData, NotFound
from ..core.monitoring import IMPLEMENTED_CHANGES_TOTAL, metrics_logger
from ..models.analysis import AnalysisResult
from ..models.experiment import Experiment
from ..models.implementation import (
    ChangeOutcome,
    ChangeRequest,
    ImplementationRecord,
    ImplementationStatus,
    RollbackRequest,
    StopOptions,
    StopResult,
)
from ..repositories.base import ImplementationRepository
from .code_change import CodeChangeClient
from .experiment_analysis import SignificanceAnalyzer
from .experiment_definition import ExperimentDefinitionService

logger = logging.getLogger(__name__)

# Records whose successful changes count as already applied
APPLIED_STATUSES = {ImplementationStatus.COMPLETED.value, ImplementationStatus.PARTIAL.value}


class WinnerCoordinator:
    """
    Stops experiments and hands the winning variant's changes to the
    code-change service.

    Runs for the same experiment are serialized; a retried run skips every
    change an earlier run already committed.
    """

    def __init__(
        self,
        definitions: ExperimentDefinitionService,
        analyzer: SignificanceAnalyzer,
        implementations: ImplementationRepository,
        code_changes: CodeChangeClient
    ):
        self.definitions = definitions
        self.analyzer = analyzer
        self.implementations = implementations
        self.code_changes = code_changes
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()

    @asynccontextmanager
    async def _experiment_lock(self, experiment_id: str):
        """Serialize runs per experiment; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(experiment_id, asyncio.Lock())
        self._lock_users[experiment_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[experiment_id] -= 1
            if not self._lock_users[experiment_id]:
                del self._lock_users[experiment_id]
                del self._locks[experiment_id]

    async def stop_and_implement(
        self,
        experiment_id: str,
        options: Optional[StopOptions] = None
    ) -> StopResult:
        options = options or StopOptions()
        async with self._experiment_lock(experiment_id):
            logger.info(f"Stopping A/B test: {experiment_id}")
            await self.definitions.get(experiment_id)
            if options.winner_variant_id:
                await self.definitions.get_variant(experiment_id, options.winner_variant_id)

            analysis = await self._final_analysis(experiment_id)
            experiment = await self.definitions.stop(experiment_id)

            winner_id = options.winner_variant_id
            if winner_id is None and analysis is not None and analysis.winner is not None:
                winner_id = analysis.winner.id

            implementation = None
            if options.implement_winner and winner_id:
                implementation = await self._implement(
                    experiment, winner_id, options.branch or settings.IMPLEMENTATION_BRANCH
                )
                experiment = await self.definitions.get(experiment_id)
            elif options.implement_winner:
                logger.info(f"No winner to implement for test: {experiment_id}")

            return StopResult(
                id=experiment.id,
                status=experiment.status,
                analysis=analysis,
                implementation_result=implementation
            )

    async def rollback(self, implementation_id: str) -> ImplementationRecord:
        record = await self.implementations.get(implementation_id)
        if not record:
            raise NotFound("Implementation", implementation_id)

        async with self._experiment_lock(record.experiment_id):
            record = await self.implementations.get(implementation_id)
            if record.status == ImplementationStatus.ROLLED_BACK:
                raise AlreadyRolledBack(implementation_id, record.experiment_id)
            logger.info(f"Rolling back implementation {implementation_id} for test: {record.experiment_id}")
            winner = await self.definitions.get_variant(record.experiment_id, record.winner_variant_id)
            originals = {change.id: change for change in winner.changes}

            results: List[ChangeOutcome] = []
            for outcome in record.changes:
                if not outcome.success or outcome.skipped:
                    continue
                change = originals.get(outcome.change_id)
                if change is None:
                    logger.warning(f"Original change not found for path: {outcome.path}")
                    continue
                try:
                    result = await self.code_changes.rollback_change(RollbackRequest(
                        path=change.path,
                        commit_hash=outcome.commit_hash,
                        original=change.original,
                        message=f"Rolling back A/B Test Winner: {winner.name}",
                        branch=record.branch or settings.IMPLEMENTATION_BRANCH
                    ))
                    results.append(ChangeOutcome(
                        change_id=change.id,
                        element=change.element,
                        path=change.path,
                        success=True,
                        commit_hash=result.commit_hash
                    ))
                except Exception as e:
                    logger.error(f"Error rolling back change {change.path}: {str(e)}")
                    results.append(ChangeOutcome(
                        change_id=change.id,
                        element=change.element,
                        path=change.path,
                        success=False,
                        error=str(e)
                    ))

            record.status = ImplementationStatus.ROLLED_BACK.value
            record.rollback_results = results
            record.rolled_back_at = datetime.utcnow()
            await self.implementations.save(record)

            failed = [r for r in results if not r.success]
            if failed:
                metrics_logger.log_error(
                    "rollback_error",
                    f"{len(failed)} of {len(results)} changes failed to roll back",
                    {"experiment_id": record.experiment_id}
                )
            logger.info(f"Rolled back implementation for test: {record.experiment_id}")
            return record

    async def list_implementations(self, experiment_id: str) -> List[ImplementationRecord]:
        await self.definitions.get(experiment_id)
        return await self.implementations.list_by_experiment(experiment_id)

    async def _final_analysis(self, experiment_id: str) -> Optional[AnalysisResult]:
        try:
            return await self.analyzer.analyze(experiment_id)
        except InsufficientData as e:
            logger.warning(f"Stopping test {experiment_id} without analysis: {e.message}")
            return None

    async def _implement(
        self,
        experiment: Experiment,
        winner_id: str,
        branch: str
    ) -> ImplementationRecord:
        logger.info(f"Implementing winning variant: {winner_id} for test: {experiment.id}")
        winner = await self.definitions.get_variant(experiment.id, winner_id)
        control = await self.definitions.get_control(experiment.id)

        if winner.id == control.id:
            logger.info(f"Control variant is the winner for test: {experiment.id}. No changes needed.")
            record = ImplementationRecord(
                experiment_id=experiment.id,
                winner_variant_id=winner.id,
                control_variant_id=control.id,
                branch=branch,
                status=ImplementationStatus.NO_CHANGES_NEEDED,
                message="Control variant is the winner. No changes needed."
            )
            await self.definitions.complete(experiment.id)
            await self.implementations.insert(record)
            return record

        applied = await self._applied_changes(experiment.id, winner.id)
        message = f"Implementing A/B Test Winner: {winner.name} (Test: {experiment.name})"
        outcomes = []
        for change in winner.changes:
            outcome = await self._apply_change(change, applied, message, branch)
            IMPLEMENTED_CHANGES_TOTAL.labels(
                status="skipped" if outcome.skipped else ("success" if outcome.success else "failure")
            ).inc()
            outcomes.append(outcome)

        status = self._implementation_status(outcomes)
        if status != ImplementationStatus.FAILED:
            await self.definitions.mark_implemented(winner)
        await self.definitions.complete(experiment.id)
        record = ImplementationRecord(
            experiment_id=experiment.id,
            winner_variant_id=winner.id,
            control_variant_id=control.id,
            branch=branch,
            changes=outcomes,
            status=status,
            message=message
        )
        await self.implementations.insert(record)

        if status == ImplementationStatus.COMPLETED:
            logger.info(f"Successfully implemented winning variant: {winner.id} for test: {experiment.id}")
        else:
            metrics_logger.log_error(
                "implementation_error",
                f"Winning variant {winner.id} implemented with status {status.value}",
                {"experiment_id": experiment.id}
            )
        return record

    async def _applied_changes(self, experiment_id: str, winner_id: str) -> Dict[str, str]:
        """Commit hash per change id already applied by earlier runs."""
        applied = {}
        for record in await self.implementations.list_by_experiment(experiment_id):
            if record.winner_variant_id != winner_id or record.status not in APPLIED_STATUSES:
                continue
            for outcome in record.changes:
                if outcome.success and outcome.commit_hash:
                    applied[outcome.change_id] = outcome.commit_hash
        return applied

    async def _apply_change(self, change, applied: Dict[str, str], message: str, branch: str) -> ChangeOutcome:
        if change.id in applied:
            logger.info(f"Change {change.path} already implemented in {applied[change.id]}")
            return ChangeOutcome(
                change_id=change.id,
                element=change.element,
                path=change.path,
                success=True,
                skipped=True,
                commit_hash=applied[change.id]
            )

        try:
            result = await self.code_changes.implement_change(ChangeRequest(
                path=change.path,
                original=change.original,
                modified=change.modified,
                message=message,
                branch=branch
            ))
            return ChangeOutcome(
                change_id=change.id,
                element=change.element,
                path=change.path,
                success=True,
                commit_hash=result.commit_hash
            )
        except Exception as e:
            logger.error(f"Error implementing change {change.path}: {str(e)}")
            return ChangeOutcome(
                change_id=change.id,
                element=change.element,
                path=change.path,
                success=False,
                error=str(e)
            )

    @staticmethod
    def _implementation_status(outcomes: List[ChangeOutcome]) -> ImplementationStatus:
        failures = sum(1 for outcome in outcomes if not outcome.success)
        if failures == 0:
            return ImplementationStatus.COMPLETED
        if failures == len(outcomes):
            return ImplementationStatus.FAILED
        return ImplementationStatus.PARTIAL
