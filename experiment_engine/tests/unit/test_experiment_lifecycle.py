from datetime import timedelta

import pytest

from experiment_engine.core.errors import (
    InvalidAllocation,
    InvalidConfiguration,
    InvalidTransition,
    MissingControl,
    NotFound,
)
from experiment_engine.models.experiment import ExperimentStatus


@pytest.mark.asyncio
async def test_create_experiment(service, experiment_config):
    detail = await service.create_experiment(experiment_config)

    experiment = detail.experiment
    assert experiment.status == ExperimentStatus.CREATED
    assert experiment.variants == ["control", "variant"]
    assert experiment.control_variant_id == "control"
    assert experiment.allocation_map() == {"control": 0.5, "variant": 0.5}
    assert experiment.confidence_threshold == 0.95
    assert experiment.metric_direction == "maximize"
    assert [v.id for v in detail.variants] == ["control", "variant"]
    assert len(detail.variants[1].changes) == 2


@pytest.mark.asyncio
async def test_create_without_allocation_splits_equally(service, experiment_config):
    for variant in experiment_config["variants"]:
        del variant["traffic_allocation"]
    experiment_config["variants"].append({"id": "third", "name": "Short title"})

    detail = await service.create_experiment(experiment_config)

    shares = detail.experiment.allocation_map()
    assert shares == {"control": 0.34, "variant": 0.33, "third": 0.33}


@pytest.mark.asyncio
async def test_create_with_partial_allocation_is_rejected(service, experiment_config):
    del experiment_config["variants"][1]["traffic_allocation"]
    with pytest.raises(InvalidAllocation):
        await service.create_experiment(experiment_config)


@pytest.mark.asyncio
async def test_create_rejects_bad_allocation_sum(service, experiment_config):
    experiment_config["variants"][1]["traffic_allocation"] = 0.47
    with pytest.raises(InvalidAllocation):
        await service.create_experiment(experiment_config)


@pytest.mark.asyncio
async def test_create_requires_control(service, experiment_config):
    experiment_config["variants"][0]["type"] = "variant"
    with pytest.raises(MissingControl):
        await service.create_experiment(experiment_config)


@pytest.mark.asyncio
async def test_create_requires_two_variants(service, experiment_config):
    experiment_config["variants"] = experiment_config["variants"][:1]
    experiment_config["variants"][0]["traffic_allocation"] = 1.0
    with pytest.raises(InvalidConfiguration):
        await service.create_experiment(experiment_config)


@pytest.mark.asyncio
async def test_create_requires_primary_metric(service, experiment_config):
    experiment_config["metrics"] = {"primary": ""}
    with pytest.raises(InvalidConfiguration):
        await service.create_experiment(experiment_config)


@pytest.mark.asyncio
async def test_create_uses_duration_heuristic(service, experiment_config):
    del experiment_config["duration"]
    experiment_config["expected_traffic"] = 100

    detail = await service.create_experiment(experiment_config)

    # 16 / 0.1^2 * 0.8^2 = 1024 per variant, 2048 visitors at 100 a day
    assert detail.experiment.duration == 21


@pytest.mark.asyncio
async def test_start_sets_dates(service, experiment_config):
    detail = await service.create_experiment(experiment_config)

    experiment = await service.start_experiment(detail.experiment.id)

    assert experiment.status == ExperimentStatus.RUNNING
    assert experiment.end_date - experiment.start_date == timedelta(days=14)
    variants = await service.definitions.get_variants(experiment.id)
    assert {v.status for v in variants} == {"active"}


@pytest.mark.asyncio
async def test_pause_and_resume(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    started = await service.start_experiment(detail.experiment.id)

    paused = await service.pause_experiment(detail.experiment.id)
    assert paused.status == ExperimentStatus.PAUSED

    resumed = await service.start_experiment(detail.experiment.id)
    assert resumed.status == ExperimentStatus.RUNNING
    assert resumed.start_date == started.start_date


@pytest.mark.asyncio
async def test_pause_requires_running(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    with pytest.raises(InvalidTransition):
        await service.pause_experiment(detail.experiment.id)


@pytest.mark.asyncio
async def test_stopped_experiment_cannot_restart(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    await service.start_experiment(detail.experiment.id)
    await service.definitions.stop(detail.experiment.id)

    with pytest.raises(InvalidTransition):
        await service.start_experiment(detail.experiment.id)
    with pytest.raises(InvalidTransition):
        await service.update_allocation(
            detail.experiment.id,
            [{"variant_id": "control", "fraction": 0.2}, {"variant_id": "variant", "fraction": 0.8}]
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["running", "completed"])
async def test_start_rejects_running_and_completed(service, experiment_config, status):
    detail = await service.create_experiment(experiment_config)
    started = await service.start_experiment(detail.experiment.id)
    if status == "completed":
        await service.definitions.complete(detail.experiment.id)

    with pytest.raises(InvalidTransition) as exc_info:
        await service.start_experiment(detail.experiment.id)

    assert exc_info.value.message == f"Cannot start experiment {detail.experiment.id} with status: {status}"
    stored = await service.definitions.get(detail.experiment.id)
    assert stored.status == status
    assert stored.start_date == started.start_date


@pytest.mark.asyncio
async def test_stop_is_idempotent(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    await service.start_experiment(detail.experiment.id)

    first = await service.definitions.stop(detail.experiment.id)
    second = await service.definitions.stop(detail.experiment.id)

    assert first.status == second.status == ExperimentStatus.STOPPED
    assert first.updated_at == second.updated_at


@pytest.mark.asyncio
async def test_update_allocation(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    await service.start_experiment(detail.experiment.id)

    updated = await service.update_allocation(
        detail.experiment.id,
        [{"variant_id": "control", "fraction": 0.2}, {"variant_id": "variant", "fraction": 0.8}]
    )

    assert updated.allocation_map() == {"control": 0.2, "variant": 0.8}
    variant = await service.definitions.get_variant(detail.experiment.id, "variant")
    assert variant.traffic_allocation == 0.8


@pytest.mark.asyncio
async def test_update_allocation_must_cover_variants(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    with pytest.raises(InvalidAllocation):
        await service.update_allocation(
            detail.experiment.id,
            [{"variant_id": "control", "fraction": 0.5}, {"variant_id": "other", "fraction": 0.5}]
        )


@pytest.mark.asyncio
async def test_update_ignores_protected_fields(service, experiment_config):
    detail = await service.create_experiment(experiment_config)

    updated = await service.update_experiment(
        detail.experiment.id,
        {"id": "hijacked", "status": "completed", "name": "Renamed"}
    )

    assert updated.id == detail.experiment.id
    assert updated.status == ExperimentStatus.CREATED
    assert updated.name == "Renamed"


@pytest.mark.asyncio
async def test_update_validates_before_write(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    with pytest.raises(InvalidConfiguration):
        await service.update_experiment(detail.experiment.id, {"confidence_threshold": 1.5})

    stored = await service.definitions.get(detail.experiment.id)
    assert stored.confidence_threshold == 0.95


@pytest.mark.asyncio
async def test_unknown_experiment(service):
    with pytest.raises(NotFound):
        await service.start_experiment("missing")


@pytest.mark.asyncio
async def test_list_experiments_by_site(service, experiment_config):
    await service.create_experiment(experiment_config)
    experiment_config["site_id"] = "site-2"
    for variant in experiment_config["variants"]:
        del variant["id"]
    await service.create_experiment(experiment_config)

    assert len(await service.list_experiments("site-1")) == 1
    assert len(await service.list_experiments("site-1", status="running")) == 0


@pytest.mark.asyncio
async def test_update_duration_moves_end_date(service, experiment_config):
    detail = await service.create_experiment(experiment_config)
    started = await service.start_experiment(detail.experiment.id)

    updated = await service.update_experiment(detail.experiment.id, {"duration": 30})

    assert updated.duration == 30
    assert updated.start_date == started.start_date
    assert updated.end_date - updated.start_date == timedelta(days=30)
    stored = await service.definitions.get(detail.experiment.id)
    assert stored.end_date == updated.end_date


@pytest.mark.asyncio
async def test_update_duration_before_start_leaves_dates_unset(service, experiment_config):
    detail = await service.create_experiment(experiment_config)

    updated = await service.update_experiment(detail.experiment.id, {"duration": 7})
    started = await service.start_experiment(detail.experiment.id)

    assert updated.end_date is None
    assert started.end_date - started.start_date == timedelta(days=7)


@pytest.mark.asyncio
@pytest.mark.parametrize("finish", ["stop", "complete"])
async def test_update_rejects_allocation_on_terminal_experiment(service, experiment_config, finish):
    detail = await service.create_experiment(experiment_config)
    await service.start_experiment(detail.experiment.id)
    await getattr(service.definitions, finish)(detail.experiment.id)

    with pytest.raises(InvalidTransition):
        await service.update_experiment(
            detail.experiment.id,
            {"traffic_allocation": [
                {"variant_id": "control", "fraction": 0.2},
                {"variant_id": "variant", "fraction": 0.8}
            ]}
        )

    stored = await service.definitions.get(detail.experiment.id)
    assert stored.allocation_map() == {"control": 0.5, "variant": 0.5}
    variant = await service.definitions.get_variant(detail.experiment.id, "variant")
    assert variant.traffic_allocation == 0.5


@pytest.mark.asyncio
async def test_update_cannot_replace_variant_set(service, experiment_config):
    detail = await service.create_experiment(experiment_config)

    updated = await service.update_experiment(
        detail.experiment.id,
        {
            "variants": ["control", "ghost"],
            "control_variant_id": "ghost",
            "end_date": "2030-01-01T00:00:00",
            "description": "Reworded"
        }
    )

    assert updated.variants == ["control", "variant"]
    assert updated.control_variant_id == "control"
    assert updated.end_date is None
    assert updated.description == "Reworded"
    control = await service.definitions.get_control(detail.experiment.id)
    assert control.id == "control"
