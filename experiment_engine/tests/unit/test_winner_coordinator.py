import asyncio

import pytest
import pytest_asyncio

from experiment_engine.core.errors import AlreadyRolledBack, ExternalCollaboratorFailure, NotFound
from experiment_engine.models.experiment import ExperimentStatus
from experiment_engine.models.implementation import ChangeResult, ImplementationStatus, StopOptions


@pytest_asyncio.fixture
async def winning_experiment(service, experiment_config, feed_samples):
    detail = await service.create_experiment(experiment_config)
    await service.start_experiment(detail.experiment.id)
    await feed_samples(detail.experiment.id, {
        "control": [10, 12, 14],
        "variant": [20, 22, 24],
    })
    return detail.experiment


@pytest.mark.asyncio
async def test_stop_implements_winner(service, code_changes, winning_experiment):
    result = await service.stop_experiment(winning_experiment.id)

    assert result.status == ExperimentStatus.COMPLETED
    assert result.analysis.winner.id == "variant"
    record = result.implementation_result
    assert record.status == ImplementationStatus.COMPLETED
    assert record.winner_variant_id == "variant"
    assert record.control_variant_id == "control"
    assert [c.commit_hash for c in record.changes] == ["commit-1", "commit-2"]

    request = code_changes.implement_change.call_args_list[0].args[0]
    assert request.path == "templates/home.html"
    assert request.original == "Home"
    assert request.modified == "Home | Best widgets online"
    assert request.branch == "production"
    assert request.message == "Implementing A/B Test Winner: Long title (Test: Homepage title test)"

    stored = await service.list_implementations(winning_experiment.id)
    assert [r.id for r in stored] == [record.id]


@pytest.mark.asyncio
async def test_failed_change_does_not_stop_later_changes(service, code_changes, winning_experiment):
    code_changes.implement_change.side_effect = [
        ExternalCollaboratorFailure("repository locked"),
        ChangeResult(commit_hash="commit-2"),
    ]

    result = await service.stop_experiment(winning_experiment.id)

    record = result.implementation_result
    assert record.status == ImplementationStatus.PARTIAL
    assert [c.success for c in record.changes] == [False, True]
    assert record.changes[0].error == "repository locked"
    assert result.status == ExperimentStatus.COMPLETED


@pytest.mark.asyncio
async def test_all_changes_failing(service, code_changes, winning_experiment):
    code_changes.implement_change.side_effect = ExternalCollaboratorFailure("service down")

    result = await service.stop_experiment(winning_experiment.id)

    assert result.implementation_result.status == ImplementationStatus.FAILED
    assert code_changes.implement_change.call_count == 2


@pytest.mark.asyncio
async def test_retry_skips_applied_changes(service, code_changes, winning_experiment):
    code_changes.implement_change.side_effect = [
        ExternalCollaboratorFailure("timeout"),
        ChangeResult(commit_hash="commit-2"),
        ChangeResult(commit_hash="commit-3"),
    ]
    await service.stop_experiment(winning_experiment.id)

    retry = await service.stop_experiment(winning_experiment.id)

    record = retry.implementation_result
    assert record.status == ImplementationStatus.COMPLETED
    assert [(c.commit_hash, c.skipped) for c in record.changes] == [("commit-3", False), ("commit-2", True)]
    assert code_changes.implement_change.call_count == 3


@pytest.mark.asyncio
async def test_concurrent_stops_apply_changes_once(service, code_changes, winning_experiment):
    first, second = await asyncio.gather(
        service.stop_experiment(winning_experiment.id),
        service.stop_experiment(winning_experiment.id),
    )

    assert code_changes.implement_change.call_count == 2
    skipped = [c.skipped for c in second.implementation_result.changes]
    assert skipped == [True, True] or [c.skipped for c in first.implementation_result.changes] == [True, True]
    assert service.winners._locks == {}


@pytest.mark.asyncio
async def test_control_winner_needs_no_changes(service, code_changes, winning_experiment):
    result = await service.stop_experiment(
        winning_experiment.id, StopOptions(winner_variant_id="control")
    )

    assert result.implementation_result.status == ImplementationStatus.NO_CHANGES_NEEDED
    assert result.status == ExperimentStatus.COMPLETED
    code_changes.implement_change.assert_not_called()


@pytest.mark.asyncio
async def test_stop_without_data(service, code_changes, experiment_config):
    detail = await service.create_experiment(experiment_config)
    await service.start_experiment(detail.experiment.id)

    result = await service.stop_experiment(detail.experiment.id)

    assert result.status == ExperimentStatus.STOPPED
    assert result.analysis is None
    assert result.implementation_result is None
    code_changes.implement_change.assert_not_called()


@pytest.mark.asyncio
async def test_stop_without_implementing(service, code_changes, winning_experiment):
    result = await service.stop_experiment(winning_experiment.id, {"implement_winner": False})

    assert result.status == ExperimentStatus.STOPPED
    assert result.analysis.has_winner
    assert result.implementation_result is None
    code_changes.implement_change.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_winner_override(service, winning_experiment):
    with pytest.raises(NotFound):
        await service.stop_experiment(winning_experiment.id, StopOptions(winner_variant_id="missing"))

    experiment = await service.definitions.get(winning_experiment.id)
    assert experiment.status == ExperimentStatus.RUNNING


@pytest.mark.asyncio
async def test_rollback(service, code_changes, winning_experiment):
    result = await service.stop_experiment(winning_experiment.id)

    record = await service.rollback_implementation(result.implementation_result.id)

    assert record.status == ImplementationStatus.ROLLED_BACK
    assert record.rolled_back_at is not None
    assert [r.commit_hash for r in record.rollback_results] == ["revert-1", "revert-2"]
    request = code_changes.rollback_change.call_args_list[0].args[0]
    assert request.commit_hash == "commit-1"
    assert request.original == "Home"
    assert request.message == "Rolling back A/B Test Winner: Long title"

    stored = await service.list_implementations(winning_experiment.id)
    assert stored[0].status == ImplementationStatus.ROLLED_BACK


@pytest.mark.asyncio
async def test_rollback_unknown_record(service):
    with pytest.raises(NotFound):
        await service.rollback_implementation("missing")


@pytest.mark.asyncio
async def test_rollback_twice_reverts_once(service, code_changes, winning_experiment):
    result = await service.stop_experiment(winning_experiment.id)
    implementation_id = result.implementation_result.id
    first = await service.rollback_implementation(implementation_id)

    with pytest.raises(AlreadyRolledBack) as exc_info:
        await service.rollback_implementation(implementation_id)

    assert exc_info.value.status_code == 409
    assert code_changes.rollback_change.call_count == 2
    stored = await service.list_implementations(winning_experiment.id)
    assert stored[0].rolled_back_at == first.rolled_back_at
    assert [r.commit_hash for r in stored[0].rollback_results] == ["revert-1", "revert-2"]


@pytest.mark.asyncio
async def test_concurrent_rollbacks_revert_once(service, code_changes, winning_experiment):
    result = await service.stop_experiment(winning_experiment.id)
    implementation_id = result.implementation_result.id

    outcomes = await asyncio.gather(
        service.rollback_implementation(implementation_id),
        service.rollback_implementation(implementation_id),
        return_exceptions=True,
    )

    assert sum(isinstance(o, AlreadyRolledBack) for o in outcomes) == 1
    assert code_changes.rollback_change.call_count == 2
    assert service.winners._locks == {}


@pytest.mark.asyncio
async def test_locks_released_after_each_run(service, experiment_config, winning_experiment):
    await service.stop_experiment(winning_experiment.id)
    assert service.winners._locks == {}

    for variant in experiment_config["variants"]:
        del variant["id"]
    for _ in range(3):
        detail = await service.create_experiment(experiment_config)
        await service.start_experiment(detail.experiment.id)
        await service.stop_experiment(detail.experiment.id)

    assert service.winners._locks == {}
    assert not service.winners._lock_users


@pytest.mark.asyncio
async def test_lock_released_when_run_fails(service, winning_experiment):
    with pytest.raises(NotFound):
        await service.stop_experiment(winning_experiment.id, StopOptions(winner_variant_id="missing"))

    assert service.winners._locks == {}
