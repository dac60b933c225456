from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from experiment_engine.models.implementation import ChangeResult
from experiment_engine.repositories.memory import in_memory_repositories
from experiment_engine.services.experiment_service import ExperimentService


@pytest.fixture
def repositories():
    return in_memory_repositories()


@pytest.fixture
def code_changes():
    client = AsyncMock()
    client.implement_change.side_effect = [
        ChangeResult(commit_hash=f"commit-{i}") for i in range(1, 50)
    ]
    client.rollback_change.side_effect = [
        ChangeResult(commit_hash=f"revert-{i}") for i in range(1, 50)
    ]
    return client


@pytest.fixture
def service(repositories, code_changes):
    return ExperimentService(repositories, code_changes)


@pytest.fixture
def experiment_config():
    return {
        "name": "Homepage title test",
        "description": "Longer title against the current one",
        "site_id": "site-1",
        "duration": 14,
        "metrics": {"primary": "conversion_rate", "secondary": ["bounce_rate"]},
        "variants": [
            {"id": "control", "name": "Control", "type": "control", "traffic_allocation": 0.5},
            {
                "id": "variant",
                "name": "Long title",
                "type": "variant",
                "traffic_allocation": 0.5,
                "changes": [
                    {
                        "element": "title",
                        "type": "meta",
                        "path": "templates/home.html",
                        "original": "Home",
                        "modified": "Home | Best widgets online"
                    },
                    {
                        "element": "description",
                        "type": "meta",
                        "path": "templates/home_meta.html",
                        "original": "Widgets",
                        "modified": "Buy the best widgets online"
                    }
                ]
            }
        ]
    }


@pytest.fixture
def feed_samples(service):
    """Append one sample per value, keyed by variant."""
    async def feed(experiment_id, values_by_variant, metric="conversion_rate"):
        start = datetime.utcnow() - timedelta(hours=1)
        for variant_id, values in values_by_variant.items():
            for offset, value in enumerate(values):
                await service.record_sample(
                    experiment_id,
                    variant_id,
                    start + timedelta(seconds=offset),
                    {metric: value}
                )
    return feed
