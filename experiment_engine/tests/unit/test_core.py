import json
import logging

import pytest
from pydantic import ValidationError

from experiment_engine.core.config import Settings
from experiment_engine.core.errors import APIError, InvalidTransition, NotFound
from experiment_engine.core.logging import JSONFormatter


def test_json_formatter_includes_experiment_context():
    record = logging.LogRecord(
        "experiment_engine.services", logging.INFO, __file__, 10, "Started %s", ("exp-1",), None
    )
    record.experiment_id = "exp-1"

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Started exp-1"
    assert payload["level"] == "INFO"
    assert payload["experiment_id"] == "exp-1"


def test_settings_validation():
    with pytest.raises(ValidationError):
        Settings(MONGODB_URI="postgres://localhost")
    with pytest.raises(ValidationError):
        Settings(DEFAULT_CONFIDENCE_THRESHOLD=1.5)
    assert Settings(MONGODB_URI="").MONGODB_URI is None


def test_api_error_from_experiment_error():
    error = APIError.from_experiment_error(InvalidTransition("exp-1", "completed", "start"))

    assert error.status_code == 409
    assert error.detail["message"] == "Cannot start experiment exp-1 with status: completed"
    assert error.detail["error_code"] == "INVALID_TRANSITION"


def test_not_found_message():
    error = NotFound("Variant", "v-1")
    assert str(error) == "Variant with id v-1 not found"
    assert error.status_code == 404
