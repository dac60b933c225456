from typing import Any


def get_metric_value(metrics: Any, path: str) -> Any:
    """Look up a metric by dot-notation path; None when any segment is missing."""
    value = metrics
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value
