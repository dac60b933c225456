from fastapi import HTTPException, status
from typing import Dict, Any


class ExperimentError(Exception):
    """Base class for errors raised by the experimentation engine."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "EXPERIMENT_ERROR"

    def __init__(self, message: str, metadata: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.metadata = metadata or {}


class InvalidConfiguration(ExperimentError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "INVALID_CONFIGURATION"


class InvalidAllocation(ExperimentError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "INVALID_ALLOCATION"


class InvalidTransition(ExperimentError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "INVALID_TRANSITION"

    def __init__(self, experiment_id: str, current_status: str, action: str):
        super().__init__(
            f"Cannot {action} experiment {experiment_id} with status: {current_status}",
            {"experiment_id": experiment_id, "status": current_status, "action": action}
        )
        self.current_status = current_status


class ExperimentInactive(ExperimentError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "EXPERIMENT_INACTIVE"


class AlreadyRolledBack(ExperimentError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "ALREADY_ROLLED_BACK"

    def __init__(self, implementation_id: str, experiment_id: str):
        super().__init__(
            f"Implementation {implementation_id} was already rolled back",
            {"implementation_id": implementation_id, "experiment_id": experiment_id}
        )


class NotFound(ExperimentError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} with id {resource_id} not found",
            {"resource": resource, "id": resource_id}
        )
        self.resource = resource
        self.resource_id = resource_id


class MissingControl(ExperimentError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "MISSING_CONTROL"


class InsufficientData(ExperimentError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "INSUFFICIENT_DATA"


class ExternalCollaboratorFailure(ExperimentError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "EXTERNAL_COLLABORATOR_FAILURE"


class APIError(HTTPException):
    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: str = None,
        metadata: Dict[str, Any] = None
    ):
        super().__init__(
            status_code=status_code,
            detail={
                "message": detail,
                "error_code": error_code or "UNKNOWN_ERROR",
                "metadata": metadata or {}
            }
        )

    @classmethod
    def from_experiment_error(cls, error: ExperimentError) -> "APIError":
        return cls(
            status_code=error.status_code,
            detail=error.message,
            error_code=error.error_code,
            metadata=error.metadata
        )
