"""
Clients for the external code-change service that commits winning variants.
"""

import logging
from typing import Optional, Protocol

import httpx

from ..core.config import settings
from ..core.errors import ExternalCollaboratorFailure
from ..models.implementation import ChangeRequest, ChangeResult, RollbackRequest

logger = logging.getLogger(__name__)


class CodeChangeClient(Protocol):
    async def implement_change(self, request: ChangeRequest) -> ChangeResult:
        ...

    async def rollback_change(self, request: RollbackRequest) -> ChangeResult:
        ...


class HttpCodeChangeClient:
    """Talks to the code-change service over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.CODE_CHANGE_TIMEOUT
        )

    async def implement_change(self, request: ChangeRequest) -> ChangeResult:
        return await self._post("/changes", request.model_dump())

    async def rollback_change(self, request: RollbackRequest) -> ChangeResult:
        return await self._post("/changes/rollback", request.model_dump())

    async def close(self):
        await self.client.aclose()

    async def _post(self, path: str, payload: dict) -> ChangeResult:
        try:
            response = await self.client.post(path, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Code-change service returned {e.response.status_code} for {path}")
            raise ExternalCollaboratorFailure(
                f"Code-change service rejected {payload.get('path')}: {e.response.status_code}",
                {"path": payload.get("path"), "status_code": e.response.status_code}
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Code-change service error: {str(e)}")
            raise ExternalCollaboratorFailure(
                f"Code-change service unavailable: {str(e)}",
                {"path": payload.get("path")}
            ) from e

        commit_hash = data.get("commit_hash") or data.get("commitHash")
        if not commit_hash:
            raise ExternalCollaboratorFailure(
                "Code-change service response carried no commit hash",
                {"path": payload.get("path")}
            )
        return ChangeResult(commit_hash=commit_hash)


class UnconfiguredCodeChangeClient:
    """Used when no code-change service is configured; every call fails."""

    async def implement_change(self, request: ChangeRequest) -> ChangeResult:
        raise ExternalCollaboratorFailure(
            "Code-change service not configured", {"path": request.path}
        )

    async def rollback_change(self, request: RollbackRequest) -> ChangeResult:
        raise ExternalCollaboratorFailure(
            "Code-change service not configured", {"path": request.path}
        )


def build_code_change_client() -> CodeChangeClient:
    if settings.CODE_CHANGE_SERVICE_URL:
        return HttpCodeChangeClient(settings.CODE_CHANGE_SERVICE_URL)
    logger.warning("CODE_CHANGE_SERVICE_URL not configured. Winning variants cannot be implemented.")
    return UnconfiguredCodeChangeClient()
