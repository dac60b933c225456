import json

import httpx
import pytest

from experiment_engine.core.errors import ExternalCollaboratorFailure
from experiment_engine.models.implementation import ChangeRequest, RollbackRequest
from experiment_engine.services.code_change import HttpCodeChangeClient, UnconfiguredCodeChangeClient

BASE_URL = "http://code-change.test"


def make_client(handler):
    transport = httpx.MockTransport(handler)
    return HttpCodeChangeClient(
        BASE_URL,
        client=httpx.AsyncClient(base_url=BASE_URL, transport=transport)
    )


def change_request():
    return ChangeRequest(
        path="templates/home.html",
        original="Home",
        modified="Home | Best widgets online",
        message="Implementing A/B Test Winner: Long title (Test: Homepage title test)",
        branch="production"
    )


@pytest.mark.asyncio
async def test_implement_change_posts_request():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"commit_hash": "abc123"})

    client = make_client(handler)
    result = await client.implement_change(change_request())
    await client.close()

    assert result.commit_hash == "abc123"
    assert seen["path"] == "/changes"
    assert seen["body"]["modified"] == "Home | Best widgets online"
    assert seen["body"]["branch"] == "production"


@pytest.mark.asyncio
async def test_rollback_change_posts_request():
    def handler(request):
        assert request.url.path == "/changes/rollback"
        assert json.loads(request.content)["commit_hash"] == "abc123"
        return httpx.Response(200, json={"commitHash": "def456"})

    client = make_client(handler)
    result = await client.rollback_change(RollbackRequest(
        path="templates/home.html",
        commit_hash="abc123",
        original="Home",
        message="Rolling back A/B Test Winner: Long title",
        branch="production"
    ))

    assert result.commit_hash == "def456"


@pytest.mark.asyncio
async def test_error_status_becomes_collaborator_failure():
    client = make_client(lambda request: httpx.Response(500, json={"error": "boom"}))

    with pytest.raises(ExternalCollaboratorFailure) as exc_info:
        await client.implement_change(change_request())

    assert exc_info.value.metadata["status_code"] == 500


@pytest.mark.asyncio
async def test_transport_error_becomes_collaborator_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(ExternalCollaboratorFailure):
        await client.implement_change(change_request())


@pytest.mark.asyncio
async def test_missing_commit_hash():
    client = make_client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(ExternalCollaboratorFailure):
        await client.implement_change(change_request())


@pytest.mark.asyncio
async def test_unconfigured_client_always_fails():
    client = UnconfiguredCodeChangeClient()
    with pytest.raises(ExternalCollaboratorFailure):
        await client.implement_change(change_request())
