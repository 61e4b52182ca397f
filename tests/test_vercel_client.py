"""
Tests for the Vercel REST client

The client opens an httpx.AsyncClient per call; tests swap in one backed by
httpx.MockTransport so requests can be inspected without network access.
"""
import json

import httpx
import pytest
from unittest.mock import patch

from tenant_sync.core.exceptions import CredentialError, RemoteNotFound, RemotePlatformError
from tenant_sync.services.vercel_client import VercelClient, create_vercel_client

REAL_ASYNC_CLIENT = httpx.AsyncClient


class MockRemote:
    """Routes (method, path) to canned responses and records every request"""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, status_code=200, body=None):
        self.routes[(method, path)] = (status_code, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, body = self.routes.get(
            (request.method, request.url.path),
            (404, {"error": {"code": "not_found", "message": "Not found"}}),
        )
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)

    def client_factory(self, *args, **kwargs):
        return REAL_ASYNC_CLIENT(transport=httpx.MockTransport(self.handler))

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


# ============ Fixtures ============

@pytest.fixture
def remote():
    mock_remote = MockRemote()
    with patch("tenant_sync.services.vercel_client.httpx.AsyncClient", side_effect=mock_remote.client_factory):
        yield mock_remote


@pytest.fixture
def client():
    return VercelClient(token="token-abcdef123", team_id="team_1")


class TestRequestShape:
    """Test suite for auth headers and query parameters"""

    @pytest.mark.asyncio
    async def test_bearer_token_and_team_id(self, remote, client):
        remote.on("GET", "/v9/projects/prj_1", body={"id": "prj_1"})

        project = await client.get_project("prj_1")

        assert project == {"id": "prj_1"}
        assert remote.last.headers["Authorization"] == "Bearer token-abcdef123"
        assert remote.last.url.params["teamId"] == "team_1"

    @pytest.mark.asyncio
    async def test_no_team_id_when_token_has_none(self, remote):
        remote.on("GET", "/v9/projects/prj_1", body={"id": "prj_1"})

        await VercelClient(token="personal-token-1", team_id=None).get_project("prj_1")

        assert "teamId" not in remote.last.url.params

    @pytest.mark.asyncio
    async def test_none_params_are_dropped(self, remote, client):
        remote.on("GET", "/v9/projects/prj_1/env", body={"envs": []})

        await client.list_env_vars("prj_1", decrypt=False)

        assert "decrypt" not in remote.last.url.params

    @pytest.mark.unit
    def test_factory_binds_token_and_team(self):
        vercel = create_vercel_client("token-abcdef123", "team_9")

        assert vercel.token == "token-abcdef123"
        assert vercel.team_id == "team_9"


class TestResponseUnwrapping:
    """Test suite for list endpoints returning wrapped payloads"""

    @pytest.mark.asyncio
    async def test_list_projects(self, remote, client):
        remote.on("GET", "/v9/projects", body={"projects": [{"id": "prj_1"}], "pagination": {}})

        assert await client.list_projects() == [{"id": "prj_1"}]

    @pytest.mark.asyncio
    async def test_list_deployments_passes_project_and_limit(self, remote, client):
        remote.on("GET", "/v6/deployments", body={"deployments": [{"uid": "dpl_1"}]})

        deployments = await client.list_deployments("prj_1", limit=3)

        assert deployments == [{"uid": "dpl_1"}]
        assert remote.last.url.params["projectId"] == "prj_1"
        assert remote.last.url.params["limit"] == "3"

    @pytest.mark.asyncio
    async def test_list_env_vars_decrypts(self, remote, client):
        remote.on("GET", "/v9/projects/prj_1/env", body={"envs": [{"id": "env_1", "key": "A"}]})

        envs = await client.list_env_vars("prj_1")

        assert envs == [{"id": "env_1", "key": "A"}]
        assert remote.last.url.params["decrypt"] == "true"

    @pytest.mark.asyncio
    async def test_project_domains(self, remote, client):
        remote.on("GET", "/v9/projects/prj_1/domains", body={"domains": [{"name": "acme.example.com"}]})

        assert await client.get_project_domains("prj_1") == [{"name": "acme.example.com"}]


class TestCreateEnvVars:
    """Test suite for the bulk env var endpoint"""

    @pytest.mark.asyncio
    async def test_single_created_item_becomes_a_list(self, remote, client):
        remote.on("POST", "/v10/projects/prj_1/env", 201, {"created": {"id": "env_1", "key": "A"}})

        result = await client.create_env_vars("prj_1", [{"key": "A", "value": "1"}])

        assert result == {"created": [{"id": "env_1", "key": "A"}], "failed": []}
        assert json.loads(remote.last.content) == [{"key": "A", "value": "1"}]

    @pytest.mark.asyncio
    async def test_failed_items_are_kept(self, remote, client):
        failed = [{"error": {"code": "ENV_ALREADY_EXISTS", "key": "B", "message": "already exists"}}]
        remote.on("POST", "/v10/projects/prj_1/env", 201, {"created": [{"id": "env_1", "key": "A"}], "failed": failed})

        result = await client.create_env_vars("prj_1", [{"key": "A"}, {"key": "B"}])

        assert [c["key"] for c in result["created"]] == ["A"]
        assert result["failed"] == failed


class TestMutations:
    """Test suite for write endpoints"""

    @pytest.mark.asyncio
    async def test_crons_use_dashboard_api(self, remote, client):
        remote.on("PATCH", "/api/v1/projects/prj_1/crons", body={"enabled": False})

        await client.update_crons("prj_1", False)

        assert remote.last.url.host == "vercel.com"
        assert json.loads(remote.last.content) == {"enabled": False}

    @pytest.mark.asyncio
    async def test_empty_delete_response(self, remote, client):
        remote.on("DELETE", "/v9/projects/prj_1", 204)

        assert await client.delete_project("prj_1") is True

    @pytest.mark.asyncio
    async def test_cancel_deployment(self, remote, client):
        remote.on("PATCH", "/v12/deployments/dpl_1/cancel", body={"uid": "dpl_1", "readyState": "CANCELED"})

        result = await client.cancel_deployment("dpl_1")

        assert result["readyState"] == "CANCELED"


class TestErrors:
    """Test suite for remote failures surfacing as classified errors"""

    @pytest.mark.asyncio
    async def test_missing_project(self, remote, client):
        with pytest.raises(RemoteNotFound) as exc_info:
            await client.get_project("prj_missing")

        assert exc_info.value.operation == "get_project"

    @pytest.mark.asyncio
    async def test_bad_token(self, remote, client):
        remote.on("GET", "/v6/deployments", 401, {"error": {"code": "forbidden", "message": "Not authorized"}})

        with pytest.raises(CredentialError) as exc_info:
            await client.list_deployments("prj_1")

        assert exc_info.value.classification == "unauthorized"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, remote, client):
        remote.on("POST", "/v13/deployments", 503, {"error": {"message": "try again"}})

        with pytest.raises(RemotePlatformError) as exc_info:
            await client.create_deployment({"name": "acme"})

        assert exc_info.value.classification == "transient"
