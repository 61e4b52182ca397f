import httpx
import logging
from typing import List, Dict, Any, Optional

from tenant_sync.core.config import settings
from tenant_sync.services.error_classifier import classify_remote_error

logger = logging.getLogger(__name__)


class VercelClient:
    """Client for the Vercel REST API, bound to one token / team"""

    def __init__(
        self,
        token: str = None,
        team_id: str = None,
        base_url: str = None,
        dashboard_url: str = None,
        timeout: float = None
    ):
        self.token = token or settings.VERCEL_TOKEN
        self.team_id = team_id if token else (team_id or settings.VERCEL_TEAM_ID)
        self.base_url = (base_url or settings.VERCEL_API_URL).rstrip("/")
        self.dashboard_url = (dashboard_url or settings.VERCEL_DASHBOARD_API_URL).rstrip("/")
        self.timeout = timeout or settings.VERCEL_REQUEST_TIMEOUT
        self.headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json"
        }

    def _params(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if self.team_id:
            query["teamId"] = self.team_id
        return query

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        base_url: str = None
    ) -> Any:
        url = f"{base_url or self.base_url}{path}"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method,
                    url,
                    headers=self.headers,
                    params=self._params(params),
                    json=json,
                    timeout=self.timeout
                )
                response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as e:
            error = classify_remote_error(e, operation=operation)
            logger.debug(f"Vercel {method} {path} failed: {error.message}")
            raise error from e

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # Projects

    async def list_projects(self, limit: int = 100) -> List[Dict[str, Any]]:
        """List projects visible to the token"""
        data = await self._request("GET", "/v9/projects", "list_projects", params={"limit": limit})
        return data.get("projects", []) if isinstance(data, dict) else data

    async def get_project(self, project_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v9/projects/{project_id}", "get_project")

    async def create_project(self, project_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/v10/projects", "create_project", json=project_data)

    async def update_project(self, project_id: str, project_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/v9/projects/{project_id}", "update_project", json=project_data)

    async def delete_project(self, project_id: str) -> bool:
        await self._request("DELETE", f"/v9/projects/{project_id}", "delete_project")
        return True

    async def get_project_domains(self, project_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/v9/projects/{project_id}/domains", "get_project_domains")
        return data.get("domains", []) if isinstance(data, dict) else data

    async def update_crons(self, project_id: str, enabled: bool) -> Dict[str, Any]:
        """Enable or disable the project's cron jobs (dashboard API)"""
        return await self._request(
            "PATCH",
            f"/v1/projects/{project_id}/crons",
            "update_crons",
            json={"enabled": enabled},
            base_url=self.dashboard_url
        )

    # Deployments

    async def list_deployments(self, project_id: str, limit: int = 1) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            "/v6/deployments",
            "list_deployments",
            params={"projectId": project_id, "limit": limit}
        )
        return data.get("deployments", []) if isinstance(data, dict) else data

    async def create_deployment(self, deployment_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/v13/deployments", "create_deployment", json=deployment_data)

    async def cancel_deployment(self, deployment_id: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/v12/deployments/{deployment_id}/cancel", "cancel_deployment")

    async def delete_deployment(self, deployment_id: str) -> bool:
        await self._request("DELETE", f"/v13/deployments/{deployment_id}", "delete_deployment")
        return True

    # Environment variables

    async def list_env_vars(self, project_id: str, decrypt: bool = True) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/v9/projects/{project_id}/env",
            "list_env_vars",
            params={"decrypt": "true" if decrypt else None}
        )
        return data.get("envs", []) if isinstance(data, dict) else data

    async def create_env_vars(self, project_id: str, env_vars: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Bulk create env vars; normalizes the single/list response shapes"""
        data = await self._request("POST", f"/v10/projects/{project_id}/env", "create_env_vars", json=env_vars)
        created = data.get("created", []) if isinstance(data, dict) else data
        if isinstance(created, dict):
            created = [created]
        failed = data.get("failed", []) if isinstance(data, dict) else []
        return {"created": created or [], "failed": failed or []}

    async def update_env_var(self, project_id: str, env_id: str, env_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/v9/projects/{project_id}/env/{env_id}", "update_env_var", json=env_data)

    async def delete_env_var(self, project_id: str, env_id: str) -> bool:
        await self._request("DELETE", f"/v9/projects/{project_id}/env/{env_id}", "delete_env_var")
        return True


def create_vercel_client(token: Optional[str], team_id: Optional[str]) -> VercelClient:
    """Default platform factory used by the engine"""
    return VercelClient(token=token, team_id=team_id)
