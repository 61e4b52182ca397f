"""Remote platform protocol.

The reconciliation engine only talks to the hosting platform through this
interface. VercelClient is the production implementation; tests substitute an
in-memory fake.
"""
from typing import Protocol, List, Dict, Any, Optional, Callable, runtime_checkable


@runtime_checkable
class RemotePlatform(Protocol):
    """Operations the engine needs from the remote hosting platform.

    Implementations are bound to one credential (token + optional team id):
        platform = VercelClient(token="...", team_id="...")

    Every method raises a classified SyncError on failure.
    """

    # =========================================================================
    # Projects
    # =========================================================================

    async def list_projects(self, limit: int = 100) -> List[Dict[str, Any]]:
        ...

    async def get_project(self, project_id: str) -> Dict[str, Any]:
        ...

    async def create_project(self, project_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a project. The response is partial; fetch details afterwards."""
        ...

    async def update_project(self, project_id: str, project_data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def delete_project(self, project_id: str) -> bool:
        ...

    async def get_project_domains(self, project_id: str) -> List[Dict[str, Any]]:
        ...

    async def update_crons(self, project_id: str, enabled: bool) -> Dict[str, Any]:
        ...

    # =========================================================================
    # Deployments
    # =========================================================================

    async def list_deployments(self, project_id: str, limit: int = 1) -> List[Dict[str, Any]]:
        """List the most recent deployments of a project, newest first."""
        ...

    async def create_deployment(self, deployment_data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def cancel_deployment(self, deployment_id: str) -> Dict[str, Any]:
        ...

    async def delete_deployment(self, deployment_id: str) -> bool:
        ...

    # =========================================================================
    # Environment variables
    # =========================================================================

    async def list_env_vars(self, project_id: str, decrypt: bool = True) -> List[Dict[str, Any]]:
        ...

    async def create_env_vars(self, project_id: str, env_vars: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """Bulk create.

        Returns:
            Dict with "created" (entries with remote ids) and "failed" lists
        """
        ...

    async def update_env_var(self, project_id: str, env_id: str, env_data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def delete_env_var(self, project_id: str, env_id: str) -> bool:
        ...


PlatformFactory = Callable[[Optional[str], Optional[str]], RemotePlatform]
