"""
Mapping between remote project representations and tenant records.

Pure functions only; no I/O.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from tenant_sync.core.config import settings

# Tenant fields whose local edits are pushed back to the remote project
SYNC_BACK_FIELDS = (
    "name",
    "build_command",
    "dev_command",
    "install_command",
    "output_directory",
    "root_directory",
    "framework",
    "directory_listing",
    "public_source",
    "git_fork_protection",
    "git_lfs",
    "git_comments",
    "git_provider_options",
    "password_protection",
    "sso_protection",
    "analytics",
    "speed_insights",
    "web_analytics",
    "resource_config",
    "custom_environments",
    "connect_configuration_id",
    "connect_builds_enabled",
    "auto_expose_system_envs",
    "auto_assign_custom_domains",
    "deployment_expiration",
    "rolling_release",
    "features",
    "tier",
    "v0",
    "live",
    "paused",
    "trusted_ips",
)

# tenant field -> remote PATCH field; only these are accepted by the project update call
PATCHABLE_FIELDS = {
    "build_command": "buildCommand",
    "dev_command": "devCommand",
    "install_command": "installCommand",
    "output_directory": "outputDirectory",
    "root_directory": "rootDirectory",
    "directory_listing": "directoryListing",
    "public_source": "publicSource",
    "auto_assign_custom_domains": "autoAssignCustomDomains",
    "auto_expose_system_envs": "autoExposeSystemEnvs",
    "trusted_ips": "trustedIps",
}

# remote project field -> tenant field, copied verbatim on detail sync
MIRRORED_FIELDS = {
    "buildCommand": "build_command",
    "devCommand": "dev_command",
    "installCommand": "install_command",
    "outputDirectory": "output_directory",
    "rootDirectory": "root_directory",
    "directoryListing": "directory_listing",
    "publicSource": "public_source",
    "gitForkProtection": "git_fork_protection",
    "gitLFS": "git_lfs",
    "gitComments": "git_comments",
    "gitProviderOptions": "git_provider_options",
    "passwordProtection": "password_protection",
    "ssoProtection": "sso_protection",
    "analytics": "analytics",
    "speedInsights": "speed_insights",
    "webAnalytics": "web_analytics",
    "resourceConfig": "resource_config",
    "customEnvironments": "custom_environments",
    "connectConfigurationId": "connect_configuration_id",
    "connectBuildsEnabled": "connect_builds_enabled",
    "autoExposeSystemEnvs": "auto_expose_system_envs",
    "autoAssignCustomDomains": "auto_assign_custom_domains",
    "deploymentExpiration": "deployment_expiration",
    "rollingRelease": "rolling_release",
    "features": "features",
    "tier": "tier",
    "v0": "v0",
    "live": "live",
    "paused": "paused",
    "trustedIps": "trusted_ips",
    "nodeVersion": "node_version",
}


def epoch_ms_to_iso(value: Any) -> Optional[str]:
    """Remote timestamps are epoch milliseconds"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return datetime.utcfromtimestamp(value / 1000).isoformat()


def resolve_project_url(name: str, project: Dict[str, Any], domains: Optional[List[Dict[str, Any]]] = None) -> str:
    """
    Pick the public URL for a project: a verified domain, else the first
    domain, else the project's own url, else the platform default.
    """
    domains = domains or []
    verified = [d for d in domains if d.get("verified") and d.get("name")]
    if verified:
        return f"https://{verified[0]['name']}"
    named = [d for d in domains if d.get("name")]
    if named:
        return f"https://{named[0]['name']}"
    url = project.get("url")
    if url:
        return url if url.startswith("http") else f"https://{url}"
    return f"https://{name}.vercel.app"


def map_git_repository(project: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    link = project.get("link") or {}
    if not link:
        return None
    return {
        "type": link.get("type", "github"),
        "owner": link.get("org") or link.get("owner"),
        "repo": link.get("repo"),
        "repo_id": link.get("repoId"),
        "repo_owner_id": link.get("repoOwnerId"),
        "branch": link.get("productionBranch"),
    }


def map_project_to_tenant(project: Dict[str, Any], domains: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Tenant fields derived from a full remote project representation"""
    name = project.get("name", "")
    fields: Dict[str, Any] = {
        "remote_project_id": project.get("id"),
        "remote_project_name": name,
        "remote_project_status": "ready",
        "framework": project.get("framework") or settings.DEFAULT_FRAMEWORK,
        "url": resolve_project_url(name, project, domains),
        "domains": [d.get("name") for d in (domains or []) if d.get("name")],
        "remote_created_at": epoch_ms_to_iso(project.get("createdAt")),
        "remote_updated_at": epoch_ms_to_iso(project.get("updatedAt")),
    }
    git_repository = map_git_repository(project)
    if git_repository:
        fields["git_repository"] = git_repository
    for remote_field, tenant_field in MIRRORED_FIELDS.items():
        if remote_field in project:
            fields[tenant_field] = project[remote_field]
    fields["last_sync_data"] = {
        "id": project.get("id"),
        "name": name,
        "framework": project.get("framework"),
        "updatedAt": project.get("updatedAt"),
        "link": project.get("link"),
    }
    return fields


def changed_sync_back_fields(previous: Dict[str, Any], current: Dict[str, Any]) -> List[str]:
    return [field for field in SYNC_BACK_FIELDS if previous.get(field) != current.get(field)]


def build_sync_back_payload(tenant: Dict[str, Any]) -> Dict[str, Any]:
    """PATCH body for the remote project; unset values are left out"""
    return {
        remote_field: tenant[tenant_field]
        for tenant_field, remote_field in PATCHABLE_FIELDS.items()
        if tenant.get(tenant_field) is not None
    }


def build_project_create_payload(name: str, git_repository: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "name": name,
        "framework": settings.DEFAULT_FRAMEWORK,
        "buildCommand": settings.DEFAULT_BUILD_COMMAND,
        "installCommand": settings.DEFAULT_INSTALL_COMMAND,
    }
    if git_repository and git_repository.get("owner") and git_repository.get("repo"):
        payload["gitRepository"] = {
            "type": git_repository.get("type") or "github",
            "repo": f"{git_repository['owner']}/{git_repository['repo']}",
        }
    return payload


def build_deployment_payload(
    tenant: Dict[str, Any],
    name: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Request body for a git-sourced production deployment of a tenant's project"""
    git = tenant.get("git_repository") or {}
    payload: Dict[str, Any] = {
        "name": name or f"{tenant.get('name')}-deployment",
        "project": tenant.get("remote_project_id"),
        "target": "production",
        "files": [],
        "projectSettings": {
            "buildCommand": settings.DEFAULT_BUILD_COMMAND,
            "devCommand": settings.DEFAULT_DEV_COMMAND,
            "framework": settings.DEFAULT_FRAMEWORK,
            "installCommand": settings.DEFAULT_INSTALL_COMMAND,
            "outputDirectory": None,
            "rootDirectory": None,
        },
        "skipAutoDetectionConfirmation": True,
    }
    payload.update(overrides or {})
    payload["gitSource"] = {
        "type": git.get("type") or "github",
        "ref": git.get("branch") or settings.DEFAULT_GIT_BRANCH,
        "repoId": git.get("repo_id"),
    }
    return payload
