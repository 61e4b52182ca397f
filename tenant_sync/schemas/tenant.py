from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List, Union
from datetime import datetime
from enum import Enum


class TenantStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"


class GitRepository(BaseModel):
    """Git repository linked to a tenant's remote project"""
    type: str = "github"
    owner: Optional[str] = None
    repo: Optional[str] = None
    repo_id: Optional[Union[int, str]] = None
    repo_owner_id: Optional[Union[int, str]] = None
    branch: Optional[str] = None

    def missing_deploy_fields(self) -> List[str]:
        """Fields a git-sourced deployment cannot be triggered without"""
        return [name for name in ("owner", "repo", "repo_id") if not getattr(self, name)]


class TenantCreate(BaseModel):
    """Schema for provisioning a new tenant together with its remote project"""
    name: str = Field(..., min_length=1, description="Tenant name, also used as the remote project name")
    git_repository: Optional[GitRepository] = None


class TenantUpdate(BaseModel):
    """Schema for a user edit of a tenant"""
    name: Optional[str] = None
    status: Optional[TenantStatus] = None
    is_active: Optional[bool] = None
    git_repository: Optional[GitRepository] = None
    disable_cron: Optional[bool] = None
    build_command: Optional[str] = None
    dev_command: Optional[str] = None
    install_command: Optional[str] = None
    output_directory: Optional[str] = None
    root_directory: Optional[str] = None
    directory_listing: Optional[bool] = None
    public_source: Optional[bool] = None
    auto_assign_custom_domains: Optional[bool] = None
    auto_expose_system_envs: Optional[bool] = None
    vercel_token_override: Optional[str] = None
    vercel_team_id_override: Optional[str] = None


class TenantResponse(BaseModel):
    id: str
    name: str
    status: TenantStatus = TenantStatus.DRAFT
    is_active: bool = True
    remote_project_id: Optional[str] = None
    remote_project_name: Optional[str] = None
    framework: Optional[str] = None
    url: Optional[str] = None
    git_repository: Optional[GitRepository] = None
    latest_deployment_id: Optional[str] = None
    last_deployment_status: Optional[str] = None
    last_synced: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_sync_message: Optional[str] = None

    class Config:
        from_attributes = True


class TenantDeletionSummary(BaseModel):
    """What a tenant deletion cleaned up"""
    tenant_id: str
    tenant_name: Optional[str] = None
    remote_project_deleted: bool = False
    env_var_sets_deleted: int = 0
    deployments_deleted: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()
