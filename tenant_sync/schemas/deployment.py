from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum


class DeploymentStatus(str, Enum):
    QUEUED = "queued"
    BUILDING = "building"
    READY = "ready"
    ERROR = "error"
    CANCELED = "canceled"


class DeploymentTrigger(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    SYNC = "sync"


IN_FLIGHT_STATUSES = (DeploymentStatus.QUEUED.value, DeploymentStatus.BUILDING.value)


class DeploymentCreate(BaseModel):
    """Request to trigger a deployment for a tenant"""
    tenant_id: str
    overrides: Dict[str, Any] = Field(default_factory=dict, description="Extra fields merged into the remote deployment request")


class DeploymentCancelRequest(BaseModel):
    tenant_id: str
