from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum


class EnvVarType(str, Enum):
    PLAIN = "plain"
    ENCRYPTED = "encrypted"
    SECRET = "secret"
    SYSTEM = "system"


class EnvTarget(str, Enum):
    PRODUCTION = "production"
    PREVIEW = "preview"
    DEVELOPMENT = "development"


ALL_TARGETS = (EnvTarget.PRODUCTION.value, EnvTarget.PREVIEW.value, EnvTarget.DEVELOPMENT.value)


class SyncState(str, Enum):
    """Remote identity state of an env var entry"""
    UNSYNCED = "unsynced"
    SYNCED = "synced"
    FAILED = "failed"


class FailureReason(str, Enum):
    """Terminal failures; entries carrying one are not retried automatically"""
    FAILED_CREATION = "FAILED_CREATION"
    FAILED_UPDATE = "FAILED_UPDATE"


class EnvVarEntryIn(BaseModel):
    """One entry as submitted by a user"""
    key: str = Field(..., min_length=1)
    value: str = ""
    type: EnvVarType = EnvVarType.ENCRYPTED
    targets: List[EnvTarget] = Field(default_factory=lambda: [EnvTarget(t) for t in ALL_TARGETS])
    comment: Optional[str] = None
    git_branch: Optional[str] = None
    remote_id: Optional[str] = None
    sync_state: Optional[SyncState] = None
    failure_reason: Optional[FailureReason] = None


class EnvVarSetCreate(BaseModel):
    tenant_id: str
    entries: List[EnvVarEntryIn] = Field(default_factory=list)
    autodeploy: bool = False


class EnvVarSetUpdate(BaseModel):
    entries: Optional[List[EnvVarEntryIn]] = None
    autodeploy: Optional[bool] = None
