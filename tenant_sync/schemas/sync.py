from pydantic import BaseModel, Field
from typing import Optional, Dict, Any

from tenant_sync.core.exceptions import SyncError, ReconciliationInProgress


class SyncSummary(BaseModel):
    """Counters reported by every entry point"""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: int = 0

    def merge(self, other: "SyncSummary") -> "SyncSummary":
        """Add another summary's counters into this one and return self"""
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.deleted += other.deleted
        self.errors += other.errors
        return self

    @property
    def total_changes(self) -> int:
        return self.created + self.updated + self.deleted


class SyncResult(BaseModel):
    """Structured result returned by every reconciliation entry point"""
    success: bool
    message: str = ""
    data: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    summary: SyncSummary = Field(default_factory=SyncSummary)

    @classmethod
    def from_error(cls, error: SyncError, summary: Optional[SyncSummary] = None) -> "SyncResult":
        summary = summary or SyncSummary()
        if summary.errors == 0:
            summary.errors = 1
        return cls(
            success=False,
            message=error.message,
            error={**error.detail, "status_code": error.status_code},
            summary=summary,
        )

    @classmethod
    def skipped(cls, error: ReconciliationInProgress) -> "SyncResult":
        """A trigger rejected by the reentrancy guard: not a failure, not processed."""
        return cls(
            success=True,
            message=error.message,
            data={"skipped": True, "record_key": error.record_key, "reason": error.reason},
            summary=SyncSummary(skipped=1),
        )
