"""
Error taxonomy for the reconciliation engine.

Every error is an HTTPException carrying a structured ``detail`` dict so the
routers can return it unchanged and operators get the tenant, operation and
remote classification without digging through logs.
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class SyncError(HTTPException):
    """Base class for every failure raised by the reconciliation engine."""

    error_code = "sync_error"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        operation: Optional[str] = None,
        classification: Optional[str] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.tenant_id = tenant_id
        self.operation = operation
        self.classification = classification
        detail = {
            "error": self.error_code,
            "message": message,
            "tenant_id": tenant_id,
            "operation": operation,
            "classification": classification,
        }
        if extra:
            detail.update(extra)
        super().__init__(
            status_code=status_code or self.default_status,
            detail=detail
        )

    def __str__(self) -> str:
        return self.message

    def with_context(self, tenant_id: Optional[str] = None, operation: Optional[str] = None) -> "SyncError":
        """Fill in tenant/operation context that the raising layer did not know."""
        if tenant_id and not self.tenant_id:
            self.tenant_id = tenant_id
            self.detail["tenant_id"] = tenant_id
        if operation and not self.operation:
            self.operation = operation
            self.detail["operation"] = operation
        return self


class CredentialError(SyncError):
    """Missing or invalid remote platform token."""
    error_code = "credential_error"
    default_status = status.HTTP_401_UNAUTHORIZED


class RemoteNotFound(SyncError):
    """Project, deployment or env var is missing on the remote platform."""
    error_code = "remote_not_found"
    default_status = status.HTTP_404_NOT_FOUND


class RemoteConflict(SyncError):
    """Duplicate creation attempt."""
    error_code = "remote_conflict"
    default_status = status.HTTP_409_CONFLICT


class RemotePlatformError(SyncError):
    """Transient remote failure (5xx, rate limit, network)."""
    error_code = "remote_platform_error"
    default_status = status.HTTP_502_BAD_GATEWAY


class RemotePartialFailure(SyncError):
    """
    A bulk remote operation where some items succeeded and some failed.
    """
    error_code = "remote_partial_failure"
    default_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        succeeded: Optional[List[str]] = None,
        failed: Optional[List[str]] = None,
        **kwargs
    ):
        self.succeeded = list(succeeded or [])
        self.failed = list(failed or [])
        extra = kwargs.pop("extra", None) or {}
        extra.update({"succeeded": self.succeeded, "failed": self.failed})
        super().__init__(message, extra=extra, **kwargs)


class LocalStoreError(SyncError):
    """Record store read/write failure."""
    error_code = "local_store_error"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class ValidationError(SyncError):
    """Malformed input, e.g. duplicate keys or missing git fields."""
    error_code = "validation_error"
    default_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        self.field = field
        extra = kwargs.pop("extra", None) or {}
        extra["field"] = field
        super().__init__(message, extra=extra, **kwargs)


class TenantNotFoundError(SyncError):
    """The tenant record does not exist in the local store."""
    error_code = "tenant_not_found"
    default_status = status.HTTP_404_NOT_FOUND

    def __init__(self, tenant_id: str, **kwargs):
        super().__init__(f"Tenant {tenant_id} not found", tenant_id=tenant_id, **kwargs)


class DeletionBlockedError(SyncError):
    """Tenant deletion rejected because its remote project is still live."""
    error_code = "deletion_blocked"
    default_status = status.HTTP_409_CONFLICT


class ReconciliationInProgress(SyncError):
    """
    A reconciliation pass for the same record is already running, or ran
    too recently. Callers report the trigger as skipped.
    """
    error_code = "reconciliation_in_progress"
    default_status = status.HTTP_409_CONFLICT

    def __init__(self, record_key: str, reason: str, **kwargs):
        self.record_key = record_key
        self.reason = reason
        super().__init__(
            f"Reconciliation for {record_key} skipped: {reason}",
            extra={"record_key": record_key, "reason": reason},
            **kwargs
        )
