"""
Error classification and compensation.

Turns raw remote failures (httpx errors) into the engine's error taxonomy and
decides what the caller should do about them: swallow the failure, retry the
call, or roll back the local state built up so far.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

import httpx

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import (
    SyncError,
    CredentialError,
    RemoteNotFound,
    RemoteConflict,
    RemotePlatformError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationKind(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC_BACK = "sync_back"


class Disposition(str, Enum):
    """What to do with a failed remote call"""
    NO_OP = "no_op"          # log and swallow, the primary operation continues
    RETRY = "retry"          # transient failure on an idempotent read
    ROLLBACK = "rollback"    # abort, undo partial local state, re-raise


class CredentialFailure(str, Enum):
    """Why a credential failed validation against the remote platform"""
    PROJECT_NOT_FOUND = "project-not-found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    UNKNOWN = "unknown"


def _remote_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("code") or str(error)
        if error:
            return str(error)
        return payload.get("message") or str(payload)[:200]
    return str(payload)[:200]


def classify_remote_error(
    error: Exception,
    operation: Optional[str] = None,
    tenant_id: Optional[str] = None
) -> SyncError:
    """
    Map an exception raised while talking to the remote platform onto the
    engine's error taxonomy.

    Args:
        error: httpx error (or an already classified SyncError)
        operation: Name of the remote operation, kept in the error detail
        tenant_id: Tenant the call was made for, if known

    Returns:
        A SyncError subclass instance; the caller decides whether to raise it
    """
    if isinstance(error, SyncError):
        return error.with_context(tenant_id=tenant_id, operation=operation)

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        message = _remote_message(error.response)
        context = {
            "tenant_id": tenant_id,
            "operation": operation,
            "extra": {"remote_status": status_code},
        }

        if status_code == 401:
            return CredentialError(f"Remote platform rejected the token: {message}", classification="unauthorized", **context)
        if status_code == 403:
            return CredentialError(f"Token is not allowed to access this resource: {message}", classification="forbidden", **context)
        if status_code == 404:
            return RemoteNotFound(f"Remote resource not found: {message}", classification="not_found", **context)
        if status_code == 409 or "already exist" in message.lower():
            return RemoteConflict(f"Remote resource already exists: {message}", classification="conflict", **context)
        if status_code == 429 or status_code >= 500:
            return RemotePlatformError(f"Remote platform error ({status_code}): {message}", classification="transient", **context)
        return RemotePlatformError(f"Remote platform rejected the request ({status_code}): {message}", classification="rejected", **context)

    if isinstance(error, httpx.RequestError):
        return RemotePlatformError(
            f"Could not reach remote platform: {str(error) or type(error).__name__}",
            tenant_id=tenant_id,
            operation=operation,
            classification="transient",
        )

    return SyncError(str(error), tenant_id=tenant_id, operation=operation, classification="unknown")


def classify_credential_failure(error: SyncError) -> CredentialFailure:
    """Classify why a validation read failed"""
    if isinstance(error, RemoteNotFound):
        return CredentialFailure.PROJECT_NOT_FOUND
    if isinstance(error, CredentialError):
        if error.classification == "forbidden":
            return CredentialFailure.FORBIDDEN
        return CredentialFailure.UNAUTHORIZED
    return CredentialFailure.UNKNOWN


def is_transient(error: Exception) -> bool:
    return isinstance(error, RemotePlatformError) and error.classification == "transient"


class ErrorClassifier:
    """Decides the disposition of remote failures and applies it."""

    def __init__(self, read_attempts: int = None, retry_base_delay: float = None):
        self.read_attempts = read_attempts or settings.REMOTE_READ_ATTEMPTS
        self.retry_base_delay = settings.REMOTE_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay

    def disposition(self, error: Exception, operation: OperationKind) -> Disposition:
        if operation in (OperationKind.DELETE, OperationKind.SYNC_BACK):
            return Disposition.NO_OP
        if isinstance(error, CredentialError):
            return Disposition.ROLLBACK
        if operation == OperationKind.READ and is_transient(error):
            return Disposition.RETRY
        return Disposition.ROLLBACK

    async def run_read(self, call: Callable[[], Awaitable[T]], description: str = "remote read") -> T:
        """
        Run an idempotent remote read, retrying transient failures with
        exponential backoff.

        Raises:
            SyncError: The classified error once retries are exhausted or the
                       failure is not retryable
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await call()
            except Exception as e:
                error = classify_remote_error(e, operation=description)
                if self.disposition(error, OperationKind.READ) != Disposition.RETRY or attempt >= self.read_attempts:
                    if error is e:
                        raise
                    raise error from e
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(f"{description} failed (attempt {attempt}/{self.read_attempts}), retrying in {delay}s: {error.message}")
                await asyncio.sleep(delay)

    async def swallow(
        self,
        call: Callable[[], Awaitable[T]],
        operation: OperationKind,
        description: str,
        tenant_id: Optional[str] = None
    ) -> Tuple[bool, Optional[T]]:
        """
        Run a best-effort call. Failures whose disposition is NO_OP are logged
        and swallowed; anything else is re-raised.

        Returns:
            Tuple of (succeeded, result)
        """
        try:
            return True, await call()
        except Exception as e:
            error = classify_remote_error(e, operation=description, tenant_id=tenant_id)
            if self.disposition(error, operation) != Disposition.NO_OP:
                if error is e:
                    raise
                raise error from e
            logger.warning(f"Best-effort {description} failed for tenant={tenant_id}: {error.message}")
            return False, None


class CompensationStack:
    """
    Collects undo actions while a multi-step operation runs and replays them
    in reverse order if the operation fails.

    Usage:
        async with CompensationStack() as compensation:
            project = await platform.create_project(...)
            compensation.push("delete project", lambda: platform.delete_project(project["id"]))
            ...
            compensation.commit()
    """

    def __init__(self):
        self._actions: List[Tuple[str, Callable[[], Awaitable[Any]]]] = []
        self._committed = False

    def push(self, description: str, undo: Callable[[], Awaitable[Any]]) -> None:
        self._actions.append((description, undo))

    def commit(self) -> None:
        """Mark the operation complete; nothing will be undone."""
        self._committed = True
        self._actions.clear()

    async def rollback(self) -> List[str]:
        """
        Run every registered undo action, newest first. Undo failures are
        logged and never replace the error that caused the rollback.

        Returns:
            Descriptions of the undo actions that succeeded
        """
        undone = []
        while self._actions:
            description, undo = self._actions.pop()
            try:
                await undo()
                undone.append(description)
                logger.info(f"Compensation succeeded: {description}")
            except Exception as e:
                logger.error(f"Compensation failed: {description}: {str(e)}")
        return undone

    async def __aenter__(self) -> "CompensationStack":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and not self._committed:
            await self.rollback()
        return False


error_classifier = ErrorClassifier()
