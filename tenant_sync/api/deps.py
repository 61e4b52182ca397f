from fastapi import HTTPException

from tenant_sync.schemas.sync import SyncResult
from tenant_sync.services.reconciliation_engine import ReconciliationEngine, get_reconciliation_engine


def get_engine() -> ReconciliationEngine:
    """FastAPI dependency; tests override it with an engine built on fakes"""
    return get_reconciliation_engine()


def raise_for_result(result: SyncResult) -> SyncResult:
    """Turn a total failure into an HTTP error carrying the structured detail"""
    if not result.success and result.error:
        status_code = result.error.get("status_code", 500)
        raise HTTPException(status_code=status_code, detail=result.error)
    return result
