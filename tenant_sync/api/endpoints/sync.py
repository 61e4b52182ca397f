from fastapi import APIRouter, Depends, Query
from typing import Optional

from tenant_sync.api.deps import get_engine, raise_for_result
from tenant_sync.schemas.sync import SyncResult
from tenant_sync.services.reconciliation_engine import ReconciliationEngine

router = APIRouter()


@router.post("/tenants", response_model=SyncResult)
async def sync_all_tenants(engine: ReconciliationEngine = Depends(get_engine)):
    """Import remote projects and resync every tenant"""
    return raise_for_result(await engine.sync_all_tenants())


@router.post("/tenants/{tenant_id}", response_model=SyncResult)
async def sync_single_tenant(tenant_id: str, engine: ReconciliationEngine = Depends(get_engine)):
    """Resync one tenant; a pass already in flight is reported as skipped"""
    return raise_for_result(await engine.sync_single_tenant(tenant_id))


@router.post("/environment-variables", response_model=SyncResult)
async def sync_environment_variables(
    tenant_id: Optional[str] = Query(None, description="Limit to one tenant"),
    engine: ReconciliationEngine = Depends(get_engine)
):
    return raise_for_result(await engine.sync_environment_variables(tenant_id))


@router.post("/deployments", response_model=SyncResult)
async def sync_deployments(
    tenant_id: Optional[str] = Query(None, description="Limit to one tenant"),
    engine: ReconciliationEngine = Depends(get_engine)
):
    return raise_for_result(await engine.sync_deployments(tenant_id))
