from fastapi import APIRouter, Depends, HTTPException, status

from tenant_sync.api.deps import get_engine, raise_for_result
from tenant_sync.schemas.deployment import DeploymentCreate, DeploymentCancelRequest
from tenant_sync.schemas.sync import SyncResult
from tenant_sync.services.reconciliation_engine import ReconciliationEngine

router = APIRouter()


@router.post("/", response_model=SyncResult, status_code=status.HTTP_201_CREATED)
async def create_deployment(payload: DeploymentCreate, engine: ReconciliationEngine = Depends(get_engine)):
    """Trigger a production deployment of a tenant's git repository"""
    return raise_for_result(await engine.create_deployment(payload.tenant_id, payload.overrides))


@router.post("/cancel", response_model=SyncResult)
async def cancel_deployments(payload: DeploymentCancelRequest, engine: ReconciliationEngine = Depends(get_engine)):
    """Cancel every queued or building deployment of a tenant"""
    return raise_for_result(await engine.cancel_deployments(payload.tenant_id))


@router.delete("/{deployment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deployment(deployment_id: str, engine: ReconciliationEngine = Depends(get_engine)):
    deleted = await engine.records.delete_deployment(deployment_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deployment {deployment_id} not found"
        )
