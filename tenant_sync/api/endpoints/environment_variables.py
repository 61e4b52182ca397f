from fastapi import APIRouter, Depends, status

from tenant_sync.api.deps import get_engine
from tenant_sync.schemas.environment_variable import EnvVarSetCreate, EnvVarSetUpdate
from tenant_sync.schemas.sync import SyncResult
from tenant_sync.services.reconciliation_engine import ReconciliationEngine

router = APIRouter()


@router.post("/", response_model=SyncResult, status_code=status.HTTP_201_CREATED)
async def create_env_var_set(payload: EnvVarSetCreate, engine: ReconciliationEngine = Depends(get_engine)):
    """Create a tenant's env var set and push it to the remote project"""
    return await engine.records.create_env_var_set(payload.tenant_id, payload.entries, payload.autodeploy)


@router.put("/{set_id}", response_model=SyncResult)
async def update_env_var_set(set_id: str, payload: EnvVarSetUpdate, engine: ReconciliationEngine = Depends(get_engine)):
    return await engine.records.update_env_var_set(set_id, payload.entries, payload.autodeploy)
