from fastapi import APIRouter, Depends, status

from tenant_sync.api.deps import get_engine, raise_for_result
from tenant_sync.schemas.sync import SyncResult
from tenant_sync.schemas.tenant import TenantCreate, TenantUpdate, TenantResponse
from tenant_sync.services.reconciliation_engine import ReconciliationEngine

router = APIRouter()


@router.post("/", response_model=SyncResult, status_code=status.HTTP_201_CREATED)
async def create_tenant(tenant: TenantCreate, engine: ReconciliationEngine = Depends(get_engine)):
    """Provision a remote project and create an approved tenant for it"""
    git_repository = tenant.git_repository.model_dump() if tenant.git_repository else None
    return raise_for_result(await engine.create_tenant(tenant.name, git_repository))


@router.patch("/{tenant_id}", response_model=TenantResponse)
async def update_tenant(tenant_id: str, changes: TenantUpdate, engine: ReconciliationEngine = Depends(get_engine)):
    """Edit a tenant; approval and remote-relevant fields are pushed to its project"""
    data = changes.model_dump(exclude_unset=True, mode="json")
    return await engine.records.update_tenant(tenant_id, data)


@router.delete("/{tenant_id}", response_model=SyncResult)
async def delete_tenant(tenant_id: str, engine: ReconciliationEngine = Depends(get_engine)):
    """Delete a draft or inactive tenant with its project, env vars and deployments"""
    return raise_for_result(await engine.delete_tenant(tenant_id))
