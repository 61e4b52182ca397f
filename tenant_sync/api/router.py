from fastapi import APIRouter

from tenant_sync.api.endpoints import sync, tenants, deployments, environment_variables

api_router = APIRouter()
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(tenants.router, prefix="/tenants", tags=["tenants"])
api_router.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
api_router.include_router(environment_variables.router, prefix="/environment-variables", tags=["environment-variables"])
