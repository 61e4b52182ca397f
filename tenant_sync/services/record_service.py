"""
Record Service

Entry point for user-originated writes to tenants, env-var sets and
deployment records. Each write is persisted through the record's write queue
and then handed to the component that reconciles it with the remote platform.
Writes made by the engine itself bypass this service and carry the
sync-origin marker instead.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from tenant_sync.core.exceptions import TenantNotFoundError, ValidationError, LocalStoreError
from tenant_sync.schemas.sync import SyncResult
from tenant_sync.schemas.tenant import TenantStatus
from tenant_sync.services.database import Collection, RecordStore
from tenant_sync.services.deployment_sync import DeploymentSyncEngine
from tenant_sync.services.env_var_plan import entries_from_records, validate_entries
from tenant_sync.services.env_var_reconciler import EnvVarReconciler, env_var_set_key
from tenant_sync.services.error_classifier import CompensationStack
from tenant_sync.services.project_lifecycle import ProjectLifecycleManager, tenant_key, tenant_name_key
from tenant_sync.services.reentrancy_guard import ReentrancyGuard
from tenant_sync.services.write_queue import RecordWriteQueue

logger = logging.getLogger(__name__)


def _normalize_entries(entries: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """Accept pydantic models or dicts and return validated entry records"""
    raw = [e.model_dump(mode="json") if hasattr(e, "model_dump") else dict(e) for e in (entries or [])]
    parsed = entries_from_records(raw)
    validate_entries(parsed)
    return [e.to_record() for e in parsed]


class RecordService:

    def __init__(
        self,
        store: RecordStore,
        guard: ReentrancyGuard,
        write_queue: RecordWriteQueue,
        lifecycle: ProjectLifecycleManager,
        env_vars: EnvVarReconciler,
        deployments: DeploymentSyncEngine
    ):
        self.store = store
        self.guard = guard
        self.write_queue = write_queue
        self.lifecycle = lifecycle
        self.env_vars = env_vars
        self.deployments = deployments

    # Tenants

    async def create_tenant_record(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a tenant from user input. Creating it as approved provisions
        the remote project first; a failure leaves neither record behind.

        Raises:
            ReconciliationInProgress: If a tenant with the same name is being created
        """
        if not (data.get("name") or "").strip():
            raise ValidationError("Tenant name is required", field="name", operation="create_tenant")
        data = {"status": TenantStatus.DRAFT.value, "is_active": True, **data}

        async with self.guard.reconciliation_pass(tenant_name_key(data["name"]), "create", debounce=False):
            async with CompensationStack() as compensation:
                data = await self.lifecycle.prepare_tenant_write("create", data, None, compensation)
                tenant = await self.store.create(Collection.TENANTS, data)
                compensation.commit()
        return tenant

    async def update_tenant(self, tenant_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a user edit to a tenant and push remote-relevant changes.

        Raises:
            TenantNotFoundError: If the tenant does not exist
            ReconciliationInProgress: If another pass holds the tenant, e.g. a
                                      concurrent approval or a running sync
        """
        if await self.store.find_by_id(Collection.TENANTS, tenant_id) is None:
            raise TenantNotFoundError(tenant_id, operation="update_tenant")

        async with self.guard.reconciliation_pass(tenant_key(tenant_id), "update", debounce=False):
            # read under the lock
            previous = await self.store.find_by_id(Collection.TENANTS, tenant_id)
            if previous is None:
                raise TenantNotFoundError(tenant_id, operation="update_tenant")

            async with CompensationStack() as compensation:
                changes = await self.lifecycle.prepare_tenant_write("update", changes, previous, compensation)
                current = await self.write_queue.run(
                    tenant_key(tenant_id),
                    lambda: self.store.update(Collection.TENANTS, tenant_id, changes)
                )
                compensation.commit()

            await self.lifecycle.after_tenant_write(previous, current)
        return current

    # Environment variable sets

    async def create_env_var_set(
        self,
        tenant_id: str,
        entries: Optional[List[Any]] = None,
        autodeploy: bool = False
    ) -> SyncResult:
        """
        Create the tenant's env-var set and push it to the remote project.

        Raises:
            ValidationError: If the tenant already has a set, or keys repeat
        """
        tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id, operation="create_env_var_set")

        if await self.store.count(Collection.ENV_VAR_SETS, {"tenant_id": tenant_id}) > 0:
            raise ValidationError(
                f"An environment variable set already exists for tenant {tenant.get('name')}. "
                f"Only one set per tenant is allowed.",
                field="tenant_id",
                tenant_id=tenant_id,
                operation="create_env_var_set",
            )

        records = _normalize_entries(entries)
        env_var_set = await self.store.create(Collection.ENV_VAR_SETS, {
            "tenant_id": tenant_id,
            "entries": records,
            "autodeploy": autodeploy,
            "env_var_count": len(records),
            "last_updated": datetime.utcnow().isoformat(),
        })
        try:
            await self.store.update(Collection.TENANTS, tenant_id, {"env_var_set_id": env_var_set["id"]}, sync_origin=True)
        except LocalStoreError as e:
            logger.warning(f"Could not link env var set {env_var_set['id']} to tenant={tenant_id}: {e.message}")
        return await self.env_vars.reconcile(env_var_set, None, operation="create")

    async def update_env_var_set(
        self,
        set_id: str,
        entries: Optional[List[Any]] = None,
        autodeploy: Optional[bool] = None
    ) -> SyncResult:
        """Apply a user edit to an env-var set and reconcile it against its previous version"""
        previous = await self.store.find_by_id(Collection.ENV_VAR_SETS, set_id)
        if previous is None:
            raise ValidationError(f"Environment variable set {set_id} not found", field="id", operation="update_env_var_set")

        changes: Dict[str, Any] = {"last_updated": datetime.utcnow().isoformat()}
        if entries is not None:
            changes["entries"] = _normalize_entries(entries)
            changes["env_var_count"] = len(changes["entries"])
        if autodeploy is not None:
            changes["autodeploy"] = autodeploy

        current = await self.write_queue.run(
            env_var_set_key(set_id),
            lambda: self.store.update(Collection.ENV_VAR_SETS, set_id, changes)
        )
        return await self.env_vars.reconcile(current, previous, operation="update")

    # Deployments

    async def delete_deployment(self, record_id: str) -> bool:
        return await self.deployments.delete_deployment_record(record_id)
