"""
Reconciliation Engine

Wires the reconciliation components together and exposes the entry points
callers use. Every entry point returns a SyncResult; engine errors are turned
into failed results rather than raised.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from tenant_sync.core.exceptions import SyncError, CredentialError, ReconciliationInProgress, TenantNotFoundError
from tenant_sync.schemas.sync import SyncResult, SyncSummary
from tenant_sync.services.credential_resolver import CredentialResolver
from tenant_sync.services.database import Collection, RecordStore, get_record_store
from tenant_sync.services.deployment_sync import DeploymentSyncEngine, is_deployable_tenant
from tenant_sync.services.env_var_reconciler import EnvVarReconciler
from tenant_sync.services.error_classifier import ErrorClassifier
from tenant_sync.services.platform import PlatformFactory
from tenant_sync.services.project_lifecycle import ProjectLifecycleManager, tenant_key, tenant_name_key
from tenant_sync.services.record_service import RecordService
from tenant_sync.services.reentrancy_guard import ReentrancyGuard
from tenant_sync.services.ttl_store import CredentialCache, LockStore, InMemoryLockStore, InMemoryCredentialCache
from tenant_sync.services.write_queue import RecordWriteQueue

logger = logging.getLogger(__name__)


class ReconciliationEngine:

    def __init__(
        self,
        store: RecordStore = None,
        platform_factory: PlatformFactory = None,
        lock_store: LockStore = None,
        credential_cache: CredentialCache = None,
        classifier: ErrorClassifier = None,
        rapid_update_window: float = None
    ):
        self.store = store if store is not None else get_record_store()
        self.classifier = classifier or ErrorClassifier()
        self.guard = ReentrancyGuard(
            lock_store if lock_store is not None else InMemoryLockStore(),
            rapid_update_window=rapid_update_window
        )
        self.write_queue = RecordWriteQueue(self.guard)
        self.resolver = CredentialResolver(
            self.store,
            credential_cache if credential_cache is not None else InMemoryCredentialCache(),
            platform_factory
        )
        self.lifecycle = ProjectLifecycleManager(self.store, self.resolver, self.write_queue, self.classifier)
        self.deployments = DeploymentSyncEngine(self.store, self.resolver, self.classifier)
        self.env_vars = EnvVarReconciler(
            self.store, self.resolver, self.guard, self.write_queue, self.deployments, self.classifier
        )
        self.records = RecordService(self.store, self.guard, self.write_queue, self.lifecycle, self.env_vars, self.deployments)

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[SyncResult]],
        tenant_id: Optional[str] = None
    ) -> SyncResult:
        try:
            return await call()
        except ReconciliationInProgress as e:
            logger.info(f"{operation} skipped: {e.message}")
            return SyncResult.skipped(e)
        except SyncError as e:
            if isinstance(e, CredentialError):
                self.resolver.invalidate(tenant_id)
            e.with_context(tenant_id=tenant_id, operation=operation)
            logger.error(f"{operation} failed for tenant={tenant_id}: {e.message}")
            return SyncResult.from_error(e)

    # =========================================================================
    # Entry points
    # =========================================================================

    async def sync_all_tenants(self) -> SyncResult:
        """Import remote projects, then pull env vars and resync deployments for every tenant"""
        async def run() -> SyncResult:
            projects = await self.lifecycle.sync_all_projects()
            env_vars = await self.env_vars.sync_environment_variables()
            deployments = await self.deployments.sync_deployments()

            summary = SyncSummary().merge(projects.summary).merge(env_vars.summary).merge(deployments.summary)
            steps = {"projects": projects, "environment_variables": env_vars, "deployments": deployments}
            failed = [name for name, result in steps.items() if not result.success]
            return SyncResult(
                success=len(failed) < len(steps),
                message="; ".join(f"{name}: {result.message}" for name, result in steps.items()),
                data={name: result.model_dump() for name, result in steps.items()},
                error={"failed_steps": failed} if failed else None,
                summary=summary,
            )

        return await self._run("sync_all_tenants", run)

    async def sync_single_tenant(self, tenant_id: str) -> SyncResult:
        """Refresh one tenant's project details, env vars and deployments"""
        async def run() -> SyncResult:
            tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id, operation="sync_single_tenant")

            async with self.guard.reconciliation_pass(tenant_key(tenant_id), "sync"):
                if not is_deployable_tenant(tenant):
                    return SyncResult(
                        success=True,
                        message=f"Tenant {tenant.get('name')} is not approved, active and linked to a project",
                        data=tenant,
                        summary=SyncSummary(skipped=1),
                    )

                platform = self.resolver.platform_for(await self.resolver.resolve(tenant_id))
                tenant = await self.lifecycle.sync_project_details(tenant, platform)
                summary = SyncSummary(updated=1)
                summary.merge(await self.env_vars.pull_tenant(tenant, platform))
                summary.merge(await self.deployments.sync_tenant(tenant, platform))

            tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
            return SyncResult(
                success=True,
                message=f"Tenant {tenant.get('name')} synced",
                data=tenant,
                summary=summary,
            )

        return await self._run("sync_single_tenant", run, tenant_id)

    async def sync_environment_variables(self, tenant_id: Optional[str] = None) -> SyncResult:
        return await self._run(
            "sync_environment_variables",
            lambda: self.env_vars.sync_environment_variables(tenant_id),
            tenant_id
        )

    async def sync_deployments(self, tenant_id: Optional[str] = None) -> SyncResult:
        return await self._run(
            "sync_deployments",
            lambda: self.deployments.sync_deployments(tenant_id),
            tenant_id
        )

    async def cancel_deployments(self, tenant_id: str) -> SyncResult:
        return await self._run(
            "cancel_deployments",
            lambda: self.deployments.cancel_deployments(tenant_id),
            tenant_id
        )

    async def create_tenant(self, name: str, git_repository: Optional[Dict[str, Any]] = None) -> SyncResult:
        async def run() -> SyncResult:
            try:
                async with self.guard.reconciliation_pass(tenant_name_key(name), "create", debounce=False):
                    tenant = await self.lifecycle.create_tenant(name, git_repository)
            except ReconciliationInProgress as e:
                # concurrent create of the same name
                return SyncResult.from_error(e)
            return SyncResult(
                success=True,
                message=f"Tenant {tenant['name']} created with project {tenant.get('remote_project_id')}",
                data=tenant,
                summary=SyncSummary(created=1),
            )

        return await self._run("create_tenant", run)

    async def create_deployment(self, tenant_id: str, overrides: Optional[Dict[str, Any]] = None) -> SyncResult:
        return await self._run(
            "create_deployment",
            lambda: self.deployments.create_deployment(tenant_id, overrides),
            tenant_id
        )

    async def delete_tenant(self, tenant_id: str) -> SyncResult:
        async def run() -> SyncResult:
            cleanup = await self.lifecycle.delete_tenant(tenant_id)
            return SyncResult(
                success=True,
                message=cleanup.message,
                data=cleanup.to_dict(),
                summary=SyncSummary(deleted=1 + cleanup.env_var_sets_deleted + cleanup.deployments_deleted),
            )

        return await self._run("delete_tenant", run, tenant_id)


_engine: Optional[ReconciliationEngine] = None


def get_reconciliation_engine() -> ReconciliationEngine:
    """Process-wide engine used by the API routers"""
    global _engine
    if _engine is None:
        _engine = ReconciliationEngine()
    return _engine
