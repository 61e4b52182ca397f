"""
Project Lifecycle Manager

Drives tenant status transitions against the remote project:

- draft, no project            -> nothing remote
- becomes approved, no project -> create project + mandatory detail sync,
                                  rolled back as a whole on failure
- becomes approved, project    -> idempotent PATCH
- edit of remote-relevant field on an approved tenant -> PATCH (best-effort)
- deletion                     -> allowed for draft, or approved and inactive;
                                  remote project removed best-effort, then the
                                  tenant's env-var sets and deployments
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import (
    SyncError,
    CredentialError,
    DeletionBlockedError,
    RemoteConflict,
    RemoteNotFound,
    RemotePlatformError,
    TenantNotFoundError,
    ValidationError,
)
from tenant_sync.schemas.sync import SyncResult, SyncSummary
from tenant_sync.schemas.tenant import TenantDeletionSummary, TenantStatus
from tenant_sync.services.credential_resolver import CredentialResolver
from tenant_sync.services.database import Collection, RecordStore, is_sync_origin
from tenant_sync.services.error_classifier import (
    CompensationStack,
    CredentialFailure,
    ErrorClassifier,
    OperationKind,
    error_classifier,
)
from tenant_sync.services.platform import RemotePlatform
from tenant_sync.services.project_mapper import (
    build_project_create_payload,
    build_sync_back_payload,
    changed_sync_back_fields,
    map_project_to_tenant,
)
from tenant_sync.services.write_queue import RecordWriteQueue

logger = logging.getLogger(__name__)


def tenant_key(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


def tenant_name_key(name: str) -> str:
    """Guard key for creations, which have no tenant id yet"""
    return f"tenant-name:{(name or '').strip().lower()}"


def _now() -> str:
    return datetime.utcnow().isoformat()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


def check_deletion_allowed(tenant: Dict[str, Any]) -> None:
    """
    Raises:
        DeletionBlockedError: If the tenant is approved and still active
    """
    if tenant.get("status") == TenantStatus.APPROVED.value and tenant.get("is_active"):
        raise DeletionBlockedError(
            f'Cannot delete "{tenant.get("name")}" because it is deployed and active. '
            f"Set Is Active to false to delete it.",
            tenant_id=tenant.get("id"),
            operation="delete_tenant",
            classification="live_project",
        )


class ProjectLifecycleManager:

    def __init__(
        self,
        store: RecordStore,
        resolver: CredentialResolver,
        write_queue: RecordWriteQueue,
        classifier: ErrorClassifier = None
    ):
        self.store = store
        self.resolver = resolver
        self.write_queue = write_queue
        self.classifier = classifier or error_classifier

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_tenant(self, name: str, git_repository: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Provision a remote project and create an approved tenant for it.

        The tenant is only persisted after the project has been created and its
        full details synced. If any step fails the remote project is deleted
        again and no tenant record remains.

        Args:
            name: Tenant (and project) name
            git_repository: Optional repository descriptor (owner, repo, branch...)

        Returns:
            The persisted tenant record

        Raises:
            ValidationError: If the name is empty
            RemoteConflict: If a tenant with this name already exists
            CredentialError: If no usable token is configured
            SyncError: If project creation or the detail sync fails
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Tenant name is required", field="name", operation="create_tenant")

        existing = await self.store.find(Collection.TENANTS, {"name": name}, limit=1)
        if existing:
            raise RemoteConflict(
                f"Tenant with name '{name}' already exists",
                tenant_id=existing[0].get("id"),
                operation="create_tenant",
                classification="duplicate_name",
            )

        platform = self.resolver.platform_for(await self.resolver.resolve())
        async with CompensationStack() as compensation:
            fields = await self.provision_project(name, git_repository, platform, compensation)
            tenant = await self.store.create(Collection.TENANTS, {
                "name": name,
                "status": TenantStatus.APPROVED.value,
                "is_active": True,
                **fields,
            })
            compensation.commit()

        logger.info(f"Created tenant {tenant['id']} with remote project {tenant.get('remote_project_id')}")
        return tenant

    async def provision_project(
        self,
        name: str,
        git_repository: Optional[Dict[str, Any]],
        platform: RemotePlatform,
        compensation: CompensationStack,
        exclude_tenant_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create the remote project and run the mandatory detail sync.

        Registers deletion of the new project on the compensation stack, so a
        failure later in the caller's operation removes it again.

        Returns:
            Tenant fields describing the project
        """
        try:
            created = await platform.create_project(build_project_create_payload(name, git_repository))
        except SyncError as e:
            logger.error(f"VERCEL PROJECT CREATION FAILED for {name}: {e.message}")
            raise e.with_context(tenant_id=exclude_tenant_id, operation="create_project")

        project_id = created.get("id")
        if not project_id:
            raise RemotePlatformError(
                f"Project creation for {name} returned no id",
                tenant_id=exclude_tenant_id,
                operation="create_project",
                classification="malformed_response",
            )

        # Never undo a project that another tenant already owns
        await self.ensure_project_unclaimed(project_id, exclude_tenant_id)
        compensation.push(f"delete remote project {project_id}", lambda: platform.delete_project(project_id))
        logger.info(f"Created remote project {project_id} for {name}")

        details = await self.fetch_project_details(platform, project_id)
        if git_repository and not (details.get("git_repository") or {}).get("repo_id"):
            raise ValidationError(
                f"Critical data missing: repository id not found after syncing project {project_id}",
                field="git_repository",
                tenant_id=exclude_tenant_id,
                operation="create_project",
            )

        return {
            "git_repository": git_repository,
            **details,
            "remote_project_status": "ready",
            "last_synced": _now(),
            "last_sync_status": "synced",
            "last_sync_message": "Project created and synced",
        }

    async def fetch_project_details(self, platform: RemotePlatform, project_id: str) -> Dict[str, Any]:
        """Full project representation plus domains, mapped to tenant fields"""
        project = await self.classifier.run_read(lambda: platform.get_project(project_id), "get_project")
        domains = await self.classifier.run_read(lambda: platform.get_project_domains(project_id), "get_project_domains")
        return map_project_to_tenant(project, domains)

    async def ensure_project_unclaimed(self, project_id: str, exclude_tenant_id: Optional[str] = None) -> None:
        """
        Raises:
            RemoteConflict: If another tenant already references the project
        """
        owners = await self.store.find(Collection.TENANTS, {"remote_project_id": project_id})
        owners = [t for t in owners if t.get("id") != exclude_tenant_id]
        if owners:
            raise RemoteConflict(
                f"Project with ID {project_id} already exists on tenant {owners[0].get('name')}",
                tenant_id=exclude_tenant_id,
                operation="approve_tenant",
                classification="duplicate_project",
            )

    # =========================================================================
    # Local writes
    # =========================================================================

    async def prepare_tenant_write(
        self,
        operation: str,
        data: Dict[str, Any],
        original: Optional[Dict[str, Any]],
        compensation: CompensationStack
    ) -> Dict[str, Any]:
        """
        Apply remote side effects that must happen before a tenant write lands.

        Args:
            operation: "create" or "update"
            data: Fields being written
            original: The tenant before the write (None on create)
            compensation: Undo actions for the caller's write

        Returns:
            The data to persist, enriched with remote project fields
        """
        original = original or {}
        tenant_id = original.get("id")
        merged = {**original, **data}

        if data.get("remote_project_id") and data.get("remote_project_id") != original.get("remote_project_id"):
            await self.ensure_project_unclaimed(data["remote_project_id"], tenant_id)

        becoming_approved = merged.get("status") == TenantStatus.APPROVED.value and (
            operation == "create" or original.get("status") != TenantStatus.APPROVED.value
        )
        if not becoming_approved:
            return data

        credential = await self.resolver.resolve(tenant_id)
        platform = self.resolver.platform_for(credential)

        project_id = merged.get("remote_project_id")
        if project_id:
            payload = build_sync_back_payload(merged)
            if payload:
                await self.classifier.swallow(
                    lambda: platform.update_project(project_id, payload),
                    OperationKind.SYNC_BACK,
                    f"update project {project_id} on approval",
                    tenant_id=tenant_id
                )
            return data

        try:
            fields = await self.provision_project(
                merged.get("name"),
                merged.get("git_repository"),
                platform,
                compensation,
                exclude_tenant_id=tenant_id
            )
        except SyncError as e:
            prefix = "CANNOT CREATE TENANT" if operation == "create" else "CANNOT APPROVE TENANT"
            logger.error(f"{prefix} {merged.get('name')}: {e.message}")
            raise
        return {**data, **fields}

    async def after_tenant_write(self, previous: Optional[Dict[str, Any]], current: Dict[str, Any]) -> None:
        """
        Push remote-relevant edits of an approved tenant to its project.
        Failures are logged and swallowed; the local edit stands.
        """
        if previous is None or is_sync_origin(current):
            return
        if current.get("status") != TenantStatus.APPROVED.value or not current.get("remote_project_id"):
            return
        if previous.get("status") != TenantStatus.APPROVED.value:
            # approval itself was handled before the write
            return

        cron_changed = bool(previous.get("disable_cron")) != bool(current.get("disable_cron"))
        changed = changed_sync_back_fields(previous, current)
        if not cron_changed and not changed:
            return

        try:
            platform = self.resolver.platform_for(await self.resolver.resolve(current["id"]))
        except SyncError as e:
            logger.warning(f"Skipping sync-back for tenant={current['id']}: {e.message}")
            return

        if cron_changed:
            await self.toggle_crons(current, platform)
        if changed:
            await self.sync_back(current, changed, platform)

    async def toggle_crons(self, tenant: Dict[str, Any], platform: RemotePlatform) -> bool:
        enabled = not bool(tenant.get("disable_cron"))
        ok, _ = await self.classifier.swallow(
            lambda: platform.update_crons(tenant["remote_project_id"], enabled),
            OperationKind.SYNC_BACK,
            "cron toggle",
            tenant_id=tenant["id"]
        )
        if ok:
            logger.info(f"Crons {'enabled' if enabled else 'disabled'} for tenant={tenant['id']}")
        return ok

    def recently_synced(self, tenant: Dict[str, Any]) -> bool:
        """True if the tenant was written by a sync pass within the backoff window"""
        last_synced = _parse_timestamp(tenant.get("last_synced"))
        if last_synced is None:
            return False
        return (datetime.utcnow() - last_synced).total_seconds() < settings.SYNC_BACKOFF_SECONDS

    async def sync_back(self, tenant: Dict[str, Any], changed_fields, platform: RemotePlatform) -> bool:
        if self.recently_synced(tenant):
            logger.info(f"Skipping sync-back for tenant={tenant['id']}: synced less than {settings.SYNC_BACKOFF_SECONDS}s ago")
            return False

        payload = build_sync_back_payload(tenant)
        if not payload:
            return False

        project_id = tenant["remote_project_id"]
        ok, _ = await self.classifier.swallow(
            lambda: platform.update_project(project_id, payload),
            OperationKind.SYNC_BACK,
            f"sync-back of {', '.join(changed_fields)}",
            tenant_id=tenant["id"]
        )
        if not ok:
            return False

        await self.write_queue.run(
            tenant_key(tenant["id"]),
            lambda: self.store.update(
                Collection.TENANTS,
                tenant["id"],
                {
                    "last_synced": _now(),
                    "last_sync_status": "synced",
                    "last_sync_message": f"Pushed {', '.join(changed_fields)} to remote project",
                },
                sync_origin=True
            ),
            final=True
        )
        logger.info(f"Synced {len(payload)} fields back to project {project_id} for tenant={tenant['id']}")
        return True

    # =========================================================================
    # Pull
    # =========================================================================

    async def sync_project_details(self, tenant: Dict[str, Any], platform: RemotePlatform) -> Dict[str, Any]:
        """Refresh a tenant's project fields from the remote representation"""
        details = await self.fetch_project_details(platform, tenant["remote_project_id"])
        return await self.store.update(
            Collection.TENANTS,
            tenant["id"],
            {
                **details,
                "last_synced": _now(),
                "last_sync_status": "synced",
                "last_sync_message": "Project details synced",
            },
            sync_origin=True
        )

    async def sync_all_projects(self) -> SyncResult:
        """
        Import every remote project: existing tenants (matched by project id)
        are refreshed, unknown projects become new approved tenants.
        """
        platform = self.resolver.platform_for(await self.resolver.resolve())
        projects = await self.classifier.run_read(platform.list_projects, "list_projects")

        summary = SyncSummary()
        failures = []
        for project in projects:
            project_id = project.get("id")
            if not project_id:
                summary.skipped += 1
                continue
            try:
                domains = await self.classifier.run_read(lambda: platform.get_project_domains(project_id), "get_project_domains")
                fields = {
                    **map_project_to_tenant(project, domains),
                    "last_synced": _now(),
                    "last_sync_status": "synced",
                    "last_sync_message": "Imported from remote project list",
                }
                existing = await self.store.find(Collection.TENANTS, {"remote_project_id": project_id}, limit=1)
                if existing:
                    await self.store.update(Collection.TENANTS, existing[0]["id"], fields, sync_origin=True)
                    summary.updated += 1
                else:
                    await self.store.create(Collection.TENANTS, {
                        "name": project.get("name"),
                        "status": TenantStatus.APPROVED.value,
                        "is_active": True,
                        **fields,
                    })
                    summary.created += 1
            except SyncError as e:
                logger.error(f"Failed to import project {project_id}: {e.message}")
                failures.append({"project_id": project_id, "error": e.message})
                summary.errors += 1

        synced = summary.created + summary.updated
        success_rate = round(100.0 * synced / len(projects), 1) if projects else 100.0
        return SyncResult(
            success=not projects or synced > 0,
            message=f"{synced} of {len(projects)} projects synced",
            data={"synced": synced, "success_rate": success_rate, "failures": failures},
            summary=summary,
        )

    # =========================================================================
    # Deletion
    # =========================================================================

    async def delete_tenant(self, tenant_id: str) -> TenantDeletionSummary:
        """
        Delete a tenant, its remote project and its dependent records.

        Remote and cascade failures are logged and swallowed; only the guard
        and the final tenant delete can fail the operation.

        Raises:
            TenantNotFoundError: If the tenant does not exist
            DeletionBlockedError: If the tenant is approved and active
        """
        tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id, operation="delete_tenant")
        check_deletion_allowed(tenant)

        summary = TenantDeletionSummary(tenant_id=tenant_id, tenant_name=tenant.get("name"))
        project_id = tenant.get("remote_project_id")
        if project_id:
            summary.remote_project_deleted = await self._delete_remote_project(tenant_id, project_id)

        summary.env_var_sets_deleted = await self._cascade(Collection.ENV_VAR_SETS, tenant_id)
        summary.deployments_deleted = await self._cascade(Collection.DEPLOYMENTS, tenant_id)

        await self.store.delete(Collection.TENANTS, tenant_id)
        self.resolver.invalidate(tenant_id)

        summary.message = (
            f"Deleted tenant {tenant.get('name')}: {summary.env_var_sets_deleted} env var sets, "
            f"{summary.deployments_deleted} deployments"
            + (", remote project removed" if summary.remote_project_deleted else "")
        )
        logger.info(summary.message)
        return summary

    async def _delete_remote_project(self, tenant_id: str, project_id: str) -> bool:
        try:
            platform = self.resolver.platform_for(await self.resolver.resolve(tenant_id))
            await platform.delete_project(project_id)
            return True
        except RemoteNotFound:
            logger.info(f"Remote project {project_id} already gone")
            return True
        except CredentialError as e:
            if e.classification != CredentialFailure.PROJECT_NOT_FOUND.value:
                logger.warning(f"Failed to delete remote project {project_id} for tenant={tenant_id}: {e.message}")
                return False
            logger.info(f"Remote project {project_id} already gone")
            return True
        except SyncError as e:
            logger.warning(f"Failed to delete remote project {project_id} for tenant={tenant_id}: {e.message}")
            return False

    async def _cascade(self, collection: Collection, tenant_id: str) -> int:
        try:
            return await self.store.delete_where(collection, {"tenant_id": tenant_id})
        except SyncError as e:
            logger.warning(f"Cascade delete of {collection.value} for tenant={tenant_id} failed: {e.message}")
            return 0
