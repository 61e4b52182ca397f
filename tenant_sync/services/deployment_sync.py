"""
Deployment Sync Engine

Pulls the most recent remote deployments of every eligible tenant into local
deployment records, attaches the latest one to its tenant, and triggers or
cancels deployments on request.

Ownership rules:
- records with trigger "sync" belong to this engine and are replaced wholesale
  on every resync
- records with trigger "manual"/"auto" belong to the user/automation that
  created them; sync only patches their status
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import (
    SyncError,
    CredentialError,
    RemoteNotFound,
    ValidationError,
    TenantNotFoundError,
)
from tenant_sync.schemas.deployment import DeploymentStatus, DeploymentTrigger, IN_FLIGHT_STATUSES
from tenant_sync.schemas.sync import SyncResult, SyncSummary
from tenant_sync.schemas.tenant import GitRepository, TenantStatus
from tenant_sync.services.credential_resolver import CredentialResolver
from tenant_sync.services.database import Collection, RecordStore
from tenant_sync.services.error_classifier import ErrorClassifier, OperationKind, error_classifier
from tenant_sync.services.platform import RemotePlatform
from tenant_sync.services.project_mapper import build_deployment_payload, epoch_ms_to_iso

logger = logging.getLogger(__name__)

# remote readyState / legacy local values -> local status
DEPLOYMENT_STATUS_MAP = {
    "building": DeploymentStatus.BUILDING.value,
    "initializing": DeploymentStatus.BUILDING.value,
    "canceled": DeploymentStatus.CANCELED.value,
    "cancelled": DeploymentStatus.CANCELED.value,
    "error": DeploymentStatus.ERROR.value,
    "queued": DeploymentStatus.QUEUED.value,
    "ready": DeploymentStatus.READY.value,
    "deployed": DeploymentStatus.READY.value,
    "failed": DeploymentStatus.ERROR.value,
    "unknown": DeploymentStatus.ERROR.value,
}


def normalize_deployment_status(remote_status: Optional[str]) -> str:
    """Map remote status vocabulary onto local statuses; unknown values become error"""
    if not remote_status:
        return DeploymentStatus.ERROR.value
    return DEPLOYMENT_STATUS_MAP.get(str(remote_status).lower(), DeploymentStatus.ERROR.value)


def is_deployable_tenant(tenant: Dict[str, Any]) -> bool:
    """Approved, active and linked to a remote project"""
    return (
        tenant.get("status") == TenantStatus.APPROVED.value
        and bool(tenant.get("is_active"))
        and bool(tenant.get("remote_project_id"))
    )


def missing_git_fields(tenant: Dict[str, Any]) -> List[str]:
    git = GitRepository(**(tenant.get("git_repository") or {}))
    return git.missing_deploy_fields()


def _event(status: str, message: str) -> Dict[str, Any]:
    return {"status": status, "message": message, "timestamp": datetime.utcnow().isoformat()}


def _with_https(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url if url.startswith("http") else f"https://{url}"


class DeploymentSyncEngine:

    def __init__(
        self,
        store: RecordStore,
        resolver: CredentialResolver,
        classifier: ErrorClassifier = None,
        limit: int = None
    ):
        self.store = store
        self.resolver = resolver
        self.classifier = classifier or error_classifier
        requested = limit or settings.DEPLOYMENT_SYNC_LIMIT
        self.limit = max(1, min(requested, settings.MAX_DEPLOYMENT_SYNC_LIMIT))

    # =========================================================================
    # Resync
    # =========================================================================

    async def sync_deployments(self, tenant_id: Optional[str] = None) -> SyncResult:
        """
        Resync deployment records for one tenant or for every eligible tenant.

        Every sync-origin record in scope is deleted first, then the latest
        remote deployments are re-imported and each tenant's latest-deployment
        pointer is refreshed.
        """
        summary = SyncSummary()
        if tenant_id:
            tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
            if tenant is None:
                return SyncResult.from_error(TenantNotFoundError(tenant_id, operation="sync_deployments"))
            tenants = [tenant]
        else:
            tenants = await self.store.find(Collection.TENANTS)

        eligible = [t for t in tenants if is_deployable_tenant(t)]
        summary.skipped += len(tenants) - len(eligible)

        delete_filters: Dict[str, Any] = {"trigger": DeploymentTrigger.SYNC.value}
        if tenant_id:
            delete_filters["tenant_id"] = tenant_id
        summary.deleted += await self.store.delete_where(Collection.DEPLOYMENTS, delete_filters)

        failures = []
        for tenant in eligible:
            try:
                platform = self.resolver.platform_for(await self.resolver.resolve(tenant["id"]))
                summary.merge(await self._import_latest(tenant, platform))
            except SyncError as e:
                if isinstance(e, CredentialError):
                    self.resolver.invalidate(tenant["id"])
                e.with_context(tenant_id=tenant["id"], operation="sync_deployments")
                logger.error(f"Deployment sync failed for tenant={tenant['id']}: {e.message}")
                failures.append(e.detail)
                summary.errors += 1

        connected = await self.connect_latest([t["id"] for t in eligible])
        synced = len(eligible) - len(failures)
        message = f"{synced} of {len(eligible)} tenants synced, {connected} latest deployments connected"
        logger.info(f"Deployment sync complete: {message}")
        return SyncResult(
            success=not eligible or synced > 0,
            message=message,
            data={"connected": connected, "failures": failures},
            error=failures[0] if failures and synced == 0 else None,
            summary=summary,
        )

    async def sync_tenant(self, tenant: Dict[str, Any], platform: RemotePlatform) -> SyncSummary:
        """Resync one tenant with an already resolved platform client"""
        summary = SyncSummary()
        summary.deleted += await self.store.delete_where(
            Collection.DEPLOYMENTS,
            {"trigger": DeploymentTrigger.SYNC.value, "tenant_id": tenant["id"]}
        )
        summary.merge(await self._import_latest(tenant, platform))
        await self.connect_latest([tenant["id"]])
        return summary

    async def _import_latest(self, tenant: Dict[str, Any], platform: RemotePlatform) -> SyncSummary:
        summary = SyncSummary()
        project_id = tenant["remote_project_id"]
        remote_deployments = await self.classifier.run_read(
            lambda: platform.list_deployments(project_id, limit=self.limit),
            description="list_deployments"
        )

        for remote in remote_deployments[:self.limit]:
            remote_id = remote.get("uid") or remote.get("id")
            if not remote_id:
                summary.skipped += 1
                continue
            fields = self._record_fields(remote)
            existing = await self.store.find(
                Collection.DEPLOYMENTS,
                {"remote_deployment_id": remote_id},
                limit=1
            )
            if existing:
                record = existing[0]
                if record.get("status") != fields["status"]:
                    fields["events"] = list(record.get("events") or []) + [
                        _event(fields["status"], f"Status synced from remote ({record.get('status')} -> {fields['status']})")
                    ]
                await self.store.update(Collection.DEPLOYMENTS, record["id"], fields, sync_origin=True)
                summary.updated += 1
            else:
                await self.store.create(Collection.DEPLOYMENTS, {
                    "tenant_id": tenant["id"],
                    "remote_deployment_id": remote_id,
                    "trigger": DeploymentTrigger.SYNC.value,
                    "events": [],
                    **fields,
                })
                summary.created += 1
        return summary

    @staticmethod
    def _record_fields(remote: Dict[str, Any]) -> Dict[str, Any]:
        status = normalize_deployment_status(remote.get("readyState") or remote.get("state") or remote.get("status"))
        return {
            "name": remote.get("name"),
            "status": status,
            "url": _with_https(remote.get("url")),
            "environment": remote.get("target") or "production",
            "build_id": remote.get("buildId") or remote.get("buildingAt"),
            "deployment_created_at": epoch_ms_to_iso(remote.get("createdAt") or remote.get("created")),
            "last_synced": datetime.utcnow().isoformat(),
            "last_sync_status": "synced",
            "last_sync_message": f"Synced remote deployment ({status})",
        }

    async def connect_latest(self, tenant_ids: Iterable[str]) -> int:
        """
        Point each tenant at its most recent sync-origin deployment.

        Returns:
            Number of tenants updated
        """
        tenant_ids = set(tenant_ids)
        if not tenant_ids:
            return 0
        records = await self.store.find(
            Collection.DEPLOYMENTS,
            {"trigger": DeploymentTrigger.SYNC.value, "tenant_id": ("in", sorted(tenant_ids))},
            sort="-deployment_created_at"
        )
        latest_by_tenant: Dict[str, Dict[str, Any]] = {}
        for record in records:
            latest_by_tenant.setdefault(record["tenant_id"], record)

        for tenant_id, record in latest_by_tenant.items():
            await self.store.update(
                Collection.TENANTS,
                tenant_id,
                {
                    "latest_deployment_id": record["id"],
                    "last_deployment_at": record.get("deployment_created_at"),
                    "last_deployment_status": normalize_deployment_status(record.get("status")),
                },
                sync_origin=True
            )
        return len(latest_by_tenant)

    # =========================================================================
    # Trigger / cancel
    # =========================================================================

    async def create_deployment(self, tenant_id: str, overrides: Optional[Dict[str, Any]] = None) -> SyncResult:
        """
        Create a manual deployment record for a tenant and trigger it remotely.

        Raises:
            TenantNotFoundError: If the tenant does not exist
            ValidationError: If the tenant is not deployable or lacks git fields
        """
        tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id, operation="create_deployment")
        self.ensure_deployable(tenant)

        record = await self.store.create(Collection.DEPLOYMENTS, {
            "tenant_id": tenant_id,
            "trigger": DeploymentTrigger.MANUAL.value,
            "status": DeploymentStatus.QUEUED.value,
            "environment": "production",
            "events": [_event(DeploymentStatus.QUEUED.value, "Manual deployment requested")],
        })
        record = await self.trigger_deployment_record(
            record,
            tenant,
            name=f"{tenant['name']}-manual-deployment",
            overrides=overrides
        )
        return SyncResult(
            success=True,
            message=f"Deployment triggered for {tenant['name']}",
            data=record,
            summary=SyncSummary(created=1),
        )

    def ensure_deployable(self, tenant: Dict[str, Any]) -> None:
        if not is_deployable_tenant(tenant):
            raise ValidationError(
                f"Tenant {tenant.get('name')} must be approved, active and linked to a project to deploy",
                field="status",
                tenant_id=tenant.get("id"),
                operation="create_deployment",
            )
        missing = missing_git_fields(tenant)
        if missing:
            raise ValidationError(
                f"Git repository is missing {', '.join(missing)}",
                field="git_repository",
                tenant_id=tenant.get("id"),
                operation="create_deployment",
            )

    async def trigger_deployment_record(
        self,
        record: Dict[str, Any],
        tenant: Dict[str, Any],
        name: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Create the remote deployment for a queued manual/auto record.

        On success the record moves to "building" with its remote identity;
        on failure it moves to "error" and the classified error is re-raised.
        """
        payload = build_deployment_payload(tenant, name=name, overrides=overrides)
        events = list(record.get("events") or [])
        try:
            platform = self.resolver.platform_for(await self.resolver.resolve(tenant["id"]))
            remote = await platform.create_deployment(payload)
        except SyncError as e:
            e.with_context(tenant_id=tenant["id"], operation="create_deployment")
            logger.error(f"Deployment trigger failed for tenant={tenant['id']}: {e.message}")
            await self.store.update(
                Collection.DEPLOYMENTS,
                record["id"],
                {
                    "status": DeploymentStatus.ERROR.value,
                    "events": events + [_event(DeploymentStatus.ERROR.value, e.message)],
                    "last_sync_message": e.message,
                },
                sync_origin=True
            )
            raise

        logger.info(f"Triggered deployment {remote.get('id')} for tenant={tenant['id']}")
        return await self.store.update(
            Collection.DEPLOYMENTS,
            record["id"],
            {
                "remote_deployment_id": remote.get("id") or remote.get("uid"),
                "name": remote.get("name") or payload["name"],
                "url": _with_https(remote.get("url")),
                "status": DeploymentStatus.BUILDING.value,
                "deployment_created_at": epoch_ms_to_iso(remote.get("createdAt")) or datetime.utcnow().isoformat(),
                "events": events + [_event(DeploymentStatus.BUILDING.value, "Remote deployment created")],
            },
            sync_origin=True
        )

    async def cancel_deployments(self, tenant_id: str) -> SyncResult:
        """
        Cancel every in-flight deployment of a tenant.

        Records with a remote identity are canceled remotely and marked
        canceled; queued records that never reached the remote are deleted.
        """
        tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id, operation="cancel_deployments")

        records = await self.store.find(
            Collection.DEPLOYMENTS,
            {"tenant_id": tenant_id, "status": ("in", list(IN_FLIGHT_STATUSES))}
        )
        summary = SyncSummary()
        if not records:
            return SyncResult(success=True, message="No in-flight deployments to cancel", summary=summary)

        platform = None
        if any(r.get("remote_deployment_id") for r in records):
            platform = self.resolver.platform_for(await self.resolver.resolve(tenant_id))

        failures = []
        for record in records:
            remote_id = record.get("remote_deployment_id")
            if not remote_id:
                if record.get("status") == DeploymentStatus.QUEUED.value:
                    await self.store.delete(Collection.DEPLOYMENTS, record["id"])
                    summary.deleted += 1
                else:
                    await self._mark_canceled(record, "Canceled before reaching the remote platform")
                    summary.updated += 1
                continue

            try:
                await platform.cancel_deployment(remote_id)
            except RemoteNotFound:
                logger.warning(f"Deployment {remote_id} no longer exists remotely, marking canceled")
            except SyncError as e:
                logger.error(f"Failed to cancel deployment {remote_id} for tenant={tenant_id}: {e.message}")
                failures.append({"deployment_id": record["id"], "remote_deployment_id": remote_id, "error": e.message})
                summary.errors += 1
                continue
            await self._mark_canceled(record, "Canceled by user")
            summary.updated += 1

        handled = len(records) - len(failures)
        return SyncResult(
            success=handled > 0,
            message=f"{handled} of {len(records)} deployments canceled",
            data={"failures": failures},
            summary=summary,
        )

    async def _mark_canceled(self, record: Dict[str, Any], message: str) -> Dict[str, Any]:
        events = list(record.get("events") or []) + [_event(DeploymentStatus.CANCELED.value, message)]
        return await self.store.update(
            Collection.DEPLOYMENTS,
            record["id"],
            {"status": DeploymentStatus.CANCELED.value, "events": events},
            sync_origin=True
        )

    async def delete_deployment_record(self, record_id: str) -> bool:
        """
        Delete a local deployment record; a queued one that already has a
        remote identity is canceled remotely first (best-effort).
        """
        record = await self.store.find_by_id(Collection.DEPLOYMENTS, record_id)
        if record is None:
            return False
        remote_id = record.get("remote_deployment_id")
        if record.get("status") == DeploymentStatus.QUEUED.value and remote_id:
            try:
                platform = self.resolver.platform_for(await self.resolver.resolve(record["tenant_id"]))
            except SyncError as e:
                logger.warning(f"Skipping remote cancel of {remote_id}: {e.message}")
            else:
                await self.classifier.swallow(
                    lambda: platform.cancel_deployment(remote_id),
                    OperationKind.DELETE,
                    f"cancel deployment {remote_id}",
                    tenant_id=record["tenant_id"]
                )
        return await self.store.delete(Collection.DEPLOYMENTS, record_id)
