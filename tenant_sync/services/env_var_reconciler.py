"""
Environment Variable Reconciler

Pushes user edits of a tenant's env-var set to the remote project, and pulls
remote production env vars back into the set.

Push pass, per set:
1. classify (previous, current) into a plan (env_var_plan.plan_env_var_changes)
2. apply the plan: creates, then updates, then deletes
3. persist new remote identities and synthesized values in one write,
   serialized through the record's write queue
4. queue an auto-deploy if the set asks for one and anything changed
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tenant_sync.core.exceptions import (
    SyncError,
    CredentialError,
    RemoteConflict,
    RemotePartialFailure,
    TenantNotFoundError,
    ValidationError,
    ReconciliationInProgress,
)
from tenant_sync.schemas.deployment import DeploymentStatus, DeploymentTrigger
from tenant_sync.schemas.environment_variable import EnvTarget, EnvVarType, FailureReason
from tenant_sync.schemas.sync import SyncResult, SyncSummary
from tenant_sync.services.credential_resolver import CredentialResolver
from tenant_sync.services.database import SYNC_ORIGIN, Collection, RecordStore, is_sync_origin
from tenant_sync.services.deployment_sync import DeploymentSyncEngine, is_deployable_tenant, missing_git_fields
from tenant_sync.services.env_var_plan import (
    EnvVarEntry,
    EnvVarPlan,
    PlannedChange,
    RemoteIdentity,
    entries_from_records,
    parse_env_var_type,
    plan_env_var_changes,
    synthesize_value,
)
from tenant_sync.services.error_classifier import ErrorClassifier, OperationKind, error_classifier
from tenant_sync.services.platform import RemotePlatform
from tenant_sync.services.reentrancy_guard import ReentrancyGuard
from tenant_sync.services.write_queue import RecordWriteQueue

logger = logging.getLogger(__name__)

PROJECT_ID_PREFIX = "prj_"


def env_var_set_key(set_id: str) -> str:
    return f"env_var_set:{set_id}"


@dataclass
class ApplyResult:
    """Outcome of applying a plan; entries are in the set's original order"""
    entries: Tuple[EnvVarEntry, ...]
    summary: SyncSummary = field(default_factory=SyncSummary)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    aborted: bool = False

    @property
    def changed(self) -> bool:
        return self.summary.total_changes > 0


class EnvVarReconciler:

    def __init__(
        self,
        store: RecordStore,
        resolver: CredentialResolver,
        guard: ReentrancyGuard,
        write_queue: RecordWriteQueue,
        deployments: DeploymentSyncEngine,
        classifier: ErrorClassifier = None
    ):
        self.store = store
        self.resolver = resolver
        self.guard = guard
        self.write_queue = write_queue
        self.deployments = deployments
        self.classifier = classifier or error_classifier

    # =========================================================================
    # Push: local edits -> remote
    # =========================================================================

    async def reconcile(
        self,
        env_var_set: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None,
        operation: str = "update"
    ) -> SyncResult:
        """
        Run one push pass for an env-var set that was just written locally.

        Args:
            env_var_set: The set as currently persisted
            previous: The set before the triggering write (None on create)
            operation: "create" or "update"

        Returns:
            SyncResult whose data is the set after the final write
        """
        set_id = env_var_set["id"]
        tenant_id = env_var_set.get("tenant_id")
        if is_sync_origin(env_var_set):
            logger.debug(f"Skipping env var set {set_id}: write came from a sync pass")
            return SyncResult(success=True, message="Write originated from sync", data=env_var_set, summary=SyncSummary(skipped=1))

        try:
            async with self.guard.reconciliation_pass(env_var_set_key(set_id), operation):
                return await self._push(env_var_set, previous)
        except ReconciliationInProgress as e:
            return SyncResult.skipped(e)
        except SyncError as e:
            if isinstance(e, CredentialError):
                self.resolver.invalidate(tenant_id)
            e.with_context(tenant_id=tenant_id, operation=f"env_vars_{operation}")
            logger.error(f"Env var reconciliation failed for set={set_id}: {e.message}")
            return SyncResult.from_error(e)

    async def _push(self, env_var_set: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> SyncResult:
        tenant_id = env_var_set["tenant_id"]
        tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id, operation="env_vars_push")

        current_entries = entries_from_records(env_var_set.get("entries"))
        previous_entries = entries_from_records(previous.get("entries")) if previous else None
        plan = plan_env_var_changes(previous_entries, current_entries)

        project_id = tenant.get("remote_project_id")
        if not project_id:
            return SyncResult(
                success=True,
                message="Tenant has no remote project yet; env vars are pushed on the first edit after it is provisioned",
                data=env_var_set,
                summary=SyncSummary(skipped=len(current_entries)),
            )

        if plan.has_remote_work:
            platform = self.resolver.platform_for(await self.resolver.resolve(tenant_id))
            result = await self.apply(plan, current_entries, platform, project_id, tenant.get("url"))
        else:
            result = ApplyResult(entries=tuple(current_entries), summary=SyncSummary(skipped=len(plan.skips)))

        persisted = env_var_set
        if tuple(current_entries) != result.entries:
            persisted = await self.persist_entries(env_var_set["id"], result.entries)

        if result.changed and env_var_set.get("autodeploy"):
            await self._auto_deploy(tenant, env_var_set)

        message = (
            f"created {result.summary.created}, updated {result.summary.updated}, "
            f"deleted {result.summary.deleted}, skipped {result.summary.skipped}"
        )
        if result.aborted:
            failed_keys = [e["key"] for e in result.errors if e["action"] == "update"]
            error = RemotePartialFailure(
                "Env var update batch aborted: " + "; ".join(e["error"] for e in result.errors),
                succeeded=[c.entry.key for c in plan.updates if c.entry.key not in failed_keys],
                failed=failed_keys,
                tenant_id=tenant_id,
                operation="env_vars_update",
            )
            failed = SyncResult.from_error(error, summary=result.summary)
            failed.data = persisted
            return failed

        logger.info(f"Env var set {env_var_set['id']} reconciled for tenant={tenant_id}: {message}")
        return SyncResult(
            success=True,
            message=message,
            data=persisted,
            error={"items": result.errors} if result.errors else None,
            summary=result.summary,
        )

    async def apply(
        self,
        plan: EnvVarPlan,
        entries: Sequence[EnvVarEntry],
        platform: RemotePlatform,
        project_id: str,
        tenant_url: Optional[str] = None
    ) -> ApplyResult:
        """
        Perform the remote calls of a plan: creates, then updates, then deletes.

        Returns:
            ApplyResult with the resulting entries (new identities, synthesized
            values, failure markers) in the set's original order
        """
        by_key: Dict[str, EnvVarEntry] = {e.key: e for e in entries}
        result = ApplyResult(entries=tuple(entries))
        result.summary.skipped = len(plan.skips)

        failed_renames = set()
        if plan.creates:
            created = await self._apply_creates(plan.creates, platform, project_id, tenant_url, result)
            by_key.update(created)
            failed_renames = {
                change.entry.key for change in plan.creates
                if not created[change.entry.key].identity.is_synced and change.reason.startswith("renamed")
            }

        if plan.updates:
            updated, aborted = await self._apply_updates(plan.updates, platform, project_id, result)
            by_key.update(updated)
            if aborted:
                result.aborted = True

        if plan.deletes and not result.aborted:
            # Keep the old remote entry of a rename whose create failed
            retained_ids = {e.identity.remote_id for e in entries if e.key in failed_renames}
            await self._apply_deletes(
                [c for c in plan.deletes if c.entry.identity.remote_id not in retained_ids],
                platform,
                project_id,
                result
            )

        result.entries = tuple(by_key[e.key] for e in entries)
        return result

    async def _apply_creates(
        self,
        creates: Sequence[PlannedChange],
        platform: RemotePlatform,
        project_id: str,
        tenant_url: Optional[str],
        result: ApplyResult
    ) -> Dict[str, EnvVarEntry]:
        pending = {c.entry.key: synthesize_value(c.entry, tenant_url) for c in creates}
        resolved: Dict[str, EnvVarEntry] = {}
        conflict = False
        try:
            response = await platform.create_env_vars(project_id, [e.to_remote() for e in pending.values()])
            for item in response.get("created", []):
                key, remote_id = item.get("key"), item.get("id")
                if key in pending and remote_id:
                    resolved[key] = pending[key].with_identity(RemoteIdentity.synced(remote_id))
            for item in response.get("failed", []):
                error = item.get("error") or {}
                if "already exist" in str(error.get("message") or error.get("code") or "").lower():
                    conflict = True
        except RemoteConflict:
            conflict = True
        except SyncError as e:
            logger.error(f"Bulk env var create failed for project={project_id}: {e.message}")
            result.errors.extend({"key": key, "action": "create", "error": e.message} for key in pending)

        missing = [key for key in pending if key not in resolved]
        if missing and conflict:
            resolved.update(await self._adopt_existing(missing, pending, platform, project_id))

        for key, entry in pending.items():
            if key in resolved:
                result.summary.created += 1
                continue
            resolved[key] = entry.with_identity(RemoteIdentity.failed(FailureReason.FAILED_CREATION))
            if not any(err["key"] == key for err in result.errors):
                result.errors.append({"key": key, "action": "create", "error": "remote create returned no id"})
            result.summary.errors += 1
        return resolved

    async def _adopt_existing(
        self,
        keys: Sequence[str],
        pending: Dict[str, EnvVarEntry],
        platform: RemotePlatform,
        project_id: str
    ) -> Dict[str, EnvVarEntry]:
        """Take over remote entries that already exist under the same key"""
        try:
            remote = await self.classifier.run_read(lambda: platform.list_env_vars(project_id, decrypt=False), "list_env_vars")
        except SyncError as e:
            logger.warning(f"Could not list env vars to adopt existing entries: {e.message}")
            return {}
        remote_by_key = {r.get("key"): r for r in remote if r.get("id")}
        adopted = {}
        for key in keys:
            if key in remote_by_key:
                logger.info(f"Adopting existing remote env var {key} for project={project_id}")
                adopted[key] = pending[key].with_identity(RemoteIdentity.synced(remote_by_key[key]["id"]))
        return adopted

    async def _apply_updates(
        self,
        updates: Sequence[PlannedChange],
        platform: RemotePlatform,
        project_id: str,
        result: ApplyResult
    ) -> Tuple[Dict[str, EnvVarEntry], bool]:
        entries = [c.entry for c in updates]
        outcomes = await asyncio.gather(
            *(platform.update_env_var(project_id, e.identity.remote_id, e.to_remote()) for e in entries),
            return_exceptions=True
        )
        updated: Dict[str, EnvVarEntry] = {}
        aborted = False
        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, Exception):
                if not isinstance(outcome, SyncError):
                    raise outcome
                aborted = True
                updated[entry.key] = entry.with_identity(
                    RemoteIdentity.failed(FailureReason.FAILED_UPDATE, entry.identity.remote_id)
                )
                result.errors.append({"key": entry.key, "action": "update", "error": outcome.message})
                result.summary.errors += 1
            else:
                updated[entry.key] = entry.with_identity(RemoteIdentity.synced(entry.identity.remote_id))
                result.summary.updated += 1
        if aborted:
            logger.error(f"Env var update batch aborted for project={project_id}: {result.summary.errors} failed")
        return updated, aborted

    async def _apply_deletes(
        self,
        deletes: Sequence[PlannedChange],
        platform: RemotePlatform,
        project_id: str,
        result: ApplyResult
    ) -> None:
        for change in deletes:
            remote_id = change.entry.identity.remote_id
            ok, _ = await self.classifier.swallow(
                lambda: platform.delete_env_var(project_id, remote_id),
                OperationKind.DELETE,
                f"delete env var {change.entry.key}"
            )
            if ok:
                result.summary.deleted += 1

    async def persist_entries(self, set_id: str, entries: Sequence[EnvVarEntry]) -> Dict[str, Any]:
        """Write entries back through the set's write queue, tagged as sync origin"""
        data = {
            "entries": [e.to_record() for e in entries],
            "env_var_count": len(entries),
            "last_updated": datetime.utcnow().isoformat(),
        }
        return await self.write_queue.run(
            env_var_set_key(set_id),
            lambda: self.store.update(Collection.ENV_VAR_SETS, set_id, data, sync_origin=True),
            final=True
        )

    async def _auto_deploy(self, tenant: Dict[str, Any], env_var_set: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not is_deployable_tenant(tenant) or missing_git_fields(tenant):
            logger.info(f"Auto-deploy skipped for tenant={tenant['id']}: tenant not deployable")
            return None
        record = await self.store.create(Collection.DEPLOYMENTS, {
            "tenant_id": tenant["id"],
            "trigger": DeploymentTrigger.AUTO.value,
            "status": DeploymentStatus.QUEUED.value,
            "environment": env_var_set.get("environment") or EnvTarget.PRODUCTION.value,
            "meta": {
                "source": "envvars-autodeploy",
                "env_var_set_id": env_var_set["id"],
                "timestamp": datetime.utcnow().isoformat(),
            },
            "events": [],
        })
        try:
            return await self.deployments.trigger_deployment_record(record, tenant, name=f"{tenant['name']}-autodeploy")
        except SyncError as e:
            logger.warning(f"Auto-deploy for tenant={tenant['id']} failed: {e.message}")
            return None

    # =========================================================================
    # Pull: remote -> local
    # =========================================================================

    async def sync_environment_variables(self, tenant_id: Optional[str] = None) -> SyncResult:
        """Pull remote production env vars for one tenant or every tenant with a project"""
        summary = SyncSummary()
        if tenant_id:
            tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id, operation="sync_environment_variables")
            if not tenant.get("remote_project_id"):
                raise ValidationError(
                    f"Tenant {tenant.get('name')} has no remote project",
                    field="remote_project_id",
                    tenant_id=tenant_id,
                    operation="sync_environment_variables",
                )
            tenants = [tenant]
        else:
            tenants = [t for t in await self.store.find(Collection.TENANTS) if t.get("remote_project_id")]

        processed, skipped_inactive, failures = 0, 0, []
        for tenant in tenants:
            if not is_deployable_tenant(tenant):
                skipped_inactive += 1
                summary.skipped += 1
                continue
            try:
                platform = self.resolver.platform_for(await self.resolver.resolve(tenant["id"]))
                summary.merge(await self.pull_tenant(tenant, platform))
                processed += 1
            except SyncError as e:
                if isinstance(e, CredentialError):
                    self.resolver.invalidate(tenant["id"])
                e.with_context(tenant_id=tenant["id"], operation="sync_environment_variables")
                logger.error(f"Env var pull failed for tenant={tenant['id']}: {e.message}")
                failures.append(e.detail)
                summary.errors += 1

        attempted = len(tenants) - skipped_inactive
        return SyncResult(
            success=attempted == 0 or processed > 0,
            message=f"{processed} of {attempted} tenants synced, {skipped_inactive} skipped (inactive)",
            data={"skipped_inactive": skipped_inactive, "failures": failures},
            error=failures[0] if failures and processed == 0 else None,
            summary=summary,
        )

    async def pull_tenant(self, tenant: Dict[str, Any], platform: RemotePlatform) -> SyncSummary:
        """
        Merge the remote production env vars of one tenant into its set.

        Entries are matched by key: same remote id is skipped, a different
        remote id replaces the local identity, unknown keys are added.
        """
        project_id = tenant["remote_project_id"]
        if not str(project_id).startswith(PROJECT_ID_PREFIX):
            raise ValidationError(
                f"Invalid project id '{project_id}'",
                field="remote_project_id",
                tenant_id=tenant["id"],
                operation="sync_environment_variables",
            )

        remote = await self.classifier.run_read(lambda: platform.list_env_vars(project_id, decrypt=True), "list_env_vars")
        production = [
            r for r in remote
            if EnvTarget.PRODUCTION.value in (r.get("target") or []) and r.get("key") and r.get("id")
        ]

        existing = await self.store.find(Collection.ENV_VAR_SETS, {"tenant_id": tenant["id"]}, limit=1)
        env_var_set = existing[0] if existing else None
        entries = entries_from_records(env_var_set.get("entries") if env_var_set else [])
        index = {e.key: i for i, e in enumerate(entries)}

        summary = SyncSummary()
        for item in production:
            identity = RemoteIdentity.synced(item["id"])
            position = index.get(item["key"])
            if position is None:
                entries.append(EnvVarEntry(
                    key=item["key"],
                    value=item.get("value") or "",
                    type=parse_env_var_type(item.get("type"), default=EnvVarType.PLAIN),
                    targets=tuple(item.get("target") or ()),
                    comment=item.get("comment") or None,
                    git_branch=item.get("gitBranch") or None,
                    identity=identity,
                ))
                index[item["key"]] = len(entries) - 1
                summary.created += 1
            elif entries[position].identity.remote_id == item["id"]:
                summary.skipped += 1
            else:
                entries[position] = entries[position].with_identity(identity)
                summary.updated += 1

        if env_var_set is None:
            if entries:
                await self.store.create(Collection.ENV_VAR_SETS, {
                    "tenant_id": tenant["id"],
                    "entries": [e.to_record() for e in entries],
                    "env_var_count": len(entries),
                    "autodeploy": False,
                    "last_updated": datetime.utcnow().isoformat(),
                    "sync_origin": SYNC_ORIGIN,
                })
        elif summary.created or summary.updated:
            await self.persist_entries(env_var_set["id"], entries)

        logger.info(
            f"Pulled env vars for tenant={tenant['id']}: created={summary.created}, "
            f"updated={summary.updated}, skipped={summary.skipped}"
        )
        return summary
