"""
Tests for the project lifecycle manager

Covers tenant provisioning with rollback, approval of draft tenants, project
uniqueness, sync-back of edits with its backoff window, cron toggling and
tenant deletion.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock
from freezegun import freeze_time

from tenant_sync.core.exceptions import (
    DeletionBlockedError,
    ReconciliationInProgress,
    RemoteConflict,
    RemotePlatformError,
)
from tenant_sync.services.database import SYNC_ORIGIN, Collection
from tenant_sync.services.project_lifecycle import check_deletion_allowed, tenant_key

from tests.fakes import FakePlatform, seed_live_tenant

GIT = {"type": "github", "owner": "acme", "repo": "site", "branch": "main"}


def fail_first_call():
    calls = {"count": 0}

    def predicate(*args):
        calls["count"] += 1
        return calls["count"] == 1

    return predicate


class TestCreateTenant:
    """Test suite for provisioning a tenant together with its project"""

    @pytest.mark.asyncio
    async def test_create_tenant_provisions_and_syncs_project(self, engine, store, platform):
        result = await engine.create_tenant("acme", GIT)

        assert result.success is True
        assert result.summary.created == 1
        tenant = store.all(Collection.TENANTS)[0]
        assert tenant["status"] == "approved"
        assert tenant["is_active"] is True
        assert tenant["remote_project_id"] in platform.projects
        assert tenant["url"] == "https://acme.vercel.app"
        assert tenant["git_repository"]["repo_id"] is not None
        assert tenant["git_repository"]["owner"] == "acme"
        payload = platform.calls_to("create_project")[0][1]
        assert payload["gitRepository"] == {"type": "github", "repo": "acme/site"}

    @pytest.mark.asyncio
    async def test_failed_detail_sync_rolls_back_project(self, engine, store, platform):
        """No tenant record remains and the new project is deleted again"""
        platform.fail("get_project", RemotePlatformError("project details rejected", classification="rejected"))

        result = await engine.create_tenant("acme", GIT)

        assert result.success is False
        assert result.error["error"] == "remote_platform_error"
        assert store.all(Collection.TENANTS) == []
        created_id = platform.calls_to("delete_project")[0][1]
        assert created_id.startswith("prj_")
        assert platform.projects == {}

    @pytest.mark.asyncio
    async def test_transient_detail_read_is_retried(self, engine, store, platform):
        platform.fail("get_project", RemotePlatformError("timeout", classification="transient"), when=fail_first_call())

        result = await engine.create_tenant("acme", GIT)

        assert result.success is True
        assert len(platform.calls_to("get_project")) == 2
        assert platform.calls_to("delete_project") == []

    @pytest.mark.asyncio
    async def test_missing_repository_id_rolls_back(self, engine, store, platform):
        """A repository that never linked leaves the project without a repo id"""
        result = await engine.create_tenant("acme", {"type": "github", "repo": "site"})

        assert result.success is False
        assert result.error["error"] == "validation_error"
        assert "Critical data missing" in result.message
        assert store.all(Collection.TENANTS) == []
        assert len(platform.calls_to("delete_project")) == 1

    @pytest.mark.asyncio
    async def test_duplicate_name_is_rejected_before_remote_calls(self, engine, store, platform):
        await seed_live_tenant(store, platform, name="acme")

        result = await engine.create_tenant("acme", GIT)

        assert result.success is False
        assert result.error["error"] == "remote_conflict"
        assert platform.calls_to("create_project") == []

    @pytest.mark.asyncio
    async def test_empty_name_is_rejected(self, engine, platform):
        result = await engine.create_tenant("  ")

        assert result.success is False
        assert result.error["status_code"] == 400
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_missing_token_fails_without_remote_calls(self, engine, store, platform):
        store.global_setting = None

        result = await engine.create_tenant("acme", GIT)

        assert result.success is False
        assert result.error["error"] == "credential_error"
        assert platform.calls == []


class TestApproval:
    """Test suite for draft -> approved transitions"""

    @pytest.mark.asyncio
    async def test_draft_tenant_has_no_remote_side_effects(self, engine, store, platform):
        tenant = await engine.records.create_tenant_record({"name": "beta", "git_repository": GIT})

        assert tenant["status"] == "draft"
        assert tenant.get("remote_project_id") is None
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_approving_draft_provisions_project(self, engine, store, platform):
        tenant = await engine.records.create_tenant_record({"name": "beta", "git_repository": GIT})

        updated = await engine.records.update_tenant(tenant["id"], {"status": "approved"})

        assert updated["status"] == "approved"
        assert updated["remote_project_id"] in platform.projects
        assert updated["remote_project_status"] == "ready"
        assert len(platform.calls_to("create_project")) == 1

    @pytest.mark.asyncio
    async def test_failed_approval_leaves_tenant_draft(self, engine, store, platform):
        tenant = await engine.records.create_tenant_record({"name": "beta", "git_repository": GIT})
        platform.fail("get_project_domains", RemotePlatformError("bad gateway", classification="rejected"))

        with pytest.raises(RemotePlatformError):
            await engine.records.update_tenant(tenant["id"], {"status": "approved"})

        stored = store.all(Collection.TENANTS)[0]
        assert stored["status"] == "draft"
        assert stored.get("remote_project_id") is None
        assert platform.projects == {}

    @pytest.mark.asyncio
    async def test_approving_tenant_with_project_patches_it(self, engine, store, platform):
        project = platform.add_project("beta")
        tenant = await store.create(Collection.TENANTS, {
            "name": "beta", "status": "draft", "is_active": True,
            "remote_project_id": project["id"], "build_command": "make build",
        })

        await engine.records.update_tenant(tenant["id"], {"status": "approved"})

        assert platform.calls_to("create_project") == []
        assert platform.calls_to("update_project")[0][2] == {"buildCommand": "make build"}

    @pytest.mark.asyncio
    async def test_claimed_project_id_is_rejected(self, engine, store, platform):
        owner = await seed_live_tenant(store, platform, name="owner")
        other = await engine.records.create_tenant_record({"name": "other"})

        with pytest.raises(RemoteConflict) as exc_info:
            await engine.records.update_tenant(other["id"], {"remote_project_id": owner["remote_project_id"]})

        assert exc_info.value.status_code == 409
        assert "already exists on tenant owner" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_project_owned_by_another_tenant_is_never_deleted(self, engine, store, platform):
        owner = await seed_live_tenant(store, platform, name="owner")
        other = await engine.records.create_tenant_record({"name": "other"})
        platform.create_project = AsyncMock(return_value={"id": owner["remote_project_id"]})

        with pytest.raises(RemoteConflict):
            await engine.records.update_tenant(other["id"], {"status": "approved"})

        assert owner["remote_project_id"] in platform.projects
        assert platform.calls_to("delete_project") == []


class TestSyncBack:
    """Test suite for pushing tenant edits to the remote project"""

    @pytest.mark.asyncio
    async def test_edit_is_pushed_and_marked_synced(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)

        updated = await engine.records.update_tenant(tenant["id"], {"build_command": "pnpm build"})

        assert updated["build_command"] == "pnpm build"
        patch_call = platform.calls_to("update_project")[0]
        assert patch_call[1] == tenant["remote_project_id"]
        assert patch_call[2] == {"buildCommand": "pnpm build"}
        stored = store.all(Collection.TENANTS)[0]
        assert stored["last_sync_status"] == "synced"
        assert stored["sync_origin"] == SYNC_ORIGIN

    @pytest.mark.asyncio
    async def test_edit_within_backoff_window_is_not_pushed(self, engine, store, platform):
        with freeze_time("2026-03-01 12:00:00"):
            tenant = await seed_live_tenant(store, platform, last_synced="2026-03-01T11:59:58")

            await engine.records.update_tenant(tenant["id"], {"build_command": "pnpm build"})

        assert platform.calls_to("update_project") == []

    @pytest.mark.asyncio
    async def test_edit_after_backoff_window_is_pushed(self, engine, store, platform):
        with freeze_time("2026-03-01 12:00:00"):
            tenant = await seed_live_tenant(store, platform, last_synced="2026-03-01T11:59:50")

            await engine.records.update_tenant(tenant["id"], {"build_command": "pnpm build"})

        assert len(platform.calls_to("update_project")) == 1

    @pytest.mark.asyncio
    async def test_failed_push_keeps_local_edit(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)
        platform.fail("update_project", RemotePlatformError("rejected", classification="rejected"))

        updated = await engine.records.update_tenant(tenant["id"], {"build_command": "pnpm build"})

        assert updated["build_command"] == "pnpm build"
        assert store.all(Collection.TENANTS)[0].get("last_sync_status") is None

    @pytest.mark.asyncio
    async def test_unrelated_edit_is_not_pushed(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)

        await engine.records.update_tenant(tenant["id"], {"last_sync_message": "hello"})

        assert platform.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_sync_origin_write_is_not_pushed_back(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)
        current = {**tenant, "build_command": "changed", "sync_origin": SYNC_ORIGIN}

        await engine.lifecycle.after_tenant_write(tenant, current)

        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_cron_toggle(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)

        await engine.records.update_tenant(tenant["id"], {"disable_cron": True})

        assert platform.crons[tenant["remote_project_id"]] is False
        assert platform.calls_to("update_project") == []


class TestProjectImport:
    """Test suite for importing the remote project list"""

    @pytest.mark.asyncio
    async def test_known_projects_refresh_and_unknown_become_tenants(self, engine, store, platform):
        known = await seed_live_tenant(store, platform, name="known")
        platform.add_project("newcomer", domains=[{"name": "newcomer.example.com", "verified": True}])

        result = await engine.lifecycle.sync_all_projects()

        assert result.success is True
        assert result.summary.updated == 1
        assert result.summary.created == 1
        assert result.data["success_rate"] == 100.0
        tenants = {t["name"]: t for t in store.all(Collection.TENANTS)}
        assert tenants["newcomer"]["status"] == "approved"
        assert tenants["newcomer"]["url"] == "https://newcomer.example.com"
        assert tenants["known"]["id"] == known["id"]
        assert tenants["known"]["sync_origin"] == SYNC_ORIGIN


class TestDeleteTenant:
    """Test suite for tenant deletion"""

    @pytest.mark.unit
    def test_approved_active_tenant_is_blocked(self):
        with pytest.raises(DeletionBlockedError) as exc_info:
            check_deletion_allowed({"id": "t1", "name": "acme", "status": "approved", "is_active": True})

        assert exc_info.value.status_code == 409
        assert 'Cannot delete "acme" because it is deployed and active' in exc_info.value.message

    @pytest.mark.unit
    @pytest.mark.parametrize("tenant", [
        {"name": "a", "status": "draft", "is_active": True},
        {"name": "b", "status": "approved", "is_active": False},
    ])
    def test_draft_or_inactive_tenant_is_allowed(self, tenant):
        check_deletion_allowed(tenant)

    @pytest.mark.asyncio
    async def test_blocked_deletion_reports_failure(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)

        result = await engine.delete_tenant(tenant["id"])

        assert result.success is False
        assert result.error["error"] == "deletion_blocked"
        assert len(store.all(Collection.TENANTS)) == 1
        assert platform.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_inactive_tenant_cascades(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform, is_active=False)
        bystander = await seed_live_tenant(store, platform, name="bystander")
        await store.create(Collection.ENV_VAR_SETS, {"tenant_id": tenant["id"], "entries": []})
        await store.create(Collection.DEPLOYMENTS, {"tenant_id": tenant["id"], "trigger": "manual"})
        await store.create(Collection.DEPLOYMENTS, {"tenant_id": tenant["id"], "trigger": "sync"})
        await store.create(Collection.DEPLOYMENTS, {"tenant_id": bystander["id"], "trigger": "sync"})

        result = await engine.delete_tenant(tenant["id"])

        assert result.success is True
        assert result.data["remote_project_deleted"] is True
        assert result.data["env_var_sets_deleted"] == 1
        assert result.data["deployments_deleted"] == 2
        assert result.summary.deleted == 4
        assert tenant["remote_project_id"] not in platform.projects
        assert [t["name"] for t in store.all(Collection.TENANTS)] == ["bystander"]
        assert [d["tenant_id"] for d in store.all(Collection.DEPLOYMENTS)] == [bystander["id"]]

    @pytest.mark.asyncio
    async def test_missing_remote_project_counts_as_deleted(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform, is_active=False)
        del platform.projects[tenant["remote_project_id"]]

        result = await engine.delete_tenant(tenant["id"])

        assert result.success is True
        assert result.data["remote_project_deleted"] is True
        assert store.all(Collection.TENANTS) == []

    @pytest.mark.asyncio
    async def test_remote_failure_does_not_block_local_delete(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform, is_active=False)
        platform.fail("delete_project", RemotePlatformError("down", classification="transient"))

        result = await engine.delete_tenant(tenant["id"])

        assert result.success is True
        assert result.data["remote_project_deleted"] is False
        assert store.all(Collection.TENANTS) == []

    @pytest.mark.asyncio
    async def test_draft_without_project_makes_no_remote_calls(self, engine, store, platform):
        tenant = await engine.records.create_tenant_record({"name": "draft"})

        result = await engine.delete_tenant(tenant["id"])

        assert result.success is True
        assert platform.calls == []


class InterleavingPlatform(FakePlatform):
    """Yields to the event loop inside project calls so overlapping requests interleave"""

    async def create_project(self, project_data):
        await asyncio.sleep(0)
        return await super().create_project(project_data)

    async def get_project(self, project_id):
        await asyncio.sleep(0)
        return await super().get_project(project_id)


class TestConcurrentProvisioning:
    """Overlapping creates and approvals must not provision a project twice"""

    @pytest.fixture
    def platform(self):
        return InterleavingPlatform()

    @pytest.mark.asyncio
    async def test_overlapping_approvals_create_one_project(self, engine, store, platform):
        tenant = await engine.records.create_tenant_record({"name": "beta", "git_repository": GIT})

        results = await asyncio.gather(
            engine.records.update_tenant(tenant["id"], {"status": "approved"}),
            engine.records.update_tenant(tenant["id"], {"status": "approved"}),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, ReconciliationInProgress)]
        assert len(rejected) == 1
        assert rejected[0].reason == "another pass is running"
        assert len(platform.calls_to("create_project")) == 1
        stored = store.all(Collection.TENANTS)[0]
        assert list(platform.projects) == [stored["remote_project_id"]]

    @pytest.mark.asyncio
    async def test_approval_after_approval_does_not_reprovision(self, engine, store, platform):
        tenant = await engine.records.create_tenant_record({"name": "beta", "git_repository": GIT})
        await engine.records.update_tenant(tenant["id"], {"status": "approved"})

        await engine.records.update_tenant(tenant["id"], {"status": "approved"})

        assert len(platform.calls_to("create_project")) == 1

    @pytest.mark.asyncio
    async def test_overlapping_creates_of_same_name_conflict(self, engine, store, platform):
        results = await asyncio.gather(
            engine.create_tenant("acme", GIT),
            engine.create_tenant("acme", GIT),
        )

        assert sorted(r.success for r in results) == [False, True]
        failed = next(r for r in results if not r.success)
        assert failed.error["error"] == "reconciliation_in_progress"
        assert failed.error["status_code"] == 409
        assert len(platform.calls_to("create_project")) == 1
        assert len(store.all(Collection.TENANTS)) == 1

    @pytest.mark.asyncio
    async def test_edit_during_running_sync_is_rejected(self, engine, store, platform):
        tenant = await seed_live_tenant(store, platform)

        async with engine.guard.reconciliation_pass(tenant_key(tenant["id"]), "sync"):
            with pytest.raises(ReconciliationInProgress):
                await engine.records.update_tenant(tenant["id"], {"build_command": "pnpm build"})

        assert platform.calls_to("update_project") == []
