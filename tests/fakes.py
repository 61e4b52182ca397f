"""
In-memory stand-ins for the record store and the remote platform.
"""
import copy
import itertools
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from tenant_sync.core.exceptions import LocalStoreError, RemoteNotFound
from tenant_sync.services.database import Collection, origin_fields, split_filter

SETTING_TOKEN = "setting-token-0001"
SETTING_TEAM = "team_shared"

MUTATING_METHODS = {
    "create_project",
    "update_project",
    "delete_project",
    "update_crons",
    "create_deployment",
    "cancel_deployment",
    "delete_deployment",
    "create_env_vars",
    "update_env_var",
    "delete_env_var",
}


class FakeClock:
    """Monotonic clock the tests advance by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for field, raw in (filters or {}).items():
        operator, value = split_filter(raw)
        actual = record.get(field)
        if operator == "eq" and actual != value:
            return False
        if operator == "neq" and actual == value:
            return False
        if operator == "gte" and (actual is None or actual < value):
            return False
        if operator == "lte" and (actual is None or actual > value):
            return False
        if operator == "in" and actual not in value:
            return False
    return True


class InMemoryRecordStore:
    """RecordStore over plain dicts; returns copies like a real database would"""

    def __init__(self):
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.global_setting: Optional[Dict[str, Any]] = None
        self.fail_on: Dict[str, Exception] = {}
        self.writes: List[tuple] = []

    def _table(self, collection) -> Dict[str, Dict[str, Any]]:
        return self.collections[collection.value if isinstance(collection, Collection) else collection]

    def _check(self, operation: str, collection) -> None:
        name = collection.value if isinstance(collection, Collection) else collection
        error = self.fail_on.get(f"{operation}:{name}") or self.fail_on.get(operation)
        if error:
            raise error

    def all(self, collection) -> List[Dict[str, Any]]:
        return copy.deepcopy(list(self._table(collection).values()))

    async def find(self, collection, filters=None, sort=None, limit=None):
        self._check("find", collection)
        records = [r for r in self._table(collection).values() if _matches(r, filters)]
        if sort:
            field = sort.lstrip("-")
            records.sort(key=lambda r: (r.get(field) is not None, r.get(field) or ""), reverse=sort.startswith("-"))
        if limit:
            records = records[:limit]
        return copy.deepcopy(records)

    async def find_by_id(self, collection, record_id):
        self._check("find", collection)
        record = self._table(collection).get(record_id)
        return copy.deepcopy(record) if record else None

    async def count(self, collection, filters=None):
        self._check("count", collection)
        return len([r for r in self._table(collection).values() if _matches(r, filters)])

    async def create(self, collection, data):
        self._check("create", collection)
        now = datetime.utcnow().isoformat()
        record = {"id": str(uuid4()), "created_at": now, "updated_at": now, **copy.deepcopy(data)}
        self._table(collection)[record["id"]] = record
        self.writes.append(("create", collection, record["id"]))
        return copy.deepcopy(record)

    async def update(self, collection, record_id, data, sync_origin=False):
        self._check("update", collection)
        table = self._table(collection)
        if record_id not in table:
            raise LocalStoreError(f"{collection} record {record_id} not found for update", operation="update")
        table[record_id].update(copy.deepcopy(data))
        table[record_id].update(origin_fields(sync_origin))
        table[record_id]["updated_at"] = datetime.utcnow().isoformat()
        self.writes.append(("update", collection, record_id))
        return copy.deepcopy(table[record_id])

    async def delete(self, collection, record_id):
        self._check("delete", collection)
        return self._table(collection).pop(record_id, None) is not None

    async def delete_where(self, collection, filters):
        self._check("delete_where", collection)
        table = self._table(collection)
        doomed = [rid for rid, r in table.items() if _matches(r, filters)]
        for rid in doomed:
            del table[rid]
        return len(doomed)

    async def get_global_setting(self):
        return copy.deepcopy(self.global_setting)


class FakePlatform:
    """
    Stateful fake of the remote platform. Doubles as its own platform factory:
    calling it with (token, team_id) records the credential and returns itself.
    """

    def __init__(self):
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.domains: Dict[str, List[Dict[str, Any]]] = {}
        self.deployments: List[Dict[str, Any]] = []
        self.env_vars: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.crons: Dict[str, bool] = {}
        self.calls: List[tuple] = []
        self.credentials: List[tuple] = []
        self.failures: Dict[str, tuple] = {}
        self._ids = itertools.count(1)
        self._clock = itertools.count(1_700_000_000_000, 60_000)

    def __call__(self, token, team_id):
        self.credentials.append((token, team_id))
        return self

    # Test helpers

    def fail(self, method: str, error: Exception, when: Callable[..., bool] = None) -> None:
        self.failures[method] = (error, when)

    def clear_failures(self) -> None:
        self.failures.clear()

    def mutating_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_METHODS]

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def add_project(self, name: str, with_git: bool = True, domains: List[Dict[str, Any]] = None) -> Dict[str, Any]:
        project_id = f"prj_{next(self._ids)}"
        project = {"id": project_id, "name": name, "framework": "nextjs", "createdAt": next(self._clock), "updatedAt": next(self._clock)}
        if with_git:
            project["link"] = {"type": "github", "org": "acme", "repo": name, "repoId": 4242, "productionBranch": "main"}
        self.projects[project_id] = project
        self.domains[project_id] = list(domains or [])
        return copy.deepcopy(project)

    def add_deployment(self, project_id: str, state: str = "READY") -> Dict[str, Any]:
        deployment_id = f"dpl_{next(self._ids)}"
        deployment = {
            "uid": deployment_id,
            "name": self.projects.get(project_id, {}).get("name", "project"),
            "url": f"{deployment_id}.vercel.app",
            "readyState": state,
            "target": "production",
            "createdAt": next(self._clock),
            "projectId": project_id,
        }
        self.deployments.append(deployment)
        return copy.deepcopy(deployment)

    def add_env_var(self, project_id: str, key: str, value: str = "v", target=("production",)) -> Dict[str, Any]:
        env = {"id": f"env_{next(self._ids)}", "key": key, "value": value, "type": "encrypted", "target": list(target)}
        self.env_vars[project_id].append(env)
        return copy.deepcopy(env)

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        rule = self.failures.get(method)
        if rule:
            error, when = rule
            if when is None or when(*args):
                raise error

    # Projects

    async def list_projects(self, limit=100):
        self._record("list_projects")
        return copy.deepcopy(list(self.projects.values())[:limit])

    async def get_project(self, project_id):
        self._record("get_project", project_id)
        if project_id not in self.projects:
            raise RemoteNotFound(f"Project {project_id} not found")
        return copy.deepcopy(self.projects[project_id])

    async def create_project(self, project_data):
        self._record("create_project", project_data)
        project_id = f"prj_{next(self._ids)}"
        project = {"id": project_id, "name": project_data["name"], "framework": project_data.get("framework"), "createdAt": next(self._clock)}
        git = project_data.get("gitRepository")
        if git:
            owner, repo = git["repo"].split("/", 1)
            project["link"] = {"type": git["type"], "org": owner, "repo": repo, "repoId": 9000 + len(self.projects), "productionBranch": "main"}
        self.projects[project_id] = project
        self.domains[project_id] = []
        return {"id": project_id, "name": project["name"]}

    async def update_project(self, project_id, project_data):
        self._record("update_project", project_id, project_data)
        if project_id not in self.projects:
            raise RemoteNotFound(f"Project {project_id} not found")
        self.projects[project_id].update(project_data)
        return copy.deepcopy(self.projects[project_id])

    async def delete_project(self, project_id):
        self._record("delete_project", project_id)
        if self.projects.pop(project_id, None) is None:
            raise RemoteNotFound(f"Project {project_id} not found")
        return True

    async def get_project_domains(self, project_id):
        self._record("get_project_domains", project_id)
        return copy.deepcopy(self.domains.get(project_id, []))

    async def update_crons(self, project_id, enabled):
        self._record("update_crons", project_id, enabled)
        self.crons[project_id] = enabled
        return {"enabled": enabled}

    # Deployments

    async def list_deployments(self, project_id, limit=1):
        self._record("list_deployments", project_id, limit)
        if project_id not in self.projects:
            raise RemoteNotFound(f"Project {project_id} not found")
        matching = [d for d in self.deployments if d["projectId"] == project_id]
        matching.sort(key=lambda d: d["createdAt"], reverse=True)
        return copy.deepcopy(matching[:limit])

    async def create_deployment(self, deployment_data):
        self._record("create_deployment", deployment_data)
        deployment_id = f"dpl_{next(self._ids)}"
        deployment = {
            "id": deployment_id,
            "uid": deployment_id,
            "name": deployment_data["name"],
            "url": f"{deployment_data['name']}-{deployment_id}.vercel.app",
            "readyState": "QUEUED",
            "target": "production",
            "createdAt": next(self._clock),
            "projectId": deployment_data["project"],
        }
        self.deployments.append(deployment)
        return copy.deepcopy(deployment)

    async def cancel_deployment(self, deployment_id):
        self._record("cancel_deployment", deployment_id)
        for deployment in self.deployments:
            if deployment["uid"] == deployment_id:
                deployment["readyState"] = "CANCELED"
                return copy.deepcopy(deployment)
        raise RemoteNotFound(f"Deployment {deployment_id} not found")

    async def delete_deployment(self, deployment_id):
        self._record("delete_deployment", deployment_id)
        self.deployments = [d for d in self.deployments if d["uid"] != deployment_id]
        return True

    # Environment variables

    async def list_env_vars(self, project_id, decrypt=True):
        self._record("list_env_vars", project_id, decrypt)
        return copy.deepcopy(self.env_vars[project_id])

    async def create_env_vars(self, project_id, env_vars):
        self._record("create_env_vars", project_id, copy.deepcopy(env_vars))
        created, failed = [], []
        existing_keys = {e["key"] for e in self.env_vars[project_id]}
        for env in env_vars:
            if env["key"] in existing_keys:
                failed.append({"error": {"code": "ENV_ALREADY_EXISTS", "message": f"A variable with the name `{env['key']}` already exists", "key": env["key"]}})
                continue
            record = {"id": f"env_{next(self._ids)}", **copy.deepcopy(env)}
            self.env_vars[project_id].append(record)
            created.append(copy.deepcopy(record))
        return {"created": created, "failed": failed}

    async def update_env_var(self, project_id, env_id, env_data):
        self._record("update_env_var", project_id, env_id, copy.deepcopy(env_data))
        for env in self.env_vars[project_id]:
            if env["id"] == env_id:
                env.update(copy.deepcopy(env_data))
                return copy.deepcopy(env)
        raise RemoteNotFound(f"Env var {env_id} not found")

    async def delete_env_var(self, project_id, env_id):
        self._record("delete_env_var", project_id, env_id)
        before = len(self.env_vars[project_id])
        self.env_vars[project_id] = [e for e in self.env_vars[project_id] if e["id"] != env_id]
        if len(self.env_vars[project_id]) == before:
            raise RemoteNotFound(f"Env var {env_id} not found")
        return True


async def seed_live_tenant(store: InMemoryRecordStore, platform: FakePlatform, name: str = "acme", **fields) -> Dict[str, Any]:
    """An approved, active tenant linked to a project that exists on the fake platform"""
    project = platform.add_project(name)
    return await store.create(Collection.TENANTS, {
        "name": name,
        "status": "approved",
        "is_active": True,
        "remote_project_id": project["id"],
        "url": f"https://{name}.vercel.app",
        "git_repository": {"type": "github", "owner": "acme", "repo": name, "repo_id": 4242, "branch": "main"},
        **fields,
    })
