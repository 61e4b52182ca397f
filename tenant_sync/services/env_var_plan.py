"""
Environment variable classification.

Pure functions over immutable values: given the previous and current entries of
an env-var set, decide which entries to create, update, delete or skip on the
remote platform. The reconciler applies the resulting plan.
"""
import secrets
import string
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import ValidationError
from tenant_sync.schemas.environment_variable import (
    ALL_TARGETS,
    EnvTarget,
    EnvVarType,
    FailureReason,
    SyncState,
)

# Values that older records stored in remote_id instead of a real identity
LEGACY_EMPTY_IDS = {"", "null", "undefined", "none"}
SECRET_ALPHABET = string.ascii_letters + string.digits

# Remote types with no local counterpart
REMOTE_TYPE_ALIASES = {"sensitive": EnvVarType.ENCRYPTED}


def parse_env_var_type(value: Any, default: EnvVarType = EnvVarType.ENCRYPTED) -> EnvVarType:
    """
    Map a stored or remote type onto EnvVarType.

    Missing values take the default; types the remote platform knows but the
    local model does not are aliased, and anything else is treated as plain.
    """
    if not value:
        return default
    raw = str(getattr(value, "value", value)).lower()
    try:
        return EnvVarType(raw)
    except ValueError:
        return REMOTE_TYPE_ALIASES.get(raw, EnvVarType.PLAIN)


@dataclass(frozen=True)
class RemoteIdentity:
    """Unsynced | Synced(remote_id) | Failed(reason)"""
    state: SyncState = SyncState.UNSYNCED
    remote_id: Optional[str] = None
    reason: Optional[FailureReason] = None

    @classmethod
    def unsynced(cls) -> "RemoteIdentity":
        return cls()

    @classmethod
    def synced(cls, remote_id: str) -> "RemoteIdentity":
        return cls(SyncState.SYNCED, remote_id)

    @classmethod
    def failed(cls, reason: FailureReason, remote_id: Optional[str] = None) -> "RemoteIdentity":
        # A failed update keeps the id so a later edit can retry it as an update
        return cls(SyncState.FAILED, remote_id, reason)

    @property
    def is_synced(self) -> bool:
        return self.state == SyncState.SYNCED

    @property
    def is_failed(self) -> bool:
        return self.state == SyncState.FAILED

    @classmethod
    def from_record(cls, entry: Dict[str, Any]) -> "RemoteIdentity":
        remote_id = entry.get("remote_id")
        remote_id = str(remote_id).strip() if remote_id is not None else ""
        state = entry.get("sync_state")
        reason = entry.get("failure_reason")

        if remote_id in (FailureReason.FAILED_CREATION.value, FailureReason.FAILED_UPDATE.value):
            return cls.failed(FailureReason(remote_id))
        if remote_id.lower() in LEGACY_EMPTY_IDS:
            remote_id = ""

        if state == SyncState.FAILED.value or reason:
            return cls.failed(FailureReason(reason or FailureReason.FAILED_CREATION.value), remote_id or None)
        if remote_id:
            return cls.synced(remote_id)
        return cls.unsynced()

    def to_record(self) -> Dict[str, Any]:
        return {
            "remote_id": self.remote_id or "",
            "sync_state": self.state.value,
            "failure_reason": self.reason.value if self.reason else None,
        }


@dataclass(frozen=True)
class EnvVarEntry:
    key: str
    value: str = ""
    type: EnvVarType = EnvVarType.ENCRYPTED
    targets: Tuple[str, ...] = ALL_TARGETS
    comment: Optional[str] = None
    git_branch: Optional[str] = None
    identity: RemoteIdentity = field(default_factory=RemoteIdentity.unsynced)

    @classmethod
    def from_record(cls, entry: Dict[str, Any]) -> "EnvVarEntry":
        targets = entry.get("targets") or list(ALL_TARGETS)
        # older records store targets as [{"target": "production"}, ...]
        normalized = [t.get("target") if isinstance(t, dict) else getattr(t, "value", t) for t in targets]
        return cls(
            key=(entry.get("key") or "").strip(),
            value=entry.get("value") or "",
            type=parse_env_var_type(entry.get("type")),
            targets=tuple(t for t in normalized if t),
            comment=entry.get("comment") or None,
            git_branch=entry.get("git_branch") or None,
            identity=RemoteIdentity.from_record(entry),
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "type": self.type.value,
            "targets": list(self.targets),
            "comment": self.comment,
            "git_branch": self.git_branch,
            **self.identity.to_record(),
        }

    def to_remote(self) -> Dict[str, Any]:
        """Body for the remote create/update calls"""
        body: Dict[str, Any] = {
            "key": self.key,
            "value": self.value,
            "type": self.type.value,
            "target": list(self.targets) or list(ALL_TARGETS),
        }
        if self.comment:
            body["comment"] = self.comment
        if self.git_branch:
            body["gitBranch"] = self.git_branch
        return body

    def with_identity(self, identity: RemoteIdentity) -> "EnvVarEntry":
        return replace(self, identity=identity)

    def content_differs(self, other: "EnvVarEntry") -> bool:
        return (
            self.value != other.value
            or self.type != other.type
            or (self.comment or None) != (other.comment or None)
            or (self.git_branch or None) != (other.git_branch or None)
            or sorted(self.targets) != sorted(other.targets)
        )


class EnvVarAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(frozen=True)
class PlannedChange:
    action: EnvVarAction
    entry: EnvVarEntry
    reason: str


@dataclass(frozen=True)
class EnvVarPlan:
    creates: Tuple[PlannedChange, ...] = ()
    updates: Tuple[PlannedChange, ...] = ()
    deletes: Tuple[PlannedChange, ...] = ()
    skips: Tuple[PlannedChange, ...] = ()

    @property
    def has_remote_work(self) -> bool:
        return bool(self.creates or self.updates or self.deletes)

    def action_for(self, key: str) -> Optional[EnvVarAction]:
        for change in self.creates + self.updates + self.skips:
            if change.entry.key == key:
                return change.action
        return None


def entries_from_records(records: Optional[Iterable[Dict[str, Any]]]) -> List[EnvVarEntry]:
    return [EnvVarEntry.from_record(r) for r in (records or [])]


def validate_entries(entries: Sequence[EnvVarEntry]) -> None:
    """
    Raises:
        ValidationError: On empty or duplicate keys, or unknown targets
    """
    seen = set()
    valid_targets = {t.value for t in EnvTarget}
    for entry in entries:
        if not entry.key:
            raise ValidationError("Environment variable key must not be empty", field="key")
        if entry.key in seen:
            raise ValidationError(f"Duplicate environment variable key '{entry.key}'", field="key")
        seen.add(entry.key)
        unknown = [t for t in entry.targets if t not in valid_targets]
        if unknown:
            raise ValidationError(
                f"Unknown target(s) {', '.join(unknown)} for '{entry.key}'",
                field="targets"
            )


def plan_env_var_changes(
    previous: Optional[Sequence[EnvVarEntry]],
    current: Sequence[EnvVarEntry]
) -> EnvVarPlan:
    """
    Classify every entry of the current set against the previous version.

    - unsynced entry -> create
    - synced entry whose remote id belonged to a different key before -> rename,
      created fresh with the identity cleared; the old key is retired by the
      deletion diff
    - synced entry whose content changed -> update
    - synced entry unchanged -> skip
    - failed entry -> skipped until the user edits it; an edited failed create
      is created again, an edited failed update is updated again
    - previous keys missing from the current set and holding a synced id -> delete
    """
    previous = list(previous or [])
    previous_by_key = {e.key: e for e in previous}
    previous_key_by_id = {e.identity.remote_id: e.key for e in previous if e.identity.is_synced}

    creates: List[PlannedChange] = []
    updates: List[PlannedChange] = []
    skips: List[PlannedChange] = []

    for entry in current:
        identity = entry.identity
        before = previous_by_key.get(entry.key)

        if identity.state == SyncState.UNSYNCED:
            creates.append(PlannedChange(EnvVarAction.CREATE, entry, "new"))
            continue

        if identity.is_failed:
            edited = before is not None and entry.content_differs(before)
            if not edited:
                skips.append(PlannedChange(EnvVarAction.SKIP, entry, f"terminal {identity.reason.value}"))
            elif identity.reason == FailureReason.FAILED_UPDATE and identity.remote_id:
                updates.append(PlannedChange(EnvVarAction.UPDATE, entry, "retry after failed update"))
            else:
                creates.append(PlannedChange(EnvVarAction.CREATE, entry.with_identity(RemoteIdentity.unsynced()), "retry after failed creation"))
            continue

        previous_key = previous_key_by_id.get(identity.remote_id)
        if previous_key is not None and previous_key != entry.key:
            creates.append(PlannedChange(EnvVarAction.CREATE, entry.with_identity(RemoteIdentity.unsynced()), f"renamed from {previous_key}"))
        elif before is not None and entry.content_differs(before):
            updates.append(PlannedChange(EnvVarAction.UPDATE, entry, "changed"))
        else:
            skips.append(PlannedChange(EnvVarAction.SKIP, entry, "unchanged"))

    current_keys = {e.key for e in current}
    deletes = tuple(
        PlannedChange(EnvVarAction.DELETE, e, "removed")
        for e in previous
        if e.key not in current_keys and e.identity.is_synced
    )

    return EnvVarPlan(tuple(creates), tuple(updates), deletes, tuple(skips))


def generate_secret(length: int = None) -> str:
    length = length or settings.GENERATED_SECRET_LENGTH
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def well_known_value(key: str, tenant_url: Optional[str]) -> Optional[str]:
    """Value for plain keys that can be derived from the tenant"""
    if key in ("NEXT_PUBLIC_SERVER_URL", "VERCEL_PROJECT_PRODUCTION_URL"):
        return tenant_url
    if key == "NEXT_PUBLIC_PAYLOAD_AUTH_URL":
        return f"{tenant_url.rstrip('/')}/login" if tenant_url else None
    if key == "SMTP_HOST":
        return settings.DEFAULT_SMTP_HOST
    if key == "SMTP_USER":
        return settings.DEFAULT_SMTP_USER
    return None


def synthesize_value(entry: EnvVarEntry, tenant_url: Optional[str]) -> EnvVarEntry:
    """Fill an empty value before the entry is created remotely"""
    if entry.value:
        return entry
    if entry.type == EnvVarType.ENCRYPTED:
        return replace(entry, value=generate_secret())
    if entry.type == EnvVarType.PLAIN:
        value = well_known_value(entry.key, tenant_url)
        if value:
            return replace(entry, value=value)
    return entry
