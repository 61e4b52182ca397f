"""
Credential Resolver

Single place that decides which remote platform token (and team id) a tenant's
operations run with. Resolution order:

1. tenant override (token + team id stored on the tenant)
2. the shared tenant-setting record
3. process environment (VERCEL_TOKEN / VERCEL_TEAM_ID)

Each candidate is validated with a cheap read against the tenant's project
when it has one. A successful resolution is cached per tenant; a cache hit
skips validation entirely.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import CredentialError, SyncError, TenantNotFoundError
from tenant_sync.services.database import RecordStore, Collection
from tenant_sync.services.error_classifier import CredentialFailure, classify_credential_failure
from tenant_sync.services.platform import PlatformFactory, RemotePlatform
from tenant_sync.services.ttl_store import CredentialCache, InMemoryCredentialCache
from tenant_sync.services.vercel_client import create_vercel_client

logger = logging.getLogger(__name__)

DEFAULT_CACHE_KEY = "__default__"


class CredentialSource(str, Enum):
    TENANT_OVERRIDE = "tenant-override"
    TENANT_SETTING = "tenant-setting"
    ENVIRONMENT = "environment"


class CredentialValidity(str, Enum):
    VALID = "valid"
    UNVERIFIED = "unverified"  # nothing to validate against yet


@dataclass(frozen=True)
class ResolvedCredential:
    token: str
    team_id: Optional[str]
    source: CredentialSource
    validity: CredentialValidity

    @property
    def masked_token(self) -> str:
        return f"...{self.token[-4:]}" if self.token else "<none>"


@dataclass(frozen=True)
class CredentialAttempt:
    """A candidate that failed validation"""
    source: CredentialSource
    failure: CredentialFailure
    message: str


class CredentialResolver:

    def __init__(
        self,
        store: RecordStore,
        cache: CredentialCache = None,
        platform_factory: PlatformFactory = None,
        cache_ttl: float = None
    ):
        self.store = store
        self.cache = cache if cache is not None else InMemoryCredentialCache()
        self.platform_factory = platform_factory or create_vercel_client
        self.cache_ttl = cache_ttl or settings.CREDENTIAL_CACHE_TTL_SECONDS

    def platform_for(self, credential: ResolvedCredential) -> RemotePlatform:
        return self.platform_factory(credential.token, credential.team_id)

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        """Drop a cached credential, e.g. after the remote rejected it"""
        self.cache.invalidate(tenant_id or DEFAULT_CACHE_KEY)

    async def resolve(self, tenant_id: Optional[str] = None) -> ResolvedCredential:
        """
        Resolve the credential to use for a tenant.

        Args:
            tenant_id: Tenant to resolve for; None returns the process-wide default

        Returns:
            ResolvedCredential with its source and validity

        Raises:
            TenantNotFoundError: If the tenant does not exist
            CredentialError: If no candidate is configured or every candidate
                             failed validation
        """
        cache_key = tenant_id or DEFAULT_CACHE_KEY
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        if tenant_id is None:
            credential = await self._resolve_default()
            self.cache.set(cache_key, credential, self.cache_ttl)
            return credential

        tenant = await self.store.find_by_id(Collection.TENANTS, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id, operation="resolve_credentials")

        project_id = tenant.get("remote_project_id")
        candidates = await self._candidates(tenant)
        if not candidates:
            raise CredentialError(
                "No remote platform token configured (tenant override, tenant settings or VERCEL_TOKEN)",
                tenant_id=tenant_id,
                operation="resolve_credentials",
                classification="missing",
            )

        attempts: List[CredentialAttempt] = []
        for token, team_id, source in candidates:
            if not project_id:
                credential = ResolvedCredential(token, team_id, source, CredentialValidity.UNVERIFIED)
                logger.info(f"Using {source.value} credentials for tenant={tenant_id} without validation (no project yet)")
                self.cache.set(cache_key, credential, self.cache_ttl)
                return credential

            failure = await self._validate(token, team_id, project_id)
            if failure is None:
                credential = ResolvedCredential(token, team_id, source, CredentialValidity.VALID)
                logger.info(f"Resolved {source.value} credentials for tenant={tenant_id} ({credential.masked_token})")
                self.cache.set(cache_key, credential, self.cache_ttl)
                return credential

            logger.warning(f"{source.value} credentials failed validation for tenant={tenant_id}: {failure[0].value}")
            attempts.append(CredentialAttempt(source, failure[0], failure[1]))
            self.cache.invalidate(cache_key)

        last = attempts[-1]
        raise CredentialError(
            f"All credentials failed validation for project {project_id}: "
            + ", ".join(f"{a.source.value}={a.failure.value}" for a in attempts),
            tenant_id=tenant_id,
            operation="resolve_credentials",
            classification=last.failure.value,
            extra={"attempts": [{"source": a.source.value, "failure": a.failure.value, "message": a.message} for a in attempts]},
        )

    async def _resolve_default(self) -> ResolvedCredential:
        setting = await self.store.get_global_setting() or {}
        token = setting.get("vercel_token")
        if self._usable(token):
            return ResolvedCredential(token, setting.get("vercel_team_id"), CredentialSource.TENANT_SETTING, CredentialValidity.UNVERIFIED)
        if self._usable(settings.VERCEL_TOKEN):
            return ResolvedCredential(settings.VERCEL_TOKEN, settings.VERCEL_TEAM_ID, CredentialSource.ENVIRONMENT, CredentialValidity.UNVERIFIED)
        raise CredentialError(
            "No default remote platform token configured",
            operation="resolve_credentials",
            classification="missing",
        )

    async def _candidates(self, tenant) -> List[Tuple[str, Optional[str], CredentialSource]]:
        candidates = []
        override_token = tenant.get("vercel_token_override")
        override_team = tenant.get("vercel_team_id_override")
        if self._usable(override_token) and override_team:
            candidates.append((override_token, override_team, CredentialSource.TENANT_OVERRIDE))

        setting = await self.store.get_global_setting() or {}
        if self._usable(setting.get("vercel_token")):
            candidates.append((setting["vercel_token"], setting.get("vercel_team_id"), CredentialSource.TENANT_SETTING))

        if self._usable(settings.VERCEL_TOKEN):
            candidates.append((settings.VERCEL_TOKEN, settings.VERCEL_TEAM_ID, CredentialSource.ENVIRONMENT))
        return candidates

    @staticmethod
    def _usable(token: Optional[str]) -> bool:
        return bool(token) and len(token) >= settings.MIN_TOKEN_LENGTH

    async def _validate(self, token: str, team_id: Optional[str], project_id: str) -> Optional[Tuple[CredentialFailure, str]]:
        """List one deployment of the project; None means the credential works"""
        platform = self.platform_factory(token, team_id)
        try:
            await platform.list_deployments(project_id, limit=1)
            return None
        except SyncError as e:
            return classify_credential_failure(e), e.message
