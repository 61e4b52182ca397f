import logging
from datetime import datetime
from enum import Enum
from typing import Protocol, List, Dict, Any, Optional, Tuple, runtime_checkable

from supabase import create_client, Client

from tenant_sync.core.config import settings
from tenant_sync.core.exceptions import LocalStoreError

logger = logging.getLogger(__name__)

# Marker written alongside updates made by the reconciliation engine itself
SYNC_ORIGIN = "vercel-sync"


class Collection(str, Enum):
    TENANTS = "tenants"
    DEPLOYMENTS = "deployments"
    ENV_VAR_SETS = "env_var_sets"


# A filter value is either a plain value (equality) or an (operator, value)
# tuple with operator one of "eq", "neq", "gte", "lte", "in".
Filters = Dict[str, Any]


def split_filter(value: Any) -> Tuple[str, Any]:
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str):
        return value
    return "eq", value


def origin_fields(sync_origin: bool) -> Dict[str, Any]:
    """Fields that mark (or clear) a write as caused by reconciliation"""
    if sync_origin:
        return {"sync_origin": SYNC_ORIGIN, "sync_origin_at": datetime.utcnow().isoformat()}
    return {"sync_origin": None, "sync_origin_at": None}


def is_sync_origin(record: Optional[Dict[str, Any]]) -> bool:
    return bool(record) and record.get("sync_origin") == SYNC_ORIGIN


@runtime_checkable
class RecordStore(Protocol):
    """CRUD interface over the tenant, deployment and env-var-set collections.

    Sort strings follow the "-field" convention for descending order.
    """

    async def find(
        self,
        collection: Collection,
        filters: Optional[Filters] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        ...

    async def find_by_id(self, collection: Collection, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def count(self, collection: Collection, filters: Optional[Filters] = None) -> int:
        ...

    async def create(self, collection: Collection, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(
        self,
        collection: Collection,
        record_id: str,
        data: Dict[str, Any],
        sync_origin: bool = False
    ) -> Dict[str, Any]:
        """Update a record. sync_origin=True tags the write as caused by reconciliation."""
        ...

    async def delete(self, collection: Collection, record_id: str) -> bool:
        ...

    async def delete_where(self, collection: Collection, filters: Filters) -> int:
        """Delete every matching record and return how many were removed."""
        ...

    async def get_global_setting(self) -> Optional[Dict[str, Any]]:
        """The shared tenant-setting record (fallback credentials)."""
        ...


class SupabaseRecordStore:
    """RecordStore backed by Supabase tables"""

    SETTINGS_TABLE = "tenant_settings"

    def __init__(self, client: Client = None):
        self.client: Client = client or create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_KEY
        )

    def _apply_filters(self, query, filters: Optional[Filters]):
        for field, raw in (filters or {}).items():
            operator, value = split_filter(raw)
            if operator == "eq":
                query = query.is_(field, "null") if value is None else query.eq(field, value)
            elif operator == "neq":
                query = query.neq(field, value)
            elif operator == "gte":
                query = query.gte(field, value)
            elif operator == "lte":
                query = query.lte(field, value)
            elif operator == "in":
                query = query.in_(field, list(value))
            else:
                raise LocalStoreError(f"Unsupported filter operator '{operator}' on {field}", operation="find")
        return query

    def _table_name(self, collection: Collection) -> str:
        return collection.value if isinstance(collection, Collection) else str(collection)

    async def find(
        self,
        collection: Collection,
        filters: Optional[Filters] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        table = self._table_name(collection)
        try:
            query = self._apply_filters(self.client.table(table).select("*"), filters)
            if sort:
                query = query.order(sort.lstrip("-"), desc=sort.startswith("-"))
            if limit:
                query = query.limit(limit)
            response = query.execute()
        except LocalStoreError:
            raise
        except Exception as e:
            raise LocalStoreError(f"Failed to read {table}: {str(e)}", operation="find") from e
        return response.data or []

    async def find_by_id(self, collection: Collection, record_id: str) -> Optional[Dict[str, Any]]:
        records = await self.find(collection, {"id": record_id}, limit=1)
        return records[0] if records else None

    async def count(self, collection: Collection, filters: Optional[Filters] = None) -> int:
        table = self._table_name(collection)
        try:
            query = self._apply_filters(self.client.table(table).select("id", count="exact"), filters)
            response = query.execute()
        except Exception as e:
            raise LocalStoreError(f"Failed to count {table}: {str(e)}", operation="count") from e
        return response.count or 0

    async def create(self, collection: Collection, data: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table_name(collection)
        now = datetime.utcnow().isoformat()
        payload = {"created_at": now, "updated_at": now, **data}
        try:
            response = self.client.table(table).insert(payload).execute()
        except Exception as e:
            raise LocalStoreError(f"Failed to create {table} record: {str(e)}", operation="create") from e
        if not response.data:
            raise LocalStoreError(f"Insert into {table} returned no data", operation="create")
        return response.data[0]

    async def update(
        self,
        collection: Collection,
        record_id: str,
        data: Dict[str, Any],
        sync_origin: bool = False
    ) -> Dict[str, Any]:
        table = self._table_name(collection)
        payload = {**data, **origin_fields(sync_origin), "updated_at": datetime.utcnow().isoformat()}
        try:
            response = self.client.table(table).update(payload).eq("id", record_id).execute()
        except Exception as e:
            raise LocalStoreError(f"Failed to update {table} record {record_id}: {str(e)}", operation="update") from e
        if not response.data:
            raise LocalStoreError(f"{table} record {record_id} not found for update", operation="update")
        return response.data[0]

    async def delete(self, collection: Collection, record_id: str) -> bool:
        table = self._table_name(collection)
        try:
            response = self.client.table(table).delete().eq("id", record_id).execute()
        except Exception as e:
            raise LocalStoreError(f"Failed to delete {table} record {record_id}: {str(e)}", operation="delete") from e
        return bool(response.data)

    async def delete_where(self, collection: Collection, filters: Filters) -> int:
        table = self._table_name(collection)
        if not filters:
            raise LocalStoreError(f"Refusing unfiltered delete on {table}", operation="delete_where")
        try:
            query = self._apply_filters(self.client.table(table).delete(), filters)
            response = query.execute()
        except LocalStoreError:
            raise
        except Exception as e:
            raise LocalStoreError(f"Failed to delete from {table}: {str(e)}", operation="delete_where") from e
        return len(response.data or [])

    async def get_global_setting(self) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.table(self.SETTINGS_TABLE).select("*").limit(1).execute()
        except Exception as e:
            raise LocalStoreError(f"Failed to read tenant settings: {str(e)}", operation="get_global_setting") from e
        return response.data[0] if response.data else None


_record_store: Optional[SupabaseRecordStore] = None


def get_record_store() -> SupabaseRecordStore:
    """Get the process-wide Supabase store, created on first use"""
    global _record_store
    if _record_store is None:
        _record_store = SupabaseRecordStore()
        logger.info("Supabase record store initialized")
    return _record_store
