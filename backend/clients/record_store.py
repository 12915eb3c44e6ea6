"""
Domain Record Store Client

Thin async adapter over the hosted record store's REST API
(Contacts, Education, Institutions, Programs, Participation, Teams,
Cohorts, Initiatives).

The engine talks to the store through the RecordStore protocol and an
abstract filter (FieldFilter / AnyOf). Only this module knows how a filter
is spelled in the store's formula language.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

import httpx

from utils.retry import RetryExhausted, RetryPolicy

logger = logging.getLogger(__name__)

# Pages followed for a single find_many call
MAX_PAGES = 10


# ==================== RECORDS & FILTERS ====================

@dataclass
class StoreRecord:
    """A raw record: id plus a schema-flexible field map."""
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def first(self, name: str) -> Optional[Any]:
        """First element of a list-valued (linked/lookup) field, or the scalar itself."""
        value = self.fields.get(name)
        if isinstance(value, list):
            return value[0] if value else None
        return value

    def ids(self, name: str) -> List[str]:
        """Linked record ids of a field, always as a list."""
        value = self.fields.get(name)
        if value is None:
            return []
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str) and v]
        return [value] if isinstance(value, str) and value else []


class FilterOp(str, Enum):
    EQUALS = "equals"        # case-insensitive equality
    CONTAINS = "contains"    # case-insensitive substring
    HAS_LINK = "has_link"    # linked-record field references an id


def _as_values(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return [str(v) for v in raw if v is not None]
    return [str(raw)]


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: FilterOp
    value: str

    def matches(self, fields: Dict[str, Any]) -> bool:
        values = _as_values(fields.get(self.field))
        needle = self.value.strip().lower()
        if self.op == FilterOp.EQUALS:
            return any(v.strip().lower() == needle for v in values)
        if self.op == FilterOp.CONTAINS:
            return any(needle in v.lower() for v in values)
        return self.value in values


@dataclass(frozen=True)
class AnyOf:
    filters: Tuple[FieldFilter, ...]

    def matches(self, fields: Dict[str, Any]) -> bool:
        return any(f.matches(fields) for f in self.filters)


RecordFilter = Union[FieldFilter, AnyOf]


def equals(field_name: str, value: str) -> FieldFilter:
    return FieldFilter(field_name, FilterOp.EQUALS, value)


def contains(field_name: str, value: str) -> FieldFilter:
    return FieldFilter(field_name, FilterOp.CONTAINS, value)


def has_link(field_name: str, record_id: str) -> FieldFilter:
    return FieldFilter(field_name, FilterOp.HAS_LINK, record_id)


def any_of(*filters: FieldFilter) -> AnyOf:
    return AnyOf(tuple(filters))


# ==================== PROTOCOL ====================

class RecordStore(Protocol):
    """Query interface the engine relies on."""

    async def find_one(self, table: str, record_filter: RecordFilter) -> Optional[StoreRecord]:
        ...

    async def find_many(
        self, table: str, record_filter: RecordFilter, max_records: Optional[int] = None
    ) -> List[StoreRecord]:
        ...

    async def get_by_id(self, table: str, record_id: str) -> Optional[StoreRecord]:
        ...

    async def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> StoreRecord:
        ...

    async def create(self, table: str, fields: Dict[str, Any]) -> StoreRecord:
        ...


class RecordStoreError(Exception):
    """Record store request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, operation: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation

    @property
    def is_transient(self) -> bool:
        # Transport failures carry no status
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


def _rejected_unapplied(error: BaseException) -> bool:
    # Only a rate-limit rejection guarantees a POST was not applied
    return isinstance(error, RecordStoreError) and error.status_code == 429


# ==================== FORMULA TRANSLATION ====================

def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def to_formula(record_filter: RecordFilter) -> str:
    """Translate an abstract filter into the store's formula syntax."""
    if isinstance(record_filter, AnyOf):
        parts = [to_formula(f) for f in record_filter.filters]
        return f"OR({', '.join(parts)})"

    column = "{" + record_filter.field + "}"
    if record_filter.op == FilterOp.EQUALS:
        return f"LOWER(TRIM({column}))={_quote(record_filter.value.strip().lower())}"
    if record_filter.op == FilterOp.CONTAINS:
        return f"SEARCH({_quote(record_filter.value.strip().lower())}, LOWER({column}))"
    return f"FIND({_quote(record_filter.value)}, ARRAYJOIN({column}))"


# ==================== HTTP CLIENT ====================

class RecordStoreClient:
    """
    Record store REST client.

    Rate limits (429), 5xx and transport errors are retried with the
    configured RetryPolicy. A 404 on a by-id fetch is an absence, not an error.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        table_ids: Dict[str, str],
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.table_ids = table_ids
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=5, base_delay_ms=1000)

    def _table_url(self, table: str) -> str:
        table_id = self.table_ids.get(table) or table
        if not table_id:
            raise RecordStoreError(f"Invalid table: {table}")
        return f"{self.base_url}/{table_id}"

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        is_retryable: Optional[Callable[[BaseException], bool]] = None,
        **kwargs,
    ) -> Optional[Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async def attempt() -> Optional[Dict[str, Any]]:
            try:
                response = await self.http.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise RecordStoreError(f"Record store timed out during {operation}", operation=operation) from e
            except httpx.RequestError as e:
                raise RecordStoreError(f"Record store request error during {operation}: {e}", operation=operation) from e

            if response.status_code == 404:
                return None
            if response.status_code >= 400:
                raise RecordStoreError(
                    f"Record store returned {response.status_code} during {operation}: {response.text[:200]}",
                    status_code=response.status_code,
                    operation=operation,
                )
            return response.json()

        try:
            return await self.retry_policy.run(
                attempt, description=f"record store {operation}", is_retryable=is_retryable
            )
        except RetryExhausted as e:
            raise e.last_error

    @staticmethod
    def _to_record(data: Dict[str, Any]) -> StoreRecord:
        return StoreRecord(id=data["id"], fields=data.get("fields") or {})

    async def find_many(
        self, table: str, record_filter: RecordFilter, max_records: Optional[int] = None
    ) -> List[StoreRecord]:
        url = self._table_url(table)
        params: Dict[str, Any] = {"filterByFormula": to_formula(record_filter)}
        if max_records:
            params["maxRecords"] = max_records

        records: List[StoreRecord] = []
        for _ in range(MAX_PAGES):
            data = await self._request("GET", url, f"find {table}", params=params)
            if not data:
                break
            records.extend(self._to_record(r) for r in data.get("records", []))
            offset = data.get("offset")
            if not offset or (max_records and len(records) >= max_records):
                break
            params = {**params, "offset": offset}

        return records[:max_records] if max_records else records

    async def find_one(self, table: str, record_filter: RecordFilter) -> Optional[StoreRecord]:
        records = await self.find_many(table, record_filter, max_records=1)
        return records[0] if records else None

    async def get_by_id(self, table: str, record_id: str) -> Optional[StoreRecord]:
        if not record_id:
            return None
        data = await self._request("GET", f"{self._table_url(table)}/{record_id}", f"get {table}")
        return self._to_record(data) if data else None

    async def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> StoreRecord:
        data = await self._request(
            "PATCH",
            f"{self._table_url(table)}/{record_id}",
            f"update {table}",
            json={"fields": fields, "typecast": True},
        )
        if not data:
            raise RecordStoreError(f"{table} record {record_id} not found", status_code=404, operation="update")
        logger.info(f"Updated {table} record {record_id} ({', '.join(sorted(fields))})")
        return self._to_record(data)

    async def create(self, table: str, fields: Dict[str, Any]) -> StoreRecord:
        data = await self._request(
            "POST",
            self._table_url(table),
            f"create {table}",
            is_retryable=_rejected_unapplied,
            json={"fields": fields, "typecast": True},
        )
        if not data:
            raise RecordStoreError(f"Create on {table} returned no record", operation="create")
        record = self._to_record(data)
        logger.info(f"Created {table} record {record.id}")
        return record
