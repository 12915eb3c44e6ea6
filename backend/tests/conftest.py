"""
Shared fixtures: in-memory record store and identity provider fakes.
"""

import itertools
from typing import Any, Dict, List, Optional

import pytest

from clients.identity_provider import IdentityRecord, ProviderError
from clients.record_store import RecordFilter, StoreRecord
from utils.retry import RetryPolicy


async def no_sleep(_seconds: float):
    return None


class FakeRecordStore:
    """RecordStore over dicts; filters evaluated with FieldFilter.matches."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, StoreRecord]] = {}
        self.calls: List[tuple] = []
        self.errors: Dict[tuple, Exception] = {}
        self._ids = itertools.count(1)

    def add(self, table: str, record_id: str, fields: Dict[str, Any]) -> StoreRecord:
        record = StoreRecord(id=record_id, fields=dict(fields))
        self.tables.setdefault(table, {})[record_id] = record
        return record

    def fail(self, operation: str, table: str, error: Exception, record_id: Optional[str] = None):
        self.errors[(operation, table, record_id)] = error

    def _check(self, operation: str, table: str, record_id: Optional[str] = None):
        for key in ((operation, table, record_id), (operation, table, None)):
            if key in self.errors:
                raise self.errors[key]

    def count(self, operation: str, table: Optional[str] = None) -> int:
        return sum(1 for c in self.calls if c[0] == operation and (table is None or c[1] == table))

    async def find_many(self, table: str, record_filter: RecordFilter, max_records: Optional[int] = None):
        self.calls.append(("find_many", table, record_filter))
        self._check("find_many", table)
        matches = [r for r in self.tables.get(table, {}).values() if record_filter.matches(r.fields)]
        return matches[:max_records] if max_records else matches

    async def find_one(self, table: str, record_filter: RecordFilter):
        self.calls.append(("find_one", table, record_filter))
        self._check("find_one", table)
        matches = [r for r in self.tables.get(table, {}).values() if record_filter.matches(r.fields)]
        return matches[0] if matches else None

    async def get_by_id(self, table: str, record_id: str):
        self.calls.append(("get_by_id", table, record_id))
        self._check("get_by_id", table, record_id)
        return self.tables.get(table, {}).get(record_id)

    async def update(self, table: str, record_id: str, fields: Dict[str, Any]):
        self.calls.append(("update", table, record_id, fields))
        self._check("update", table, record_id)
        record = self.tables.setdefault(table, {}).get(record_id)
        if record is None:
            record = self.add(table, record_id, {})
        record.fields.update(fields)
        return record

    async def create(self, table: str, fields: Dict[str, Any]):
        self.calls.append(("create", table, fields))
        self._check("create", table)
        return self.add(table, f"recNEW{next(self._ids)}", fields)


class FakeIdentityProvider:
    """IdentityProvider over a dict of users."""

    def __init__(self):
        self.users: Dict[str, IdentityRecord] = {}
        self.indexed: set = set()
        self.calls: Dict[str, int] = {}
        self.errors: Dict[str, Exception] = {}
        self.patch_errors: List[Exception] = []

    def add_user(self, user_id: str, email: str, indexed: bool = True, **extra) -> IdentityRecord:
        record = IdentityRecord(user_id=user_id, email=email, **extra)
        self.users[user_id] = record
        if indexed:
            self.indexed.add(user_id)
        return record

    def _enter(self, method: str):
        self.calls[method] = self.calls.get(method, 0) + 1
        if method in self.errors:
            raise self.errors[method]

    def _by_email(self, email: str, ids=None) -> List[IdentityRecord]:
        return [
            u for uid, u in self.users.items()
            if (ids is None or uid in ids) and (u.email or "").lower() == email.lower()
        ]

    async def get_user_by_id(self, user_id: str):
        self._enter("get_user_by_id")
        return self.users.get(user_id)

    async def search_users_by_email(self, email: str):
        self._enter("search_users_by_email")
        return self._by_email(email, self.indexed)

    async def users_by_email(self, email: str):
        self._enter("users_by_email")
        return self._by_email(email)

    async def list_users(self, per_page: int):
        self._enter("list_users")
        return list(self.users.values())[:per_page]

    async def patch_user_metadata(self, user_id: str, metadata: Dict[str, Any]):
        self._enter("patch_user_metadata")
        if self.patch_errors:
            raise self.patch_errors.pop(0)
        record = self.users[user_id]
        record.user_metadata = {**record.user_metadata, **metadata}
        return record


def unavailable(status_code: int = 503) -> ProviderError:
    return ProviderError(f"status {status_code}", status_code=status_code, operation="test")


@pytest.fixture
def store():
    return FakeRecordStore()


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay_ms=500, sleep=no_sleep)
