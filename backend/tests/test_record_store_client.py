"""
Unit Tests for the record store HTTP adapter and filter translation.

Run with: pytest tests/test_record_store_client.py -v
"""

import json

import httpx
import pytest

from clients.record_store import (
    RecordStoreClient,
    RecordStoreError,
    any_of,
    contains,
    equals,
    has_link,
    to_formula,
)
from utils.retry import RetryPolicy

from conftest import no_sleep

BASE_URL = "https://api.airtable.com/v0/appTEST"


def make_client(handler, attempts=3):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RecordStoreClient(
        http,
        base_url=BASE_URL,
        api_key="pat-test",
        table_ids={"CONTACTS": "tblContacts"},
        retry_policy=RetryPolicy(max_attempts=attempts, base_delay_ms=1, sleep=no_sleep),
    )


class TestFormulaTranslation:

    def test_equals_is_case_insensitive(self):
        assert to_formula(equals("Email", " Ana@X.edu ")) == 'LOWER(TRIM({Email}))="ana@x.edu"'

    def test_contains(self):
        assert to_formula(contains("Domain", "stateu.edu")) == 'SEARCH("stateu.edu", LOWER({Domain}))'

    def test_has_link(self):
        assert to_formula(has_link("Contacts", "recC1")) == 'FIND("recC1", ARRAYJOIN({Contacts}))'

    def test_any_of(self):
        formula = to_formula(any_of(equals("A", "x"), equals("B", "y")))
        assert formula == 'OR(LOWER(TRIM({A}))="x", LOWER(TRIM({B}))="y")'

    def test_quotes_are_escaped(self):
        assert to_formula(equals("Email", 'a"b')) == 'LOWER(TRIM({Email}))="a\\"b"'


class TestFilterMatching:

    def test_list_values(self):
        assert has_link("Contacts", "recC1").matches({"Contacts": ["recC0", "recC1"]})
        assert not has_link("Contacts", "recC1").matches({"Contacts": []})

    def test_equals_ignores_case(self):
        assert equals("Email", "ANA@x.edu").matches({"Email": "ana@X.edu"})


class TestRecordStoreClient:

    @pytest.mark.asyncio
    async def test_find_one_sends_formula_and_auth(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = request.url
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"records": [{"id": "recC1", "fields": {"Email": "ana@x.edu"}}]})

        client = make_client(handler)
        record = await client.find_one("CONTACTS", equals("Email", "ana@x.edu"))

        assert record.id == "recC1"
        assert seen["url"].path == "/v0/appTEST/tblContacts"
        assert seen["url"].params["maxRecords"] == "1"
        assert seen["url"].params["filterByFormula"] == 'LOWER(TRIM({Email}))="ana@x.edu"'
        assert seen["auth"] == "Bearer pat-test"

    @pytest.mark.asyncio
    async def test_find_many_follows_offsets(self):
        pages = {
            None: {"records": [{"id": "rec1", "fields": {}}], "offset": "page2"},
            "page2": {"records": [{"id": "rec2", "fields": {}}]},
        }

        def handler(request: httpx.Request):
            return httpx.Response(200, json=pages[request.url.params.get("offset")])

        client = make_client(handler)
        records = await client.find_many("CONTACTS", equals("Email", "x"))

        assert [r.id for r in records] == ["rec1", "rec2"]

    @pytest.mark.asyncio
    async def test_get_by_id_404_is_none(self):
        client = make_client(lambda request: httpx.Response(404, json={"error": "NOT_FOUND"}))

        assert await client.get_by_id("CONTACTS", "recMissing") is None

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        responses = iter([
            httpx.Response(429, json={"error": "RATE_LIMIT"}),
            httpx.Response(200, json={"id": "recC1", "fields": {"First Name": "Ana"}}),
        ])
        client = make_client(lambda request: next(responses))

        record = await client.get_by_id("CONTACTS", "recC1")

        assert record.get("First Name") == "Ana"

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_store_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        client = make_client(handler, attempts=3)

        with pytest.raises(RecordStoreError) as exc_info:
            await client.get_by_id("CONTACTS", "recC1")

        assert exc_info.value.status_code == 503
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422, json={"error": "INVALID_FILTER"})

        client = make_client(handler)

        with pytest.raises(RecordStoreError):
            await client.find_many("CONTACTS", equals("Email", "x"))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_update_sends_typecast_patch(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "recC1", "fields": seen["body"]["fields"]})

        client = make_client(handler)
        record = await client.update("CONTACTS", "recC1", {"First Name": "Ana"})

        assert seen["method"] == "PATCH"
        assert seen["body"] == {"fields": {"First Name": "Ana"}, "typecast": True}
        assert record.get("First Name") == "Ana"

    @pytest.mark.asyncio
    async def test_create_posts_fields(self):
        def handler(request: httpx.Request):
            assert request.method == "POST"
            return httpx.Response(200, json={"id": "recNew", "fields": json.loads(request.content)["fields"]})

        client = make_client(handler)
        record = await client.create("EDUCATION", {"Contact": ["recC1"]})

        assert record.id == "recNew"
        assert record.ids("Contact") == ["recC1"]

    @pytest.mark.asyncio
    async def test_timed_out_create_is_not_replayed(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(request)
            raise httpx.ReadTimeout("no response", request=request)

        client = make_client(handler)

        with pytest.raises(RecordStoreError):
            await client.create("EDUCATION", {"Contact": ["recC1"]})
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_on_create_is_not_replayed(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(request)
            return httpx.Response(502, text="bad gateway")

        client = make_client(handler)

        with pytest.raises(RecordStoreError) as exc_info:
            await client.create("EDUCATION", {"Contact": ["recC1"]})
        assert exc_info.value.status_code == 502
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_create_is_retried(self):
        responses = iter([
            httpx.Response(429, json={"error": "RATE_LIMIT"}),
            httpx.Response(200, json={"id": "recNew", "fields": {}}),
        ])
        client = make_client(lambda request: next(responses))

        record = await client.create("EDUCATION", {"Contact": ["recC1"]})

        assert record.id == "recNew"
