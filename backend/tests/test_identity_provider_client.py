"""
Unit Tests for the identity provider HTTP adapters.

Run with: pytest tests/test_identity_provider_client.py -v
"""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from clients.identity_provider import ClientCredentialsExchanger, ManagementApiClient, ProviderError

DOMAIN = "tenant.example.com"


def make_http(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestClientCredentialsExchanger:

    @pytest.mark.asyncio
    async def test_exchange_posts_client_credentials(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 86400, "token_type": "Bearer"})

        exchanger = ClientCredentialsExchanger(
            make_http(handler), DOMAIN, "cid", "secret", f"https://{DOMAIN}/api/v2/"
        )
        grant = await exchanger.exchange_client_credentials()

        assert grant.access_token == "tok"
        assert grant.expires_in == 86400
        assert seen["url"] == f"https://{DOMAIN}/oauth/token"
        assert seen["body"]["grant_type"] == "client_credentials"
        assert seen["body"]["audience"] == f"https://{DOMAIN}/api/v2/"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        exchanger = ClientCredentialsExchanger(
            make_http(lambda request: httpx.Response(503)), DOMAIN, "cid", "secret", "aud"
        )

        with pytest.raises(ProviderError) as exc_info:
            await exchanger.exchange_client_credentials()

        assert exc_info.value.is_transient is True

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        exchanger = ClientCredentialsExchanger(make_http(handler), DOMAIN, "cid", "secret", "aud")

        with pytest.raises(ProviderError) as exc_info:
            await exchanger.exchange_client_credentials()

        assert exc_info.value.status_code is None
        assert exc_info.value.is_transient is True


class TestManagementApiClient:

    @pytest.fixture
    def token_source(self):
        return AsyncMock(return_value="tok")

    @pytest.mark.asyncio
    async def test_get_user_by_id(self, token_source):
        def handler(request: httpx.Request):
            assert request.headers["Authorization"] == "Bearer tok"
            assert request.url.raw_path == b"/api/v2/users/auth0%7C1"
            return httpx.Response(200, json={"user_id": "auth0|1", "email": "a@b.com", "user_metadata": {"x": 1}})

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)
        record = await client.get_user_by_id("auth0|1")

        assert record.email == "a@b.com"
        assert record.user_metadata == {"x": 1}

    @pytest.mark.asyncio
    async def test_missing_user_is_none(self, token_source):
        client = ManagementApiClient(make_http(lambda r: httpx.Response(404)), DOMAIN, token_source)

        assert await client.get_user_by_id("auth0|missing") is None

    @pytest.mark.asyncio
    async def test_search_uses_exact_email_query(self, token_source):
        seen = {}

        def handler(request: httpx.Request):
            seen["params"] = request.url.params
            return httpx.Response(200, json=[{"user_id": "auth0|1", "email": "a@b.com"}])

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)
        records = await client.search_users_by_email("a@b.com")

        assert [r.user_id for r in records] == ["auth0|1"]
        assert seen["params"]["q"] == 'email:"a@b.com"'
        assert seen["params"]["search_engine"] == "v3"

    @pytest.mark.asyncio
    async def test_search_escapes_quotes_in_email(self, token_source):
        seen = {}

        def handler(request: httpx.Request):
            seen["q"] = request.url.params["q"]
            return httpx.Response(200, json=[])

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)
        await client.search_users_by_email('a" OR user_id:"x@b.com')

        assert seen["q"] == 'email:"a\\" OR user_id:\\"x@b.com"'

    @pytest.mark.asyncio
    async def test_patch_encodes_user_id_in_path(self, token_source):
        seen = {}

        def handler(request: httpx.Request):
            seen["raw_path"] = request.url.raw_path
            return httpx.Response(200, json={"user_id": "auth0|1/x"})

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)
        await client.patch_user_metadata("auth0|1/x", {"step": 1})

        assert seen["raw_path"] == b"/api/v2/users/auth0%7C1%2Fx"

    @pytest.mark.asyncio
    async def test_users_by_email_endpoint(self, token_source):
        def handler(request: httpx.Request):
            assert request.url.path == "/api/v2/users-by-email"
            return httpx.Response(200, json=[{"user_id": "auth0|2", "email": "c@d.com"}])

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)

        assert (await client.users_by_email("c@d.com"))[0].user_id == "auth0|2"

    @pytest.mark.asyncio
    async def test_list_users_is_one_bounded_page(self, token_source):
        seen = {}

        def handler(request: httpx.Request):
            seen["params"] = request.url.params
            return httpx.Response(200, json=[])

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)
        await client.list_users(per_page=50)

        assert seen["params"]["per_page"] == "50"
        assert seen["params"]["page"] == "0"

    @pytest.mark.asyncio
    async def test_patch_user_metadata(self, token_source):
        def handler(request: httpx.Request):
            assert request.method == "PATCH"
            body = json.loads(request.content)
            return httpx.Response(200, json={"user_id": "auth0|1", "user_metadata": body["user_metadata"]})

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source)
        record = await client.patch_user_metadata("auth0|1", {"onboardingCompleted": True})

        assert record.user_metadata == {"onboardingCompleted": True}

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_token_once(self):
        token_source = AsyncMock(side_effect=["stale", "fresh"])
        on_unauthorized = MagicMock()

        def handler(request: httpx.Request):
            if request.headers["Authorization"] == "Bearer stale":
                return httpx.Response(401)
            return httpx.Response(200, json={"user_id": "auth0|1"})

        client = ManagementApiClient(make_http(handler), DOMAIN, token_source, on_unauthorized=on_unauthorized)
        record = await client.get_user_by_id("auth0|1")

        assert record.user_id == "auth0|1"
        on_unauthorized.assert_called_once()
        assert token_source.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_raises_transient_error(self, token_source):
        client = ManagementApiClient(make_http(lambda r: httpx.Response(429)), DOMAIN, token_source)

        with pytest.raises(ProviderError) as exc_info:
            await client.users_by_email("a@b.com")

        assert exc_info.value.status_code == 429
        assert exc_info.value.is_transient is True
