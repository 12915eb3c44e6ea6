"""
Identity Provider Client

Async adapters for the identity provider:
- ClientCredentialsExchanger: POST /oauth/token (client-credentials grant)
- ManagementApiClient: administrative user API (/api/v2/users...)

Management calls take their bearer token from an injected token source
(the TokenCache), so the credential is acquired and cached in one place.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class TokenGrant(BaseModel):
    """Result of a client-credentials exchange."""
    access_token: str
    expires_in: int = Field(default=86400, description="Server TTL in seconds")
    token_type: str = "Bearer"


class IdentityRecord(BaseModel):
    """Provider-side user record."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)
    app_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None

    @property
    def normalized_email(self) -> str:
        return (self.email or "").strip().lower()


class ProviderError(Exception):
    """Identity provider request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, operation: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation

    @property
    def is_transient(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


# ==================== PROTOCOLS ====================

class CredentialsExchanger(Protocol):
    async def exchange_client_credentials(self) -> TokenGrant:
        ...


class IdentityProvider(Protocol):
    """Administrative user API the engine relies on."""

    async def get_user_by_id(self, user_id: str) -> Optional[IdentityRecord]:
        ...

    async def search_users_by_email(self, email: str) -> List[IdentityRecord]:
        ...

    async def users_by_email(self, email: str) -> List[IdentityRecord]:
        ...

    async def list_users(self, per_page: int) -> List[IdentityRecord]:
        ...

    async def patch_user_metadata(self, user_id: str, metadata: Dict[str, Any]) -> IdentityRecord:
        ...


def _search_literal(value: str) -> str:
    """Double-quoted search term with quotes and backslashes escaped."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _raise_for_status(response: httpx.Response, operation: str):
    if response.status_code >= 400:
        raise ProviderError(
            f"Identity provider returned {response.status_code} during {operation}: {response.text[:200]}",
            status_code=response.status_code,
            operation=operation,
        )


# ==================== TOKEN ENDPOINT ====================

class ClientCredentialsExchanger:
    """Performs the client-credentials exchange against the provider's token endpoint."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        domain: str,
        client_id: str,
        client_secret: str,
        audience: str,
    ):
        self.http = http
        self.token_url = f"https://{domain}/oauth/token"
        self.client_id = client_id
        self.client_secret = client_secret
        self.audience = audience

    async def exchange_client_credentials(self) -> TokenGrant:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "audience": self.audience,
        }
        try:
            response = await self.http.post(self.token_url, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError("Token exchange timed out", operation="token") from e
        except httpx.RequestError as e:
            raise ProviderError(f"Token exchange request error: {e}", operation="token") from e

        _raise_for_status(response, "token")
        return TokenGrant(**response.json())


# ==================== MANAGEMENT API ====================

class ManagementApiClient:
    """
    Administrative user API client.

    A 401 invalidates the cached credential (via ``on_unauthorized``) and the
    call is re-issued once with a fresh token.
    """

    SEARCH_FIELDS = "user_id,email,email_verified,name,given_name,family_name,picture,user_metadata,created_at"

    def __init__(
        self,
        http: httpx.AsyncClient,
        domain: str,
        token_source: Callable[[], Awaitable[str]],
        on_unauthorized: Optional[Callable[[], None]] = None,
    ):
        self.http = http
        self.api_base = f"https://{domain}/api/v2"
        self.token_source = token_source
        self.on_unauthorized = on_unauthorized

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        for attempt in range(2):
            token = await self.token_source()
            headers = {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
            try:
                response = await self.http.request(method, f"{self.api_base}{path}", headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderError(f"Identity provider timed out during {operation}", operation=operation) from e
            except httpx.RequestError as e:
                raise ProviderError(f"Identity provider request error during {operation}: {e}", operation=operation) from e

            if response.status_code == 401 and attempt == 0 and self.on_unauthorized:
                logger.warning(f"Identity provider rejected credential during {operation}, refreshing token")
                self.on_unauthorized()
                continue
            return response
        return response

    @staticmethod
    def _to_records(data: Any) -> List[IdentityRecord]:
        if isinstance(data, dict):
            data = data.get("users", [])
        return [IdentityRecord(**u) for u in (data or []) if isinstance(u, dict) and u.get("user_id")]

    async def get_user_by_id(self, user_id: str) -> Optional[IdentityRecord]:
        response = await self._request("GET", f"/users/{quote(user_id, safe='')}", "get user")
        if response.status_code == 404:
            return None
        _raise_for_status(response, "get user")
        return IdentityRecord(**response.json())

    async def search_users_by_email(self, email: str) -> List[IdentityRecord]:
        params = {
            "q": f"email:{_search_literal(email)}",
            "search_engine": "v3",
            "fields": self.SEARCH_FIELDS,
            "include_fields": "true",
            "per_page": 100,
        }
        response = await self._request("GET", "/users", "search users", params=params)
        _raise_for_status(response, "search users")
        return self._to_records(response.json())

    async def users_by_email(self, email: str) -> List[IdentityRecord]:
        response = await self._request("GET", "/users-by-email", "users by email", params={"email": email})
        _raise_for_status(response, "users by email")
        return self._to_records(response.json())

    async def list_users(self, per_page: int) -> List[IdentityRecord]:
        params = {
            "per_page": per_page,
            "page": 0,
            "fields": self.SEARCH_FIELDS,
            "include_fields": "true",
        }
        response = await self._request("GET", "/users", "list users", params=params)
        _raise_for_status(response, "list users")
        return self._to_records(response.json())

    async def patch_user_metadata(self, user_id: str, metadata: Dict[str, Any]) -> IdentityRecord:
        response = await self._request(
            "PATCH", f"/users/{quote(user_id, safe='')}", "patch user metadata", json={"user_metadata": metadata}
        )
        _raise_for_status(response, "patch user metadata")
        return IdentityRecord(**response.json())
