"""
Token Cache for the identity provider's administrative API.

Holds a single bearer credential. Refresh is single-flighted: callers that
arrive during a cold-cache exchange await the same in-flight task (and
share its outcome) instead of starting their own.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from clients.identity_provider import CredentialsExchanger
from utils.retry import RetryExhausted, RetryPolicy, is_transient_error

from .errors import TokenAcquisitionFailed

logger = logging.getLogger(__name__)

# Credentials are treated as expired this long before the server TTL ends
SAFETY_MARGIN_MS = 5 * 60 * 1000


@dataclass
class CachedToken:
    token: str
    expires_at_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class TokenCache:
    """
    Caches the management API credential.

    Usage:
        cache = TokenCache(exchanger)
        token = await cache.get_token()
    """

    def __init__(
        self,
        exchanger: CredentialsExchanger,
        retry_policy: Optional[RetryPolicy] = None,
        safety_margin_ms: int = SAFETY_MARGIN_MS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.exchanger = exchanger
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_ms=500)
        self.safety_margin_ms = safety_margin_ms
        self.clock = clock

        self._cached: Optional[CachedToken] = None
        self._inflight: Optional[asyncio.Task] = None
        self.exchange_count = 0

    def _is_valid(self) -> bool:
        return self._cached is not None and self.clock() < self._cached.expires_at_ms

    async def get_token(self) -> str:
        """Return the cached token, refreshing it when missing or expired."""
        if self._is_valid():
            return self._cached.token

        if self._inflight is None:
            self._inflight = asyncio.get_running_loop().create_task(self._refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        else:
            logger.debug("Awaiting in-flight token refresh")

        # Shielded so one cancelled caller does not cancel the shared refresh
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task):
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> str:
        async def exchange():
            self.exchange_count += 1
            return await self.exchanger.exchange_client_credentials()

        try:
            grant = await self.retry_policy.run(
                exchange,
                description="client-credentials exchange",
                is_retryable=is_transient_error,
            )
        except RetryExhausted as e:
            raise TokenAcquisitionFailed(
                f"Token acquisition failed after {e.attempts} attempt(s): {e.last_error}",
                attempts=e.attempts,
                cause=e.last_error,
            ) from e
        except Exception as e:
            raise TokenAcquisitionFailed(f"Token acquisition failed: {e}", attempts=1, cause=e) from e

        now = self.clock()
        ttl_ms = grant.expires_in * 1000
        # Short-lived grants keep at least half their lifetime
        margin_ms = min(self.safety_margin_ms, ttl_ms // 2)
        self._cached = CachedToken(token=grant.access_token, expires_at_ms=now + ttl_ms - margin_ms)
        logger.info(f"Acquired management API token (expires in {grant.expires_in}s)")
        return grant.access_token

    def invalidate(self):
        """Drop the cached credential (e.g. after a 401)."""
        self._cached = None
        logger.info("Management API token cache invalidated")
