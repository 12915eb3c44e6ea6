"""
Identity Lookup

Resolves a provider-side identity by subject id or by email. The provider's
search index is eventually consistent, so email lookups walk an ordered list
of strategies until one yields a match.

Lookup never raises: every failure is logged and treated as "not found".
"""

import logging
from typing import List, Optional, Sequence

from clients.identity_provider import IdentityProvider, IdentityRecord
from logging_config import mask_email

from .errors import IdentityNotFound

logger = logging.getLogger(__name__)

# Page size for the last-resort listing scan
DEFAULT_LISTING_PAGE_SIZE = 100


def normalize_email(email: Optional[str]) -> str:
    """Lowercase + trim."""
    return (email or "").strip().lower()


def _pick_match(records: List[IdentityRecord], email: str) -> Optional[IdentityRecord]:
    for record in records:
        if record.normalized_email == email:
            return record
    return None


class LookupStrategy:
    """One way of finding an identity by (normalized) email."""

    name = "strategy"

    async def find(self, provider: IdentityProvider, email: str) -> Optional[IdentityRecord]:
        raise NotImplementedError


class SearchIndexStrategy(LookupStrategy):
    """Exact-match query against the provider search index."""

    name = "search-index"

    async def find(self, provider: IdentityProvider, email: str) -> Optional[IdentityRecord]:
        return _pick_match(await provider.search_users_by_email(email), email)


class UsersByEmailStrategy(LookupStrategy):
    """Dedicated users-by-email endpoint; not subject to search index lag."""

    name = "users-by-email"

    async def find(self, provider: IdentityProvider, email: str) -> Optional[IdentityRecord]:
        return _pick_match(await provider.users_by_email(email), email)


class BoundedListingStrategy(LookupStrategy):
    """Single page of the user listing compared client-side. Last resort."""

    name = "bounded-listing"

    def __init__(self, page_size: int = DEFAULT_LISTING_PAGE_SIZE):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.page_size = page_size

    async def find(self, provider: IdentityProvider, email: str) -> Optional[IdentityRecord]:
        return _pick_match(await provider.list_users(self.page_size), email)


def default_strategies(listing_page_size: int = DEFAULT_LISTING_PAGE_SIZE) -> List[LookupStrategy]:
    return [
        SearchIndexStrategy(),
        UsersByEmailStrategy(),
        BoundedListingStrategy(listing_page_size),
    ]


class IdentityLookup:
    """
    Finds provider identities.

    Usage:
        lookup = IdentityLookup(provider)
        record = await lookup.find_identity(email="  User@Example.COM ")
    """

    def __init__(self, provider: IdentityProvider, strategies: Optional[Sequence[LookupStrategy]] = None):
        self.provider = provider
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    async def find_identity(
        self,
        subject_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[IdentityRecord]:
        """
        Find an identity by subject id, falling back to email.

        Args:
            subject_id: Provider subject id (direct by-id fetch)
            email: Email address, any case/whitespace

        Returns:
            IdentityRecord or None when nothing matched (or every call failed)
        """
        if subject_id:
            try:
                record = await self.provider.get_user_by_id(subject_id)
                if record:
                    return record
                logger.info(f"No identity for subject {subject_id}")
            except Exception as e:
                logger.warning(f"By-id identity lookup failed for {subject_id}: {e}")

        normalized = normalize_email(email)
        if not normalized:
            return None
        return await self.find_by_email(normalized)

    async def find_by_email(self, email: str) -> Optional[IdentityRecord]:
        email = normalize_email(email)
        for strategy in self.strategies:
            try:
                record = await strategy.find(self.provider, email)
            except Exception as e:
                logger.warning(f"Identity lookup strategy {strategy.name} failed for {mask_email(email)}: {e}")
                continue
            if record:
                logger.debug(f"Identity for {mask_email(email)} found via {strategy.name}")
                return record

        logger.info(f"No identity found for {mask_email(email)} after {len(self.strategies)} strategies")
        return None

    async def require_identity(
        self,
        subject_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> IdentityRecord:
        """find_identity, raising IdentityNotFound instead of returning None."""
        record = await self.find_identity(subject_id=subject_id, email=email)
        if record is None:
            raise IdentityNotFound(
                "No identity found",
                {"subject_id": subject_id, "email": mask_email(email) if email else None},
            )
        return record
