"""
Profile Engine - Composition Root

Wires settings, logging, error tracking, the HTTP adapters and the engine
components into one ProfileService. The degraded metadata cache and the
token cache are created here, once per process.

Usage:
    async with profile_engine() as service:
        profile = await service.get_profile(identity)
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx
from dotenv import load_dotenv

from clients.identity_provider import ClientCredentialsExchanger, ManagementApiClient
from clients.record_store import RecordStoreClient
from config import Settings, get_settings, validate_environment
from identity.aggregator import ProfileAggregator
from identity.lookup import IdentityLookup, default_strategies
from identity.metadata_sync import DegradedMetadataCache, MetadataSynchronizer
from identity.reference_cache import ReferenceCache
from identity.resolver import DomainRecordResolver
from identity.service import ProfileService
from identity.token_cache import TokenCache
from logging_config import SERVICE_NAME, setup_logging
from sentry_integration import init_sentry, set_tag
from utils.retry import RetryPolicy

ROOT_DIR = Path(__file__).parent

logger = logging.getLogger(__name__)


def configure_observability(settings: Settings) -> bool:
    """
    Configure logging and Sentry.

    Returns:
        True if Sentry was initialized
    """
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.is_production,
        service_name=SERVICE_NAME,
    )
    if not settings.SENTRY_DSN:
        return False
    enabled = init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    if enabled:
        set_tag("service", SERVICE_NAME)
    return enabled


def build_profile_service(
    settings: Settings,
    http: httpx.AsyncClient,
    degraded_cache: Optional[DegradedMetadataCache] = None,
) -> ProfileService:
    """Construct every engine component on top of one shared HTTP client."""
    token_cache = TokenCache(
        ClientCredentialsExchanger(
            http,
            domain=settings.IDP_DOMAIN,
            client_id=settings.IDP_CLIENT_ID,
            client_secret=settings.IDP_CLIENT_SECRET,
            audience=settings.idp_audience,
        ),
        retry_policy=RetryPolicy(max_attempts=settings.TOKEN_RETRY_ATTEMPTS, base_delay_ms=500),
        safety_margin_ms=settings.IDP_TOKEN_SAFETY_MARGIN_SECONDS * 1000,
    )
    provider = ManagementApiClient(
        http,
        domain=settings.IDP_DOMAIN,
        token_source=token_cache.get_token,
        on_unauthorized=token_cache.invalidate,
    )
    store = RecordStoreClient(
        http,
        base_url=settings.record_store_base_url,
        api_key=settings.RECORD_STORE_API_KEY,
        table_ids=settings.table_ids,
        retry_policy=RetryPolicy(
            max_attempts=settings.RECORD_STORE_RETRY_ATTEMPTS,
            base_delay_ms=settings.RECORD_STORE_RETRY_BASE_DELAY_MS,
        ),
    )

    degraded_cache = degraded_cache or DegradedMetadataCache(
        max_entries=settings.DEGRADED_CACHE_MAX_ENTRIES,
        ttl_seconds=settings.DEGRADED_CACHE_TTL_SECONDS,
    )
    synchronizer = MetadataSynchronizer(
        provider,
        degraded_cache,
        retry_policy=RetryPolicy(
            max_attempts=settings.METADATA_RETRY_ATTEMPTS,
            base_delay_ms=settings.METADATA_RETRY_BASE_DELAY_MS,
        ),
        boolean_keys=settings.metadata_boolean_keys_list,
    )
    resolver = DomainRecordResolver(
        store,
        reference_cache=ReferenceCache(
            store,
            ttl_seconds=settings.REFERENCE_CACHE_TTL_SECONDS,
            max_entries=settings.REFERENCE_CACHE_MAX_ENTRIES,
        ),
        major_relevant_aliases=settings.major_relevant_aliases_list,
    )

    return ProfileService(
        lookup=IdentityLookup(provider, default_strategies(settings.IDP_LISTING_PAGE_SIZE)),
        resolver=resolver,
        synchronizer=synchronizer,
        store=store,
        aggregator=ProfileAggregator(),
        minimal_timeout=settings.PROFILE_TIMEOUT_MINIMAL_SECONDS,
        full_timeout=settings.PROFILE_TIMEOUT_FULL_SECONDS,
    )


@asynccontextmanager
async def profile_engine(
    settings: Optional[Settings] = None,
    configure: bool = True,
) -> AsyncIterator[ProfileService]:
    """
    Build the engine for the process lifetime and close its HTTP client on exit.

    Raises:
        RuntimeError: Invalid configuration in production
    """
    load_dotenv(ROOT_DIR / '.env')
    settings = settings or get_settings()
    if configure:
        configure_observability(settings)

    env_status = validate_environment(settings)
    for error in env_status["errors"]:
        logger.error(f"Configuration Error: {error}")
    for warning in env_status["warnings"]:
        logger.warning(f"Configuration Warning: {warning}")
    if not env_status["valid"] and settings.is_production:
        raise RuntimeError("Cannot start in production with invalid configuration")

    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
        logger.info(f"Profile engine started ({settings.ENVIRONMENT})")
        yield build_profile_service(settings, http)

    logger.info("Profile engine stopped")
