"""
Identity Reconciliation Module

Merges identity-provider identities with loosely-linked domain records and
keeps provider metadata in sync.

Features:
- Management API token cache (single-flight refresh)
- Identity lookup with ordered fallback strategies
- Domain graph resolution with isolated sub-fetches
- Profile aggregation with one field-precedence function
- Metadata synchronization with a degraded-mode cache
"""

from .aggregator import ProfileAggregator, resolve_field
from .errors import (
    ContactResolutionFailed,
    DomainRecordNotFound,
    IdentityNotFound,
    InvalidProfileUpdate,
    MetadataPersistFailed,
    PartialResolutionFailure,
    ProfileFetchTimeout,
    ReconciliationError,
    TokenAcquisitionFailed,
)
from .lookup import (
    BoundedListingStrategy,
    IdentityLookup,
    LookupStrategy,
    SearchIndexStrategy,
    UsersByEmailStrategy,
)
from .metadata_sync import DegradedMetadataCache, MetadataSynchronizer
from .models import DomainGraph, FieldSource, Profile, ResolutionMode, SessionIdentity
from .reference_cache import ReferenceCache
from .resolver import DomainRecordResolver
from .service import ProfileService
from .token_cache import TokenCache

__all__ = [
    'ProfileAggregator',
    'resolve_field',
    'ContactResolutionFailed',
    'DomainRecordNotFound',
    'IdentityNotFound',
    'InvalidProfileUpdate',
    'MetadataPersistFailed',
    'PartialResolutionFailure',
    'ProfileFetchTimeout',
    'ReconciliationError',
    'TokenAcquisitionFailed',
    'BoundedListingStrategy',
    'IdentityLookup',
    'LookupStrategy',
    'SearchIndexStrategy',
    'UsersByEmailStrategy',
    'DegradedMetadataCache',
    'MetadataSynchronizer',
    'DomainGraph',
    'FieldSource',
    'Profile',
    'ResolutionMode',
    'SessionIdentity',
    'ReferenceCache',
    'DomainRecordResolver',
    'ProfileService',
    'TokenCache',
]
