"""
External service adapters: identity provider and domain record store.
"""

from .identity_provider import (
    ClientCredentialsExchanger,
    IdentityProvider,
    IdentityRecord,
    ManagementApiClient,
    ProviderError,
    TokenGrant,
)
from .record_store import (
    RecordStore,
    RecordStoreClient,
    RecordStoreError,
    StoreRecord,
)

__all__ = [
    'ClientCredentialsExchanger',
    'IdentityProvider',
    'IdentityRecord',
    'ManagementApiClient',
    'ProviderError',
    'TokenGrant',
    'RecordStore',
    'RecordStoreClient',
    'RecordStoreError',
    'StoreRecord',
]
