"""
Identity Reconciliation - Service Layer

Caller-facing operations of the engine:
- Profile fetch (full / minimal) under a deadline
- Profile updates (Contact + Education, create-and-link when missing)
- Identity existence checks for sign-up flows
- Onboarding completion (metadata write with degraded fallback)
- Institution lookup by email domain
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from clients.record_store import RecordStore
from logging_config import mask_email
from sentry_integration import capture_exception

from .aggregator import ProfileAggregator
from .errors import (
    ContactResolutionFailed,
    DomainRecordNotFound,
    InvalidProfileUpdate,
    ProfileFetchTimeout,
    TokenAcquisitionFailed,
)
from .lookup import IdentityLookup, normalize_email
from .metadata_sync import MetadataSynchronizer, coerce_bool
from .models import (
    IdentityExistence,
    InstitutionLookupResult,
    OnboardingResult,
    OnboardingStatus,
    Profile,
    ResolutionMode,
    SessionIdentity,
    SignupPrefill,
    UpdateProfileResult,
)
from .resolver import DomainRecordResolver
from .schema import DEFAULT_ONBOARDING_STATUS, ContactFields, EducationFields, Tables

logger = logging.getLogger(__name__)

DEFAULT_MINIMAL_TIMEOUT_SECONDS = 3.0
DEFAULT_FULL_TIMEOUT_SECONDS = 9.0

# Record ids in the store look like "recXXXXXXXXXXXXXX"
RECORD_ID_PREFIX = "rec"

# Caller patch key -> Contact column
CONTACT_PATCH_FIELDS = {
    "firstName": ContactFields.FIRST_NAME,
    "lastName": ContactFields.LAST_NAME,
    "referralSource": ContactFields.REFERRAL_SOURCE,
}

# Caller patch key -> Education column
EDUCATION_PATCH_FIELDS = {
    "degreeType": EducationFields.DEGREE_TYPE,
    "major": EducationFields.MAJOR,
    "graduationYear": EducationFields.GRADUATION_YEAR,
    "graduationSemester": EducationFields.GRADUATION_SEMESTER,
    "institutionId": EducationFields.INSTITUTION,
}

# Linked-record columns take a list of ids
LINK_PATCH_KEYS = {"major", "institutionId"}

# Patch keys mirrored into provider metadata
METADATA_MIRROR_KEYS = ("firstName", "lastName", "institutionId")


class ProfileService:
    """
    Profile Service - the engine's entry point for callers.

    Usage:
        service = ProfileService(lookup, resolver, synchronizer, store)
        profile = await service.get_profile(identity)
    """

    def __init__(
        self,
        lookup: IdentityLookup,
        resolver: DomainRecordResolver,
        synchronizer: MetadataSynchronizer,
        store: RecordStore,
        aggregator: Optional[ProfileAggregator] = None,
        minimal_timeout: float = DEFAULT_MINIMAL_TIMEOUT_SECONDS,
        full_timeout: float = DEFAULT_FULL_TIMEOUT_SECONDS,
    ):
        self.lookup = lookup
        self.resolver = resolver
        self.synchronizer = synchronizer
        self.store = store
        self.aggregator = aggregator or ProfileAggregator()
        self.minimal_timeout = minimal_timeout
        self.full_timeout = full_timeout

    # ==================== PROFILE ====================

    async def get_profile(self, identity: SessionIdentity, minimal: bool = False) -> Profile:
        """
        Aggregate the caller's Profile.

        Races aggregation against the mode's deadline; on timeout, or when the
        Contact cannot be fetched at all, returns a claims-only Profile
        marked ``degraded``.
        """
        mode = ResolutionMode.MINIMAL if minimal else ResolutionMode.FULL
        timeout = self.minimal_timeout if minimal else self.full_timeout

        try:
            return await asyncio.wait_for(self._build_profile(identity, mode), timeout=timeout)
        except asyncio.TimeoutError:
            error = ProfileFetchTimeout(mode.value, timeout)
            logger.warning(f"{error.message} for {identity.subject_id}; returning claims-only profile")
            return self.aggregator.claims_only_profile(
                identity, unresolved=["timeout"], mode=mode, degraded=True,
                metadata=self.synchronizer.cached_metadata(identity.subject_id, identity.provider_metadata),
            )
        except ContactResolutionFailed as e:
            logger.error(f"Contact resolution failed for {identity.subject_id}: {e}")
            capture_exception(e, subject_id=identity.subject_id, mode=mode.value)
            return self.aggregator.claims_only_profile(
                identity, unresolved=["contact"], mode=mode, degraded=True,
                metadata=self.synchronizer.cached_metadata(identity.subject_id, identity.provider_metadata),
            )

    async def _build_profile(self, identity: SessionIdentity, mode: ResolutionMode) -> Profile:
        contact_hint = identity.provider_metadata.get("contactId")
        metadata, graph = await asyncio.gather(
            self.synchronizer.current_metadata(identity.subject_id, identity.provider_metadata),
            self.resolver.resolve_domain_graph(
                contact_id=contact_hint if isinstance(contact_hint, str) else None,
                email=identity.normalized_email,
                mode=mode,
            ),
        )
        return self.aggregator.aggregate(identity, graph, mode=mode, metadata=metadata)

    # ==================== PROFILE UPDATE ====================

    def _validate_update(self, contact_id: str, patch_fields: Dict[str, Any]):
        if not contact_id:
            raise InvalidProfileUpdate("contactId is required")
        if not isinstance(patch_fields, dict):
            raise InvalidProfileUpdate("patch fields must be an object")

        for key in LINK_PATCH_KEYS:
            value = patch_fields.get(key)
            if value and not str(value).startswith(RECORD_ID_PREFIX):
                raise InvalidProfileUpdate(
                    f"{key} must be a record id, got '{value}'",
                    {"field": key},
                )

    async def update_profile(
        self,
        subject_id: str,
        contact_id: str,
        patch_fields: Dict[str, Any],
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> UpdateProfileResult:
        """
        Patch the Contact and its current Education record.

        An Education record is created and linked when the Contact has none.

        Raises:
            InvalidProfileUpdate: Missing contact id or malformed link values
        """
        self._validate_update(contact_id, patch_fields)

        contact_updates = {
            column: patch_fields[key]
            for key, column in CONTACT_PATCH_FIELDS.items()
            if key in patch_fields
        }
        education_updates = {}
        for key, column in EDUCATION_PATCH_FIELDS.items():
            if key not in patch_fields:
                continue
            value = patch_fields[key]
            if key in LINK_PATCH_KEYS:
                value = [value] if value else []
            elif key == "graduationYear" and value is not None:
                value = str(value).strip()
            education_updates[column] = value

        ignored = set(patch_fields) - set(CONTACT_PATCH_FIELDS) - set(EDUCATION_PATCH_FIELDS)
        if ignored:
            logger.info(f"Ignoring unsupported profile fields: {', '.join(sorted(ignored))}")

        education_id = None
        try:
            contact = await self.resolver.find_contact(contact_id=contact_id)
            if contact is None:
                raise DomainRecordNotFound("Contact", contact_id)

            if contact_updates:
                await self.store.update(Tables.CONTACTS, contact_id, contact_updates)

            education_id = contact.current_education_id
            if education_updates:
                if education_id:
                    await self.store.update(Tables.EDUCATION, education_id, education_updates)
                else:
                    created = await self.store.create(
                        Tables.EDUCATION,
                        {**education_updates, EducationFields.CONTACT: [contact_id]},
                    )
                    education_id = created.id
                    await self.store.update(Tables.CONTACTS, contact_id, {ContactFields.EDUCATION: [education_id]})
                    logger.info(f"Created education {education_id} for contact {contact_id}")
        except Exception as e:
            logger.error(f"Profile update failed for contact {contact_id}: {e}")
            return UpdateProfileResult(success=False, contact_id=contact_id, education_id=education_id, error=str(e))

        metadata_persisted = await self._mirror_metadata(subject_id, patch_fields, session_metadata)
        return UpdateProfileResult(
            success=True,
            contact_id=contact_id,
            education_id=education_id,
            metadata_persisted=metadata_persisted,
        )

    async def _mirror_metadata(
        self,
        subject_id: str,
        patch_fields: Dict[str, Any],
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[bool]:
        mirror = {k: patch_fields[k] for k in METADATA_MIRROR_KEYS if k in patch_fields}
        if not subject_id or not mirror:
            return None
        try:
            result = await self.synchronizer.sync_metadata(subject_id, mirror, session_metadata)
        except TokenAcquisitionFailed as e:
            logger.error(f"Metadata mirror skipped for {subject_id}: {e}")
            capture_exception(e, subject_id=subject_id, operation="update_profile")
            return False
        return result.persisted

    # ==================== SIGN-UP CHECKS ====================

    async def check_identity_exists(self, email: str) -> IdentityExistence:
        """
        Does the email exist in the identity provider and/or the record store?

        Lookup failures degrade to "not found"; this never raises.
        """
        normalized = normalize_email(email)
        result = IdentityExistence(email=normalized)
        if not normalized:
            return result

        identity, contact = await asyncio.gather(
            self.lookup.find_identity(email=normalized),
            self._find_contact_quietly(normalized),
        )
        result.exists_in_provider = identity is not None
        if contact:
            result.exists_in_domain_store = True
            result.domain_record_id = contact.contact_id
            result.signup_prefill = SignupPrefill(
                contact_id=contact.contact_id,
                first_name=contact.first_name,
                last_name=contact.last_name,
                onboarding_status=contact.onboarding_status or DEFAULT_ONBOARDING_STATUS,
            )

        logger.info(
            f"Identity check for {mask_email(normalized)}: provider={result.exists_in_provider} "
            f"store={result.exists_in_domain_store}"
        )
        return result

    async def _find_contact_quietly(self, email: str):
        try:
            return await self.resolver.find_contact(email=email)
        except ContactResolutionFailed as e:
            logger.warning(f"Contact lookup failed for {mask_email(email)}: {e}")
            return None

    # ==================== ONBOARDING ====================

    async def set_onboarding_completed(
        self,
        subject_id: str,
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> OnboardingResult:
        """
        Mark onboarding complete in provider metadata.

        A provider outage is a soft success (persisted=False); a missing
        management token is reported as success=False.
        """
        completed_at = datetime.now(timezone.utc).isoformat()
        try:
            result = await self.synchronizer.sync_metadata(
                subject_id,
                {"onboardingCompleted": True, "onboardingCompletedAt": completed_at},
                session_metadata,
            )
        except TokenAcquisitionFailed as e:
            logger.error(f"Cannot complete onboarding for {subject_id}: {e}")
            capture_exception(e, subject_id=subject_id, operation="set_onboarding_completed")
            return OnboardingResult(success=False, persisted=False, error=e.message)

        return OnboardingResult(
            success=True,
            persisted=result.persisted,
            completed_at=completed_at,
            error=result.error,
        )

    async def get_onboarding_status(
        self,
        subject_id: str,
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> OnboardingStatus:
        metadata, source = await self.synchronizer.read_metadata(subject_id, session_metadata)
        return OnboardingStatus(
            subject_id=subject_id,
            completed=coerce_bool(metadata.get("onboardingCompleted")),
            source=source,
        )

    # ==================== INSTITUTIONS ====================

    async def lookup_institution(
        self,
        email: str,
        user_institution_id: Optional[str] = None,
    ) -> InstitutionLookupResult:
        """
        Suggest an institution from the email domain.

        ``mismatch`` is set when the caller already has a different institution.
        """
        normalized = normalize_email(email)
        result = InstitutionLookupResult(email=normalized)

        try:
            institution = await self.resolver.suggest_institution(normalized)
        except Exception as e:
            logger.warning(f"Institution lookup failed for {mask_email(normalized)}: {e}")
            return result

        if institution:
            result.institution = institution.name
            result.institution_id = institution.institution_id
            result.mismatch = bool(user_institution_id and user_institution_id != institution.institution_id)
        return result
