"""
Identity Reconciliation - Models

Pydantic models for:
- Session identity (from the authentication handshake)
- Domain entities mapped from raw record-store records
- The resolved domain graph
- The derived Profile and the caller-facing result objects

Caller-facing models serialize to camelCase JSON (model_dump(by_alias=True)).
"""

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from clients.record_store import StoreRecord

from .errors import PartialResolutionFailure
from .schema import (
    ACTIVE_STATUS,
    DEFAULT_CAPACITY,
    DEFAULT_ONBOARDING_STATUS,
    CohortFields,
    ContactFields,
    EducationFields,
    InitiativeFields,
    InstitutionFields,
    ParticipationFields,
    ProgramFields,
    TeamFields,
)


class CamelModel(BaseModel):
    """Base for models serialized to callers."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _text(value: Any) -> str:
    """Normalize a scalar/lookup value to a stripped string ('' when empty)."""
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0] if value else ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _parse_date(value: Any) -> Optional[date]:
    text = _text(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


# ==================== SESSION IDENTITY ====================

class SessionIdentity(CamelModel):
    """
    Identity established by the authentication handshake.

    Read-only to the engine; re-derived on every request.
    """
    subject_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    picture_url: Optional[str] = None
    raw_claims: Dict[str, Any] = Field(default_factory=dict)
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any], metadata_claim: str = "user_metadata") -> "SessionIdentity":
        """Build from OIDC claims (sub, email, name, picture)."""
        return cls(
            subject_id=claims["sub"],
            email=claims.get("email"),
            display_name=claims.get("name"),
            picture_url=claims.get("picture"),
            raw_claims=dict(claims),
            provider_metadata=dict(claims.get(metadata_claim) or {}),
        )

    @property
    def normalized_email(self) -> str:
        return (self.email or "").strip().lower()

    def claim(self, name: str) -> str:
        return _text(self.raw_claims.get(name))


# ==================== DOMAIN ENTITIES ====================

class Contact(BaseModel):
    """Canonical person record in the record store."""
    contact_id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    headshot_url: Optional[str] = None
    education_ids: List[str] = Field(default_factory=list)
    onboarding_status: str = ""
    referral_source: str = ""
    # Values mirrored from the linked Education record by the store
    degree_type_lookup: str = ""
    major_lookup: str = ""
    graduation_year_lookup: str = ""
    graduation_semester_lookup: str = ""
    institution_name_lookup: str = ""

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Contact":
        headshot = record.get(ContactFields.HEADSHOT)
        headshot_url = None
        if isinstance(headshot, list) and headshot and isinstance(headshot[0], dict):
            headshot_url = headshot[0].get("url")
        elif isinstance(headshot, str):
            headshot_url = headshot or None

        return cls(
            contact_id=record.id,
            first_name=_text(record.get(ContactFields.FIRST_NAME)),
            last_name=_text(record.get(ContactFields.LAST_NAME)),
            email=_text(record.get(ContactFields.EMAIL)).lower(),
            headshot_url=headshot_url,
            education_ids=record.ids(ContactFields.EDUCATION),
            onboarding_status=_text(record.get(ContactFields.ONBOARDING)),
            referral_source=_text(record.get(ContactFields.REFERRAL_SOURCE)),
            degree_type_lookup=_text(record.get(ContactFields.DEGREE_TYPE_LOOKUP)),
            major_lookup=_text(record.get(ContactFields.MAJOR_LOOKUP)),
            graduation_year_lookup=_text(record.get(ContactFields.GRADUATION_YEAR_LOOKUP)),
            graduation_semester_lookup=_text(record.get(ContactFields.GRADUATION_SEMESTER_LOOKUP)),
            institution_name_lookup=_text(record.get(ContactFields.INSTITUTION_LOOKUP)),
        )

    @property
    def current_education_id(self) -> Optional[str]:
        return self.education_ids[0] if self.education_ids else None


class Education(BaseModel):
    education_id: str
    contact_id: Optional[str] = None
    institution_id: Optional[str] = None
    institution_name: str = ""
    degree_type: str = ""
    major_id: Optional[str] = None
    major_name: str = ""
    graduation_year: str = ""
    graduation_semester: str = ""

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Education":
        return cls(
            education_id=record.id,
            contact_id=record.first(EducationFields.CONTACT),
            institution_id=record.first(EducationFields.INSTITUTION),
            institution_name=_text(record.get(EducationFields.INSTITUTION_NAME)),
            degree_type=_text(record.get(EducationFields.DEGREE_TYPE)),
            major_id=record.first(EducationFields.MAJOR),
            major_name=_text(record.get(EducationFields.MAJOR_NAME)),
            graduation_year=_text(record.get(EducationFields.GRADUATION_YEAR)),
            graduation_semester=_text(record.get(EducationFields.GRADUATION_SEMESTER)),
        )


def _split_domains(raw: Any) -> List[str]:
    values = raw if isinstance(raw, list) else re.split(r"[,;\s]+", _text(raw) if raw else "")
    domains = []
    for value in values:
        domain = str(value).strip().lower().lstrip("@")
        if domain.startswith("*."):
            domain = domain[2:]
        if domain and domain not in domains:
            domains.append(domain)
    return domains


class Institution(BaseModel):
    institution_id: str
    name: str = ""
    email_domains: List[str] = Field(default_factory=list)
    aliases: List[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Institution":
        aliases_raw = record.get(InstitutionFields.ALIASES)
        if isinstance(aliases_raw, list):
            aliases = [_text(a) for a in aliases_raw if _text(a)]
        else:
            aliases = [a.strip() for a in _text(aliases_raw).split(",") if a.strip()]
        return cls(
            institution_id=record.id,
            name=_text(record.get(InstitutionFields.NAME)),
            email_domains=_split_domains(record.get(InstitutionFields.DOMAIN)),
            aliases=aliases,
        )

    def serves_domain(self, domain: str) -> bool:
        """True when ``domain`` is one of the email domains or a subdomain of one."""
        domain = domain.strip().lower()
        return any(domain == d or domain.endswith("." + d) for d in self.email_domains)

    def matches_alias(self, aliases: List[str]) -> bool:
        """Name/alias substring check (case-insensitive) against configured aliases."""
        names = [self.name.lower()] + [a.lower() for a in self.aliases]
        return any(alias.lower() in n for alias in aliases if alias for n in names if n)


class Program(BaseModel):
    program_id: str
    name: str = ""

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Program":
        return cls(
            program_id=record.id,
            name=_text(record.get(ProgramFields.MAJOR)) or _text(record.get(ProgramFields.NAME)),
        )


class Participation(BaseModel):
    participation_id: str
    contact_id: Optional[str] = None
    team_id: Optional[str] = None
    cohort_id: Optional[str] = None
    initiative_id: Optional[str] = None
    status: str = ACTIVE_STATUS
    capacity_role: str = DEFAULT_CAPACITY

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Participation":
        return cls(
            participation_id=record.id,
            contact_id=record.first(ParticipationFields.CONTACTS),
            team_id=record.first(ParticipationFields.TEAM),
            cohort_id=record.first(ParticipationFields.COHORTS),
            initiative_id=record.first(ParticipationFields.INITIATIVE),
            status=_text(record.get(ParticipationFields.STATUS)) or ACTIVE_STATUS,
            capacity_role=_text(record.get(ParticipationFields.CAPACITY)) or DEFAULT_CAPACITY,
        )

    @property
    def is_active(self) -> bool:
        return self.status.strip().lower() == ACTIVE_STATUS.lower()


class Team(BaseModel):
    team_id: str
    name: str = "Unnamed Team"
    description: str = ""

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Team":
        return cls(
            team_id=record.id,
            name=_text(record.get(TeamFields.NAME)) or _text(record.get(TeamFields.TEAM_NAME)) or "Unnamed Team",
            description=_text(record.get(TeamFields.DESCRIPTION)),
        )


class Cohort(BaseModel):
    cohort_id: str
    name: str = "Unnamed Cohort"
    short_name: str = ""
    status: str = "Unknown"
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    flagged_current: bool = False
    initiative_id: Optional[str] = None
    topic_ids: List[str] = Field(default_factory=list)
    institution_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Cohort":
        return cls(
            cohort_id=record.id,
            name=_text(record.get(CohortFields.NAME)) or "Unnamed Cohort",
            short_name=_text(record.get(CohortFields.SHORT_NAME)),
            status=_text(record.get(CohortFields.STATUS)) or "Unknown",
            start_date=_parse_date(record.get(CohortFields.START_DATE)),
            end_date=_parse_date(record.get(CohortFields.END_DATE)),
            flagged_current=bool(
                record.get(CohortFields.CURRENT_COHORT) is True or record.get(CohortFields.IS_CURRENT) is True
            ),
            initiative_id=record.first(CohortFields.INITIATIVE),
            topic_ids=record.ids(CohortFields.TOPICS),
            institution_ids=record.ids(CohortFields.INSTITUTION),
        )

    def is_current(self, today: Optional[date] = None) -> bool:
        if self.flagged_current:
            return True
        if self.start_date and self.end_date:
            today = today or datetime.now(timezone.utc).date()
            return self.start_date <= today <= self.end_date
        return False


class Initiative(BaseModel):
    initiative_id: str
    name: str = "Untitled Initiative"
    description: str = ""
    participation_type: str = "Individual"

    @classmethod
    def from_record(cls, record: StoreRecord) -> "Initiative":
        return cls(
            initiative_id=record.id,
            name=_text(record.get(InitiativeFields.NAME)) or "Untitled Initiative",
            description=_text(record.get(InitiativeFields.DESCRIPTION)),
            participation_type=_text(record.get(InitiativeFields.PARTICIPATION_TYPE)) or "Individual",
        )

    @property
    def is_team_based(self) -> bool:
        return "team" in self.participation_type.lower()


# ==================== DOMAIN GRAPH ====================

class ResolutionMode(str, Enum):
    FULL = "full"
    MINIMAL = "minimal"


class DomainGraph(BaseModel):
    """
    Everything the resolver could link for one Contact.

    Missing pieces are None/empty; failed sub-fetches are listed in ``failures``.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    mode: ResolutionMode = ResolutionMode.FULL
    contact: Optional[Contact] = None
    education: Optional[Education] = None
    institution: Optional[Institution] = None
    suggested_institution: Optional[Institution] = None
    program: Optional[Program] = None
    major_relevant: bool = False
    participations: List[Participation] = Field(default_factory=list)
    teams: Dict[str, Team] = Field(default_factory=dict)
    cohorts: Dict[str, Cohort] = Field(default_factory=dict)
    initiatives: Dict[str, Initiative] = Field(default_factory=dict)
    available_cohorts: List[Cohort] = Field(default_factory=list)
    failures: List[PartialResolutionFailure] = Field(default_factory=list)

    @property
    def institution_confirmed(self) -> bool:
        return self.institution is not None


# ==================== PROFILE ====================

class FieldSource(str, Enum):
    """Where a profile field's value came from, in precedence order."""
    DOMAIN = "domain"
    METADATA = "metadata"
    CLAIM = "claim"
    DEFAULT = "default"


class InstitutionRef(CamelModel):
    id: Optional[str] = None
    name: str = ""


class TeamSummary(CamelModel):
    id: str
    name: str
    description: str = ""


class CohortSummary(CamelModel):
    id: Optional[str] = None
    name: str
    short_name: str = ""
    status: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_current: bool = False
    initiative_id: Optional[str] = None


class InitiativeSummary(CamelModel):
    id: str
    name: str
    description: str = ""
    participation_type: str = "Individual"


class ParticipationSummary(CamelModel):
    participation_id: str
    status: str
    capacity_role: str
    team: Optional[TeamSummary] = None
    cohort: Optional[CohortSummary] = None
    initiative: Optional[InitiativeSummary] = None
    is_team_participation: bool = False


class Profile(CamelModel):
    """
    Aggregated profile.

    Derived per request from the session identity, provider metadata and
    the domain graph; never persisted or mutated on its own.
    """
    subject_id: str
    email: str = ""
    name: Optional[str] = None
    picture: Optional[str] = None
    contact_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    headshot: Optional[str] = None
    referral_source: str = ""
    onboarding_status: str = DEFAULT_ONBOARDING_STATUS
    onboarding_completed: bool = False

    education_id: Optional[str] = None
    degree_type: str = ""
    major: str = ""
    program_id: Optional[str] = None
    show_major: bool = False
    graduation_year: str = ""
    graduation_semester: str = ""

    institution: InstitutionRef = Field(default_factory=InstitutionRef)
    institution_name: str = ""
    suggested_institution: Optional[InstitutionRef] = None

    participations: List[ParticipationSummary] = Field(default_factory=list)
    available_cohorts: List[CohortSummary] = Field(default_factory=list)

    is_profile_complete: bool = False
    needs_institution_confirm: bool = False
    has_active_participation: bool = False

    mode: ResolutionMode = ResolutionMode.FULL
    field_sources: Dict[str, FieldSource] = Field(default_factory=dict)
    unresolved: List[str] = Field(default_factory=list)
    degraded: bool = False
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ==================== RESULTS ====================

class SyncResult(CamelModel):
    subject_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    persisted: bool = False
    attempts: int = 0
    error: Optional[str] = None


class UpdateProfileResult(CamelModel):
    success: bool
    contact_id: str
    education_id: Optional[str] = None
    metadata_persisted: Optional[bool] = None
    error: Optional[str] = None


class SignupPrefill(CamelModel):
    contact_id: str
    first_name: str = ""
    last_name: str = ""
    onboarding_status: str = DEFAULT_ONBOARDING_STATUS


class IdentityExistence(CamelModel):
    email: str
    exists_in_provider: bool = False
    exists_in_domain_store: bool = False
    domain_record_id: Optional[str] = None
    signup_prefill: Optional[SignupPrefill] = None


class OnboardingResult(CamelModel):
    success: bool
    persisted: bool = False
    completed_at: Optional[str] = None
    error: Optional[str] = None


class OnboardingStatus(CamelModel):
    subject_id: str
    completed: bool = False
    source: str = "session"


class InstitutionLookupResult(CamelModel):
    email: str
    institution: Optional[str] = None
    institution_id: Optional[str] = None
    mismatch: bool = False
