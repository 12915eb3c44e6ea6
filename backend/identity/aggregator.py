"""
Profile Aggregator

Merges the session identity, provider metadata and the domain graph into a
Profile. Every precedence field goes through ``resolve_field``:

    domain record value > provider metadata value > session claim > default

and the winning source is reported in ``Profile.field_sources``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .metadata_sync import coerce_bool
from .models import (
    Cohort,
    CohortSummary,
    DomainGraph,
    FieldSource,
    InitiativeSummary,
    Institution,
    InstitutionRef,
    ParticipationSummary,
    Profile,
    ResolutionMode,
    SessionIdentity,
    TeamSummary,
)
from .schema import APPLIED_STATUS, DEFAULT_ONBOARDING_STATUS

logger = logging.getLogger(__name__)

# Profile field -> provider metadata key
METADATA_KEYS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "degree_type": "degreeType",
    "major": "major",
    "graduation_year": "graduationYear",
    "graduation_semester": "graduationSemester",
    "institution_name": "institutionName",
    "institution_id": "institutionId",
    "referral_source": "referralSource",
    "headshot": "headshot",
}


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def resolve_field(
    domain: Any = None,
    metadata: Any = None,
    claim: Any = None,
    default: Any = "",
) -> Tuple[Any, FieldSource]:
    """
    Pick the first present value in precedence order.

    Returns:
        (value, source); (default, FieldSource.DEFAULT) when nothing is present
    """
    for source, value in (
        (FieldSource.DOMAIN, domain),
        (FieldSource.METADATA, metadata),
        (FieldSource.CLAIM, claim),
    ):
        if _present(value):
            return (value.strip() if isinstance(value, str) else value), source
    return default, FieldSource.DEFAULT


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _name_parts(identity: SessionIdentity) -> Tuple[str, str]:
    """given/family name claims, else a split of the display name."""
    given = identity.claim("given_name")
    family = identity.claim("family_name")
    if given or family:
        return given, family
    parts = (identity.display_name or "").strip().split(" ", 1)
    if not parts[0] or "@" in parts[0]:
        return "", ""
    return parts[0], parts[1] if len(parts) > 1 else ""


def _institution_ref(institution: Optional[Institution]) -> Optional[InstitutionRef]:
    if institution is None:
        return None
    return InstitutionRef(id=institution.institution_id, name=institution.name)


def _cohort_summary(cohort: Cohort, today) -> CohortSummary:
    return CohortSummary(
        id=cohort.cohort_id,
        name=cohort.name,
        short_name=cohort.short_name,
        status=cohort.status,
        start_date=cohort.start_date,
        end_date=cohort.end_date,
        is_current=cohort.is_current(today),
        initiative_id=cohort.initiative_id,
    )


class ProfileAggregator:
    """
    Builds Profiles. Never raises for missing optional data.

    Usage:
        profile = ProfileAggregator().aggregate(identity, graph, metadata=metadata)
    """

    def __init__(self, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.now = now

    def aggregate(
        self,
        identity: SessionIdentity,
        graph: DomainGraph,
        mode: ResolutionMode = ResolutionMode.FULL,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Profile:
        """
        Aggregate one Profile.

        Args:
            identity: Session identity (claims)
            graph: Resolved domain graph
            mode: FULL computes every derived flag; MINIMAL returns a reduced
                Profile with completeness flags left False
            metadata: Provider metadata (degraded-cache overlay applied);
                defaults to the session's provider metadata
        """
        metadata = identity.provider_metadata if metadata is None else metadata
        mode = ResolutionMode(mode)

        if graph.contact is None:
            return self.claims_only_profile(identity, metadata, unresolved=["contact"], mode=mode)

        if mode == ResolutionMode.MINIMAL:
            return self._minimal_profile(identity, graph, metadata)
        return self._full_profile(identity, graph, metadata)

    # ==================== CLAIMS ONLY ====================

    def claims_only_profile(
        self,
        identity: SessionIdentity,
        metadata: Optional[Dict[str, Any]] = None,
        unresolved: Optional[List[str]] = None,
        mode: ResolutionMode = ResolutionMode.FULL,
        degraded: bool = False,
    ) -> Profile:
        """Reduced Profile built solely from the session identity."""
        metadata = identity.provider_metadata if metadata is None else metadata
        given, family = _name_parts(identity)
        sources: Dict[str, FieldSource] = {}

        first_name, sources["firstName"] = resolve_field(
            metadata=metadata.get(METADATA_KEYS["first_name"]), claim=given
        )
        last_name, sources["lastName"] = resolve_field(
            metadata=metadata.get(METADATA_KEYS["last_name"]), claim=family
        )

        return Profile(
            subject_id=identity.subject_id,
            email=identity.normalized_email,
            name=identity.display_name,
            picture=identity.picture_url,
            first_name=first_name,
            last_name=last_name,
            headshot=identity.picture_url,
            onboarding_completed=coerce_bool(metadata.get("onboardingCompleted")),
            mode=mode,
            field_sources=sources,
            unresolved=unresolved or [],
            degraded=degraded,
            last_updated=self.now(),
        )

    # ==================== MINIMAL ====================

    def _minimal_profile(self, identity: SessionIdentity, graph: DomainGraph, metadata: Dict[str, Any]) -> Profile:
        contact = graph.contact
        given, family = _name_parts(identity)
        sources: Dict[str, FieldSource] = {}

        first_name, sources["firstName"] = resolve_field(
            contact.first_name, metadata.get(METADATA_KEYS["first_name"]), given
        )
        last_name, sources["lastName"] = resolve_field(
            contact.last_name, metadata.get(METADATA_KEYS["last_name"]), family
        )

        has_active = any(p.is_active for p in graph.participations)
        suggested = _institution_ref(graph.suggested_institution)

        return Profile(
            subject_id=identity.subject_id,
            email=identity.normalized_email or contact.email,
            name=identity.display_name,
            picture=identity.picture_url,
            contact_id=contact.contact_id,
            first_name=first_name,
            last_name=last_name,
            onboarding_status=self._onboarding_status(contact.onboarding_status, has_active),
            onboarding_completed=coerce_bool(metadata.get("onboardingCompleted")),
            education_id=contact.current_education_id,
            institution=suggested or InstitutionRef(),
            institution_name=suggested.name if suggested else "",
            suggested_institution=suggested,
            participations=[
                ParticipationSummary(
                    participation_id=p.participation_id,
                    status=p.status,
                    capacity_role=p.capacity_role,
                    is_team_participation=p.team_id is not None,
                )
                for p in graph.participations
            ],
            has_active_participation=has_active,
            mode=ResolutionMode.MINIMAL,
            field_sources=sources,
            unresolved=sorted({f.entity_type for f in graph.failures}),
            last_updated=self.now(),
        )

    # ==================== FULL ====================

    def _full_profile(self, identity: SessionIdentity, graph: DomainGraph, metadata: Dict[str, Any]) -> Profile:
        contact = graph.contact
        education = graph.education
        given, family = _name_parts(identity)
        today = self.now().date()
        sources: Dict[str, FieldSource] = {}

        def md(field_name: str) -> Any:
            return metadata.get(METADATA_KEYS[field_name])

        first_name, sources["firstName"] = resolve_field(contact.first_name, md("first_name"), given)
        last_name, sources["lastName"] = resolve_field(contact.last_name, md("last_name"), family)

        degree_type, sources["degreeType"] = resolve_field(
            (education.degree_type if education else "") or contact.degree_type_lookup,
            md("degree_type"),
        )
        graduation_year, sources["graduationYear"] = resolve_field(
            (education.graduation_year if education else "") or contact.graduation_year_lookup,
            _as_text(md("graduation_year")),
        )
        graduation_semester, sources["graduationSemester"] = resolve_field(
            (education.graduation_semester if education else "") or contact.graduation_semester_lookup,
            md("graduation_semester"),
        )
        referral_source, sources["referralSource"] = resolve_field(contact.referral_source, md("referral_source"))
        headshot, sources["headshot"] = resolve_field(contact.headshot_url, md("headshot"), identity.picture_url, None)

        # Major: blanked unless the institution is major-relevant
        major, program_id = "", None
        if graph.major_relevant:
            domain_major = (
                (graph.program.name if graph.program else "")
                or (education.major_name if education else "")
                or contact.major_lookup
            )
            major, sources["major"] = resolve_field(domain_major, md("major"))
            program_id = graph.program.program_id if graph.program else (education.major_id if education else None)

        # Institution: confirmed link, then the education's mirrored name, then the heuristic
        linked_institution_id = education.institution_id if education else None
        domain_id, domain_name = None, ""
        if graph.institution:
            domain_id, domain_name = graph.institution.institution_id, graph.institution.name
        elif education and (education.institution_name or linked_institution_id):
            domain_id, domain_name = linked_institution_id, education.institution_name
        elif graph.suggested_institution:
            domain_id, domain_name = (
                graph.suggested_institution.institution_id,
                graph.suggested_institution.name,
            )

        institution_name, sources["institution"] = resolve_field(domain_name, md("institution_name"))
        if sources["institution"] == FieldSource.DOMAIN:
            institution_id = domain_id
        elif sources["institution"] == FieldSource.METADATA:
            institution_id = _as_text(md("institution_id")) or None
        else:
            institution_id = None

        confirmed_id = graph.institution.institution_id if graph.institution else linked_institution_id
        confirmed_name = graph.institution.name if graph.institution else (education.institution_name if education else "")

        participations = self._participation_summaries(graph, today)
        has_active = any(p.is_active for p in graph.participations)

        needs_confirm = bool(
            graph.institution is None
            and not linked_institution_id
            and graph.suggested_institution is not None
        )

        required = [first_name, last_name, degree_type, graduation_year, confirmed_name, confirmed_id]
        if graph.major_relevant:
            required.append(major)
        is_complete = all(_present(v) for v in required)

        return Profile(
            subject_id=identity.subject_id,
            email=identity.normalized_email or contact.email,
            name=identity.display_name,
            picture=identity.picture_url,
            contact_id=contact.contact_id,
            first_name=first_name,
            last_name=last_name,
            headshot=headshot,
            referral_source=referral_source,
            onboarding_status=self._onboarding_status(contact.onboarding_status, has_active),
            onboarding_completed=coerce_bool(metadata.get("onboardingCompleted")),
            education_id=education.education_id if education else contact.current_education_id,
            degree_type=degree_type,
            major=major,
            program_id=program_id,
            show_major=graph.major_relevant,
            graduation_year=_as_text(graduation_year),
            graduation_semester=graduation_semester,
            institution=InstitutionRef(id=institution_id, name=institution_name),
            institution_name=institution_name,
            suggested_institution=None if graph.institution else _institution_ref(graph.suggested_institution),
            participations=participations,
            available_cohorts=[_cohort_summary(c, today) for c in graph.available_cohorts],
            is_profile_complete=is_complete,
            needs_institution_confirm=needs_confirm,
            has_active_participation=has_active,
            mode=ResolutionMode.FULL,
            field_sources=sources,
            unresolved=sorted({f.entity_type for f in graph.failures}),
            last_updated=self.now(),
        )

    @staticmethod
    def _onboarding_status(stored: str, has_active_participation: bool) -> str:
        if stored:
            return stored
        return APPLIED_STATUS if has_active_participation else DEFAULT_ONBOARDING_STATUS

    def _participation_summaries(self, graph: DomainGraph, today) -> List[ParticipationSummary]:
        summaries = []
        for participation in graph.participations:
            team = graph.teams.get(participation.team_id) if participation.team_id else None
            cohort = graph.cohorts.get(participation.cohort_id) if participation.cohort_id else None
            initiative_id = participation.initiative_id or (cohort.initiative_id if cohort else None)
            initiative = graph.initiatives.get(initiative_id) if initiative_id else None

            summaries.append(ParticipationSummary(
                participation_id=participation.participation_id,
                status=participation.status,
                capacity_role=participation.capacity_role,
                team=TeamSummary(id=team.team_id, name=team.name, description=team.description) if team else None,
                cohort=_cohort_summary(cohort, today) if cohort else None,
                initiative=InitiativeSummary(
                    id=initiative.initiative_id,
                    name=initiative.name,
                    description=initiative.description,
                    participation_type=initiative.participation_type,
                ) if initiative else None,
                is_team_participation=bool(team) or bool(initiative and initiative.is_team_based),
            ))
        return summaries
