"""
Domain Record Resolver

Fetches and links the domain entities around one Contact:

    Contact ─┬─ Education ─ Institution ─ Program (major-relevant only)
             │      └─ (no linkage) email-domain heuristic → suggested Institution
             └─ Participation ─┬─ Team
                               ├─ Cohort ─ Initiative
                               └─ Initiative

Branches run concurrently. Each optional sub-fetch is isolated: an error
yields None for that piece, is logged, and is recorded on the graph.
"""

import asyncio
import logging
from typing import Awaitable, List, Optional, Sequence, TypeVar

from clients.record_store import RecordStore, contains, equals, has_link
from logging_config import mask_email

from .errors import ContactResolutionFailed, PartialResolutionFailure
from .models import (
    Cohort,
    Contact,
    DomainGraph,
    Education,
    Initiative,
    Institution,
    Participation,
    Program,
    ResolutionMode,
    Team,
)
from .reference_cache import ReferenceCache
from .schema import (
    CohortFields,
    ContactFields,
    InstitutionFields,
    ParticipationFields,
    Tables,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAJOR_RELEVANT_ALIASES = ["University of Maryland", "UMD", "Maryland"]


def email_domain(email: Optional[str]) -> str:
    email = (email or "").strip().lower()
    if "@" not in email:
        return ""
    return email.rsplit("@", 1)[1]


def _unique(ids: Sequence[Optional[str]]) -> List[str]:
    seen = []
    for record_id in ids:
        if record_id and record_id not in seen:
            seen.append(record_id)
    return seen


class DomainRecordResolver:
    """
    Resolves a DomainGraph from the record store.

    Usage:
        resolver = DomainRecordResolver(store)
        graph = await resolver.resolve_domain_graph(email="ana@stateu.edu")
    """

    def __init__(
        self,
        store: RecordStore,
        reference_cache: Optional[ReferenceCache] = None,
        major_relevant_aliases: Optional[Sequence[str]] = None,
    ):
        self.store = store
        self.reference_cache = reference_cache or ReferenceCache(store)
        self.major_relevant_aliases = list(
            major_relevant_aliases if major_relevant_aliases is not None else DEFAULT_MAJOR_RELEVANT_ALIASES
        )

    # ==================== CONTACT ====================

    async def find_contact(self, contact_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Contact]:
        """
        Fetch the anchor Contact by id, else by case-insensitive email.

        Returns None when absent. Raises ContactResolutionFailed when the
        store itself fails.
        """
        try:
            if contact_id:
                record = await self.store.get_by_id(Tables.CONTACTS, contact_id)
                if record:
                    return Contact.from_record(record)
            normalized = (email or "").strip().lower()
            if normalized:
                record = await self.store.find_one(Tables.CONTACTS, equals(ContactFields.EMAIL, normalized))
                if record:
                    return Contact.from_record(record)
        except Exception as e:
            raise ContactResolutionFailed(f"Contact lookup failed: {e}", cause=e) from e

        logger.info(f"No contact for id={contact_id} email={mask_email(email)}")
        return None

    # ==================== GRAPH ====================

    async def resolve_domain_graph(
        self,
        contact_id: Optional[str] = None,
        email: Optional[str] = None,
        mode: ResolutionMode = ResolutionMode.FULL,
    ) -> DomainGraph:
        """
        Resolve the domain graph for a Contact.

        Args:
            contact_id: Contact record id (preferred)
            email: Email used for the Contact lookup and the domain heuristic
            mode: FULL resolves everything; MINIMAL resolves Contact,
                Participation records and the email-domain heuristic only

        Returns:
            DomainGraph (contact is None when no Contact exists)

        Raises:
            ContactResolutionFailed: The Contact fetch itself errored
        """
        graph = DomainGraph(mode=mode)
        graph.contact = await self.find_contact(contact_id=contact_id, email=email)
        if graph.contact is None:
            return graph

        lookup_email = email or graph.contact.email

        if mode == ResolutionMode.MINIMAL:
            await asyncio.gather(
                self._resolve_participation_branch(graph, with_details=False),
                self._resolve_suggested_institution(graph, lookup_email),
            )
            return graph

        await asyncio.gather(
            self._resolve_education_branch(graph, lookup_email),
            self._resolve_participation_branch(graph, with_details=True),
        )

        if graph.failures:
            logger.warning(
                f"Domain graph for contact {graph.contact.contact_id} resolved with "
                f"{len(graph.failures)} partial failure(s)"
            )
        return graph

    async def _isolated(
        self,
        graph: DomainGraph,
        entity_type: str,
        record_id: Optional[str],
        fetch: Awaitable[T],
    ) -> Optional[T]:
        try:
            return await fetch
        except Exception as e:
            failure = PartialResolutionFailure(entity_type, record_id, e)
            logger.warning(failure.message)
            graph.failures.append(failure)
            return None

    # ==================== EDUCATION BRANCH ====================

    async def _resolve_education_branch(self, graph: DomainGraph, email: Optional[str]):
        contact = graph.contact
        education_id = contact.current_education_id

        if education_id:
            record = await self._isolated(
                graph, "Education", education_id, self.store.get_by_id(Tables.EDUCATION, education_id)
            )
            if record:
                graph.education = Education.from_record(record)

        education = graph.education
        if education and education.institution_id:
            record = await self._isolated(
                graph,
                "Institution",
                education.institution_id,
                self.reference_cache.get_by_id(Tables.INSTITUTIONS, education.institution_id),
            )
            if record:
                graph.institution = Institution.from_record(record)
        else:
            await self._resolve_suggested_institution(graph, email)

        graph.major_relevant = self.is_major_relevant(
            graph.institution or graph.suggested_institution,
            education.institution_name if education else contact.institution_name_lookup,
        )

        pending = []
        if graph.major_relevant and education and education.major_id:
            pending.append(self._resolve_program(graph, education.major_id))

        institution = graph.institution or graph.suggested_institution
        if institution:
            pending.append(self._resolve_available_cohorts(graph, institution.institution_id))

        if pending:
            await asyncio.gather(*pending)

    async def _resolve_suggested_institution(self, graph: DomainGraph, email: Optional[str]):
        graph.suggested_institution = await self._isolated(
            graph, "Institution", None, self.suggest_institution(email)
        )

    async def _resolve_program(self, graph: DomainGraph, program_id: str):
        record = await self._isolated(
            graph, "Program", program_id, self.reference_cache.get_by_id(Tables.PROGRAMS, program_id)
        )
        if record:
            graph.program = Program.from_record(record)

    async def _resolve_available_cohorts(self, graph: DomainGraph, institution_id: str):
        records = await self._isolated(
            graph,
            "Cohort",
            None,
            self.store.find_many(Tables.COHORTS, has_link(CohortFields.INSTITUTION, institution_id)),
        )
        graph.available_cohorts = [Cohort.from_record(r) for r in records or []]

    async def suggest_institution(self, email: Optional[str]) -> Optional[Institution]:
        """
        Email-domain → Institution heuristic.

        The store query is a loose substring match; candidates are then
        verified client-side (exact domain or subdomain of a listed domain).
        """
        domain = email_domain(email)
        if not domain:
            return None

        # cs.stateu.edu -> cs.stateu.edu, stateu.edu
        labels = domain.split(".")
        candidates = [".".join(labels[i:]) for i in range(len(labels) - 1)]

        for candidate in candidates:
            records = await self.reference_cache.find_many(
                Tables.INSTITUTIONS, contains(InstitutionFields.DOMAIN, candidate)
            )
            for record in records:
                institution = Institution.from_record(record)
                if institution.serves_domain(domain):
                    logger.info(f"Suggested institution '{institution.name}' for {mask_email(email)}")
                    return institution
        return None

    def is_major_relevant(self, institution: Optional[Institution], fallback_name: str = "") -> bool:
        """Alias/substring check against configured names, never an id match."""
        if institution is not None and institution.matches_alias(self.major_relevant_aliases):
            return True
        name = (fallback_name or "").lower()
        return bool(name) and any(alias.lower() in name for alias in self.major_relevant_aliases if alias)

    # ==================== PARTICIPATION BRANCH ====================

    async def _resolve_participation_branch(self, graph: DomainGraph, with_details: bool):
        contact_id = graph.contact.contact_id
        records = await self._isolated(
            graph,
            "Participation",
            contact_id,
            self.store.find_many(Tables.PARTICIPATION, has_link(ParticipationFields.CONTACTS, contact_id)),
        )
        graph.participations = [Participation.from_record(r) for r in records or []]
        if not with_details or not graph.participations:
            return

        team_ids = _unique([p.team_id for p in graph.participations])
        cohort_ids = _unique([p.cohort_id for p in graph.participations])

        teams, cohorts = await asyncio.gather(
            asyncio.gather(*[self._fetch_team(graph, team_id) for team_id in team_ids]),
            asyncio.gather(*[self._fetch_cohort(graph, cohort_id) for cohort_id in cohort_ids]),
        )
        graph.teams = {t.team_id: t for t in teams if t}
        graph.cohorts = {c.cohort_id: c for c in cohorts if c}

        initiative_ids = _unique(
            [c.initiative_id for c in graph.cohorts.values()] + [p.initiative_id for p in graph.participations]
        )
        initiatives = await asyncio.gather(*[self._fetch_initiative(graph, i) for i in initiative_ids])
        graph.initiatives = {i.initiative_id: i for i in initiatives if i}

    async def _fetch_team(self, graph: DomainGraph, team_id: str) -> Optional[Team]:
        record = await self._isolated(graph, "Team", team_id, self.store.get_by_id(Tables.TEAMS, team_id))
        return Team.from_record(record) if record else None

    async def _fetch_cohort(self, graph: DomainGraph, cohort_id: str) -> Optional[Cohort]:
        record = await self._isolated(graph, "Cohort", cohort_id, self.store.get_by_id(Tables.COHORTS, cohort_id))
        return Cohort.from_record(record) if record else None

    async def _fetch_initiative(self, graph: DomainGraph, initiative_id: str) -> Optional[Initiative]:
        record = await self._isolated(
            graph,
            "Initiative",
            initiative_id,
            self.reference_cache.get_by_id(Tables.INITIATIVES, initiative_id),
        )
        return Initiative.from_record(record) if record else None

