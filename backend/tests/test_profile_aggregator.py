"""
Unit Tests for profile aggregation and field precedence.

Run with: pytest tests/test_profile_aggregator.py -v
"""

from datetime import date, datetime, timezone

import pytest

from clients.record_store import RecordStoreError
from identity.aggregator import ProfileAggregator, resolve_field
from identity.errors import PartialResolutionFailure
from identity.models import (
    Cohort,
    Contact,
    DomainGraph,
    Education,
    FieldSource,
    Initiative,
    Institution,
    Participation,
    Program,
    ResolutionMode,
    SessionIdentity,
    Team,
)

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_identity(**metadata):
    return SessionIdentity.from_claims({
        "sub": "auth0|ana",
        "email": "Ana@StateU.edu",
        "name": "Ana Li",
        "given_name": "Claimed",
        "family_name": "Name",
        "picture": "https://cdn.example/ana.png",
        "user_metadata": metadata,
    })


STATE_U = Institution(institution_id="recI1", name="State University", email_domains=["stateu.edu"])
UMD = Institution(institution_id="recI2", name="University of Maryland", email_domains=["umd.edu"])


@pytest.fixture
def aggregator():
    return ProfileAggregator(now=lambda: FIXED_NOW)


class TestPrecedence:

    def test_domain_beats_metadata_and_claim(self):
        assert resolve_field("Ana", "Anna", "A") == ("Ana", FieldSource.DOMAIN)

    def test_metadata_beats_claim(self):
        assert resolve_field("", "Anna", "A") == ("Anna", FieldSource.METADATA)

    def test_claim_is_last_source(self):
        assert resolve_field(None, "  ", "A") == ("A", FieldSource.CLAIM)

    def test_default_when_nothing_present(self):
        assert resolve_field(None, None, None, default="") == ("", FieldSource.DEFAULT)


class TestHeuristicInstitutionScenario:

    def test_unlinked_contact_gets_suggested_institution(self, aggregator):
        graph = DomainGraph(
            contact=Contact(contact_id="recC1", first_name="Ana", last_name="Li", email="ana@stateu.edu"),
            suggested_institution=STATE_U,
        )

        profile = aggregator.aggregate(make_identity(), graph, mode=ResolutionMode.FULL)

        assert profile.institution.name == "State University"
        assert profile.needs_institution_confirm is True
        assert profile.is_profile_complete is False
        assert profile.suggested_institution.id == "recI1"
        assert profile.first_name == "Ana"
        assert profile.field_sources["firstName"] == FieldSource.DOMAIN


class TestFullProfile:

    def complete_graph(self, institution=STATE_U, **education):
        return DomainGraph(
            contact=Contact(
                contact_id="recC1", first_name="Ana", last_name="Li",
                email="ana@stateu.edu", education_ids=["recE1"],
            ),
            education=Education(
                education_id="recE1",
                institution_id=institution.institution_id,
                degree_type="Undergraduate",
                graduation_year="2026",
                **education,
            ),
            institution=institution,
        )

    def test_complete_profile(self, aggregator):
        profile = aggregator.aggregate(make_identity(), self.complete_graph())

        assert profile.is_profile_complete is True
        assert profile.needs_institution_confirm is False
        assert profile.show_major is False
        assert profile.major == ""
        assert profile.institution.id == "recI1"

    def test_major_blanked_unless_relevant(self, aggregator):
        graph = self.complete_graph(major_id="recP1", major_name="Biology")

        profile = aggregator.aggregate(make_identity(major="Biology"), graph)

        assert profile.major == ""
        assert profile.is_profile_complete is True

    def test_major_required_for_relevant_institution(self, aggregator):
        graph = self.complete_graph(institution=UMD)
        graph.major_relevant = True

        profile = aggregator.aggregate(make_identity(), graph)

        assert profile.show_major is True
        assert profile.is_profile_complete is False

        graph.program = Program(program_id="recP1", name="Computer Science")
        profile = aggregator.aggregate(make_identity(), graph)

        assert profile.major == "Computer Science"
        assert profile.program_id == "recP1"
        assert profile.is_profile_complete is True

    def test_metadata_fills_gaps_below_domain(self, aggregator):
        graph = DomainGraph(contact=Contact(contact_id="recC1", first_name="", last_name="Li"))

        profile = aggregator.aggregate(make_identity(firstName="Anna", degreeType="Masters"), graph)

        assert profile.first_name == "Anna"
        assert profile.field_sources["firstName"] == FieldSource.METADATA
        assert profile.degree_type == "Masters"
        assert profile.last_name == "Li"

    def test_claims_fill_remaining_gaps(self, aggregator):
        graph = DomainGraph(contact=Contact(contact_id="recC1"))

        profile = aggregator.aggregate(make_identity(), graph)

        assert profile.first_name == "Claimed"
        assert profile.field_sources["lastName"] == FieldSource.CLAIM
        assert profile.headshot == "https://cdn.example/ana.png"

    def test_suggested_institution_does_not_complete_profile(self, aggregator):
        graph = self.complete_graph()
        graph.education.institution_id = None
        graph.institution = None
        graph.suggested_institution = STATE_U

        profile = aggregator.aggregate(make_identity(), graph)

        assert profile.institution.name == "State University"
        assert profile.is_profile_complete is False
        assert profile.needs_institution_confirm is True

    def test_missing_optional_data_never_raises(self, aggregator):
        graph = DomainGraph(
            contact=Contact(contact_id="recC1", education_ids=["recE1"]),
            failures=[PartialResolutionFailure("Education", "recE1", RecordStoreError("down", 503))],
        )

        profile = aggregator.aggregate(make_identity(), graph)

        assert profile.education_id == "recE1"
        assert profile.institution.name == ""
        assert profile.unresolved == ["Education"]
        assert profile.is_profile_complete is False


class TestParticipation:

    def graph(self, *statuses):
        participations = [
            Participation(
                participation_id=f"recPa{n}", contact_id="recC1",
                team_id="recT1", cohort_id="recK1", status=status,
            )
            for n, status in enumerate(statuses)
        ]
        return DomainGraph(
            contact=Contact(contact_id="recC1", first_name="Ana"),
            participations=participations,
            teams={"recT1": Team(team_id="recT1", name="Rocket")},
            cohorts={"recK1": Cohort(
                cohort_id="recK1", name="Spring", initiative_id="recN1",
                start_date=date(2026, 1, 10), end_date=date(2026, 5, 10),
            )},
            initiatives={"recN1": Initiative(initiative_id="recN1", name="Xtreme", participation_type="Team")},
        )

    def test_summaries_link_team_cohort_and_initiative(self, aggregator):
        profile = aggregator.aggregate(make_identity(), self.graph("Active"))

        summary = profile.participations[0]
        assert summary.team.name == "Rocket"
        assert summary.cohort.is_current is True
        assert summary.initiative.name == "Xtreme"
        assert summary.is_team_participation is True
        assert profile.has_active_participation is True
        assert profile.onboarding_status == "Applied"

    def test_inactive_participation(self, aggregator):
        profile = aggregator.aggregate(make_identity(), self.graph("Inactive"))

        assert profile.has_active_participation is False
        assert profile.onboarding_status == "Registered"


class TestReducedProfiles:

    def test_no_contact_returns_claims_only(self, aggregator):
        profile = aggregator.aggregate(make_identity(onboardingCompleted=True), DomainGraph())

        assert profile.contact_id is None
        assert profile.email == "ana@stateu.edu"
        assert profile.first_name == "Claimed"
        assert profile.onboarding_completed is True
        assert profile.is_profile_complete is False
        assert profile.unresolved == ["contact"]

    def test_minimal_mode_leaves_completeness_false(self, aggregator):
        graph = DomainGraph(
            mode=ResolutionMode.MINIMAL,
            contact=Contact(contact_id="recC1", first_name="Ana", last_name="Li"),
            participations=[Participation(participation_id="recPa1", status="Active")],
            suggested_institution=STATE_U,
        )

        profile = aggregator.aggregate(make_identity(), graph, mode="minimal")

        assert profile.mode == ResolutionMode.MINIMAL
        assert profile.is_profile_complete is False
        assert profile.needs_institution_confirm is False
        assert profile.has_active_participation is True
        assert profile.suggested_institution.name == "State University"

    def test_camel_case_serialization(self, aggregator):
        profile = aggregator.aggregate(make_identity(), DomainGraph())

        data = profile.model_dump(by_alias=True, mode="json")

        assert "isProfileComplete" in data
        assert "needsInstitutionConfirm" in data
        assert data["subjectId"] == "auth0|ana"
