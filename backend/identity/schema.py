"""
Record store schema - table keys and canonical column names.

Every column the engine reads or writes is named here once.
"""


class Tables:
    CONTACTS = "CONTACTS"
    EDUCATION = "EDUCATION"
    INSTITUTIONS = "INSTITUTIONS"
    PROGRAMS = "PROGRAMS"
    PARTICIPATION = "PARTICIPATION"
    TEAMS = "TEAMS"
    COHORTS = "COHORTS"
    INITIATIVES = "INITIATIVES"


class ContactFields:
    FIRST_NAME = "First Name"
    LAST_NAME = "Last Name"
    EMAIL = "Email"
    HEADSHOT = "Headshot"
    EDUCATION = "Education"
    ONBOARDING = "Onboarding"
    REFERRAL_SOURCE = "Referral Source"
    # Lookup columns mirrored from the linked Education record
    DEGREE_TYPE_LOOKUP = "Degree Type (from Education)"
    MAJOR_LOOKUP = "Major (from Education)"
    GRADUATION_YEAR_LOOKUP = "Graduation Year (from Education)"
    GRADUATION_SEMESTER_LOOKUP = "Graduation Semester (from Education)"
    INSTITUTION_LOOKUP = "Institution (from Education)"


class EducationFields:
    CONTACT = "Contact"
    INSTITUTION = "Institution"
    INSTITUTION_NAME = "Name (from Institution)"
    DEGREE_TYPE = "Degree Type"
    MAJOR = "Major"
    MAJOR_NAME = "Major (from Major)"
    GRADUATION_YEAR = "Graduation Year"
    GRADUATION_SEMESTER = "Graduation Semester"


class InstitutionFields:
    NAME = "Name"
    DOMAIN = "Domain"
    ALIASES = "Aliases"


class ProgramFields:
    MAJOR = "Major"
    NAME = "Name"


class ParticipationFields:
    CONTACTS = "Contacts"
    COHORTS = "Cohorts"
    TEAM = "Team"
    INITIATIVE = "Initiative"
    # Canonical status column; the lowercase "status" duplicate is never written
    STATUS = "Status"
    CAPACITY = "Capacity"


class TeamFields:
    NAME = "Name"
    TEAM_NAME = "Team Name"
    DESCRIPTION = "Description"


class CohortFields:
    NAME = "Name"
    SHORT_NAME = "Short Name"
    STATUS = "Status"
    START_DATE = "Start Date"
    END_DATE = "End Date"
    CURRENT_COHORT = "Current Cohort"
    IS_CURRENT = "Is Current"
    INITIATIVE = "Initiative"
    TOPICS = "Topics"
    INSTITUTION = "Institution"


class InitiativeFields:
    NAME = "Name"
    DESCRIPTION = "Description"
    PARTICIPATION_TYPE = "Participation Type"


ACTIVE_STATUS = "Active"
APPLIED_STATUS = "Applied"
DEFAULT_ONBOARDING_STATUS = "Registered"
DEFAULT_CAPACITY = "Participant"
