"""
Roster Loader

Joins the flat roster extracts (organizations, members, contacts, duty
positions, achievements and manually curated members) into one canonical
entity graph. Invalid records are dropped and reported; they never abort the
load.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from rostersync.models import DutyPosition, Member, Organization, OrgScope
from rostersync.roster.cache import RosterCache
from rostersync.roster.hierarchy import OrgHierarchy
from rostersync.roster.layout import RosterLayout

logger = logging.getLogger(__name__)

ACTIVE_STATUS = "ACTIVE"
DEFAULT_MEMBER_TYPES = ("SENIOR", "CADET", "AEM")
EXCLUDED_UNIT_CODES = (998, 999)
EMAIL_TYPE = "EMAIL"
PHONE_TYPES = ("CELL PHONE", "HOME PHONE", "WORK PHONE")
PREFERRED_PHONE_TYPE = "CELL PHONE"
PRIMARY_PRIORITY = "PRIMARY"

EMAIL_PATTERN = re.compile(r"^[a-z0-9._%+'-]+@[a-z0-9.-]+\.[a-z]{2,}$")
TRUE_VALUES = frozenset({"1", "true", "t", "y", "yes"})

Row = Sequence[str]


@dataclass
class AggregateUnit:
    """Pseudo-unit cloned from a template organization for a member-type cohort."""

    template_id: str
    org_id: str
    name: str
    unit: str
    member_types: Tuple[str, ...] = ()


@dataclass
class LoadReport:
    """Tallies of one roster load."""

    organizations: int = 0
    members: int = 0
    filtered: int = 0
    invalid: int = 0
    manual: int = 0
    invalid_records: List[Tuple[str, str]] = field(default_factory=list)

    def reject(self, capid: str, reason: str) -> None:
        self.invalid += 1
        self.invalid_records.append((capid, reason))
        logger.warning(f"Dropping member {capid or '<blank>'}: {reason}")


@dataclass
class Roster:
    """Result of a roster load."""

    organizations: Dict[str, Organization]
    members: Dict[str, Member]
    hierarchy: OrgHierarchy
    report: LoadReport
    achievements: Dict[str, List[Tuple[str, str]]] = field(default_factory=dict)


def parse_bool(value: str) -> bool:
    return str(value or "").strip().lower() in TRUE_VALUES


def normalize_email(value: str) -> Optional[str]:
    """Lower-case and validate an e-mail address; None if invalid."""
    email = str(value or "").strip().lower()
    if not EMAIL_PATTERN.match(email):
        return None
    return email


def normalize_phone(value: str) -> Optional[str]:
    """Reduce a phone number to ``+1`` followed by ten digits; None if invalid."""
    digits = re.sub(r"\D", "", str(value or ""))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return f"+1{digits}"


class RosterLoader:
    """Builds Organizations and Members from roster extract rows."""

    def __init__(
        self,
        layout: Optional[RosterLayout] = None,
        member_types: Iterable[str] = DEFAULT_MEMBER_TYPES,
        excluded_unit_codes: Iterable[int] = EXCLUDED_UNIT_CODES,
        aggregate_units: Optional[List[AggregateUnit]] = None
    ):
        """
        Initialize the loader.

        Args:
            layout: Column positions of the extracts
            member_types: Member types allowed into the roster
            excluded_unit_codes: Unit numbers marking inactive/transfer members
            aggregate_units: Pseudo-units to synthesize
        """
        self.layout = layout or RosterLayout()
        self.member_types = frozenset(t.upper() for t in member_types)
        self.excluded_unit_codes = frozenset(int(code) for code in excluded_unit_codes)
        self.aggregate_units = aggregate_units or []

    def load_from_cache(self, cache: RosterCache) -> Roster:
        """Load every table through a run-owned parse cache."""
        return self.load(
            organization_rows=cache.rows("organization"),
            member_rows=cache.rows("member"),
            contact_rows=cache.rows("contact"),
            duty_rows=cache.rows("duty"),
            cadet_duty_rows=cache.rows("cadet_duty"),
            manual_rows=cache.rows("manual"),
            achievement_rows=cache.rows("achievement"),
        )

    def load(
        self,
        organization_rows: Iterable[Row],
        member_rows: Iterable[Row],
        contact_rows: Iterable[Row] = (),
        duty_rows: Iterable[Row] = (),
        cadet_duty_rows: Iterable[Row] = (),
        manual_rows: Iterable[Row] = (),
        achievement_rows: Iterable[Row] = ()
    ) -> Roster:
        """
        Join all extracts into a Roster.

        Returns:
            Roster with organizations, validated members and the load report
        """
        report = LoadReport()

        organizations = self.load_organizations(organization_rows)
        hierarchy = OrgHierarchy(organizations)
        for aggregate in self.aggregate_units:
            hierarchy.add_aggregate_unit(aggregate.template_id, aggregate.org_id, aggregate.name, aggregate.unit)
        for org in organizations.values():
            org.directory_path = hierarchy.path_of(org.org_id).value
        report.organizations = len(organizations)

        members: Dict[str, Member] = {}
        for row in member_rows:
            member = self._build_member(row, report, apply_filter=True)
            if member is not None:
                members[member.capid] = member

        for row in manual_rows:
            member = self._build_member(row, report, apply_filter=False)
            if member is not None:
                if member.capid in members:
                    logger.info(f"Manual entry replaces roster record for {member.capid}")
                members[member.capid] = member
                report.manual += 1

        self.merge_contacts(members, contact_rows)
        self.merge_duty_positions(members, duty_rows, organizations)
        self.merge_duty_positions(members, cadet_duty_rows, organizations)

        self._rehome_aggregate_members(members, organizations)

        for capid in list(members):
            member = members[capid]
            reason = self.validate(member, organizations)
            if reason is None:
                hierarchy.resolve(member)
                if not member.directory_path:
                    reason = f"no directory path for organization {member.org_id}"
            if reason is not None:
                report.reject(capid, reason)
                del members[capid]

        hierarchy.assign_managers(members)
        report.members = len(members)

        logger.info(
            f"Roster loaded: {report.organizations} organizations, {report.members} members, "
            f"{report.filtered} filtered, {report.invalid} invalid, {report.manual} manual"
        )

        return Roster(
            organizations=organizations,
            members=members,
            hierarchy=hierarchy,
            report=report,
            achievements=self.load_achievements(achievement_rows),
        )

    def load_organizations(self, rows: Iterable[Row]) -> Dict[str, Organization]:
        positions = self.layout.organization
        organizations = {}

        for row in rows:
            org_id = RosterLayout.value(row, positions, "org_id")
            if not org_id:
                continue
            organizations[org_id] = Organization(
                org_id=org_id,
                name=RosterLayout.value(row, positions, "name"),
                region=RosterLayout.value(row, positions, "region"),
                wing=RosterLayout.value(row, positions, "wing"),
                unit=RosterLayout.value(row, positions, "unit"),
                parent_id=RosterLayout.value(row, positions, "parent_id"),
                scope=OrgScope.parse(RosterLayout.value(row, positions, "scope")),
            )

        logger.debug(f"Loaded {len(organizations)} organizations")
        return organizations

    def _build_member(self, row: Row, report: LoadReport, apply_filter: bool) -> Optional[Member]:
        positions = self.layout.member

        def value(name: str) -> str:
            return RosterLayout.value(row, positions, name)

        status = value("status").upper()
        member_type = value("member_type").upper()

        if status != ACTIVE_STATUS:
            report.filtered += 1
            return None

        if apply_filter:
            if member_type not in self.member_types:
                report.filtered += 1
                return None
            if self._is_excluded_unit(value("unit")):
                report.filtered += 1
                return None

        return Member(
            capid=value("capid"),
            first_name=value("first_name"),
            last_name=value("last_name"),
            middle_name=value("middle_name"),
            suffix=value("suffix"),
            org_id=value("org_id"),
            rank=value("rank"),
            member_type=member_type,
            status=status,
            modified=value("modified"),
        )

    def _is_excluded_unit(self, unit: str) -> bool:
        try:
            return int(unit) in self.excluded_unit_codes
        except ValueError:
            return False

    @staticmethod
    def validate(member: Member, organizations: Dict[str, Organization]) -> Optional[str]:
        """Return the reason a member is invalid, or None if it is valid."""
        if not member.capid.isdigit():
            return f"non-numeric id {member.capid!r}"
        if not member.first_name or not member.last_name:
            return "empty name"
        if member.org_id not in organizations:
            return f"unknown organization {member.org_id!r}"
        return None

    def merge_contacts(self, members: Dict[str, Member], rows: Iterable[Row]) -> int:
        """
        Apply primary, contactable e-mail and phone rows to members.

        Returns:
            Number of contact values applied
        """
        positions = self.layout.contact
        applied = 0

        for row in rows:
            member = members.get(RosterLayout.value(row, positions, "capid"))
            if member is None:
                continue
            if RosterLayout.value(row, positions, "priority").upper() != PRIMARY_PRIORITY:
                continue
            if parse_bool(RosterLayout.value(row, positions, "do_not_contact")):
                continue

            contact_type = RosterLayout.value(row, positions, "type").upper()
            contact = RosterLayout.value(row, positions, "contact")

            if contact_type == EMAIL_TYPE:
                email = normalize_email(contact)
                if email is None:
                    logger.warning(f"Invalid e-mail {contact!r} for member {member.capid}")
                    continue
                member.email = email
                applied += 1
            elif contact_type in PHONE_TYPES:
                phone = normalize_phone(contact)
                if phone is None:
                    logger.debug(f"Unusable phone number for member {member.capid}")
                    continue
                if member.phone is None or contact_type == PREFERRED_PHONE_TYPE:
                    member.phone = phone
                    applied += 1

        return applied

    def merge_duty_positions(
        self,
        members: Dict[str, Member],
        rows: Iterable[Row],
        organizations: Dict[str, Organization]
    ) -> int:
        """
        Append duty positions to members in source order.

        Returns:
            Number of positions appended
        """
        positions = self.layout.duty
        appended = 0

        for row in rows:
            member = members.get(RosterLayout.value(row, positions, "capid"))
            if member is None:
                continue

            duty_id = RosterLayout.value(row, positions, "duty_id")
            if not duty_id:
                continue

            org_id = RosterLayout.value(row, positions, "org_id")
            assistant = parse_bool(RosterLayout.value(row, positions, "assistant"))
            org = organizations.get(org_id)
            charter = org.charter if org else org_id

            member.duty_positions.append(DutyPosition(
                duty_id=duty_id,
                level=RosterLayout.value(row, positions, "level").upper(),
                assistant=assistant,
                org_id=org_id,
                display=f"{duty_id}{' (Asst)' if assistant else ''} ({charter})",
            ))
            appended += 1

        return appended

    def load_achievements(self, rows: Iterable[Row]) -> Dict[str, List[Tuple[str, str]]]:
        """Group achievement rows by member as (achievement id, status) pairs."""
        positions = self.layout.achievement
        achievements: Dict[str, List[Tuple[str, str]]] = defaultdict(list)

        for row in rows:
            capid = RosterLayout.value(row, positions, "capid")
            if not capid:
                continue
            achievements[capid].append((
                RosterLayout.value(row, positions, "achievement_id"),
                RosterLayout.value(row, positions, "status").upper(),
            ))

        return dict(achievements)

    def _rehome_aggregate_members(
        self,
        members: Dict[str, Member],
        organizations: Dict[str, Organization]
    ) -> None:
        for aggregate in self.aggregate_units:
            if aggregate.org_id not in organizations:
                continue
            types = {t.upper() for t in aggregate.member_types}
            for member in members.values():
                if member.member_type in types:
                    member.org_id = aggregate.org_id
