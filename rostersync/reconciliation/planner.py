"""
Group Membership Planner

Computes the desired member e-mail set of every directory group from the
declarative GroupSpec table. Group ids are e-mail addresses on the directory
domain:

- wing level:   ``<name>@<domain>``
- group level:  ``<name>.<wing><unit>@<domain>`` of the member's GROUP ancestor
- unit level:   ``<name>.<wing><unit>@<domain>`` of the member's own unit
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from rostersync.models import AttributeKind, GroupSpec, Member, Organization

logger = logging.getLogger(__name__)

PLACEHOLDER_UNITS = frozenset({"000", "001", "999"})
ACTIVE_ACHIEVEMENT_STATUSES = frozenset({"ACTIVE", "TRAINING"})
DUTY_LEVEL_SEPARATOR = "|"

Plan = Dict[str, Set[str]]


class GroupMembershipPlanner:
    """Builds desired group membership from GroupSpec rows."""

    def __init__(
        self,
        domain: str,
        placeholder_units: Iterable[str] = PLACEHOLDER_UNITS
    ):
        """
        Initialize the planner.

        Args:
            domain: Directory domain used for group addresses
            placeholder_units: Unit numbers of headquarters/placeholder units
        """
        self.domain = domain.lower()
        self.placeholder_units = frozenset(placeholder_units)
        self._descriptions: Dict[str, Tuple[str, str]] = {}

    def group_id(self, name: str, org: Optional[Organization] = None) -> str:
        if org is None:
            return f"{name}@{self.domain}"
        return f"{name}.{org.key}@{self.domain}"

    def describe(self, group_id: str) -> Tuple[str, str]:
        """Display name and description recorded for a planned group."""
        if group_id in self._descriptions:
            return self._descriptions[group_id]
        local_part = group_id.split("@", 1)[0]
        return local_part, ""

    def plan(
        self,
        spec: GroupSpec,
        members: Mapping[str, Member],
        organizations: Mapping[str, Organization],
        achievements: Optional[Mapping[str, List[Tuple[str, str]]]] = None
    ) -> Plan:
        """
        Compute desired membership for one GroupSpec row.

        Args:
            spec: GroupSpec row
            members: Members keyed by capid
            organizations: Organizations keyed by org id
            achievements: Achievement records keyed by capid (ACHIEVEMENT only)

        Returns:
            Mapping of group id to the set of member e-mails
        """
        kind = spec.attribute

        if kind in (AttributeKind.TYPE, AttributeKind.RANK, AttributeKind.DUTY):
            return self._plan_fan_out(spec, members, organizations, self._scalar_matcher(spec))

        if kind == AttributeKind.ACHIEVEMENT:
            if achievements is None:
                logger.warning(f"Group {spec.name} needs achievement records but none were loaded")
                achievements = {}
            return self._plan_fan_out(spec, members, organizations, self._achievement_matcher(spec, achievements))

        if kind == AttributeKind.DUTY_AT_LEVEL:
            return self._plan_duty_at_level(spec, members, organizations)

        if kind == AttributeKind.LEVEL:
            return self._plan_level(spec, members)

        logger.warning(f"Skipping group {spec.name}: unsupported attribute {spec.raw_attribute!r}")
        return {}

    def plan_all(
        self,
        specs: Iterable[GroupSpec],
        members: Mapping[str, Member],
        organizations: Mapping[str, Organization],
        achievements: Optional[Mapping[str, List[Tuple[str, str]]]] = None
    ) -> Plan:
        """Plan every GroupSpec row and merge the results by group id."""
        merged: Plan = defaultdict(set)
        for spec in specs:
            for group_id, emails in self.plan(spec, members, organizations, achievements).items():
                merged[group_id] |= emails

        logger.info(
            f"Planned {len(merged)} groups with "
            f"{sum(len(emails) for emails in merged.values())} memberships"
        )
        return dict(merged)

    def _scalar_matcher(self, spec: GroupSpec):
        values = {v.upper() for v in spec.values}

        if spec.attribute == AttributeKind.TYPE:
            return lambda member: member.member_type.upper() in values
        if spec.attribute == AttributeKind.RANK:
            return lambda member: member.rank.upper() in values
        return lambda member: any(p.duty_id.upper() in values for p in member.duty_positions)

    def _achievement_matcher(self, spec: GroupSpec, achievements: Mapping[str, List[Tuple[str, str]]]):
        values = {v.upper() for v in spec.values}

        def matches(member: Member) -> bool:
            return any(
                achievement_id.upper() in values and status.upper() in ACTIVE_ACHIEVEMENT_STATUSES
                for achievement_id, status in achievements.get(member.capid, ())
            )

        return matches

    def _plan_fan_out(
        self,
        spec: GroupSpec,
        members: Mapping[str, Member],
        organizations: Mapping[str, Organization],
        matches
    ) -> Plan:
        wing_group = self.group_id(spec.name)
        plan: Plan = {wing_group: set()}
        self._record(wing_group, spec.name, spec.description)

        for member in members.values():
            if not member.email or not matches(member):
                continue

            plan[wing_group].add(member.email)

            group_org = organizations.get(member.group) if member.group else None
            if group_org is not None:
                group_id = self.group_id(spec.name, group_org)
                plan.setdefault(group_id, set()).add(member.email)
                self._record(group_id, f"{spec.name} {group_org.name}", spec.description)

            if spec.attribute == AttributeKind.TYPE:
                unit_org = organizations.get(member.org_id)
                if unit_org is not None and unit_org.unit not in self.placeholder_units \
                        and unit_org.org_id != member.group:
                    unit_id = self.group_id(spec.name, unit_org)
                    plan.setdefault(unit_id, set()).add(member.email)
                    self._record(unit_id, f"{spec.name} {unit_org.name}", spec.description)

        return plan

    def _plan_duty_at_level(
        self,
        spec: GroupSpec,
        members: Mapping[str, Member],
        organizations: Mapping[str, Organization]
    ) -> Plan:
        wanted = set()
        for value in spec.values:
            duty, _, level = value.partition(DUTY_LEVEL_SEPARATOR)
            if not duty or not level:
                logger.warning(f"Ignoring malformed duty/level value {value!r} in group {spec.name}")
                continue
            wanted.add((duty.strip().upper(), level.strip().upper()))

        group_id = self.group_id(spec.name)
        emails = set()

        for member in members.values():
            if not member.email:
                continue
            for position in member.duty_positions:
                if (position.duty_id.upper(), position.level.upper()) not in wanted:
                    continue
                org = organizations.get(position.org_id) or organizations.get(member.org_id)
                if org is None or org.unit in self.placeholder_units:
                    continue
                emails.add(member.email)
                break

        if not emails:
            logger.info(f"Group {group_id} would be empty; not planned")
            return {}

        self._record(group_id, spec.name, spec.description)
        return {group_id: emails}

    def _plan_level(self, spec: GroupSpec, members: Mapping[str, Member]) -> Plan:
        levels = {v.upper() for v in spec.values}
        group_id = self.group_id(spec.name)
        self._record(group_id, spec.name, spec.description)

        emails = {
            member.email
            for member in members.values()
            if member.email and any(p.level.upper() in levels for p in member.duty_positions)
        }
        return {group_id: emails}

    def _record(self, group_id: str, name: str, description: str) -> None:
        self._descriptions.setdefault(group_id, (name, description))
