"""
Organization hierarchy resolution.

Derives each organization's GROUP ancestor, charter and directory path,
synthesizes aggregate pseudo-units the roster has no native category for, and
derives each member's manager from the commanders of the hierarchy.

Lookups fail open: an unknown org id is logged and resolves to a default value
wrapped in a LookupResult with found=False, so one bad record never stops a run.
"""

import dataclasses
import logging
from typing import Dict, List, Optional

from rostersync.models import LookupResult, Member, Organization, OrgScope

logger = logging.getLogger(__name__)

COMMANDER_DUTY = "Commander"


class OrgHierarchy:
    """Resolves organizational relationships for a set of organizations."""

    def __init__(self, organizations: Dict[str, Organization]):
        """
        Initialize the resolver.

        Args:
            organizations: Mapping of org id to Organization
        """
        self.organizations = organizations
        self._paths: Dict[str, str] = {}
        logger.debug(f"Initialized OrgHierarchy with {len(organizations)} organizations")

    def get(self, org_id: str) -> LookupResult:
        org = self.organizations.get(org_id)
        if org is None:
            return LookupResult.miss(None)
        return LookupResult.hit(org)

    def parent_of(self, org_id: str) -> LookupResult:
        org = self.organizations.get(org_id)
        if org is None or not org.parent_id or org.parent_id == org_id:
            return LookupResult.miss(None)
        return self.get(org.parent_id)

    def group_of(self, org_id: str) -> LookupResult:
        """
        Find the nearest GROUP-scope ancestor of an organization.

        Returns:
            The org id itself when it is a GROUP, the nearest GROUP ancestor's id,
            "" (found) when the chain reaches a WING first, or a miss with
            default "" when the org id or one of its ancestors does not resolve.
        """
        visited = set()
        current = org_id

        while current and current not in visited:
            visited.add(current)
            org = self.organizations.get(current)

            if org is None:
                logger.warning(f"Organization {current} not found while resolving group of {org_id}")
                return LookupResult.miss("")

            if org.scope == OrgScope.GROUP:
                return LookupResult.hit(org.org_id)
            if org.scope in (OrgScope.WING, OrgScope.REGION, OrgScope.NATIONAL):
                return LookupResult.hit("")

            current = org.parent_id

        logger.warning(f"Organization chain for {org_id} is broken or cyclic")
        return LookupResult.miss("")

    def charter_of(self, org_id: str) -> LookupResult:
        org = self.organizations.get(org_id)
        if org is None:
            logger.warning(f"Organization {org_id} not found while resolving charter")
            return LookupResult.miss("")
        return LookupResult.hit(org.charter)

    def path_of(self, org_id: str) -> LookupResult:
        """
        Directory path of an organization, e.g. ``/MA/NER-MA-010/NER-MA-001``.

        Units and groups sit below their wing; wings are top-level; regions and
        national headquarters map to their own path under the root.
        """
        if org_id in self._paths:
            return LookupResult.hit(self._paths[org_id])

        chain: List[Organization] = []
        visited = set()
        current = org_id

        while True:
            if current in visited:
                logger.warning(f"Cyclic organization chain at {current} for {org_id}")
                return LookupResult.miss("")
            visited.add(current)

            org = self.organizations.get(current)
            if org is None:
                logger.warning(f"Organization {current} not found while resolving path of {org_id}")
                return LookupResult.miss("")

            if org.scope == OrgScope.WING:
                path = f"/{org.wing}"
                break
            if org.scope in (OrgScope.REGION, OrgScope.NATIONAL):
                path = f"/{org.region}" if org.scope == OrgScope.REGION else "/"
                break

            chain.append(org)
            current = org.parent_id

        for org in reversed(chain):
            path = f"{path.rstrip('/')}/{org.charter}"

        self._paths[org_id] = path
        return LookupResult.hit(path)

    def add_aggregate_unit(
        self,
        template_id: str,
        org_id: str,
        name: str,
        unit: str
    ) -> Optional[Organization]:
        """
        Clone a template organization into an aggregate pseudo-unit.

        Args:
            template_id: Org id of the organization to clone
            org_id: Org id of the new pseudo-unit
            name: Display name of the pseudo-unit
            unit: Unit code used in its charter

        Returns:
            The new Organization, or None if the template does not resolve
        """
        template = self.organizations.get(template_id)
        if template is None:
            logger.warning(f"Aggregate unit template {template_id} not found; {name} not created")
            return None

        aggregate = dataclasses.replace(
            template,
            org_id=org_id,
            name=name,
            unit=unit,
            scope=OrgScope.UNIT,
            parent_id=template.parent_id,
            directory_path="",
        )
        self.organizations[org_id] = aggregate
        self._paths.pop(org_id, None)
        aggregate.directory_path = self.path_of(org_id).value

        logger.info(f"Created aggregate unit {aggregate.charter} ({name}) from {template.charter}")
        return aggregate

    def resolve(self, member: Member) -> Member:
        """Fill the member's hierarchy-derived fields in place."""
        org = self.organizations.get(member.org_id)
        if org is not None:
            member.charter = org.charter
            member.wing = org.wing
            member.unit = org.unit
        member.group = self.group_of(member.org_id).value
        member.directory_path = self.path_of(member.org_id).value
        return member

    def assign_managers(self, members: Dict[str, Member]) -> int:
        """
        Set each member's manager e-mail from the commander chain.

        The manager is the commander of the member's organization; commanders
        report to the commander of the next organization up.

        Returns:
            Number of members that received a manager
        """
        commanders: Dict[str, Member] = {}
        for member in members.values():
            for position in member.duty_positions:
                if position.duty_id.lower() == COMMANDER_DUTY.lower() and not position.assistant:
                    commanders.setdefault(position.org_id, member)

        assigned = 0
        for member in members.values():
            manager = self._find_manager(member, commanders)
            member.manager_email = manager.value
            if manager.found:
                assigned += 1

        logger.info(f"Assigned managers to {assigned} of {len(members)} members")
        return assigned

    def _find_manager(self, member: Member, commanders: Dict[str, Member]) -> LookupResult:
        visited = set()
        current = member.org_id

        while current and current not in visited:
            visited.add(current)
            commander = commanders.get(current)
            if commander is not None and commander.capid != member.capid and commander.email:
                return LookupResult.hit(commander.email)

            parent = self.parent_of(current)
            if not parent.found:
                break
            current = parent.value.org_id

        return LookupResult.miss(None)
