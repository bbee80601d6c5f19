"""
Field positions of the roster extracts.

The upstream provider ships one delimited file per table. Positions are
configuration rather than logic; the defaults match the provider's current
column order and can be overridden per table.
"""

from dataclasses import dataclass, field
from typing import Dict, Sequence

EXTRACT_FILES = {
    "organization": "Organization.txt",
    "member": "Member.txt",
    "contact": "MbrContact.txt",
    "duty": "DutyPosition.txt",
    "cadet_duty": "CadetDutyPositions.txt",
    "achievement": "MbrAchievements.txt",
    "manual": "ManualMembers.txt",
}

OPTIONAL_EXTRACTS = frozenset({"cadet_duty", "achievement", "manual"})

ORGANIZATION_FIELDS = {
    "org_id": 0,
    "region": 1,
    "wing": 2,
    "unit": 3,
    "parent_id": 4,
    "name": 5,
    "scope": 9,
}

MEMBER_FIELDS = {
    "capid": 0,
    "last_name": 2,
    "first_name": 3,
    "middle_name": 4,
    "suffix": 5,
    "org_id": 11,
    "unit": 13,
    "rank": 14,
    "modified": 19,
    "member_type": 21,
    "status": 24,
}

CONTACT_FIELDS = {
    "capid": 0,
    "type": 1,
    "priority": 2,
    "contact": 3,
    "do_not_contact": 6,
}

DUTY_FIELDS = {
    "capid": 0,
    "duty_id": 1,
    "level": 3,
    "assistant": 4,
    "org_id": 7,
}

ACHIEVEMENT_FIELDS = {
    "capid": 0,
    "achievement_id": 1,
    "status": 2,
}


@dataclass
class RosterLayout:
    """Column positions for every roster table."""

    organization: Dict[str, int] = field(default_factory=lambda: dict(ORGANIZATION_FIELDS))
    member: Dict[str, int] = field(default_factory=lambda: dict(MEMBER_FIELDS))
    contact: Dict[str, int] = field(default_factory=lambda: dict(CONTACT_FIELDS))
    duty: Dict[str, int] = field(default_factory=lambda: dict(DUTY_FIELDS))
    achievement: Dict[str, int] = field(default_factory=lambda: dict(ACHIEVEMENT_FIELDS))

    @staticmethod
    def value(row: Sequence[str], positions: Dict[str, int], name: str) -> str:
        """Return the stripped field value, or "" when the row is too short."""
        index = positions[name]
        if index >= len(row) or row[index] is None:
            return ""
        return str(row[index]).strip()
