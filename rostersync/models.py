"""
Domain model for roster synchronisation.

Organizations and Members are rebuilt from the roster extracts on every run.
GroupSpec rows are parsed once from configuration and never mutated.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


class OrgScope(Enum):
    """Organizational level of a roster organization."""
    UNIT = "UNIT"
    GROUP = "GROUP"
    WING = "WING"
    REGION = "REGION"
    NATIONAL = "NATIONAL"

    @classmethod
    def parse(cls, value: str) -> "OrgScope":
        """Parse a scope string, treating anything unrecognised as UNIT."""
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNIT


class AttributeKind(Enum):
    """Member attribute a GroupSpec row matches on."""
    TYPE = "type"
    RANK = "rank"
    DUTY = "duty"
    DUTY_AT_LEVEL = "dutylevel"
    LEVEL = "level"
    ACHIEVEMENT = "achievement"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, value: str) -> "AttributeKind":
        normalized = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == normalized and kind is not cls.UNSUPPORTED:
                return kind
        return cls.UNSUPPORTED


class Delta(IntEnum):
    """Membership classification of one e-mail address in one group."""
    ADD = 1
    REMOVE = -1
    UNCHANGED = 0


@dataclass(frozen=True)
class LookupResult:
    """
    Result of a fail-open lookup.

    Attributes:
        value: Resolved value, or the default when the lookup missed
        found: False when the key did not resolve
    """

    value: Any
    found: bool = True

    @classmethod
    def hit(cls, value: Any) -> "LookupResult":
        return cls(value=value, found=True)

    @classmethod
    def miss(cls, default: Any = "") -> "LookupResult":
        return cls(value=default, found=False)

    def __bool__(self) -> bool:
        return self.found


@dataclass
class Organization:
    """A roster organization (unit, group, wing, ...)."""

    org_id: str
    name: str
    region: str
    wing: str
    unit: str
    parent_id: str
    scope: OrgScope = OrgScope.UNIT
    directory_path: str = ""

    @property
    def charter(self) -> str:
        return f"{self.region}-{self.wing}-{self.unit}"

    @property
    def key(self) -> str:
        """Short identifier used in derived group names, e.g. ``ma001``."""
        return f"{self.wing}{self.unit}".lower()


@dataclass
class DutyPosition:
    """A duty assignment held by a member."""

    duty_id: str
    level: str
    assistant: bool = False
    org_id: str = ""
    display: str = ""


@dataclass
class Member:
    """A roster member joined from person, contact and duty records."""

    capid: str
    first_name: str
    last_name: str
    org_id: str
    rank: str = ""
    member_type: str = ""
    status: str = ""
    modified: str = ""
    middle_name: str = ""
    suffix: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    duty_positions: List[DutyPosition] = field(default_factory=list)
    manager_email: Optional[str] = None
    directory_path: str = ""
    charter: str = ""
    wing: str = ""
    unit: str = ""
    group: str = ""

    @property
    def duty_ids(self) -> str:
        """Concatenated duty identifiers in source order."""
        return ",".join(position.duty_id for position in self.duty_positions)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class GroupSpec:
    """
    Declarative rule mapping a member attribute to one or more groups.

    Attributes:
        name: Base name of the target group(s)
        attribute: Parsed attribute kind
        values: Matching values
        description: Free-text group description
        raw_attribute: Attribute string as written in configuration
    """

    name: str
    attribute: AttributeKind
    values: Tuple[str, ...]
    description: str = ""
    raw_attribute: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "GroupSpec":
        """
        Build a GroupSpec from a configuration row.

        Raises:
            ValueError: If the row has no group name
        """
        name = str(row.get("name") or "").strip().lower()
        if not name:
            raise ValueError(f"Group spec row has no name: {row}")

        raw_attribute = str(row.get("attribute") or "").strip()
        raw_values = row.get("values") or ""
        if isinstance(raw_values, (list, tuple)):
            values = tuple(str(v).strip() for v in raw_values if str(v).strip())
        else:
            values = tuple(v.strip() for v in str(raw_values).split(",") if v.strip())

        return cls(
            name=name,
            attribute=AttributeKind.parse(raw_attribute),
            values=values,
            description=str(row.get("description") or "").strip(),
            raw_attribute=raw_attribute,
        )
