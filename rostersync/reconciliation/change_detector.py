"""
Change Detector

Decides which members need a directory write by comparing a fixed set of
watched attributes against the last persisted snapshot.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from rostersync.models import Member

logger = logging.getLogger(__name__)

WATCHED_FIELDS = (
    "rank",
    "charter",
    "status",
    "email",
    "member_type",
    "manager_email",
    "phone",
    "duty_ids",
)


def _normalize(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def project(member: Member) -> Dict[str, str]:
    """Reduce a member to its watched fields."""
    return {name: _normalize(getattr(member, name, None)) for name in WATCHED_FIELDS}


def needs_sync(member: Optional[Member], previous: Optional[Mapping[str, Any]]) -> bool:
    """
    Return True if the member must be written to the directory.

    Missing and empty values compare equal. Duty positions are compared as an
    ordered concatenation, so a pure reordering counts as a change.
    """
    if member is None or previous is None:
        return True

    try:
        current = project(member)
        return any(current[name] != _normalize(previous.get(name)) for name in WATCHED_FIELDS)
    except Exception as e:
        logger.warning(f"Change detection failed for {getattr(member, 'capid', '?')}, assuming changed: {e}")
        return True


class ChangeDetector:
    """Partitions members into changed and unchanged sets."""

    def partition(
        self,
        members: Mapping[str, Member],
        previous: Optional[Mapping[str, Mapping[str, Any]]]
    ) -> Tuple[List[Member], List[Member]]:
        """
        Split members by whether they need a directory write.

        Args:
            members: Current members keyed by capid
            previous: Snapshot entries keyed by capid, or None when no snapshot exists

        Returns:
            (changed, unchanged)
        """
        changed: List[Member] = []
        unchanged: List[Member] = []

        for capid, member in members.items():
            entry = previous.get(capid) if previous is not None else None
            if needs_sync(member, entry):
                changed.append(member)
            else:
                unchanged.append(member)

        logger.info(f"Change detection: {len(changed)} changed, {len(unchanged)} unchanged")
        return changed, unchanged
