"""
Membership Differ for directory reconciliation

Classifies every e-mail address of a group into add, remove or unchanged by
comparing the desired membership (from the roster) with the observed
membership (from the directory).
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Set

from rostersync.models import Delta

logger = logging.getLogger(__name__)


class MembershipDiffer:
    """
    Detects membership discrepancies between desired and observed state.

    Identifies:
    - Missing members (desired but not observed) -> ADD
    - Extra members (observed but not desired) -> REMOVE
    - Correct members (both) -> UNCHANGED
    """

    def __init__(self, case_sensitive: bool = False):
        """
        Initialize the differ.

        Args:
            case_sensitive: Whether e-mail addresses are compared case-sensitively
        """
        self.case_sensitive = case_sensitive
        logger.debug("Initialized MembershipDiffer")

    def build_index(self, emails: Iterable[str]) -> Set[str]:
        """Normalise addresses into a set, dropping blanks."""
        index = set()
        for email in emails:
            if not email:
                continue
            email = email.strip()
            index.add(email if self.case_sensitive else email.lower())
        return index

    def compute_delta(self, observed: Iterable[str], desired: Iterable[str]) -> Dict[str, Delta]:
        """
        Classify every address of ``observed | desired``.

        Returns:
            Mapping of address to Delta; each address appears exactly once
        """
        observed_index = self.build_index(observed)
        desired_index = self.build_index(desired)

        delta: Dict[str, Delta] = {}
        for email in observed_index:
            delta[email] = Delta.UNCHANGED if email in desired_index else Delta.REMOVE
        for email in desired_index - observed_index:
            delta[email] = Delta.ADD

        return delta

    def find_duplicates(self, observed: Iterable[str]) -> List[Dict[str, object]]:
        """Addresses listed more than once by the directory."""
        counts = Counter(
            email.strip() if self.case_sensitive else email.strip().lower()
            for email in observed if email
        )
        return [{"email": email, "count": count} for email, count in counts.items() if count > 1]

    @staticmethod
    def summarize(delta: Dict[str, Delta]) -> Dict[str, int]:
        counts = Counter(delta.values())
        return {
            "add_count": counts.get(Delta.ADD, 0),
            "remove_count": counts.get(Delta.REMOVE, 0),
            "unchanged_count": counts.get(Delta.UNCHANGED, 0),
            "total": len(delta),
        }

    @staticmethod
    def actions(delta: Dict[str, Delta]) -> Dict[str, List[str]]:
        """Sorted add/remove lists with unchanged addresses elided."""
        return {
            "remove": sorted(email for email, value in delta.items() if value == Delta.REMOVE),
            "add": sorted(email for email, value in delta.items() if value == Delta.ADD),
        }
