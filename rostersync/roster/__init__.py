"""Roster extract parsing and organization hierarchy."""

from rostersync.roster.cache import RosterCache
from rostersync.roster.hierarchy import OrgHierarchy
from rostersync.roster.loader import Roster, RosterLoader

__all__ = [
    "RosterCache",
    "OrgHierarchy",
    "Roster",
    "RosterLoader",
]
