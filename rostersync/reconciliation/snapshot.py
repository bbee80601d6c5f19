"""
Snapshot persistence for change detection.

A snapshot is a versioned document mapping capid to the watched-field
projection of a member, plus the directory user key and the last time the
member was seen on the roster. It also lists the planned group ids, so a
group that loses its last matching member is still emptied on the next run.
Unsupported versions are rejected, never merged.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import psycopg2
from psycopg2.extras import Json

from rostersync.errors import SnapshotSchemaError
from rostersync.models import Member
from rostersync.reconciliation.change_detector import project

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1


@dataclass
class Snapshot:
    """Projection of the member graph keyed by capid."""

    members: Dict[str, Dict[str, str]] = field(default_factory=dict)
    written_at: Optional[str] = None
    groups: List[str] = field(default_factory=list)

    def get(self, capid: str) -> Optional[Dict[str, str]]:
        return self.members.get(capid)

    def __len__(self) -> int:
        return len(self.members)

    def to_document(self) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "written_at": self.written_at or datetime.now(timezone.utc).isoformat(),
            "members": self.members,
            "groups": sorted(self.groups),
        }

    @classmethod
    def from_document(cls, document: Any) -> "Snapshot":
        """
        Parse a stored document, upgrading the legacy format.

        Raises:
            SnapshotSchemaError: If the document version is unsupported or an
                entry is malformed
        """
        if not isinstance(document, dict):
            raise SnapshotSchemaError(f"Snapshot must be an object, got {type(document).__name__}")

        version = document.get("schema_version")
        if version is None:
            # Version 1 stored the bare capid -> fields map.
            logger.info("Upgrading legacy snapshot to schema version 2")
            members = document
            written_at = None
            groups = []
        elif version == SCHEMA_VERSION:
            members = document.get("members")
            written_at = document.get("written_at")
            groups = document.get("groups") or []
            if not isinstance(members, dict):
                raise SnapshotSchemaError("Snapshot 'members' must be an object")
            if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
                raise SnapshotSchemaError("Snapshot 'groups' must be a list of group ids")
        else:
            raise SnapshotSchemaError(f"Unsupported snapshot schema version: {version}")

        parsed: Dict[str, Dict[str, str]] = {}
        for capid, entry in members.items():
            if not isinstance(entry, dict):
                raise SnapshotSchemaError(f"Snapshot entry for {capid} is not an object")
            for key, value in entry.items():
                if value is not None and not isinstance(value, str):
                    raise SnapshotSchemaError(f"Snapshot field {key} of {capid} is not a string")
            parsed[str(capid)] = {key: value or "" for key, value in entry.items()}

        return cls(members=parsed, written_at=written_at, groups=list(groups))

    @classmethod
    def build(
        cls,
        members: Iterable[Member],
        previous: Optional["Snapshot"],
        user_key: Callable[[Member], str],
        now: Optional[datetime] = None,
        skip: Iterable[str] = (),
        groups: Iterable[str] = ()
    ) -> "Snapshot":
        """
        Build the snapshot to persist after a run.

        Members on the roster get a fresh entry stamped with ``now``. Members
        absent from the roster keep their previous entry so their absence can
        be aged. Members in ``skip`` (failed writes) keep their previous entry,
        or none, so they are retried next run. ``groups`` are the group ids to
        revisit next run.
        """
        now = now or datetime.now(timezone.utc)
        stamp = now.isoformat()
        skip = set(skip)
        entries: Dict[str, Dict[str, str]] = {}

        if previous is not None:
            entries.update({capid: dict(entry) for capid, entry in previous.members.items()})

        for member in members:
            if member.capid in skip:
                if member.capid in entries:
                    entries[member.capid]["last_seen"] = stamp
                continue
            entry = project(member)
            entry["user_key"] = user_key(member)
            entry["last_seen"] = stamp
            entries[member.capid] = entry

        return cls(members=entries, written_at=stamp, groups=sorted(set(groups)))

    def absent_before(self, present: Iterable[str], cutoff: datetime) -> List[str]:
        """Capids absent from ``present`` whose last sighting predates ``cutoff``."""
        present = set(present)
        stale = []
        for capid, entry in self.members.items():
            if capid in present:
                continue
            last_seen = entry.get("last_seen")
            if not last_seen:
                continue
            try:
                seen = datetime.fromisoformat(last_seen)
            except ValueError:
                logger.warning(f"Unparseable last_seen {last_seen!r} for {capid}")
                continue
            if seen.tzinfo is None:
                seen = seen.replace(tzinfo=timezone.utc)
            if seen < cutoff:
                stale.append(capid)
        return stale

    def remove(self, capids: Iterable[str]) -> None:
        for capid in capids:
            self.members.pop(capid, None)


class SnapshotStore(ABC):
    """Persistence backend for snapshots."""

    @abstractmethod
    def load(self) -> Optional[Snapshot]:
        """Return the stored snapshot, or None when nothing has been stored."""

    @abstractmethod
    def save(self, snapshot: Snapshot) -> None:
        """Overwrite the stored snapshot."""


class FileSnapshotStore(SnapshotStore):
    """Stores the snapshot as a JSON file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[Snapshot]:
        if not self.path.exists():
            logger.info(f"No snapshot at {self.path}; every member will be synced")
            return None

        with open(self.path, "r") as f:
            try:
                document = json.load(f)
            except json.JSONDecodeError as e:
                raise SnapshotSchemaError(f"Snapshot {self.path} is not valid JSON: {e}")

        snapshot = Snapshot.from_document(document)
        logger.info(f"Loaded snapshot with {len(snapshot)} members from {self.path}")
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")

        with open(tmp_path, "w") as f:
            json.dump(snapshot.to_document(), f, indent=2, sort_keys=True)
        tmp_path.replace(self.path)

        logger.info(f"Snapshot saved: {self.path} ({len(snapshot)} members)")


class PostgresSnapshotStore(SnapshotStore):
    """Stores the snapshot as one JSONB row in a key/value table."""

    def __init__(
        self,
        connection_params: Mapping[str, Any],
        key: str = "roster-snapshot",
        table: str = "rostersync_state"
    ):
        """
        Initialize the store.

        Args:
            connection_params: Keyword arguments for psycopg2.connect
            key: Row key of the snapshot document
            table: Key/value table name
        """
        self.connection_params = dict(connection_params)
        self.key = key
        self.table = table

    def _connect(self):
        return psycopg2.connect(**self.connection_params)

    def _ensure_table(self, cursor) -> None:
        cursor.execute(
            f"CREATE TABLE IF NOT EXISTS {self.table} ("
            "key TEXT PRIMARY KEY, "
            "document JSONB NOT NULL, "
            "updated_at TIMESTAMPTZ NOT NULL DEFAULT now())"
        )

    def load(self) -> Optional[Snapshot]:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                self._ensure_table(cursor)
                cursor.execute(f"SELECT document FROM {self.table} WHERE key = %s", (self.key,))
                row = cursor.fetchone()
            conn.commit()
        finally:
            conn.close()

        if row is None:
            logger.info(f"No snapshot stored under {self.key}; every member will be synced")
            return None

        document = row[0]
        if isinstance(document, str):
            document = json.loads(document)

        snapshot = Snapshot.from_document(document)
        logger.info(f"Loaded snapshot with {len(snapshot)} members from {self.table}/{self.key}")
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                self._ensure_table(cursor)
                cursor.execute(
                    f"INSERT INTO {self.table} (key, document, updated_at) VALUES (%s, %s, now()) "
                    "ON CONFLICT (key) DO UPDATE SET document = EXCLUDED.document, updated_at = now()",
                    (self.key, Json(snapshot.to_document())),
                )
            conn.commit()
        finally:
            conn.close()

        logger.info(f"Snapshot saved: {self.table}/{self.key} ({len(snapshot)} members)")
