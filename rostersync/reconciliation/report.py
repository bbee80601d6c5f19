"""
Operator-facing reports.

The ErrorReport collects per-address failures for manual remediation and is
merged with the previously stored report so that first-seen timestamps
survive across runs. The DryRunReport records the actions a dry run would
have taken.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ErrorRecord:
    """One failed directory operation."""

    email: str
    group: str
    category: str
    code: int
    message: str
    timestamp: str = field(default_factory=_now)


class ErrorReport:
    """Accumulates failures keyed by affected address."""

    def __init__(self):
        self.entries: Dict[str, Dict[str, Any]] = {}
        self.records: List[ErrorRecord] = []

    def add(self, record: ErrorRecord) -> None:
        self.records.append(record)
        entry = self.entries.setdefault(record.email, {
            "email": record.email,
            "groups": [],
            "errors": [],
            "first_seen": record.timestamp,
            "last_seen": record.timestamp,
        })
        if record.group and record.group not in entry["groups"]:
            entry["groups"].append(record.group)
        entry["errors"].append({
            "category": record.category,
            "group": record.group,
            "code": record.code,
            "message": record.message,
        })
        entry["last_seen"] = record.timestamp

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    def merge_previous(self, previous: Dict[str, Dict[str, Any]]) -> None:
        """Carry first_seen forward from a previously stored report."""
        for email, entry in self.entries.items():
            old = previous.get(email)
            if old and old.get("first_seen"):
                entry["first_seen"] = min(old["first_seen"], entry["first_seen"])

    def to_document(self) -> Dict[str, Any]:
        return {
            "generated_at": _now(),
            "error_count": len(self.records),
            "entries": sorted(self.entries.values(), key=lambda e: e["email"]),
        }

    def save(self, path: str) -> None:
        """Write the report, merging first_seen from any existing file."""
        report_path = Path(path)
        if report_path.exists():
            try:
                with open(report_path, "r") as f:
                    previous = json.load(f)
                self.merge_previous({e["email"]: e for e in previous.get("entries", [])})
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"Ignoring unreadable previous error report {report_path}: {e}")

        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w") as f:
            json.dump(self.to_document(), f, indent=2)

        logger.info(f"Error report saved: {report_path} ({len(self.entries)} addresses)")


class DryRunReport:
    """Intended actions of a dry run."""

    def __init__(self):
        self.actions: List[Dict[str, Any]] = []

    def record(self, action_type: str, group: str, email: Optional[str] = None, **details: Any) -> None:
        action = {
            "action_type": action_type,
            "group": group,
            "email": email,
            "dry_run": True,
            "status": "pending",
            "generated_at": _now(),
        }
        action.update(details)
        self.actions.append(action)

    def __len__(self) -> int:
        return len(self.actions)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for action in self.actions:
            counts[action["action_type"]] = counts.get(action["action_type"], 0) + 1
        return counts

    def save(self, path: str) -> None:
        report_path = Path(path)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w") as f:
            json.dump({"generated_at": _now(), "counts": self.counts(), "actions": self.actions}, f, indent=2)
        logger.info(f"Dry-run report saved: {report_path} ({len(self.actions)} actions)")
