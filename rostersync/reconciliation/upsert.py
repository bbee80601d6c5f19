"""
User Upsert Engine

Writes changed members to the directory. Each member is attempted as an
update keyed by its derived primary address, unless that address belongs to
another member; a missing account falls back to restoring an archived or
deleted account, and finally to creating a new one. Suspension of members of
excluded organizations is applied separately and never fails the upsert.
Failures are terminal for that member only and are logged and reported, never
raised.
"""

import functools
import logging
import re
import secrets
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rostersync.directory.client import collect_pages
from rostersync.errors import DirectoryError
from rostersync.models import Member
from rostersync.reconciliation.executor import RateLimitedExecutor
from rostersync.reconciliation.report import DryRunReport, ErrorRecord, ErrorReport
from rostersync.reconciliation.snapshot import Snapshot

logger = logging.getLogger(__name__)

EXTERNAL_ID_TYPE = "organization"
CUSTOM_SCHEMA = "Roster"


class UpsertOutcome(Enum):
    UPDATED = "updated"
    CREATED = "created"
    REACTIVATED = "reactivated"
    DRY_RUN = "dry_run"
    FAILED = "failed"


@dataclass
class UpsertStats:
    """Aggregate counts of one upsert pass."""

    processed: int = 0
    updated: int = 0
    created: int = 0
    reactivated: int = 0
    skipped: int = 0
    errors: int = 0
    failed: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "updated": self.updated,
            "created": self.created,
            "reactivated": self.reactivated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def normalize_name_part(value: str) -> str:
    """Lower-case ASCII form of a name part with everything but [a-z0-9-] removed."""
    ascii_value = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9-]", "", ascii_value.lower())


class UserUpsertEngine:
    """Creates, updates and restores directory accounts for members."""

    def __init__(
        self,
        client,
        executor: RateLimitedExecutor,
        domain: str,
        excluded_org_ids: Iterable[str] = (),
        error_report: Optional[ErrorReport] = None,
        dry_run: bool = False,
        dry_run_report: Optional[DryRunReport] = None,
        batch_size: int = 100,
        metrics=None
    ):
        """
        Initialize the engine.

        Args:
            client: DirectoryClient (or compatible) instance
            executor: Executor every remote call goes through
            domain: Directory domain for primary addresses
            excluded_org_ids: Organizations whose members are suspended
            error_report: Report collecting failures
            dry_run: Record intended writes instead of applying them
            dry_run_report: Report collecting intended writes
            batch_size: Members per batch
            metrics: Optional SyncMetrics
        """
        self.client = client
        self.executor = executor
        self.domain = domain.lower()
        self.excluded_org_ids = frozenset(excluded_org_ids)
        self.error_report = error_report if error_report is not None else ErrorReport()
        self.dry_run = dry_run
        self.dry_run_report = dry_run_report if dry_run_report is not None else DryRunReport()
        self.batch_size = batch_size
        self.metrics = metrics
        self._deleted_users: Optional[List[Dict[str, Any]]] = None

    def user_key(self, member: Member) -> str:
        """Primary address ``first.last@domain`` of a member."""
        first = normalize_name_part(member.first_name)
        last = normalize_name_part(member.last_name)
        return f"{first}.{last}@{self.domain}"

    def build_body(self, member: Member) -> Dict[str, Any]:
        """Directory user resource for a member."""
        body: Dict[str, Any] = {
            "primaryEmail": self.user_key(member),
            "name": {"givenName": member.first_name, "familyName": member.last_name},
            "orgUnitPath": member.directory_path,
            "externalIds": [{"type": EXTERNAL_ID_TYPE, "value": member.capid}],
            "organizations": [{
                "primary": True,
                "title": member.rank,
                "department": member.charter,
                "description": member.member_type,
            }],
            "customSchemas": {
                CUSTOM_SCHEMA: {
                    "capid": member.capid,
                    "dutyPositions": [
                        {"type": "work", "value": position.display}
                        for position in member.duty_positions
                    ],
                },
            },
        }

        if member.email:
            body["recoveryEmail"] = member.email
            body["emails"] = [{"address": member.email, "type": "home"}]
        if member.phone:
            body["phones"] = [{"type": "mobile", "value": member.phone, "primary": True}]
            body["recoveryPhone"] = member.phone
        if member.manager_email:
            body["relations"] = [{"type": "manager", "value": member.manager_email}]

        return body

    def upsert(self, member: Member) -> UpsertOutcome:
        """
        Write one member to the directory. Never raises.

        Returns:
            The outcome for this member
        """
        key = self.user_key(member)
        body = self.build_body(member)

        if self.dry_run:
            self.dry_run_report.record("upsert_user", "", key, capid=member.capid)
            return UpsertOutcome.DRY_RUN

        try:
            outcome, account = self._upsert(member, key, body)
        except Exception as e:
            self._record_failure(member, key, e)
            return UpsertOutcome.FAILED

        if outcome in (UpsertOutcome.CREATED, UpsertOutcome.REACTIVATED):
            self._add_alias(member, key)
        self._apply_suspension(member, key, account)

        logger.debug(f"Member {member.capid} -> {key}: {outcome.value}")
        return outcome

    def _upsert(
        self,
        member: Member,
        key: str,
        body: Dict[str, Any]
    ) -> Tuple[UpsertOutcome, Optional[Dict[str, Any]]]:
        """
        Returns:
            The outcome and the account as it was before the write (None when created)

        Raises:
            DirectoryError: If the key belongs to another member or a write fails
        """
        current = self.get_account(key)
        if current is not None:
            owner = self._external_ids(current)
            if owner and member.capid not in owner:
                raise DirectoryError(
                    409,
                    f"{key} belongs to member {', '.join(owner)}, not {member.capid}",
                    "keyConflict",
                )
            self.executor.execute(self.client.update_user, key, body)
            return UpsertOutcome.UPDATED, current

        existing = self.find_by_external_id(member.capid)
        if existing is not None:
            existing_key = existing.get("primaryEmail") or existing.get("id")
            if existing.get("archived"):
                logger.info(f"Unarchiving {existing_key} for member {member.capid}")
                self.executor.execute(self.client.update_user, existing_key, {"archived": False})
                self.executor.execute(self.client.update_user, existing_key, body)
                return UpsertOutcome.REACTIVATED, existing
            logger.info(f"Member {member.capid} found under {existing_key}; renaming to {key}")
            self.executor.execute(self.client.update_user, existing_key, body)
            return UpsertOutcome.UPDATED, existing

        deleted = self.find_deleted(member.capid)
        if deleted is not None:
            logger.info(f"Restoring deleted account {deleted.get('id')} for member {member.capid}")
            self.executor.execute(self.client.undelete_user, deleted["id"], member.directory_path or "/")
            self.executor.execute(self.client.update_user, deleted["id"], body)
            return UpsertOutcome.REACTIVATED, deleted

        create_body = dict(body)
        create_body["password"] = secrets.token_urlsafe(24)
        create_body["changePasswordAtNextLogin"] = True
        self.executor.execute(self.client.insert_user, create_body)
        logger.info(f"Created account {key} for member {member.capid}")
        return UpsertOutcome.CREATED, None

    def get_account(self, key: str) -> Optional[Dict[str, Any]]:
        """Account stored at a primary address, or None if there is none."""
        try:
            return self.executor.execute(self.client.get_user, key)
        except DirectoryError as e:
            if e.is_not_found:
                return None
            raise

    def find_by_external_id(self, capid: str) -> Optional[Dict[str, Any]]:
        """Live or archived account carrying the member's external id."""
        fetch_page = functools.partial(self.client.list_users, f"externalId:{capid}")
        users = collect_pages(fetch_page, "users", executor=self.executor)
        for user in users:
            if self._has_external_id(user, capid):
                return user
        return None

    def find_deleted(self, capid: str) -> Optional[Dict[str, Any]]:
        """Recently deleted account carrying the member's external id."""
        if self._deleted_users is None:
            fetch_page = functools.partial(self.client.list_users, None, True)
            self._deleted_users = [
                user for user in collect_pages(fetch_page, "users", executor=self.executor)
                if user.get("deletionTime")
            ]
            logger.debug(f"Loaded {len(self._deleted_users)} deleted accounts")

        for user in self._deleted_users:
            if self._has_external_id(user, capid):
                return user
        return None

    @staticmethod
    def _has_external_id(user: Dict[str, Any], capid: str) -> bool:
        return any(str(ext.get("value")) == capid for ext in user.get("externalIds") or [])

    @staticmethod
    def _external_ids(user: Dict[str, Any]) -> List[str]:
        """Roster ids recorded on an account."""
        return [
            str(ext.get("value")) for ext in user.get("externalIds") or []
            if ext.get("type") == EXTERNAL_ID_TYPE and ext.get("value")
        ]

    def _apply_suspension(self, member: Member, key: str, account: Optional[Dict[str, Any]]) -> None:
        suspended = member.org_id in self.excluded_org_ids
        if bool((account or {}).get("suspended", False)) == suspended:
            return

        try:
            self.executor.execute(self.client.update_user, key, {"suspended": suspended})
            logger.info(f"{'Suspended' if suspended else 'Unsuspended'} {key} (organization {member.org_id})")
        except Exception as e:
            logger.warning(f"Could not set suspended={suspended} on {key}: {e}")

    def _add_alias(self, member: Member, key: str) -> None:
        alias = f"{member.capid}@{self.domain}"
        try:
            self.executor.execute(self.client.insert_alias, key, alias)
        except DirectoryError as e:
            if not e.is_conflict:
                logger.warning(f"Could not add alias {alias} to {key}: {e}")
        except Exception as e:
            logger.warning(f"Could not add alias {alias} to {key}: {e}")

    def _record_failure(self, member: Member, key: str, error: Exception) -> None:
        code = error.status_code if isinstance(error, DirectoryError) else 0
        message = error.message if isinstance(error, DirectoryError) else str(error)
        self.error_report.add(ErrorRecord(email=key, group="", category="upsert", code=code, message=message))
        logger.error(f"Upsert failed for member {member.capid} ({key}): {code} {message}")

    def upsert_all(self, changed: Iterable[Member], unchanged_count: int = 0) -> UpsertStats:
        """
        Upsert changed members in paced batches.

        Args:
            changed: Members needing a directory write
            unchanged_count: Members skipped by change detection

        Returns:
            UpsertStats for the pass
        """
        stats = UpsertStats(skipped=unchanged_count)

        for batch_number, batch in enumerate(self.executor.batches(changed, self.batch_size), start=1):
            logger.info(f"Processing member batch {batch_number} ({len(batch)} members)")
            for member in batch:
                outcome = self.upsert(member)
                stats.processed += 1
                if outcome == UpsertOutcome.UPDATED:
                    stats.updated += 1
                elif outcome == UpsertOutcome.CREATED:
                    stats.created += 1
                elif outcome == UpsertOutcome.REACTIVATED:
                    stats.reactivated += 1
                elif outcome == UpsertOutcome.FAILED:
                    stats.errors += 1
                    stats.failed.append(member.capid)

                if self.metrics is not None:
                    self.metrics.record_member_outcome(outcome.value)

        logger.info(f"Upsert pass complete: {stats.as_dict()}")
        return stats

    def suspend_absent(
        self,
        snapshot: Snapshot,
        present: Iterable[str],
        grace_days: int,
        now: Optional[datetime] = None
    ) -> List[str]:
        """
        Suspend accounts of members absent from the roster past the grace period.

        Suspended members are removed from the snapshot; failures leave the
        entry in place so the suspension is retried next run.

        Returns:
            Capids whose accounts were suspended
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=grace_days)
        stale = snapshot.absent_before(present, cutoff)
        suspended = []

        for capid in stale:
            key = snapshot.members[capid].get("user_key")
            if not key:
                continue

            if self.dry_run:
                self.dry_run_report.record("suspend_user", "", key, capid=capid)
                continue

            try:
                self.executor.execute(self.client.update_user, key, {"suspended": True})
            except DirectoryError as e:
                if not e.is_not_found:
                    self.error_report.add(ErrorRecord(
                        email=key, group="", category="suspend", code=e.status_code, message=e.message
                    ))
                    logger.error(f"Could not suspend {key}: {e}")
                    continue
            except Exception as e:
                self.error_report.add(ErrorRecord(email=key, group="", category="suspend", code=0, message=str(e)))
                logger.error(f"Could not suspend {key}: {e}")
                continue

            logger.info(f"Suspended {key}: absent from roster for more than {grace_days} days")
            suspended.append(capid)

        snapshot.remove(suspended)
        return suspended
