"""
Directory Reconciler

Converges the membership of each directory group to its desired state:
lists the observed members, computes the delta, and applies removals before
additions through the RateLimitedExecutor. Missing groups are created on
demand. In dry-run mode the same delta is recorded instead of applied.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from rostersync.directory.client import collect_pages
from rostersync.errors import DirectoryError
from rostersync.models import Delta
from rostersync.reconciliation.differ import MembershipDiffer
from rostersync.reconciliation.executor import RateLimitedExecutor
from rostersync.reconciliation.report import DryRunReport, ErrorRecord, ErrorReport

logger = logging.getLogger(__name__)

PROTECTED_ROLES = ("OWNER", "MANAGER")


@dataclass
class ReconcileResult:
    """Outcome of reconciling one group."""

    group_id: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: int = 0
    not_found: List[str] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    created: bool = False
    dry_run: bool = False


@dataclass
class ReconcileTotals:
    """Aggregate counts over many groups."""

    groups: int = 0
    created: int = 0
    added: int = 0
    removed: int = 0
    unchanged: int = 0
    not_found: int = 0
    errors: int = 0

    def include(self, result: ReconcileResult) -> None:
        self.groups += 1
        self.created += int(result.created)
        self.added += len(result.added)
        self.removed += len(result.removed)
        self.unchanged += result.unchanged
        self.not_found += len(result.not_found)
        self.errors += len(result.errors)


class DirectoryReconciler:
    """Applies membership deltas to directory groups."""

    def __init__(
        self,
        client,
        executor: RateLimitedExecutor,
        error_report: Optional[ErrorReport] = None,
        dry_run: bool = False,
        dry_run_report: Optional[DryRunReport] = None,
        describe: Optional[Callable[[str], Tuple[str, str]]] = None,
        batch_size: int = 100,
        protected_roles: Iterable[str] = PROTECTED_ROLES,
        metrics=None
    ):
        """
        Initialize the reconciler.

        Args:
            client: DirectoryClient (or compatible) instance
            executor: Executor every remote call goes through
            error_report: Report collecting hard errors
            dry_run: Record intended actions instead of applying them
            dry_run_report: Report collecting intended actions
            describe: Callable returning (name, description) for a group id
            batch_size: Membership changes per batch
            protected_roles: Observed roles that are never removed
            metrics: Optional SyncMetrics
        """
        self.client = client
        self.executor = executor
        self.error_report = error_report if error_report is not None else ErrorReport()
        self.dry_run = dry_run
        self.dry_run_report = dry_run_report if dry_run_report is not None else DryRunReport()
        self.describe = describe or (lambda group_id: (group_id.split("@", 1)[0], ""))
        self.batch_size = batch_size
        self.protected_roles = frozenset(r.upper() for r in protected_roles)
        self.metrics = metrics
        self.differ = MembershipDiffer()

    def observed_members(self, group_id: str) -> Tuple[Set[str], Set[str]]:
        """
        List a group's members across all pages.

        Returns:
            (all member e-mails, e-mails holding a protected role)

        Raises:
            DirectoryError: If listing fails (404 when the group does not exist)
        """
        fetch_page = functools.partial(self.client.list_members, group_id)
        members = collect_pages(fetch_page, "members", executor=self.executor)

        emails = set()
        protected = set()
        for member in members:
            email = (member.get("email") or "").strip().lower()
            if not email:
                continue
            emails.add(email)
            if (member.get("role") or "MEMBER").upper() in self.protected_roles:
                protected.add(email)

        duplicates = self.differ.find_duplicates(m.get("email") or "" for m in members)
        if duplicates:
            logger.warning(f"Group {group_id} lists duplicate members: {duplicates}")

        return emails, protected

    def reconcile(self, group_id: str, desired: Set[str]) -> ReconcileResult:
        """
        Converge one group to the desired membership.

        Args:
            group_id: Group e-mail address
            desired: Desired member e-mails

        Returns:
            ReconcileResult with applied (or, in dry-run, intended) changes
        """
        result = ReconcileResult(group_id=group_id, dry_run=self.dry_run)

        try:
            observed, protected = self.observed_members(group_id)
        except DirectoryError as e:
            if not e.is_not_found:
                self._record_error(result, "", "list", e)
                return result
            if not desired:
                logger.debug(f"Group {group_id} does not exist and has no desired members")
                return result
            if not self._create_group(result):
                return result
            observed, protected = set(), set()

        delta = self.differ.compute_delta(observed, desired)
        for email in protected:
            if delta.get(email) == Delta.REMOVE:
                delta[email] = Delta.UNCHANGED

        actions = self.differ.actions(delta)
        summary = self.differ.summarize(delta)
        result.unchanged = summary["unchanged_count"]

        logger.info(
            f"Group {group_id}: {summary['add_count']} to add, {summary['remove_count']} to remove, "
            f"{summary['unchanged_count']} unchanged"
        )

        for batch in self.executor.batches(actions["remove"], self.batch_size):
            for email in batch:
                self._apply(result, "remove", email)

        for batch in self.executor.batches(actions["add"], self.batch_size):
            for email in batch:
                self._apply(result, "add", email)

        return result

    def reconcile_all(self, plan: Mapping[str, Set[str]]) -> Tuple[Dict[str, ReconcileResult], ReconcileTotals]:
        """Reconcile every planned group; one group's failure never stops the others."""
        results: Dict[str, ReconcileResult] = {}
        totals = ReconcileTotals()

        for group_id in sorted(plan):
            try:
                result = self.reconcile(group_id, plan[group_id])
            except Exception as e:
                logger.error(f"Unexpected failure reconciling {group_id}: {e}", exc_info=True)
                result = ReconcileResult(group_id=group_id, dry_run=self.dry_run)
                self._record_error(result, "", "reconcile", e)
            results[group_id] = result
            totals.include(result)

        logger.info(
            f"Reconciled {totals.groups} groups: {totals.added} added, {totals.removed} removed, "
            f"{totals.created} created, {totals.not_found} unreachable, {totals.errors} errors"
        )
        return results, totals

    def _create_group(self, result: ReconcileResult) -> bool:
        name, description = self.describe(result.group_id)

        if self.dry_run:
            self.dry_run_report.record("create_group", result.group_id, name=name, description=description)
            result.created = True
            return True

        try:
            self.executor.execute(self.client.insert_group, result.group_id, name, description)
        except DirectoryError as e:
            if not e.is_conflict:
                self._record_error(result, "", "create_group", e)
                return False
        except Exception as e:
            self._record_error(result, "", "create_group", e)
            return False

        logger.info(f"Created group {result.group_id} ({name})")
        result.created = True
        return True

    def _apply(self, result: ReconcileResult, action: str, email: str) -> None:
        target = result.added if action == "add" else result.removed

        if self.dry_run:
            self.dry_run_report.record(f"{action}_member", result.group_id, email)
            target.append(email)
            return

        try:
            if action == "add":
                self.executor.execute(self.client.insert_member, result.group_id, email)
            else:
                self.executor.execute(self.client.remove_member, result.group_id, email)
        except DirectoryError as e:
            if e.is_conflict:
                logger.debug(f"{email} already a member of {result.group_id}")
                target.append(email)
                self._count(action, "success")
                return
            if e.is_not_found:
                logger.info(f"{email} not reachable for {action} in {result.group_id}: {e.message}")
                result.not_found.append(email)
                self._count(action, "not_found")
                return
            self._record_error(result, email, action, e)
            self._count(action, "error")
            return
        except Exception as e:
            self._record_error(result, email, action, e)
            self._count(action, "error")
            return

        target.append(email)
        self._count(action, "success")

    def _record_error(self, result: ReconcileResult, email: str, category: str, error: Exception) -> None:
        code = error.status_code if isinstance(error, DirectoryError) else 0
        message = error.message if isinstance(error, DirectoryError) else str(error)
        record = ErrorRecord(email=email, group=result.group_id, category=category, code=code, message=message)
        result.errors.append(record)
        self.error_report.add(record)
        logger.error(f"Failed to {category} {email or ''} in {result.group_id}: {code} {message}")

    def _count(self, action: str, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_group_change(action=action, status=status)
