"""
Sync run orchestration.

One SyncRunner.run() call is one batch run: load the roster through a
run-owned parse cache, upsert changed members, reconcile every planned group,
suspend long-absent accounts, persist the snapshot and reports, and log the
aggregate counts.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from rostersync.config import SyncConfig
from rostersync.errors import SnapshotSchemaError
from rostersync.models import GroupSpec
from rostersync.monitoring.metrics import SyncMetrics
from rostersync.reconciliation.change_detector import ChangeDetector
from rostersync.reconciliation.executor import RateLimitedExecutor, RetryPolicy
from rostersync.reconciliation.planner import GroupMembershipPlanner
from rostersync.reconciliation.reconciler import DirectoryReconciler, ReconcileResult
from rostersync.reconciliation.report import DryRunReport, ErrorReport
from rostersync.reconciliation.snapshot import (
    FileSnapshotStore,
    PostgresSnapshotStore,
    Snapshot,
    SnapshotStore,
)
from rostersync.reconciliation.upsert import UserUpsertEngine
from rostersync.roster.cache import RosterCache
from rostersync.roster.loader import RosterLoader
from rostersync.utils.run_context import RunContext

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Aggregate result of one run."""

    run_id: str
    dry_run: bool
    started_at: str
    duration_seconds: float = 0.0
    roster: Dict[str, int] = field(default_factory=dict)
    users: Dict[str, int] = field(default_factory=dict)
    groups: Dict[str, int] = field(default_factory=dict)
    suspended: List[str] = field(default_factory=list)
    errors: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 2),
            "roster": self.roster,
            "users": self.users,
            "groups": self.groups,
            "suspended": len(self.suspended),
            "errors": self.errors,
        }


def build_snapshot_store(config: SyncConfig, vault_factory=None) -> SnapshotStore:
    """Snapshot store for the configured backend."""
    if config.snapshot_backend == "postgres":
        params = config.postgres_params
        if not params["password"] and vault_factory is not None:
            with vault_factory() as vault:
                params.update(vault.get_snapshot_db_credentials())
        return PostgresSnapshotStore(params)
    return FileSnapshotStore(config.snapshot_path)


class SyncRunner:
    """Runs one roster-to-directory synchronisation."""

    def __init__(
        self,
        config: SyncConfig,
        client,
        snapshot_store: SnapshotStore,
        group_specs: List[GroupSpec],
        metrics: Optional[SyncMetrics] = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """
        Initialize the runner.

        Args:
            config: Run settings
            client: DirectoryClient (or compatible) instance
            snapshot_store: Where the change-detection snapshot lives
            group_specs: Parsed GroupSpec table
            metrics: Optional SyncMetrics
            sleeper: Sleep function used for pacing and backoff
            clock: Current-time function
        """
        self.config = config
        self.client = client
        self.snapshot_store = snapshot_store
        self.group_specs = group_specs
        self.metrics = metrics or SyncMetrics()
        self.sleeper = sleeper
        self.clock = clock

        self.loader = RosterLoader(
            member_types=config.member_types,
            excluded_unit_codes=config.excluded_unit_codes,
            aggregate_units=config.aggregate_unit_specs(),
        )
        self.detector = ChangeDetector()

    def _executor(self) -> RateLimitedExecutor:
        policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base,
            backoff_factor=self.config.backoff_factor,
        )
        return RateLimitedExecutor(
            policy=policy,
            call_delay=self.config.call_delay,
            batch_pause=self.config.batch_pause,
            sleeper=self.sleeper,
            on_retry=self.metrics.record_retry,
        )

    def _load_snapshot(self) -> Optional[Snapshot]:
        try:
            return self.snapshot_store.load()
        except SnapshotSchemaError as e:
            logger.error(f"Rejecting stored snapshot ({e}); every member will be synced")
            return None

    def _carry_forward(self, plan: Dict[str, Set[str]], previous: Optional[Snapshot]) -> Dict[str, Set[str]]:
        """Add previously planned groups that dropped out of the plan, with no desired members."""
        if previous is None:
            return plan

        carried = dict(plan)
        for group_id in previous.groups:
            if group_id not in carried:
                logger.info(f"Group {group_id} no longer has matching members; emptying it")
                carried[group_id] = set()
        return carried

    @staticmethod
    def _groups_to_revisit(plan: Dict[str, Set[str]], results: Dict[str, ReconcileResult]) -> List[str]:
        """Groups with desired members, plus groups whose reconciliation left errors."""
        return [
            group_id for group_id, desired in plan.items()
            if desired or (group_id in results and results[group_id].errors)
        ]

    def run(self) -> RunSummary:
        """
        Execute one full run.

        Raises:
            SetupError: If the roster extract is missing or unreadable
        """
        dry_run = self.config.dry_run
        started = time.monotonic()
        now = self.clock()

        with RunContext() as run_id:
            summary = RunSummary(run_id=run_id, dry_run=dry_run, started_at=now.isoformat())
            logger.info(f"Starting roster sync run {run_id} (dry_run={dry_run})")

            cache = RosterCache(self.config.extract_dir, delimiter=self.config.extract_delimiter)
            try:
                roster = self.loader.load_from_cache(cache)
            finally:
                cache.invalidate()

            summary.roster = {
                "organizations": roster.report.organizations,
                "members": roster.report.members,
                "filtered": roster.report.filtered,
                "invalid": roster.report.invalid,
                "manual": roster.report.manual,
            }
            self.metrics.record_roster_load(summary.roster)

            executor = self._executor()
            error_report = ErrorReport()
            dry_run_report = DryRunReport()

            previous = self._load_snapshot()
            changed, unchanged = self.detector.partition(
                roster.members,
                previous.members if previous is not None else None,
            )

            engine = UserUpsertEngine(
                self.client,
                executor,
                domain=self.config.domain,
                excluded_org_ids=self.config.excluded_org_ids,
                error_report=error_report,
                dry_run=dry_run,
                dry_run_report=dry_run_report,
                batch_size=self.config.batch_size,
                metrics=self.metrics,
            )
            stats = engine.upsert_all(changed, unchanged_count=len(unchanged))
            summary.users = stats.as_dict()

            planner = GroupMembershipPlanner(self.config.domain, self.config.placeholder_units)
            plan = planner.plan_all(self.group_specs, roster.members, roster.organizations, roster.achievements)
            plan = self._carry_forward(plan, previous)

            reconciler = DirectoryReconciler(
                self.client,
                executor,
                error_report=error_report,
                dry_run=dry_run,
                dry_run_report=dry_run_report,
                describe=planner.describe,
                batch_size=self.config.batch_size,
                metrics=self.metrics,
            )
            results, totals = reconciler.reconcile_all(plan)
            summary.groups = {
                "groups": totals.groups,
                "created": totals.created,
                "added": totals.added,
                "removed": totals.removed,
                "unchanged": totals.unchanged,
                "not_found": totals.not_found,
                "errors": totals.errors,
            }

            snapshot = Snapshot.build(
                roster.members.values(),
                previous,
                user_key=engine.user_key,
                now=now,
                skip=stats.failed,
                groups=self._groups_to_revisit(plan, results),
            )
            summary.suspended = engine.suspend_absent(
                snapshot,
                present=roster.members.keys(),
                grace_days=self.config.suspend_grace_days,
                now=now,
            )

            if dry_run:
                dry_run_report.save(self.config.dry_run_report_path)
            else:
                self.snapshot_store.save(snapshot)

            if error_report:
                error_report.save(self.config.error_report_path)

            summary.errors = len(error_report)
            summary.duration_seconds = time.monotonic() - started

            logger.info(
                f"Run {run_id} complete in {summary.duration_seconds:.1f}s: "
                f"processed={stats.processed} updated={stats.updated} created={stats.created} "
                f"reactivated={stats.reactivated} skipped={stats.skipped} "
                f"suspended={len(summary.suspended)} group_adds={totals.added} "
                f"group_removes={totals.removed} errors={summary.errors}"
            )

            self.metrics.record_run(summary.duration_seconds, dry_run, summary.errors, completed=True)
            self.metrics.push(self.config.pushgateway_url)

        return summary
