"""
Prometheus Metrics for roster synchronisation

A sync run is a short-lived batch job, so metrics live in a dedicated
registry and are pushed to a Pushgateway at the end of the run instead of
being scraped.
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway

logger = logging.getLogger(__name__)

JOB_NAME = "rostersync"


class SyncMetrics:
    """Prometheus metrics of one sync run."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "rostersync"):
        """
        Initialize sync metrics.

        Args:
            registry: Registry to register metrics in (a fresh one by default)
            namespace: Metric name prefix
        """
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace

        self.member_outcomes_total = Counter(
            f"{namespace}_member_outcomes_total",
            "Member upsert outcomes",
            ["outcome"],
            registry=self.registry
        )

        self.group_changes_total = Counter(
            f"{namespace}_group_changes_total",
            "Group membership changes by action and status",
            ["action", "status"],
            registry=self.registry
        )

        self.remote_retries_total = Counter(
            f"{namespace}_remote_retries_total",
            "Directory calls retried after a transient failure",
            ["status_code"],
            registry=self.registry
        )

        self.roster_records = Gauge(
            f"{namespace}_roster_records",
            "Roster records in the last load by kind",
            ["kind"],
            registry=self.registry
        )

        self.run_duration_seconds = Histogram(
            f"{namespace}_run_duration_seconds",
            "Duration of sync runs in seconds",
            ["dry_run"],
            buckets=[30, 60, 300, 600, 1800, 3600, 7200, 14400],
            registry=self.registry
        )

        self.last_success_timestamp = Gauge(
            f"{namespace}_last_success_timestamp_seconds",
            "Unix time of the last run that completed",
            registry=self.registry
        )

        self.run_errors = Gauge(
            f"{namespace}_run_errors",
            "Hard errors recorded in the last run",
            registry=self.registry
        )

        logger.debug("SyncMetrics initialized")

    def record_member_outcome(self, outcome: str) -> None:
        self.member_outcomes_total.labels(outcome=outcome).inc()

    def record_group_change(self, action: str, status: str) -> None:
        self.group_changes_total.labels(action=action, status=status).inc()

    def record_retry(self, error: Exception, attempt: int) -> None:
        """Hook for RateLimitedExecutor.on_retry."""
        status_code = getattr(error, "status_code", 0)
        self.remote_retries_total.labels(status_code=str(status_code)).inc()

    def record_roster_load(self, counts: Dict[str, int]) -> None:
        for kind, count in counts.items():
            self.roster_records.labels(kind=kind).set(count)

    def record_run(self, duration_seconds: float, dry_run: bool, errors: int, completed: bool) -> None:
        self.run_duration_seconds.labels(dry_run=str(dry_run).lower()).observe(duration_seconds)
        self.run_errors.set(errors)
        if completed:
            self.last_success_timestamp.set_to_current_time()

    def push(self, gateway_url: Optional[str], job: str = JOB_NAME) -> bool:
        """
        Push metrics to a Pushgateway.

        Returns:
            True if pushed; False when no gateway is configured or the push failed
        """
        if not gateway_url:
            return False
        try:
            push_to_gateway(gateway_url, job=job, registry=self.registry)
            logger.info(f"Pushed metrics to {gateway_url}")
            return True
        except Exception as e:
            logger.warning(f"Failed to push metrics to {gateway_url}: {e}")
            return False
