"""
Alert Rule Generator for Prometheus AlertManager

Generates alert rules for the roster sync job: stale runs, error spikes,
retry storms and unusually large membership churn.
"""

import logging
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)


class AlertRuleGenerator:
    """Generates Prometheus alert rules for rostersync metrics."""

    def __init__(self, namespace: str = "rostersync", stale_after_hours: int = 36):
        """
        Initialize alert rule generator.

        Args:
            namespace: Metric name prefix used by SyncMetrics
            stale_after_hours: Hours without a completed run before alerting
        """
        self.namespace = namespace
        self.stale_after_hours = stale_after_hours

    def generate_alert_rules(self) -> Dict[str, Any]:
        groups = [
            self._generate_run_alerts(),
            self._generate_directory_alerts(),
        ]
        logger.info(f"Generated {len(groups)} alert rule groups")
        return {"groups": groups}

    def _generate_run_alerts(self) -> Dict[str, Any]:
        ns = self.namespace
        return {
            "name": f"{ns}_runs",
            "interval": "5m",
            "rules": [
                {
                    "alert": "RosterSyncStale",
                    "expr": f"time() - {ns}_last_success_timestamp_seconds > {self.stale_after_hours * 3600}",
                    "for": "15m",
                    "labels": {"severity": "warning", "component": "rostersync"},
                    "annotations": {
                        "summary": "Roster sync has not completed recently",
                        "description": f"No completed roster sync run in the last {self.stale_after_hours}h",
                    },
                },
                {
                    "alert": "RosterSyncErrors",
                    "expr": f"{ns}_run_errors > 25",
                    "for": "0m",
                    "labels": {"severity": "warning", "component": "rostersync"},
                    "annotations": {
                        "summary": "Roster sync recorded many errors",
                        "description": "Last run recorded {{ $value }} hard errors; see the error report",
                    },
                },
            ],
        }

    def _generate_directory_alerts(self) -> Dict[str, Any]:
        ns = self.namespace
        return {
            "name": f"{ns}_directory",
            "interval": "5m",
            "rules": [
                {
                    "alert": "DirectoryRetryStorm",
                    "expr": f"sum(increase({ns}_remote_retries_total[1h])) > 500",
                    "for": "0m",
                    "labels": {"severity": "warning", "component": "directory"},
                    "annotations": {
                        "summary": "Directory API is throttling the sync",
                        "description": "{{ $value }} retried directory calls in the last hour",
                    },
                },
                {
                    "alert": "LargeMembershipChurn",
                    "expr": f"sum(increase({ns}_group_changes_total{{action=\"remove\",status=\"success\"}}[1h])) > 1000",
                    "for": "0m",
                    "labels": {"severity": "critical", "component": "directory"},
                    "annotations": {
                        "summary": "Unusually many group removals",
                        "description": "{{ $value }} members removed from groups in the last hour",
                    },
                },
            ],
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.generate_alert_rules(), sort_keys=False)

    def write(self, path: str) -> None:
        with open(path, "w") as f:
            f.write(self.to_yaml())
        logger.info(f"Alert rules written to {path}")
