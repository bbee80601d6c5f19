"""
Unit tests for sync metrics.
"""

import pytest
from unittest.mock import patch
from prometheus_client import CollectorRegistry

from rostersync.errors import DirectoryError
from rostersync.monitoring.metrics import SyncMetrics


class TestSyncMetrics:
    """Test suite for SyncMetrics."""

    @pytest.fixture
    def metrics(self):
        """Create SyncMetrics on a fresh registry."""
        return SyncMetrics(registry=CollectorRegistry(), namespace="test")

    def _value(self, metrics, name, labels=None):
        return metrics.registry.get_sample_value(name, labels or {})

    def test_member_outcomes(self, metrics):
        """Test member outcome counter."""
        metrics.record_member_outcome("updated")
        metrics.record_member_outcome("updated")
        metrics.record_member_outcome("failed")

        assert self._value(metrics, "test_member_outcomes_total", {"outcome": "updated"}) == 2
        assert self._value(metrics, "test_member_outcomes_total", {"outcome": "failed"}) == 1

    def test_group_changes(self, metrics):
        """Test group change counter labels."""
        metrics.record_group_change(action="add", status="success")

        assert self._value(metrics, "test_group_changes_total", {"action": "add", "status": "success"}) == 1

    def test_retry_hook(self, metrics):
        """Test the executor retry hook labels by status code."""
        metrics.record_retry(DirectoryError(429, "slow"), 1)
        metrics.record_retry(ConnectionError("reset"), 2)

        assert self._value(metrics, "test_remote_retries_total", {"status_code": "429"}) == 1
        assert self._value(metrics, "test_remote_retries_total", {"status_code": "0"}) == 1

    def test_roster_load(self, metrics):
        """Test roster gauges."""
        metrics.record_roster_load({"members": 120, "invalid": 3})

        assert self._value(metrics, "test_roster_records", {"kind": "members"}) == 120
        assert self._value(metrics, "test_roster_records", {"kind": "invalid"}) == 3

    def test_record_run(self, metrics):
        """Test run duration, error gauge and success timestamp."""
        metrics.record_run(42.0, dry_run=False, errors=2, completed=True)

        assert self._value(metrics, "test_run_duration_seconds_count", {"dry_run": "false"}) == 1
        assert self._value(metrics, "test_run_errors") == 2
        assert self._value(metrics, "test_last_success_timestamp_seconds") > 0

    def test_push_without_gateway(self, metrics):
        """Test that pushing is skipped when no gateway is configured."""
        assert metrics.push(None) is False

    def test_push(self, metrics):
        """Test pushing to a gateway."""
        with patch("rostersync.monitoring.metrics.push_to_gateway") as push:
            assert metrics.push("pushgateway:9091") is True

        push.assert_called_once_with("pushgateway:9091", job="rostersync", registry=metrics.registry)

    def test_push_failure_is_not_fatal(self, metrics):
        """Test that a push failure is logged and reported as False."""
        with patch("rostersync.monitoring.metrics.push_to_gateway", side_effect=OSError("refused")):
            assert metrics.push("pushgateway:9091") is False
