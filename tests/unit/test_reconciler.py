"""
Unit tests for the directory reconciler.

Runs against the in-memory FakeDirectory from conftest, which pages its
listings two entries at a time.
"""

import pytest
from unittest.mock import Mock

from rostersync.errors import DirectoryError
from rostersync.reconciliation.reconciler import DirectoryReconciler
from rostersync.reconciliation.report import DryRunReport, ErrorReport

GROUP = "seniors@example.org"


@pytest.fixture
def error_report():
    return ErrorReport()


@pytest.fixture
def reconciler(directory, executor, error_report):
    return DirectoryReconciler(
        directory,
        executor,
        error_report=error_report,
        describe=lambda group_id: ("Seniors", "All senior members"),
        batch_size=2,
    )


class TestDirectoryReconciler:
    """Test convergence of a single group."""

    def test_remove_and_add(self, reconciler, directory):
        directory.add_group(GROUP, members=["a@x", "b@x"])

        result = reconciler.reconcile(GROUP, {"b@x", "c@x"})

        assert result.removed == ["a@x"]
        assert result.added == ["c@x"]
        assert result.unchanged == 1
        assert directory.member_emails(GROUP) == {"b@x", "c@x"}

    def test_removals_before_additions(self, reconciler, directory):
        directory.add_group(GROUP, members=["a@x"])

        reconciler.reconcile(GROUP, {"c@x"})

        mutations = [call[0] for call in directory.calls if call[0] in ("insert_member", "remove_member")]
        assert mutations == ["remove_member", "insert_member"]

    def test_observed_membership_is_paginated(self, reconciler, directory):
        emails = [f"m{i}@x" for i in range(5)]
        directory.add_group(GROUP, members=emails)

        result = reconciler.reconcile(GROUP, set(emails))

        assert len(directory.calls_to("list_members")) == 3
        assert result.added == []
        assert result.removed == []
        assert result.unchanged == 5

    def test_second_run_is_a_no_op(self, reconciler, directory):
        directory.add_group(GROUP, members=["a@x", "b@x"])
        reconciler.reconcile(GROUP, {"b@x", "c@x", "d@x"})

        second = reconciler.reconcile(GROUP, {"b@x", "c@x", "d@x"})

        assert second.added == []
        assert second.removed == []

    def test_missing_group_created(self, reconciler, directory):
        result = reconciler.reconcile(GROUP, {"a@x"})

        assert result.created
        assert directory.calls_to("insert_group") == [("insert_group", GROUP, "Seniors", "All senior members")]
        assert directory.member_emails(GROUP) == {"a@x"}

    def test_missing_group_not_created_when_empty(self, reconciler, directory):
        result = reconciler.reconcile(GROUP, set())

        assert not result.created
        assert directory.calls_to("insert_group") == []
        assert result.errors == []

    def test_group_creation_failure_recorded(self, reconciler, directory, error_report):
        directory.fail("insert_group", DirectoryError(400, "Invalid Input"))

        result = reconciler.reconcile(GROUP, {"a@x"})

        assert not result.created
        assert result.errors[0].category == "create_group"
        assert directory.calls_to("insert_member") == []
        assert len(error_report) == 1

    def test_owners_and_managers_preserved(self, reconciler, directory):
        directory.add_group(GROUP, members=["a@x"], owners=["owner@x"])

        result = reconciler.reconcile(GROUP, set())

        assert result.removed == ["a@x"]
        assert result.unchanged == 1
        assert directory.member_emails(GROUP) == {"owner@x"}

    def test_conflict_is_success(self, reconciler, directory, error_report):
        directory.add_group(GROUP)
        directory.fail("insert_member", DirectoryError(409, "Member already exists."))

        result = reconciler.reconcile(GROUP, {"a@x"})

        assert result.added == ["a@x"]
        assert result.errors == []
        assert not error_report

    def test_not_found_tallied_separately(self, reconciler, directory, error_report):
        directory.add_group(GROUP)
        directory.fail("insert_member", DirectoryError(404, "Resource Not Found: memberKey"))

        result = reconciler.reconcile(GROUP, {"external@elsewhere.test"})

        assert result.not_found == ["external@elsewhere.test"]
        assert result.added == []
        assert not error_report

    def test_hard_error_recorded_with_context(self, reconciler, directory, error_report):
        directory.add_group(GROUP, members=["a@x"])
        directory.fail("remove_member", DirectoryError(400, "Bad Request"))

        result = reconciler.reconcile(GROUP, {"b@x"})

        assert result.removed == []
        assert result.added == ["b@x"]
        record = error_report.records[0]
        assert (record.email, record.group, record.category, record.code) == ("a@x", GROUP, "remove", 400)

    def test_transient_list_error_retried(self, reconciler, directory, sleeps):
        directory.add_group(GROUP, members=["a@x"])
        directory.fail("list_members", DirectoryError(503, "Backend Error"))

        result = reconciler.reconcile(GROUP, {"a@x"})

        assert result.errors == []
        assert sleeps == [1.0]

    def test_exhausted_list_error_skips_group(self, reconciler, directory, error_report):
        directory.add_group(GROUP, members=["a@x"])
        directory.fail("list_members", DirectoryError(503, "Backend Error"), times=3)

        result = reconciler.reconcile(GROUP, set())

        assert result.errors[0].category == "list"
        assert directory.member_emails(GROUP) == {"a@x"}

    def test_metrics_recorded(self, directory, executor):
        metrics = Mock()
        reconciler = DirectoryReconciler(directory, executor, metrics=metrics)
        directory.add_group(GROUP, members=["a@x"])

        reconciler.reconcile(GROUP, {"b@x"})

        metrics.record_group_change.assert_any_call(action="remove", status="success")
        metrics.record_group_change.assert_any_call(action="add", status="success")


class TestDryRun:
    """Test that dry-run computes but does not apply."""

    def test_dry_run_records_intended_actions(self, directory, executor):
        report = DryRunReport()
        reconciler = DirectoryReconciler(directory, executor, dry_run=True, dry_run_report=report)
        directory.add_group(GROUP, members=["a@x", "b@x"])

        result = reconciler.reconcile(GROUP, {"b@x", "c@x"})

        assert result.dry_run
        assert result.added == ["c@x"]
        assert result.removed == ["a@x"]
        assert directory.member_emails(GROUP) == {"a@x", "b@x"}
        assert report.counts() == {"remove_member": 1, "add_member": 1}

    def test_dry_run_missing_group(self, directory, executor):
        report = DryRunReport()
        reconciler = DirectoryReconciler(directory, executor, dry_run=True, dry_run_report=report)

        result = reconciler.reconcile(GROUP, {"a@x"})

        assert result.created
        assert GROUP not in directory.groups
        assert report.counts() == {"create_group": 1, "add_member": 1}


class TestReconcileAll:
    """Test multi-group reconciliation."""

    def test_one_failing_group_does_not_stop_others(self, reconciler, directory):
        directory.add_group("a@example.org", members=["x@x"])
        directory.add_group("b@example.org")
        directory.fail("list_members", DirectoryError(500, "boom"), times=3)

        results, totals = reconciler.reconcile_all({
            "a@example.org": {"y@x"},
            "b@example.org": {"z@x"},
        })

        assert results["a@example.org"].errors
        assert results["b@example.org"].added == ["z@x"]
        assert totals.groups == 2
        assert totals.errors == 1
        assert totals.added == 1

    def test_unexpected_exception_contained(self, reconciler, directory):
        directory.add_group(GROUP)
        directory.fail("list_members", RuntimeError("surprise"))

        results, totals = reconciler.reconcile_all({GROUP: {"a@x"}})

        assert results[GROUP].errors[0].category == "reconcile"
        assert totals.errors == 1
