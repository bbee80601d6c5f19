"""
Reconciliation Module for roster synchronisation

This module turns a loaded roster into directory writes: it decides which
members changed since the last run, upserts their accounts, plans the desired
membership of every group and converges each group toward that plan.

Main components:
- executor: Rate-limited, retrying execution of directory calls
- change_detector: Snapshot-based change detection
- upsert: User account create/update/reactivate
- planner: Desired group membership from GroupSpec rows
- differ: Desired vs observed membership deltas
- reconciler: Applies membership deltas to the directory

Usage:
    from rostersync.reconciliation import GroupMembershipPlanner, DirectoryReconciler

    planner = GroupMembershipPlanner(domain="example.org")
    plan = planner.plan_all(specs, roster.members, roster.organizations)

    reconciler = DirectoryReconciler(client, executor, describe=planner.describe)
    results, totals = reconciler.reconcile_all(plan)
"""

from rostersync.reconciliation.change_detector import ChangeDetector
from rostersync.reconciliation.differ import MembershipDiffer
from rostersync.reconciliation.executor import RateLimitedExecutor, RetryPolicy
from rostersync.reconciliation.planner import GroupMembershipPlanner
from rostersync.reconciliation.reconciler import DirectoryReconciler
from rostersync.reconciliation.report import DryRunReport, ErrorReport
from rostersync.reconciliation.snapshot import FileSnapshotStore, PostgresSnapshotStore, Snapshot
from rostersync.reconciliation.upsert import UserUpsertEngine

__all__ = [
    "ChangeDetector",
    "MembershipDiffer",
    "RateLimitedExecutor",
    "RetryPolicy",
    "GroupMembershipPlanner",
    "DirectoryReconciler",
    "DryRunReport",
    "ErrorReport",
    "FileSnapshotStore",
    "PostgresSnapshotStore",
    "Snapshot",
    "UserUpsertEngine",
]
