"""
Unit tests for change detection.
"""

import pytest

from rostersync.models import DutyPosition, Member
from rostersync.reconciliation.change_detector import ChangeDetector, needs_sync, project


@pytest.fixture
def member():
    return Member(
        capid="100001",
        first_name="Jane",
        last_name="Doe",
        org_id="300",
        rank="Capt",
        member_type="SENIOR",
        status="ACTIVE",
        email="jane@mail.example.com",
        charter="NER-MA-043",
        duty_positions=[
            DutyPosition("Commander", "UNIT"),
            DutyPosition("Safety Officer", "UNIT"),
        ],
    )


class TestNeedsSync:
    """Test the watched-field comparison."""

    def test_absent_arguments_need_sync(self, member):
        assert needs_sync(member, None)
        assert needs_sync(None, project(member))

    def test_identical_projection_does_not_need_sync(self, member):
        assert not needs_sync(member, project(member))

    def test_rank_change_needs_sync(self, member):
        previous = project(member)
        previous["rank"] = "1st Lt"

        assert needs_sync(member, previous)

    def test_missing_and_empty_compare_equal(self, member):
        previous = project(member)
        del previous["phone"]
        previous["manager_email"] = None

        assert not needs_sync(member, previous)

    def test_whitespace_is_ignored(self, member):
        previous = project(member)
        previous["rank"] = " Capt "

        assert not needs_sync(member, previous)

    def test_duty_reordering_counts_as_change(self, member):
        previous = project(member)
        member.duty_positions.reverse()

        assert needs_sync(member, previous)

    def test_extra_snapshot_fields_are_ignored(self, member):
        previous = project(member)
        previous["user_key"] = "jane.doe@example.org"
        previous["last_seen"] = "2026-01-01T00:00:00+00:00"

        assert not needs_sync(member, previous)

    def test_never_raises_on_malformed_snapshot(self, member):
        assert needs_sync(member, {"rank": object()})


class TestChangeDetector:
    """Test partitioning of a member map."""

    def test_no_snapshot_marks_everyone_changed(self, member):
        changed, unchanged = ChangeDetector().partition({member.capid: member}, None)

        assert changed == [member]
        assert unchanged == []

    def test_partition(self, member):
        other = Member(capid="100002", first_name="John", last_name="Smith", org_id="300", rank="C/Amn")
        previous = {member.capid: project(member), other.capid: dict(project(other), rank="C/SrA")}

        changed, unchanged = ChangeDetector().partition({member.capid: member, other.capid: other}, previous)

        assert changed == [other]
        assert unchanged == [member]

    def test_new_member_is_changed(self, member):
        changed, _ = ChangeDetector().partition({member.capid: member}, {})

        assert changed == [member]
