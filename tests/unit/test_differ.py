"""
Unit tests for the membership differ.

Tests add/remove/unchanged classification between desired and observed
group membership.
"""

import pytest

from rostersync.models import Delta
from rostersync.reconciliation.differ import MembershipDiffer


class TestMembershipDiffer:
    """Test delta computation."""

    @pytest.fixture
    def differ(self):
        return MembershipDiffer()

    def test_remove_unchanged_add(self, differ):
        delta = differ.compute_delta(observed={"a@x", "b@x"}, desired={"b@x", "c@x"})

        assert delta == {"a@x": Delta.REMOVE, "b@x": Delta.UNCHANGED, "c@x": Delta.ADD}

    def test_every_address_classified_once(self, differ):
        observed = {"a@x", "b@x", "d@x", "e@x"}
        desired = {"b@x", "c@x", "e@x", "f@x"}

        delta = differ.compute_delta(observed, desired)

        assert set(delta) == observed | desired
        summary = differ.summarize(delta)
        assert summary["add_count"] + summary["remove_count"] + summary["unchanged_count"] == summary["total"]
        assert summary == {"add_count": 2, "remove_count": 2, "unchanged_count": 2, "total": 6}

    def test_case_insensitive_by_default(self, differ):
        delta = differ.compute_delta(observed={"Jane@Mail.test"}, desired={"jane@mail.test"})

        assert delta == {"jane@mail.test": Delta.UNCHANGED}

    def test_case_sensitive(self):
        delta = MembershipDiffer(case_sensitive=True).compute_delta({"A@x"}, {"a@x"})

        assert delta == {"A@x": Delta.REMOVE, "a@x": Delta.ADD}

    def test_blank_addresses_ignored(self, differ):
        assert differ.compute_delta({"", "a@x"}, {None, "a@x"}) == {"a@x": Delta.UNCHANGED}

    def test_both_empty(self, differ):
        delta = differ.compute_delta(set(), set())

        assert delta == {}
        assert differ.actions(delta) == {"remove": [], "add": []}

    def test_actions_elide_unchanged(self, differ):
        delta = differ.compute_delta({"b@x", "a@x"}, {"b@x", "d@x", "c@x"})

        assert differ.actions(delta) == {"remove": ["a@x"], "add": ["c@x", "d@x"]}

    def test_find_duplicates(self, differ):
        duplicates = differ.find_duplicates(["a@x", "A@x", "b@x"])

        assert duplicates == [{"email": "a@x", "count": 2}]
