"""
Unit tests for organization hierarchy resolution.
"""

import pytest

from rostersync.models import Member, Organization, OrgScope
from rostersync.roster.hierarchy import OrgHierarchy


@pytest.fixture
def organizations():
    return {
        "100": Organization("100", "Wing", "NER", "MA", "001", "", OrgScope.WING),
        "200": Organization("200", "Group 1", "NER", "MA", "010", "100", OrgScope.GROUP),
        "300": Organization("300", "Squadron", "NER", "MA", "043", "200", OrgScope.UNIT),
        "400": Organization("400", "Cape", "NER", "MA", "099", "100", OrgScope.UNIT),
        "600": Organization("600", "Orphan", "NER", "MA", "077", "555", OrgScope.UNIT),
    }


@pytest.fixture
def hierarchy(organizations):
    return OrgHierarchy(organizations)


class TestOrgHierarchy:
    """Test group, charter and path resolution."""

    def test_group_of_unit_is_nearest_group(self, hierarchy):
        result = hierarchy.group_of("300")
        assert result.found
        assert result.value == "200"

    def test_group_of_group_is_itself(self, hierarchy):
        assert hierarchy.group_of("200").value == "200"

    def test_group_of_unit_under_wing_is_empty(self, hierarchy):
        result = hierarchy.group_of("400")
        assert result.found
        assert result.value == ""

    def test_group_of_unknown_org_fails_open(self, hierarchy):
        result = hierarchy.group_of("nope")
        assert not result.found
        assert result.value == ""

    def test_group_of_broken_chain_fails_open(self, hierarchy):
        result = hierarchy.group_of("600")
        assert not result
        assert result.value == ""

    def test_cyclic_chain_does_not_loop(self):
        hierarchy = OrgHierarchy({
            "1": Organization("1", "A", "NER", "MA", "101", "2", OrgScope.UNIT),
            "2": Organization("2", "B", "NER", "MA", "102", "1", OrgScope.UNIT),
        })

        assert hierarchy.group_of("1").found is False
        assert hierarchy.path_of("1").found is False

    def test_charter(self, hierarchy):
        assert hierarchy.charter_of("300").value == "NER-MA-043"
        assert hierarchy.charter_of("nope").found is False

    def test_paths(self, hierarchy):
        assert hierarchy.path_of("100").value == "/MA"
        assert hierarchy.path_of("200").value == "/MA/NER-MA-010"
        assert hierarchy.path_of("300").value == "/MA/NER-MA-010/NER-MA-043"
        assert hierarchy.path_of("400").value == "/MA/NER-MA-099"

    def test_resolve_member_with_unknown_org(self, hierarchy):
        member = Member(capid="1", first_name="A", last_name="B", org_id="nope")

        hierarchy.resolve(member)

        assert member.group == ""
        assert member.directory_path == ""

    def test_add_aggregate_unit(self, hierarchy):
        aggregate = hierarchy.add_aggregate_unit("400", "9000", "AE Members", "990")

        assert aggregate.org_id == "9000"
        assert aggregate.parent_id == "100"
        assert aggregate.charter == "NER-MA-990"
        assert aggregate.directory_path == "/MA/NER-MA-990"
        assert hierarchy.organizations["400"].name == "Cape"

    def test_add_aggregate_unit_missing_template(self, hierarchy):
        assert hierarchy.add_aggregate_unit("nope", "9000", "AE", "990") is None
        assert "9000" not in hierarchy.organizations
