"""
Pytest configuration and shared fixtures.

Provides roster extract builders and an in-memory directory that behaves like
the directory API for the calls rostersync makes.
"""

import csv
from typing import Any, Dict, List, Optional

import pytest

from rostersync.errors import DirectoryError
from rostersync.roster.layout import EXTRACT_FILES


def org_row(org_id, region, wing, unit, parent_id, name, scope):
    return [org_id, region, wing, unit, parent_id, name, "", "", "", scope]


def member_row(capid, first, last, org_id, unit, rank="", member_type="SENIOR", status="ACTIVE", modified=""):
    row = [""] * 25
    row[0] = capid
    row[2] = last
    row[3] = first
    row[11] = org_id
    row[13] = unit
    row[14] = rank
    row[19] = modified
    row[21] = member_type
    row[24] = status
    return row


def contact_row(capid, contact_type, contact, priority="PRIMARY", do_not_contact="False"):
    return [capid, contact_type, priority, contact, "", "", do_not_contact]


def duty_row(capid, duty_id, level, org_id, assistant="0"):
    return [capid, duty_id, "", level, assistant, "", "", org_id]


@pytest.fixture
def roster_rows():
    """
    A small wing: wing 100, group 200, unit 300 under the group, unit 400
    directly under the wing and headquarters unit 500.
    """
    return {
        "organization": [
            org_row("100", "NER", "MA", "001", "", "Massachusetts Wing", "WING"),
            org_row("200", "NER", "MA", "010", "100", "Group 1", "GROUP"),
            org_row("300", "NER", "MA", "043", "200", "Boston Squadron", "UNIT"),
            org_row("400", "NER", "MA", "099", "100", "Cape Squadron", "UNIT"),
            org_row("500", "NER", "MA", "000", "100", "Wing Headquarters", "UNIT"),
        ],
        "member": [
            member_row("100001", "Jane", "Doe", "300", "043", rank="Capt", member_type="SENIOR"),
            member_row("100002", "John", "Smith", "300", "043", rank="C/Amn", member_type="CADET"),
            member_row("100003", "Ann", "Lee", "400", "099", rank="1st Lt", member_type="SENIOR"),
            member_row("100004", "Bob", "Ray", "200", "010", rank="Maj", member_type="SENIOR"),
            member_row("ABC123", "Bad", "Id", "300", "043"),
            member_row("100005", "Old", "Timer", "300", "043", status="EXPIRED"),
            member_row("100006", "Moving", "Away", "300", "999"),
            member_row("100007", "Lost", "Soul", "999999", "043"),
        ],
        "contact": [
            contact_row("100001", "EMAIL", "Jane.Doe@Mail.Example.com"),
            contact_row("100001", "CELL PHONE", "(617) 555-0101"),
            contact_row("100002", "EMAIL", "john@mail.example.com"),
            contact_row("100002", "EMAIL", "john.secondary@mail.example.com", priority="SECONDARY"),
            contact_row("100004", "EMAIL", "bob@mail.example.com"),
            contact_row("100003", "EMAIL", "ann@mail.example.com", do_not_contact="True"),
        ],
        "duty": [
            duty_row("100001", "Commander", "UNIT", "300"),
            duty_row("100004", "Commander", "GROUP", "200"),
            duty_row("100004", "Safety Officer", "WING", "100", assistant="1"),
        ],
        "cadet_duty": [
            duty_row("100002", "Cadet Flight Sergeant", "UNIT", "300"),
        ],
        "achievement": [
            ["100002", "53", "ACTIVE"],
            ["100001", "53", "INCOMPLETE"],
        ],
        "manual": [],
    }


def write_extract(directory, tables: Dict[str, List[List[str]]], delimiter: str = ",") -> None:
    """Write roster tables as extract files with a header row."""
    directory.mkdir(parents=True, exist_ok=True)
    for table, rows in tables.items():
        with open(directory / EXTRACT_FILES[table], "w", newline="") as f:
            writer = csv.writer(f, delimiter=delimiter)
            writer.writerow([f"col{i}" for i in range(25)])
            writer.writerows(rows)


@pytest.fixture
def extract_dir(tmp_path, roster_rows):
    path = tmp_path / "extract"
    write_extract(path, roster_rows)
    return path


class FakeDirectory:
    """In-memory directory raising DirectoryError like the real API."""

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.users: Dict[str, Dict[str, Any]] = {}
        self.deleted: List[Dict[str, Any]] = []
        self.aliases: Dict[str, List[str]] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self._failures: Dict[str, List[Exception]] = {}

    def fail(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``error``."""
        self._failures.setdefault(method, []).extend([error] * times)

    def _call(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def _find_user(self, key: str) -> Optional[str]:
        if key in self.users:
            return key
        for email, user in self.users.items():
            if user.get("id") == key:
                return email
        return None

    # Users

    def add_user(self, email: str, **fields) -> Dict[str, Any]:
        user = {"primaryEmail": email, "id": fields.pop("id", f"id-{email}")}
        user.update(fields)
        self.users[email] = user
        return user

    def get_user(self, user_key: str) -> Dict[str, Any]:
        self._call("get_user", user_key)
        email = self._find_user(user_key)
        if email is None:
            raise DirectoryError(404, "Resource Not Found: userKey", "notFound")
        return dict(self.users[email])

    def update_user(self, user_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._call("update_user", user_key, body)
        email = self._find_user(user_key)
        if email is None:
            raise DirectoryError(404, "Resource Not Found: userKey", "notFound")
        user = self.users.pop(email)
        user.update(body)
        self.users[user["primaryEmail"]] = user
        return user

    def insert_user(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self._call("insert_user", body)
        email = body["primaryEmail"]
        if email in self.users:
            raise DirectoryError(409, "Entity already exists.", "duplicate")
        return self.add_user(email, **{k: v for k, v in body.items() if k != "primaryEmail"})

    def undelete_user(self, user_id: str, org_unit_path: str = "/") -> Dict[str, Any]:
        self._call("undelete_user", user_id, org_unit_path)
        for user in self.deleted:
            if user["id"] == user_id:
                self.deleted.remove(user)
                restored = {k: v for k, v in user.items() if k != "deletionTime"}
                restored["orgUnitPath"] = org_unit_path
                self.users[restored["primaryEmail"]] = restored
                return restored
        raise DirectoryError(404, "Resource Not Found: userKey", "notFound")

    def list_users(self, query: Optional[str] = None, show_deleted: bool = False,
                   page_token: Optional[str] = None) -> Dict[str, Any]:
        self._call("list_users", query, show_deleted, page_token)
        if show_deleted:
            users = list(self.deleted)
        else:
            users = list(self.users.values())
            if query and query.startswith("externalId:"):
                wanted = query.split(":", 1)[1]
                users = [
                    u for u in users
                    if any(str(e.get("value")) == wanted for e in u.get("externalIds") or [])
                ]
        return self._page(users, "users", page_token)

    def insert_alias(self, user_key: str, alias: str) -> Dict[str, Any]:
        self._call("insert_alias", user_key, alias)
        aliases = self.aliases.setdefault(user_key, [])
        if alias in aliases:
            raise DirectoryError(409, "Entity already exists.", "duplicate")
        aliases.append(alias)
        return {"alias": alias}

    # Groups

    def add_group(self, email: str, members=(), owners=()) -> None:
        self.groups[email] = {
            "name": email.split("@")[0],
            "description": "",
            "members": [{"email": m, "role": "MEMBER"} for m in members]
            + [{"email": o, "role": "OWNER"} for o in owners],
        }

    def member_emails(self, group_key: str) -> set:
        return {m["email"] for m in self.groups[group_key]["members"]}

    def insert_group(self, email: str, name: str, description: str = "") -> Dict[str, Any]:
        self._call("insert_group", email, name, description)
        if email in self.groups:
            raise DirectoryError(409, "Entity already exists.", "duplicate")
        self.groups[email] = {"name": name, "description": description, "members": []}
        return {"email": email, "name": name}

    def list_members(self, group_key: str, page_token: Optional[str] = None) -> Dict[str, Any]:
        self._call("list_members", group_key, page_token)
        if group_key not in self.groups:
            raise DirectoryError(404, "Resource Not Found: groupKey", "notFound")
        return self._page(self.groups[group_key]["members"], "members", page_token)

    def insert_member(self, group_key: str, email: str, role: str = "MEMBER") -> Dict[str, Any]:
        self._call("insert_member", group_key, email)
        if group_key not in self.groups:
            raise DirectoryError(404, "Resource Not Found: groupKey", "notFound")
        if email in self.member_emails(group_key):
            raise DirectoryError(409, "Member already exists.", "duplicate")
        self.groups[group_key]["members"].append({"email": email, "role": role})
        return {"email": email, "role": role}

    def remove_member(self, group_key: str, member_key: str) -> Dict[str, Any]:
        self._call("remove_member", group_key, member_key)
        members = self.groups.get(group_key, {}).get("members", [])
        for member in members:
            if member["email"] == member_key:
                members.remove(member)
                return {}
        raise DirectoryError(404, "Resource Not Found: memberKey", "notFound")

    def _page(self, items: List[Dict[str, Any]], key: str, page_token: Optional[str]) -> Dict[str, Any]:
        start = int(page_token or 0)
        end = start + self.page_size
        page: Dict[str, Any] = {key: items[start:end]}
        if end < len(items):
            page["nextPageToken"] = str(end)
        return page


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def sleeps():
    """Recorded sleep durations."""
    return []


@pytest.fixture
def executor(sleeps):
    from rostersync.reconciliation.executor import RateLimitedExecutor, RetryPolicy
    return RateLimitedExecutor(
        policy=RetryPolicy(max_attempts=3, backoff_base=1.0, backoff_factor=2.0),
        call_delay=0.0,
        batch_pause=0.0,
        sleeper=sleeps.append,
    )
