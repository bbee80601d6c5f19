"""
Directory API client

Thin HTTP client for the Admin Directory REST API. Every failure is raised as
a DirectoryError carrying the HTTP status code; retry decisions belong to the
RateLimitedExecutor, not to this client.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from rostersync.errors import DirectoryError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://admin.googleapis.com/admin/directory/v1"
DEFAULT_PAGE_SIZE = 200


class DirectoryClient:
    """Client for directory users, aliases, groups and group members."""

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        customer: str = "my_customer",
        timeout: float = 30.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            access_token: Bearer token with directory scopes
            base_url: API base URL
            customer: Customer id used for user listing
            timeout: Per-request timeout in seconds
            page_size: Page size for list calls
            session: Optional pre-configured session

        Raises:
            ValueError: If no access token is given
        """
        if not access_token:
            raise ValueError("Directory access token must be provided")

        self.base_url = base_url.rstrip("/")
        self.customer = customer
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        })

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        logger.debug(f"Directory {method} {url} params={params}")

        response = self.session.request(method, url, params=params, json=json_body, timeout=self.timeout)

        if response.status_code >= 400:
            raise self._error_from_response(response)

        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_from_response(response: requests.Response) -> DirectoryError:
        message = response.reason or ""
        reason = None
        try:
            error = response.json().get("error", {})
            message = error.get("message", message)
            errors = error.get("errors") or []
            if errors:
                reason = errors[0].get("reason")
        except ValueError:
            pass
        return DirectoryError(response.status_code, message, reason)

    @staticmethod
    def _key(value: str) -> str:
        return quote(value, safe="@")

    # Users

    def get_user(self, user_key: str) -> Dict[str, Any]:
        return self._request("GET", f"users/{self._key(user_key)}")

    def update_user(self, user_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PUT", f"users/{self._key(user_key)}", json_body=body)

    def insert_user(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "users", json_body=body)

    def undelete_user(self, user_id: str, org_unit_path: str = "/") -> Dict[str, Any]:
        return self._request(
            "POST",
            f"users/{self._key(user_id)}/undelete",
            json_body={"orgUnitPath": org_unit_path},
        )

    def list_users(
        self,
        query: Optional[str] = None,
        show_deleted: bool = False,
        page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Return one page of users: ``{"users": [...], "nextPageToken": ...}``."""
        params: Dict[str, Any] = {"customer": self.customer, "maxResults": min(self.page_size, 500)}
        if query:
            params["query"] = query
        if show_deleted:
            params["showDeleted"] = "true"
        if page_token:
            params["pageToken"] = page_token
        return self._request("GET", "users", params=params)

    def insert_alias(self, user_key: str, alias: str) -> Dict[str, Any]:
        return self._request("POST", f"users/{self._key(user_key)}/aliases", json_body={"alias": alias})

    # Groups

    def insert_group(self, email: str, name: str, description: str = "") -> Dict[str, Any]:
        return self._request(
            "POST",
            "groups",
            json_body={"email": email, "name": name, "description": description},
        )

    def list_members(self, group_key: str, page_token: Optional[str] = None) -> Dict[str, Any]:
        """Return one page of members: ``{"members": [...], "nextPageToken": ...}``."""
        params: Dict[str, Any] = {"maxResults": self.page_size}
        if page_token:
            params["pageToken"] = page_token
        return self._request("GET", f"groups/{self._key(group_key)}/members", params=params)

    def insert_member(self, group_key: str, email: str, role: str = "MEMBER") -> Dict[str, Any]:
        return self._request(
            "POST",
            f"groups/{self._key(group_key)}/members",
            json_body={"email": email, "role": role},
        )

    def remove_member(self, group_key: str, member_key: str) -> Dict[str, Any]:
        return self._request("DELETE", f"groups/{self._key(group_key)}/members/{self._key(member_key)}")

    def close(self):
        """Close the underlying HTTP session."""
        self.session.close()
        logger.info("Directory client session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def collect_pages(fetch_page, items_key: str, executor=None) -> List[Dict[str, Any]]:
    """
    Follow ``nextPageToken`` cursors until exhausted.

    Args:
        fetch_page: Callable taking ``page_token`` and returning one page
        items_key: Key of the item list in each page
        executor: Optional RateLimitedExecutor each page fetch runs through
    """
    items: List[Dict[str, Any]] = []
    page_token = None

    while True:
        if executor is not None:
            page = executor.execute(fetch_page, page_token=page_token)
        else:
            page = fetch_page(page_token=page_token)

        items.extend(page.get(items_key) or [])
        page_token = page.get("nextPageToken")
        if not page_token:
            break

    return items
