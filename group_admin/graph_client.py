"""Directory graph API connection used by the group views."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar
from urllib.parse import quote

import requests

from .config import GraphConfig
from .models import DirectoryObject, Group, directory_object_from_dict


logger = logging.getLogger(__name__)

T = TypeVar("T")


class GraphClientError(RuntimeError):
    """Base exception for graph connection operations."""


class GraphError(GraphClientError):
    """Raised when the graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class LinkProperty(str, Enum):
    """Navigation properties that link a group to other directory objects."""

    MEMBER_OF = "memberOf"
    MEMBERS = "members"


@dataclass
class PagedResults(Generic[T]):
    results: List[T] = field(default_factory=list)
    next_link: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return bool(self.next_link)


class GraphConnection:
    """Wraps HTTP calls to the graph API for one access token and API version."""

    def __init__(
        self,
        access_token: str,
        client_request_id: Optional[uuid.UUID] = None,
        settings: Optional[GraphConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not access_token:
            raise GraphClientError("An access token is required to call the graph API.")
        self._access_token = access_token
        self.client_request_id = client_request_id or uuid.uuid4()
        self.settings = settings or GraphConfig()
        self._owns_session = session is None
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self.settings.base_url

    def close(self) -> None:
        """Release the HTTP session if this connection created it."""

        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "GraphConnection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------ #
    # HTTP helpers                                                       #
    # ------------------------------------------------------------------ #
    def _request(self, method: str, path_or_url: str, **kwargs: Any) -> Dict[str, Any]:
        if path_or_url.startswith("https://") or path_or_url.startswith("http://"):
            url = path_or_url
        else:
            url = self.base_url + path_or_url
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._access_token}")
        headers.setdefault("Accept", "application/json")
        headers.setdefault("client-request-id", str(self.client_request_id))
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        logger.debug("Graph %s %s (client-request-id=%s)", method, url, self.client_request_id)
        try:
            response = self._session.request(
                method,
                url,
                timeout=self.settings.timeout,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise GraphClientError(f"Unable to reach the graph API: {exc}") from exc

        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown graph error."
            logger.warning(
                "Graph %s %s failed (status=%s code=%s client-request-id=%s)",
                method,
                url,
                response.status_code,
                code,
                self.client_request_id,
            )
            raise GraphError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    def _check_next_link(self, next_link: str) -> str:
        if not next_link.startswith(self.base_url + "/"):
            raise GraphClientError("Refusing to follow a paging link outside the graph API.")
        return next_link

    @staticmethod
    def _object_path(object_id: str) -> str:
        cleaned = (object_id or "").strip()
        if not cleaned:
            raise GraphClientError("An object id is required.")
        return quote(cleaned, safe="")

    # ------------------------------------------------------------------ #
    # Group operations                                                   #
    # ------------------------------------------------------------------ #
    def list_groups(self, next_link: Optional[str] = None, top: Optional[int] = None) -> PagedResults[Group]:
        if next_link:
            result = self._request("GET", self._check_next_link(next_link))
        else:
            params = {"$top": str(top or self.settings.page_size)}
            result = self._request("GET", "/groups", params=params)
        return PagedResults(
            results=[Group.from_dict(entry) for entry in result.get("value", [])],
            next_link=result.get("@odata.nextLink"),
        )

    def get_group(self, object_id: str) -> Group:
        result = self._request("GET", f"/groups/{self._object_path(object_id)}")
        return Group.from_dict(result)

    def add_group(self, group: Group) -> Group:
        group.mail_enabled = False
        result = self._request("POST", "/groups", json=group.to_create_payload())
        created = Group.from_dict(result) if result else group
        logger.info("Created group %s (%s).", created.display_name, created.object_id)
        return created

    def update_group(self, group: Group) -> None:
        path = f"/groups/{self._object_path(group.object_id)}"
        self._request("PATCH", path, json=group.to_update_payload())
        logger.info("Updated group %s.", group.object_id)

    def delete_group(self, object_id: str) -> None:
        self._request("DELETE", f"/groups/{self._object_path(object_id)}")
        logger.info("Deleted group %s.", object_id)

    def get_linked_objects(
        self,
        object_id: str,
        link: LinkProperty,
        next_link: Optional[str] = None,
        top: Optional[int] = None,
    ) -> PagedResults[DirectoryObject]:
        """Return directory objects reachable from a group through ``link``."""

        if next_link:
            result = self._request("GET", self._check_next_link(next_link))
        else:
            path = f"/groups/{self._object_path(object_id)}/{LinkProperty(link).value}"
            result = self._request("GET", path, params={"$top": str(top or self.settings.link_page_size)})
        return PagedResults(
            results=[directory_object_from_dict(entry) for entry in result.get("value", [])],
            next_link=result.get("@odata.nextLink"),
        )


__all__ = [
    "GraphClientError",
    "GraphConnection",
    "GraphError",
    "LinkProperty",
    "PagedResults",
]
