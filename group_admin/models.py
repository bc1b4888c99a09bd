"""Data models for directory objects returned by the graph API."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

GROUP_ODATA_TYPE = "#microsoft.graph.group"
USER_ODATA_TYPE = "#microsoft.graph.user"

# Form fields accepted by the create and edit actions.
CREATE_BIND_FIELDS: Tuple[str, ...] = ("display_name", "description", "mail_nickname", "security_enabled")
EDIT_BIND_FIELDS: Tuple[str, ...] = ("object_id",) + CREATE_BIND_FIELDS


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


@dataclass
class DirectoryObject:
    """Any object stored in the directory (user, group, device, ...)."""

    object_id: str
    object_type: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DirectoryObject":
        return cls(
            object_id=str(data.get("id") or ""),
            object_type=data.get("@odata.type"),
            display_name=data.get("displayName"),
        )


@dataclass
class Group(DirectoryObject):
    """A directory group."""

    description: Optional[str] = None
    mail_nickname: Optional[str] = None
    mail_enabled: bool = False
    security_enabled: bool = False
    mail: Optional[str] = None
    group_types: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Group":
        return cls(
            object_id=str(data.get("id") or ""),
            object_type=data.get("@odata.type") or GROUP_ODATA_TYPE,
            display_name=data.get("displayName"),
            description=data.get("description"),
            mail_nickname=data.get("mailNickname"),
            mail_enabled=bool(data.get("mailEnabled")),
            security_enabled=bool(data.get("securityEnabled")),
            mail=data.get("mail"),
            group_types=list(data.get("groupTypes") or []),
        )

    @classmethod
    def from_form(cls, form: Mapping[str, Any], include: Tuple[str, ...] = CREATE_BIND_FIELDS) -> "Group":
        """Bind posted form values, ignoring anything outside ``include``."""

        group = cls(object_id="", object_type=GROUP_ODATA_TYPE)
        if "object_id" in include:
            group.object_id = _clean(form.get("object_id")) or ""
        if "display_name" in include:
            group.display_name = _clean(form.get("display_name"))
        if "description" in include:
            group.description = _clean(form.get("description"))
        if "mail_nickname" in include:
            group.mail_nickname = _clean(form.get("mail_nickname"))
        if "security_enabled" in include:
            group.security_enabled = _to_bool(form.get("security_enabled", False))
        return group

    def validate(self) -> None:
        if not self.display_name:
            raise ValueError("Display name is required.")
        if not self.mail_nickname:
            raise ValueError("Mail nickname is required.")
        if any(char.isspace() for char in self.mail_nickname):
            raise ValueError("Mail nickname cannot contain spaces.")

    def to_create_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "displayName": self.display_name,
            "mailNickname": self.mail_nickname,
            "mailEnabled": self.mail_enabled,
            "securityEnabled": self.security_enabled,
        }
        if self.description:
            payload["description"] = self.description
        return payload

    def to_update_payload(self) -> Dict[str, Any]:
        # Graph rejects an empty description; null clears it.
        return {
            "displayName": self.display_name,
            "mailNickname": self.mail_nickname,
            "securityEnabled": self.security_enabled,
            "description": self.description,
        }


@dataclass
class User(DirectoryObject):
    """A directory user account."""

    user_principal_name: Optional[str] = None
    mail: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    account_enabled: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "User":
        enabled = data.get("accountEnabled")
        return cls(
            object_id=str(data.get("id") or ""),
            object_type=data.get("@odata.type") or USER_ODATA_TYPE,
            display_name=data.get("displayName"),
            user_principal_name=data.get("userPrincipalName"),
            mail=data.get("mail"),
            given_name=data.get("givenName"),
            surname=data.get("surname"),
            job_title=data.get("jobTitle"),
            account_enabled=None if enabled is None else bool(enabled),
        )


_TYPE_REGISTRY = {
    GROUP_ODATA_TYPE: Group,
    USER_ODATA_TYPE: User,
}


def directory_object_from_dict(data: Mapping[str, Any]) -> DirectoryObject:
    """Build the most specific model for a polymorphic directory object payload."""

    model = _TYPE_REGISTRY.get(str(data.get("@odata.type") or ""), DirectoryObject)
    return model.from_dict(data)


__all__ = [
    "CREATE_BIND_FIELDS",
    "EDIT_BIND_FIELDS",
    "DirectoryObject",
    "Group",
    "User",
    "directory_object_from_dict",
]
