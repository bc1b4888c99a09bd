"""Configuration loading utilities for the directory group manager."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "GROUPADMIN_CONFIG"
ENV_PREFIX = "GROUPADMIN_"
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass
class AuthConfig:
    """Settings for OpenID Connect sign-in against Entra ID."""

    tenant_id: str = "organizations"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    authority_host: str = "login.microsoftonline.com"
    scopes: tuple[str, ...] = ()

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authority(self, tenant_id: Optional[str] = None) -> str:
        return f"https://{self.authority_host}/{tenant_id or self.tenant_id}"


@dataclass
class GraphConfig:
    """Settings for the directory graph API."""

    resource: str = "https://graph.microsoft.com"
    api_version: str = "v1.0"
    timeout: int = 30
    page_size: int = 100
    link_page_size: int = 999

    @property
    def base_url(self) -> str:
        return f"{self.resource.rstrip('/')}/{self.api_version.strip('/')}"

    @property
    def default_scopes(self) -> tuple[str, ...]:
        return (f"{self.resource.rstrip('/')}/.default",)


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    token_cache_dir: Path = Path("data/token_cache")


@dataclass
class WebConfig:
    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    auth: AuthConfig
    graph: GraphConfig = field(default_factory=GraphConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    web: WebConfig = field(default_factory=WebConfig)

    @property
    def graph_scopes(self) -> tuple[str, ...]:
        return self.auth.scopes or self.graph.default_scopes


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        if "__" not in suffix:
            continue
        path = suffix.lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        section = config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return section


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return value.split(",")
    return [value]


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _positive_int(section: Dict[str, Any], key: str, default: int) -> int:
    raw = section.get(key, default)
    try:
        value = _to_int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{key}' must be a whole number, got {raw!r}.") from exc
    if value <= 0:
        raise ConfigurationError(f"'{key}' must be greater than zero.")
    return value


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    auth_section = _get_required(config_dict, "auth")

    defaults = AuthConfig()
    scopes = tuple(
        filter(
            None,
            [str(entry).strip() for entry in _normalize_sequence(auth_section.get("scopes") or ())],
        )
    )
    auth_config = AuthConfig(
        tenant_id=_optional_str(auth_section.get("tenant_id")) or defaults.tenant_id,
        client_id=_optional_str(auth_section.get("client_id")),
        client_secret=_optional_str(auth_section.get("client_secret")),
        redirect_uri=_optional_str(auth_section.get("redirect_uri")),
        authority_host=_optional_str(auth_section.get("authority_host")) or defaults.authority_host,
        scopes=scopes,
    )

    graph_section = config_dict.get("graph") or {}
    default_graph = GraphConfig()
    graph_config = GraphConfig(
        resource=_optional_str(graph_section.get("resource")) or default_graph.resource,
        api_version=_optional_str(graph_section.get("api_version")) or default_graph.api_version,
        timeout=_positive_int(graph_section, "timeout", default_graph.timeout),
        page_size=_positive_int(graph_section, "page_size", default_graph.page_size),
        link_page_size=_positive_int(graph_section, "link_page_size", default_graph.link_page_size),
    )

    storage_section = config_dict.get("storage") or {}
    storage_config = StorageConfig(
        token_cache_dir=Path(
            storage_section.get("token_cache_dir") or StorageConfig().token_cache_dir
        ).expanduser(),
    )

    web_section = config_dict.get("web") or {}
    log_level = (_optional_str(web_section.get("log_level")) or WebConfig().log_level).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigurationError(
            f"Unknown log level '{log_level}'. Use one of: {', '.join(sorted(_LOG_LEVELS))}."
        )

    return AppConfig(
        auth=auth_config,
        graph=graph_config,
        storage=storage_config,
        web=WebConfig(log_level=log_level),
    )


def config_to_dict(config: AppConfig) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for persistence."""

    return {
        "auth": {
            "tenant_id": config.auth.tenant_id,
            "client_id": config.auth.client_id or "",
            "client_secret": config.auth.client_secret or "",
            "redirect_uri": config.auth.redirect_uri or "",
            "authority_host": config.auth.authority_host,
            "scopes": list(config.auth.scopes),
        },
        "graph": {
            "resource": config.graph.resource,
            "api_version": config.graph.api_version,
            "timeout": config.graph.timeout,
            "page_size": config.graph.page_size,
            "link_page_size": config.graph.link_page_size,
        },
        "storage": {
            "token_cache_dir": str(config.storage.token_cache_dir),
        },
        "web": {
            "log_level": config.web.log_level,
        },
    }


def save_config(config: AppConfig, path: Optional[Path] = None) -> Path:
    """Persist the configuration to disk, returning the path that was written."""

    target = _resolve_config_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = config_to_dict(config)
    with target.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False, indent=2)
    return target


__all__ = [
    "AppConfig",
    "AuthConfig",
    "ConfigurationError",
    "GraphConfig",
    "StorageConfig",
    "WebConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
    "save_config",
]
