"""Per-user msal token caches and silent access-token lookup."""
from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Iterable, Optional

import msal
import requests

from .config import AuthConfig


logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class TokenCacheStore:
    """File-backed store holding one serialized msal token cache per account."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, account_key: str) -> Path:
        cleaned = _UNSAFE_KEY_CHARS.sub("_", (account_key or "").strip())
        if not cleaned.strip("._"):
            raise ValueError("An account key is required to locate a token cache.")
        return self.directory / f"{cleaned}.json"

    def load(self, account_key: str) -> msal.SerializableTokenCache:
        cache = msal.SerializableTokenCache()
        path = self.path_for(account_key)
        with self._lock:
            if not path.exists():
                return cache
            try:
                cache.deserialize(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Discarding unreadable token cache %s: %s", path, exc)
        return cache

    def save(self, account_key: str, cache: msal.SerializableTokenCache) -> None:
        if not cache.has_state_changed:
            return
        path = self.path_for(account_key)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(cache.serialize(), encoding="utf-8")
            tmp_path.replace(path)
        cache.has_state_changed = False

    def remove(self, account_key: str) -> None:
        path = self.path_for(account_key)
        with self._lock:
            path.unlink(missing_ok=True)


def build_msal_app(
    auth_config: AuthConfig,
    tenant_id: Optional[str] = None,
    cache: Optional[msal.SerializableTokenCache] = None,
) -> msal.ConfidentialClientApplication:
    return msal.ConfidentialClientApplication(
        client_id=auth_config.client_id,
        client_credential=auth_config.client_secret,
        authority=auth_config.authority(tenant_id),
        token_cache=cache,
    )


def get_access_token_from_cache_or_refresh(
    auth_config: AuthConfig,
    store: TokenCacheStore,
    account_key: Optional[str],
    tenant_id: Optional[str],
    scopes: Iterable[str],
) -> Optional[str]:
    """Return a cached or refreshed access token, or ``None`` if the user must sign in again."""

    if not tenant_id or not account_key:
        return None

    cache = store.load(account_key)
    client = build_msal_app(auth_config, tenant_id=tenant_id, cache=cache)
    accounts = client.get_accounts()
    account = next(
        (entry for entry in accounts if entry.get("home_account_id") == account_key),
        None,
    )
    if account is None:
        logger.info("No cached account for %s; re-authorization required.", account_key)
        return None

    try:
        result = client.acquire_token_silent(list(scopes), account=account)
    except requests.RequestException as exc:
        logger.warning("Silent token acquisition failed for %s (transport error: %s)", account_key, exc)
        return None
    store.save(account_key, cache)
    if not result:
        logger.info("Token cache for %s has no usable token.", account_key)
        return None
    if "access_token" not in result:
        logger.warning(
            "Silent token acquisition failed for %s (error=%s, error_description=%s)",
            account_key,
            result.get("error"),
            result.get("error_description"),
        )
        return None
    return str(result["access_token"])


__all__ = [
    "TokenCacheStore",
    "build_msal_app",
    "get_access_token_from_cache_or_refresh",
]
