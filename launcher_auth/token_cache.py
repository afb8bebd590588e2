"""
Consumer identity token cache

ConsumerTokenStore is the in-memory cache the identity client works against.
TokenCache persists its serialized blob to one local file: load before every
access, write back only when the store reports a change.
"""

import json
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from .storage import safe_read_text, safe_write_text

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


def _well_formed(parsed: Any) -> bool:
    """Version 1 blob whose fields have the types the store reads back"""
    if not isinstance(parsed, dict) or parsed.get("version") != CACHE_FORMAT_VERSION:
        return False
    account = parsed.get("account")
    if not isinstance(account, dict) or not isinstance(account.get("home_account_id"), str):
        return False
    for key in ("access_token", "refresh_token"):
        if parsed.get(key) is not None and not isinstance(parsed[key], str):
            return False
    expires_at = parsed.get("expires_at", 0)
    if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
        return False
    scopes = parsed.get("scopes", [])
    return isinstance(scopes, list) and all(isinstance(s, str) for s in scopes)


class ConsumerTokenStore:
    """Single-account token cache with change tracking"""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self.has_state_changed = False

    def serialize(self) -> str:
        return json.dumps(self._data, indent=2, sort_keys=True)

    def deserialize(self, blob: Optional[str]) -> None:
        """Replace the in-memory state with a blob read from disk"""
        data: Dict[str, Any] = {}
        if blob and blob.strip():
            try:
                parsed = json.loads(blob)
                if _well_formed(parsed):
                    data = parsed
                elif parsed != {}:
                    logger.warning("Token cache has an unknown format, starting fresh")
            except json.JSONDecodeError:
                logger.warning("Token cache is corrupted, starting fresh")
        self._data = data
        self.has_state_changed = False

    @property
    def account(self) -> Optional[Dict[str, Any]]:
        return self._data.get("account")

    @property
    def access_token(self) -> Optional[str]:
        return self._data.get("access_token")

    @property
    def refresh_token(self) -> Optional[str]:
        return self._data.get("refresh_token")

    @property
    def expires_at(self) -> float:
        return float(self._data.get("expires_at") or 0)

    @property
    def scopes(self) -> tuple:
        return tuple(self._data.get("scopes") or ())

    def access_token_valid(self, skew: float = 0.0) -> bool:
        return bool(self.access_token) and self.expires_at > time.time() + skew

    def store_tokens(self, account: Dict[str, Any], response: Dict[str, Any], scopes) -> None:
        """Record a token endpoint response for the (only) account"""
        refresh_token = response.get("refresh_token") or self.refresh_token
        self._data = {
            "version": CACHE_FORMAT_VERSION,
            "account": dict(account),
            "access_token": response["access_token"],
            "refresh_token": refresh_token,
            "expires_at": time.time() + float(response.get("expires_in", 3600)),
            "scopes": list(scopes),
        }
        self.has_state_changed = True

    def clear(self) -> None:
        if self._data:
            self._data = {}
            self.has_state_changed = True


class TokenCache:
    """File persistence for a ConsumerTokenStore"""

    def __init__(self, cache_file: Union[str, Path]):
        self.cache_file = Path(cache_file)
        self._lock = threading.RLock()

    def load(self, store: ConsumerTokenStore) -> None:
        """Populate the store from disk (missing file means empty cache)"""
        with self._lock:
            store.deserialize(safe_read_text(self.cache_file))

    def save(self, store: ConsumerTokenStore) -> bool:
        """Write the store to disk if, and only if, it reports a change"""
        with self._lock:
            if not store.has_state_changed:
                return False
            if safe_write_text(self.cache_file, store.serialize()):
                store.has_state_changed = False
                logger.debug("Token cache written to %s", self.cache_file)
                return True
            return False

    @contextmanager
    def access(self, store: ConsumerTokenStore) -> Iterator[ConsumerTokenStore]:
        """Load before the block; save after it only if it completed without raising"""
        with self._lock:
            self.load(store)
            yield store
            self.save(store)
