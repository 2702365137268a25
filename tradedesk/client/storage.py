from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol
from urllib.parse import quote, unquote

import httpx

from tradedesk.api.schemas import UserProfile
from tradedesk.logging import get_logger

logger = get_logger(__name__)

TOKEN_KEY = "auth-token"
USER_KEY = "auth-user"
# mirror cookies are scoped to a host no API server answers on
MIRROR_DOMAIN = "tradedesk.client.invalid"


class LocalStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage:
    """String key-value pairs kept in one JSON file, surviving restarts."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning("client_storage_corrupt", path=str(self.path))
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, items: Dict[str, str]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(items, handle)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        items = self._read()
        items[key] = value
        self._write(items)

    def remove(self, key: str) -> None:
        items = self._read()
        if items.pop(key, None) is not None:
            self._write(items)


class ClientStorage:
    """The persisted token and user snapshot.

    Both values are written to local storage and to a mirror cookie jar, and
    read back with local storage first. The mirror jar is never attached to an
    HTTP client; the only cookie sent to the API is the ``auth-token`` the
    server sets itself, which ``server_cookies`` exposes as a last fallback.
    """

    def __init__(
        self,
        local: LocalStorage,
        cookies: Optional[httpx.Cookies] = None,
        *,
        server_cookies: Optional[httpx.Cookies] = None,
    ) -> None:
        self.local = local
        self.cookies = cookies if cookies is not None else httpx.Cookies()
        self.server_cookies = server_cookies

    @staticmethod
    def _lookup(jar: Optional[httpx.Cookies], name: str) -> Optional[str]:
        if jar is None:
            return None
        # iterate the jar: the same name may exist for several domains
        for cookie in jar.jar:
            if cookie.name == name and cookie.value:
                return cookie.value
        return None

    def _cookie(self, name: str) -> Optional[str]:
        raw = self._lookup(self.cookies, name)
        return unquote(raw) if raw else None

    def get_token(self) -> Optional[str]:
        return (
            self.local.get(TOKEN_KEY)
            or self._cookie(TOKEN_KEY)
            or self._lookup(self.server_cookies, TOKEN_KEY)
        )

    def set_token(self, token: str) -> None:
        self.local.set(TOKEN_KEY, token)
        self.cookies.set(TOKEN_KEY, quote(token, safe=""), domain=MIRROR_DOMAIN)

    def get_user(self) -> Optional[UserProfile]:
        raw = self.local.get(USER_KEY) or self._cookie(USER_KEY)
        if not raw:
            return None
        try:
            return UserProfile.model_validate_json(raw)
        except ValueError:
            logger.warning("client_user_snapshot_invalid")
            self.local.remove(USER_KEY)
            self.cookies.delete(USER_KEY)
            return None

    def set_user(self, user: UserProfile) -> None:
        raw = user.model_dump_json(by_alias=True)
        self.local.set(USER_KEY, raw)
        self.cookies.set(USER_KEY, quote(raw, safe=""), domain=MIRROR_DOMAIN)

    def save(self, token: str, user: UserProfile) -> None:
        self.set_token(token)
        self.set_user(user)

    def clear(self) -> None:
        for key in (TOKEN_KEY, USER_KEY):
            self.local.remove(key)
            self.cookies.delete(key)
        if self.server_cookies is not None:
            self.server_cookies.delete(TOKEN_KEY)
