from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from redis import Redis

from tradedesk.config import Settings, StorageBackend
from tradedesk.logging import get_logger

logger = get_logger(__name__)

Records = List[Dict[str, Any]]


class PersistenceBackend(Protocol):
    """Durable side-channel for the credential store, keyed by collection name."""

    def load(self, collection: str) -> Optional[Records]: ...

    def persist(self, collection: str, records: Records) -> None: ...

    def reset(self) -> None: ...


class KeyValueClient(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: str) -> Any: ...

    def delete(self, *keys: str) -> Any: ...


class FileBackend:
    """One JSON document per collection under ``<root>/state``."""

    def __init__(self, root: str | Path) -> None:
        self.state_dir = Path(root) / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str) -> Path:
        return self.state_dir / f"{collection}.json"

    def load(self, collection: str) -> Optional[Records]:
        path = self._path(collection)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            logger.warning("store_state_corrupt", collection=collection, error=str(exc))
            return None
        return data if isinstance(data, list) else None

    def persist(self, collection: str, records: Records) -> None:
        path = self._path(collection)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_dir), prefix=f".{collection}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(records, handle, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def reset(self) -> None:
        for path in self.state_dir.glob("*.json"):
            path.unlink(missing_ok=True)


class KeyValueBackend:
    """JSON strings in a key-value client, one key per collection.

    Works with ``redis.Redis`` (``decode_responses=True``) or any object with the
    same ``get``/``set``/``delete`` surface.
    """

    def __init__(self, client: KeyValueClient, *, prefix: str = "tradedesk:auth") -> None:
        self.client = client
        self.prefix = prefix
        self._known: set[str] = set()

    def _key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    def load(self, collection: str) -> Optional[Records]:
        raw = self.client.get(self._key(collection))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("store_state_corrupt", collection=collection, error=str(exc))
            return None
        self._known.add(collection)
        return data if isinstance(data, list) else None

    def persist(self, collection: str, records: Records) -> None:
        self.client.set(self._key(collection), json.dumps(records))
        self._known.add(collection)

    def reset(self) -> None:
        if self._known:
            self.client.delete(*(self._key(name) for name in sorted(self._known)))
            self._known.clear()


def backend_from_settings(settings: Settings) -> PersistenceBackend:
    """Pick the persistence backend once, when the runtime is assembled."""
    if settings.storage_backend == StorageBackend.REDIS:
        client = Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return KeyValueBackend(client, prefix=settings.redis_key_prefix)
    return FileBackend(settings.data_root)
