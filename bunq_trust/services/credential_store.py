"""
Credential Store — async key/value storage for bunq credentials.
================================================================

The session subsystem only needs get/set/remove over string values, plus
batch set/remove so one credential record is written as a single unit.
The host decides where they live; two implementations ship here:

- InMemoryCredentialStore: process-local dict (tests, embedding).
- FileCredentialStore: JSON file with atomic writes (tmp + fsync +
  rename, one rename per batch) and chmod 600. When a Fernet key is
  given, every value is encrypted at rest.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialStore(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...

    async def set_items(self, items: Mapping[str, str]) -> None: ...

    async def remove_items(self, keys: Iterable[str]) -> None: ...


class InMemoryCredentialStore:
    """Dict-backed store; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    async def set_items(self, items: Mapping[str, str]) -> None:
        self._data.update(items)

    async def remove_items(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class FileCredentialStore:
    """Persistent store backed by a JSON file with atomic writes."""

    def __init__(self, path: str, secret_key: Optional[str] = None):
        self._path = Path(path).expanduser()
        self._fernet = Fernet(secret_key.encode()) if secret_key else None
        self._data: Dict[str, str] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No credential file at %s — starting empty", self._path)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (OSError, ValueError) as e:
            logger.error("Failed to load credential file %s: %s — starting empty", self._path, e)
            return
        if not isinstance(raw, dict):
            logger.error("Credential file %s is not a JSON object — starting empty", self._path)
            return
        self._data = {str(k): str(v) for k, v in raw.items()}

    def _save(self, data: Dict[str, str]) -> None:
        """Atomic write: tmp → fsync → rename. chmod 600. Memory is updated only after the rename."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        self._data = data

    def _encode(self, value: str) -> str:
        if self._fernet is None:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def _decode(self, key: str, stored: str) -> Optional[str]:
        if self._fernet is None:
            return stored
        try:
            return self._fernet.decrypt(stored.encode("ascii")).decode("utf-8")
        except InvalidToken:
            # Written under a different SECRET_KEY; treat as absent so setup runs again
            logger.warning("Stored value for %s cannot be decrypted with the current secret key", key)
            return None

    async def get_item(self, key: str) -> Optional[str]:
        stored = self._data.get(key)
        if stored is None:
            return None
        return self._decode(key, stored)

    async def set_item(self, key: str, value: str) -> None:
        await self.set_items({key: value})

    async def remove_item(self, key: str) -> None:
        await self.remove_items([key])

    async def set_items(self, items: Mapping[str, str]) -> None:
        """Write every item in one file replace; on failure nothing changes."""
        data = dict(self._data)
        for key, value in items.items():
            data[key] = self._encode(value)
        self._save(data)

    async def remove_items(self, keys: Iterable[str]) -> None:
        removed = set(keys)
        data = {k: v for k, v in self._data.items() if k not in removed}
        if len(data) != len(self._data):
            self._save(data)
