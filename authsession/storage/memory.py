from __future__ import annotations

import base64
import hashlib
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from authsession.logging import get_logger
from authsession.storage.errors import StorageError

# (value, ttl_seconds) pairs accepted by write_batch
StagedWrite = Tuple[str, Optional[int]]


class MemoryStore:
    """Key/value store kept in memory and mirrored to a JSON file.

    Plays the role of the browser's cookie jar and local storage: entries
    survive process restarts, and each entry may carry an expiry after which
    it reads as missing.
    """

    def __init__(
        self,
        fs_root: str,
        *,
        encryption_key: str | None = None,
        clock=time.time,
    ) -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._cipher = self._build_cipher(encryption_key) if encryption_key else None
        self.entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise StorageError("unable to initialize storage cipher") from exc

    def _encode(self, value: str) -> str:
        if self._cipher is None:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decode(self, raw: str) -> Optional[str]:
        if self._cipher is None:
            return raw
        try:
            return self._cipher.decrypt(raw.encode()).decode()
        except InvalidToken:
            self.logger.warning("storage_entry_decrypt_failed")
            return None

    def _is_expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.error("storage_state_unreadable", path=str(path), error=str(exc))
            return False
        loaded: Dict[str, Tuple[str, Optional[float]]] = {}
        for key, entry in (data.get("entries") or {}).items():
            if not isinstance(entry, dict) or not isinstance(entry.get("value"), str):
                continue
            expires_at = entry.get("expires_at")
            if self._is_expired(expires_at):
                continue
            loaded[key] = (entry["value"], expires_at)
        self.entries = loaded
        return True

    def _persist_state(self) -> None:
        state = {
            "entries": {
                key: {"value": value, "expires_at": expires_at}
                for key, (value, expires_at) in self.entries.items()
            }
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=".session_store_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except Exception as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StorageError(f"failed to persist session store: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._is_expired(expires_at):
            self.entries.pop(key, None)
            return None
        return self._decode(value)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self.write_batch({key: (value, ttl_seconds)})

    async def delete(self, key: str) -> None:
        await self.write_batch({}, [key])

    async def delete_many(self, keys: Iterable[str]) -> None:
        await self.write_batch({}, keys)

    async def write_batch(
        self, writes: Mapping[str, StagedWrite], deletes: Iterable[str] = ()
    ) -> None:
        """Apply all writes and deletes together or not at all."""
        deletes = [key for key in deletes if key in self.entries]
        if not writes and not deletes:
            return
        snapshot = dict(self.entries)
        now = self._clock()
        for key, (value, ttl_seconds) in writes.items():
            expires_at = now + ttl_seconds if ttl_seconds else None
            self.entries[key] = (self._encode(value), expires_at)
        for key in deletes:
            self.entries.pop(key, None)
        try:
            self._persist_state()
        except StorageError:
            self.entries = snapshot
            raise

    async def keys(self, prefix: str = "") -> List[str]:
        return [
            key
            for key, (_, expires_at) in self.entries.items()
            if key.startswith(prefix) and not self._is_expired(expires_at)
        ]

    async def close(self) -> None:
        return None
