from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from authsession.logging import get_logger
from authsession.storage.credentials import KeyValueStore
from authsession.storage.memory import StagedWrite
from authsession.storage.models import Passport

logger = get_logger(__name__)

PASSPORT_PREFIX = "passport_"
MEMBERSHIP_PREFIX = "membership_"
# Key formats written by older clients; only ever purged
LEGACY_PASSPORT_PREFIX = "user_passport_"
LEGACY_MEMBERSHIP_PREFIX = "timeline_membership_"


def passport_key(user_id: Any) -> str:
    return f"{PASSPORT_PREFIX}{user_id}"


def membership_key(timeline_id: Any) -> str:
    return f"{MEMBERSHIP_PREFIX}{timeline_id}"


def scoped_membership_key(user_id: Any, timeline_id: Any) -> str:
    return f"{MEMBERSHIP_PREFIX}{user_id}_{timeline_id}"


class PassportCache:
    """Per-user passport entries plus the per-timeline membership lookups
    derived from them."""

    def __init__(self, backend: KeyValueStore) -> None:
        self.backend = backend

    async def _read_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.backend.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("cache_entry_unreadable", key=key)
            return None
        return data if isinstance(data, dict) else None

    async def load(self, user_id: Any) -> Optional[Passport]:
        data = await self._read_json(passport_key(user_id))
        if data is None:
            return None
        return Passport.from_dict({**data, "user_id": user_id})

    async def store(self, passport: Passport) -> None:
        """Replace the cached passport and its membership lookups in one batch."""
        writes: Dict[str, StagedWrite] = {
            passport_key(passport.user_id): (json.dumps(passport.to_dict(), default=str), None)
        }
        for membership in passport.memberships:
            writes[membership_key(membership.timeline_id)] = (
                json.dumps(membership.direct_entry(passport.fetched_at)),
                None,
            )
        stale = [key for key in await self._unscoped_membership_keys() if key not in writes]
        await self.backend.write_batch(writes, stale)

    async def get_membership(self, timeline_id: Any) -> Optional[Dict[str, Any]]:
        return await self._read_json(membership_key(timeline_id))

    async def set_membership(self, timeline_id: Any, entry: Dict[str, Any]) -> None:
        await self.backend.set(membership_key(timeline_id), json.dumps(entry, default=str))

    async def _unscoped_membership_keys(self) -> List[str]:
        keys = await self.backend.keys(MEMBERSHIP_PREFIX)
        return [key for key in keys if "_" not in key[len(MEMBERSHIP_PREFIX):]]

    async def purge_user(self, user_id: Any) -> int:
        """Drop the passport of ``user_id``, its scoped membership entries and
        every unscoped or legacy membership entry."""
        keys: List[str] = []
        if user_id is not None:
            keys.append(passport_key(user_id))
            keys.append(f"{LEGACY_PASSPORT_PREFIX}{user_id}")
            keys.extend(await self.backend.keys(scoped_membership_key(user_id, "")))
        keys.extend(await self._unscoped_membership_keys())
        keys.extend(await self.backend.keys(LEGACY_MEMBERSHIP_PREFIX))
        await self.backend.delete_many(keys)
        logger.debug("passport_cache_purged_user", user_id=user_id, keys=len(keys))
        return len(keys)

    async def purge_all(self) -> int:
        """Drop passport and membership entries of every identity."""
        keys: List[str] = []
        for prefix in (
            PASSPORT_PREFIX,
            MEMBERSHIP_PREFIX,
            LEGACY_PASSPORT_PREFIX,
            LEGACY_MEMBERSHIP_PREFIX,
        ):
            keys.extend(await self.backend.keys(prefix))
        await self.backend.delete_many(keys)
        logger.debug("passport_cache_purged_all", keys=len(keys))
        return len(keys)
