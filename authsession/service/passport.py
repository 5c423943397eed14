from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from authsession.logging import get_logger
from authsession.service.auth_api import AuthAPI
from authsession.storage.models import Passport, parse_timestamp, utcnow
from authsession.storage.passport_cache import PassportCache

logger = get_logger(__name__)

NOT_A_MEMBER: Dict[str, Any] = {"is_member": False, "role": None}


class PassportService:
    """Loads a user's passport from the backend and keeps the cache current.

    Remote loads never write the cache themselves: the caller decides whether
    the result still belongs to the signed-in identity and then calls
    ``save``.
    """

    def __init__(
        self,
        api: AuthAPI,
        cache: PassportCache,
        *,
        stale_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.api = api
        self.cache = cache
        self.stale_minutes = stale_minutes
        self._clock = clock

    async def cached(self, user_id: Any) -> Optional[Passport]:
        return await self.cache.load(user_id)

    async def load_remote(self, user_id: Any, *, sync: bool = False) -> Optional[Passport]:
        """Fetch the passport, or force a server-side sync first when ``sync``."""
        result = await (self.api.sync_passport() if sync else self.api.fetch_passport())
        if not result.ok:
            logger.warning(
                "passport_load_failed",
                user_id=user_id,
                sync=sync,
                error=result.error.value if result.error else None,
                status_code=result.status_code,
            )
            return None
        payload = result.data.model_dump()
        passport = Passport.from_payload(user_id, payload, now=self._clock())
        logger.info(
            "passport_loaded",
            user_id=user_id,
            sync=sync,
            memberships=len(passport.memberships),
        )
        return passport

    async def save(self, passport: Passport) -> None:
        await self.cache.store(passport)

    async def fast_path(self, user_id: Any) -> Optional[Passport]:
        """Cached passport when present, else a plain fetch."""
        passport = await self.cached(user_id)
        if passport is not None:
            return passport
        passport = await self.load_remote(user_id)
        if passport is not None:
            await self.save(passport)
        return passport

    def _is_fresh(self, stamp: Optional[datetime]) -> bool:
        if stamp is None:
            return False
        age_minutes = (self._clock() - stamp).total_seconds() / 60
        return age_minutes < self.stale_minutes

    async def check_membership(self, user_id: Any, timeline_id: Any) -> Dict[str, Any]:
        """Membership of ``user_id`` in ``timeline_id``.

        Order: the direct per-timeline entry when recent, then the cached
        passport when recent, then a passport fetch (falling back to the stale
        cache when the fetch fails).
        """
        try:
            timeline_id = int(timeline_id)
        except (TypeError, ValueError):
            return dict(NOT_A_MEMBER)

        entry = await self.cache.get_membership(timeline_id)
        if entry and self._is_fresh(parse_timestamp(entry.get("timestamp"))):
            logger.debug("membership_from_direct_entry", timeline_id=timeline_id)
            return entry

        passport = await self.cached(user_id)
        if passport is None or passport.age_minutes(self._clock()) >= self.stale_minutes:
            fetched = await self.load_remote(user_id)
            if fetched is not None:
                await self.save(fetched)
                passport = fetched
        if passport is None:
            return dict(NOT_A_MEMBER)

        membership = passport.find(timeline_id)
        if membership is None:
            logger.debug("membership_not_found", user_id=user_id, timeline_id=timeline_id)
            return dict(NOT_A_MEMBER)
        entry = membership.direct_entry(self._clock())
        await self.cache.set_membership(timeline_id, entry)
        return entry
