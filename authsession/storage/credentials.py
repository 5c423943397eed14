from __future__ import annotations

import contextlib
import json
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from authsession.logging import get_logger
from authsession.storage.memory import StagedWrite
from authsession.storage.models import TokenPair, UserRecord

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
USER_KEY = "user"

DEFAULT_ACCESS_TOKEN_TTL = 7 * 24 * 60 * 60
DEFAULT_REFRESH_TOKEN_TTL = 30 * 24 * 60 * 60


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_many(self, keys: Iterable[str]) -> None: ...

    async def write_batch(
        self, writes: Mapping[str, StagedWrite], deletes: Iterable[str] = ()
    ) -> None: ...

    async def keys(self, prefix: str = "") -> List[str]: ...

    async def close(self) -> None: ...


class CredentialTransaction:
    """Writes staged against the credential store, committed as one batch."""

    def __init__(self, store: "CredentialStore") -> None:
        self._store = store
        self.writes: Dict[str, StagedWrite] = {}
        self.deletes: List[str] = []

    def _stage(self, key: str, value: str, ttl: Optional[int]) -> None:
        self.writes[key] = (value, ttl)
        if key in self.deletes:
            self.deletes.remove(key)

    def set_tokens(self, tokens: TokenPair) -> None:
        self._stage(ACCESS_TOKEN_KEY, tokens.access_token, self._store.access_ttl)
        # Without a newly issued refresh token the stored one is left as is
        if tokens.refresh_token:
            self._stage(REFRESH_TOKEN_KEY, tokens.refresh_token, self._store.refresh_ttl)

    def set_user(self, user: UserRecord) -> None:
        self._stage(USER_KEY, json.dumps(user.to_dict(), default=str), None)

    def clear(self) -> None:
        self.writes.clear()
        self.deletes = [ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY]


class CredentialStore:
    """Durable home of the token pair and the user snapshot.

    Tokens carry advisory expiries (7 and 30 days by default) mirroring the
    cookie lifetimes; the backend decides whether a token is still valid.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        *,
        access_ttl: int = DEFAULT_ACCESS_TOKEN_TTL,
        refresh_ttl: int = DEFAULT_REFRESH_TOKEN_TTL,
    ) -> None:
        self.backend = backend
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    async def get_access_token(self) -> Optional[str]:
        return await self.backend.get(ACCESS_TOKEN_KEY)

    async def get_refresh_token(self) -> Optional[str]:
        return await self.backend.get(REFRESH_TOKEN_KEY)

    async def get_tokens(self) -> Tuple[Optional[str], Optional[str]]:
        return await self.get_access_token(), await self.get_refresh_token()

    async def load_user(self) -> Optional[UserRecord]:
        raw = await self.backend.get(USER_KEY)
        if not raw:
            return None
        try:
            return UserRecord.from_dict(json.loads(raw))
        except (ValueError, TypeError) as exc:
            logger.warning("user_snapshot_unreadable", error=str(exc))
            return None

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[CredentialTransaction]:
        """Stage writes and commit them together when the block exits cleanly.

        If the block raises nothing is written. If the commit itself fails the
        backend restores its previous state and the error propagates.
        """
        tx = CredentialTransaction(self)
        yield tx
        await self.backend.write_batch(tx.writes, tx.deletes)

    async def save_tokens(self, tokens: TokenPair) -> None:
        async with self.transaction() as tx:
            tx.set_tokens(tokens)

    async def save_user(self, user: UserRecord) -> None:
        async with self.transaction() as tx:
            tx.set_user(user)

    async def clear(self) -> None:
        async with self.transaction() as tx:
            tx.clear()
