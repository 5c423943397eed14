from __future__ import annotations

from typing import List, Optional, Union
from urllib.parse import urlparse

import httpx

from authsession.config import Settings, StorageBackend, get_settings
from authsession.logging import get_logger
from authsession.service.auth_api import AuthAPI
from authsession.service.invalidation import IdentityListener, VoteStateCache
from authsession.service.passport import PassportService
from authsession.service.scheduler import KeepAlivePinger
from authsession.service.session import SessionManager
from authsession.service.transport import TransportClient
from authsession.storage.credentials import CredentialStore
from authsession.storage.memory import MemoryStore
from authsession.storage.passport_cache import PassportCache
from authsession.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return parsed._replace(netloc=netloc).geturl()


def _build_backend(settings: Settings) -> Union[MemoryStore, RedisStore]:
    if settings.storage_backend is StorageBackend.REDIS:
        store = RedisStore(settings.redis_url)
        try:
            store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
            )
            raise
        return store
    return MemoryStore(settings.storage_root, encryption_key=settings.storage_encryption_key)


class Runtime:
    """Wires storage, transport and the session manager for one process.

    Use as an async context manager: entering restores the session, leaving
    stops background work and closes the HTTP clients and the store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backend: Optional[Union[MemoryStore, RedisStore]] = None,
        listeners: Optional[List[IdentityListener]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            api_base_url=self.settings.api_base_url,
            storage_backend=self.settings.storage_backend.value,
        )
        self.backend = backend if backend is not None else _build_backend(self.settings)
        self.credentials = CredentialStore(
            self.backend,
            access_ttl=self.settings.access_token_ttl_seconds,
            refresh_ttl=self.settings.refresh_token_ttl_seconds,
        )
        self.passport_cache = PassportCache(self.backend)
        self.transport = TransportClient(
            self.settings.api_base_url,
            self.credentials,
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )
        self.api = AuthAPI(self.transport, self.settings)
        self.passports = PassportService(
            self.api,
            self.passport_cache,
            stale_minutes=self.settings.membership_stale_minutes,
        )
        self.votes = VoteStateCache()
        self.session = SessionManager(
            self.api,
            self.credentials,
            self.passport_cache,
            passports=self.passports,
            identity_listeners=[self.votes, *(listeners or [])],
            renewal_interval=self.settings.renewal_interval_seconds,
            restore_delay=self.settings.restore_delay_seconds,
        )
        self.transport.set_refresh_handler(self.session.refresh_access_token)
        self.keepalive = KeepAlivePinger(
            self.api.health_check, interval=self.settings.keepalive_interval_seconds
        )

    async def start(self) -> None:
        if self.settings.keepalive_enabled:
            self.keepalive.start()
        state = await self.session.restore()
        logger.info("runtime_started", session_state=state.value)

    async def close(self) -> None:
        await self.keepalive.stop()
        await self.session.close()
        await self.transport.aclose()
        await self.backend.close()
        logger.info("runtime_closed")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    listeners: Optional[List[IdentityListener]] = None,
) -> Runtime:
    return Runtime(settings, transport=transport, listeners=listeners)
