"""Authenticated-session lifecycle manager.

``SessionManager`` owns the in-memory user and the session state machine::

    UNINITIALIZED -> RESTORING -> AUTHENTICATED | ANONYMOUS
    AUTHENTICATED -> REFRESHING_TOKEN -> AUTHENTICATED | LOGGED_OUT
    ANONYMOUS | LOGGED_OUT -> AUTHENTICATED            (login / register)
    AUTHENTICATED -> ANONYMOUS                          (logout)

Everything durable goes through the credential store and the passport cache;
the in-memory user is replaced only after the durable write succeeded.
Backend calls return typed ``ApiResult`` values, so restoration and refresh
are plain sequential pipelines.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from authsession.config import DEFAULT_RENEWAL_INTERVAL_SECONDS
from authsession.logging import get_logger, set_correlation_id, token_preview
from authsession.service.auth_api import AuthAPI, _user_payload
from authsession.service.errors import (
    ErrorKind,
    InvalidTransition,
    NotAuthenticated,
    login_error,
    register_error,
)
from authsession.service.invalidation import IdentityListener, notify_identity_change
from authsession.service.passport import NOT_A_MEMBER, PassportService
from authsession.service.scheduler import RenewalScheduler
from authsession.storage.credentials import CredentialStore
from authsession.storage.errors import StorageError
from authsession.storage.models import Passport, TokenPair, UserRecord
from authsession.storage.passport_cache import PassportCache

logger = get_logger(__name__)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESTORING = "restoring"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    REFRESHING_TOKEN = "refreshing_token"
    LOGGED_OUT = "logged_out"


_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.UNINITIALIZED: frozenset({SessionState.RESTORING}),
    SessionState.RESTORING: frozenset({SessionState.AUTHENTICATED, SessionState.ANONYMOUS}),
    SessionState.AUTHENTICATED: frozenset(
        {
            SessionState.AUTHENTICATED,
            SessionState.REFRESHING_TOKEN,
            SessionState.ANONYMOUS,
        }
    ),
    SessionState.REFRESHING_TOKEN: frozenset(
        {SessionState.AUTHENTICATED, SessionState.LOGGED_OUT}
    ),
    SessionState.ANONYMOUS: frozenset({SessionState.AUTHENTICATED}),
    SessionState.LOGGED_OUT: frozenset({SessionState.AUTHENTICATED}),
}

_LOADING_STATES = frozenset({SessionState.UNINITIALIZED, SessionState.RESTORING})
# States during which the renewal timer runs
_SESSION_STATES = frozenset({SessionState.AUTHENTICATED, SessionState.REFRESHING_TOKEN})

StateListener = Callable[[SessionState, Optional[UserRecord]], None]


class SessionManager:
    def __init__(
        self,
        api: AuthAPI,
        credentials: CredentialStore,
        passport_cache: PassportCache,
        *,
        passports: Optional[PassportService] = None,
        identity_listeners: Optional[List[IdentityListener]] = None,
        renewal_interval: float = DEFAULT_RENEWAL_INTERVAL_SECONDS,
        restore_delay: float = 0.0,
    ) -> None:
        self.api = api
        self.credentials = credentials
        self.passport_cache = passport_cache
        self.passports = passports or PassportService(api, passport_cache)
        self.identity_listeners: List[IdentityListener] = list(identity_listeners or [])
        self.restore_delay = restore_delay
        self.renewal = RenewalScheduler(
            self.refresh_access_token, self._on_scheduled_refresh_failed, interval=renewal_interval
        )
        self._state = SessionState.UNINITIALIZED
        self._user: Optional[UserRecord] = None
        self._state_listeners: List[StateListener] = []
        self._restore_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._sync_task: Optional[asyncio.Task] = None
        # Bumped on every identity change; stale async results compare against it
        self._generation = 0

    # -- observable state -------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> Optional[UserRecord]:
        return self._user

    @property
    def loading(self) -> bool:
        return self._state in _LOADING_STATES

    @property
    def is_authenticated(self) -> bool:
        return self._state in _SESSION_STATES and self._user is not None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener(state, user)``; called after every transition."""
        self._state_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    def _transition(self, target: SessionState) -> None:
        current = self._state
        if target not in _TRANSITIONS[current]:
            raise InvalidTransition(
                f"cannot move from {current.value} to {target.value}",
                detail={"from": current.value, "to": target.value},
            )
        self._state = target
        if current not in _SESSION_STATES and target in _SESSION_STATES:
            self.renewal.start()
        elif current in _SESSION_STATES and target not in _SESSION_STATES:
            self.renewal.cancel()
        logger.info("session_state_changed", previous=current.value, state=target.value)
        for listener in list(self._state_listeners):
            try:
                listener(target, self._user)
            except Exception as exc:
                logger.error("session_state_listener_failed", error=str(exc))

    # -- restoration --------------------------------------------------------

    async def restore(self) -> SessionState:
        """Rebuild the session from durable storage.

        Runs once per manager; concurrent callers share the same run.
        """
        if self._restore_task is None:
            if self._state is not SessionState.UNINITIALIZED:
                return self._state
            self._transition(SessionState.RESTORING)
            self._restore_task = asyncio.create_task(self._run_restore(), name="session_restore")
        if self._restore_task.done():
            return self._state
        await asyncio.shield(self._restore_task)
        return self._state

    async def _ensure_restored(self) -> None:
        if self._state in _LOADING_STATES:
            await self.restore()

    async def _run_restore(self) -> SessionState:
        set_correlation_id()
        generation = self._generation
        try:
            if self.restore_delay > 0:
                await asyncio.sleep(self.restore_delay)
            user = await self._restore_pipeline()
        except Exception as exc:
            logger.error("session_restore_error", error=str(exc), error_type=type(exc).__name__)
            user = None

        if user is not None and generation != self._generation:
            logger.info("session_restore_discarded", reason="identity_changed", user_id=user.id)
            user = None

        if user is None:
            try:
                await self._teardown_storage(None)
            except StorageError as exc:
                logger.error("session_restore_teardown_failed", error=str(exc))
            self._user = None
            self._transition(SessionState.ANONYMOUS)
            logger.info("session_restored", authenticated=False)
            return self._state

        self._user = user
        self._transition(SessionState.AUTHENTICATED)
        logger.info("session_restored", authenticated=True, user_id=user.id)
        self._start_background_sync(user.id)
        return self._state

    async def _restore_pipeline(self) -> Optional[UserRecord]:
        access_token, refresh_token = await self.credentials.get_tokens()
        logger.info(
            "session_restore_started",
            has_access_token=bool(access_token),
            has_refresh_token=bool(refresh_token),
        )
        if not access_token and not refresh_token:
            return None

        user_data: Optional[Dict[str, Any]] = None
        if access_token:
            result = await self.api.validate(access_token)
            if result.ok:
                user_data = result.data.user
            else:
                logger.info(
                    "session_validate_failed",
                    error=result.error.value if result.error else None,
                    status_code=result.status_code,
                )

        if user_data is None:
            if not await self.credentials.get_refresh_token():
                logger.info("session_restore_no_refresh_token")
                return None
            if not await self.refresh_access_token():
                logger.warning("session_restore_refresh_failed")
                return None
            access_token = await self.credentials.get_access_token()
            result = await self.api.validate(access_token or "")
            if not result.ok:
                logger.warning(
                    "session_validate_after_refresh_failed",
                    error=result.error.value if result.error else None,
                )
                return None
            user_data = result.data.user

        user = await self._merge_snapshot(user_data)
        user = await self._apply_cached_passport(user)
        await self.credentials.save_user(user)
        return user

    async def _merge_snapshot(self, user_data: Dict[str, Any]) -> UserRecord:
        """Overlay the fields of a fresh user payload on the stored snapshot."""
        user = UserRecord.from_dict(user_data)
        snapshot = await self.credentials.load_user()
        if snapshot is None or snapshot.id != user.id:
            return user
        return snapshot.merged(user_data)

    # -- refresh -------------------------------------------------------------

    async def refresh_access_token(self) -> bool:
        """Exchange the stored refresh token for a new access token.

        Concurrent callers share one in-flight exchange and its result.
        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._run_refresh(), name="token_refresh")
        task = self._refresh_task
        return await asyncio.shield(task)

    async def _await_refresh_idle(self) -> None:
        if self._refresh_task is not None:
            await asyncio.wait({self._refresh_task})

    async def _run_refresh(self) -> bool:
        entered = self._state is SessionState.AUTHENTICATED
        if entered:
            self._transition(SessionState.REFRESHING_TOKEN)
        ok, rejected = False, False
        try:
            ok, rejected = await self._exchange_refresh_token()
        finally:
            self._refresh_task = None
            if entered and self._state is SessionState.REFRESHING_TOKEN:
                if ok or not rejected:
                    self._transition(SessionState.AUTHENTICATED)
                else:
                    try:
                        await self._end_session(SessionState.LOGGED_OUT, reason="refresh_rejected")
                    except StorageError as exc:
                        logger.error("session_teardown_failed", error=str(exc))
        return ok

    async def _exchange_refresh_token(self) -> tuple[bool, bool]:
        """Returns ``(refreshed, rejected)``; rejected means the refresh token is unusable."""
        generation = self._generation
        refresh_token = await self.credentials.get_refresh_token()
        if not refresh_token:
            logger.warning("token_refresh_skipped", reason="no_refresh_token")
            return False, True

        logger.debug("token_refresh_started", refresh_token=token_preview(refresh_token))
        result = await self.api.refresh(refresh_token)
        if not result.ok:
            logger.warning(
                "token_refresh_failed",
                error=result.error.value if result.error else None,
                status_code=result.status_code,
            )
            return False, result.error is not ErrorKind.UNREACHABLE

        if generation != self._generation:
            logger.info("token_refresh_discarded", reason="identity_changed")
            return False, False

        tokens = TokenPair(result.data.access_token, result.data.refresh_token)
        try:
            await self.credentials.save_tokens(tokens)
        except StorageError as exc:
            logger.error("token_refresh_persist_failed", error=str(exc))
            return False, False
        logger.info("token_refresh_succeeded", rotated=tokens.refresh_token is not None)
        return True, False

    async def _on_scheduled_refresh_failed(self) -> None:
        await self.logout()

    # -- passport ------------------------------------------------------------

    async def _apply_cached_passport(self, user: UserRecord) -> UserRecord:
        try:
            passport = await self.passports.fast_path(user.id)
        except StorageError as exc:
            logger.warning("passport_fast_path_failed", user_id=user.id, error=str(exc))
            return user
        return user.with_passport(passport) if passport else user

    def _start_background_sync(self, user_id: Any) -> None:
        self._cancel_background_sync()
        self._sync_task = asyncio.create_task(
            self._background_sync(user_id, self._generation), name="passport_sync"
        )

    def _cancel_background_sync(self) -> None:
        task = self._sync_task
        self._sync_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _background_sync(self, user_id: Any, generation: int) -> None:
        try:
            await self._sync_and_merge(user_id, generation)
        except StorageError as exc:
            logger.warning("passport_sync_failed", user_id=user_id, error=str(exc))

    async def _sync_and_merge(self, user_id: Any, generation: int) -> Optional[Passport]:
        passport = await self.passports.load_remote(user_id, sync=True)
        if passport is None:
            logger.info("passport_sync_kept_cache", user_id=user_id)
            return None
        if generation != self._generation or self._user is None or self._user.id != user_id:
            logger.info("passport_sync_discarded", user_id=user_id)
            return None
        await self.passports.save(passport)
        # Merge onto the user as it is now so concurrent profile edits survive
        current = self._user
        if current is None or current.id != user_id:
            return None
        updated = current.with_passport(passport)
        await self.credentials.save_user(updated)
        self._user = updated
        return passport

    async def sync_passport(self) -> Optional[Passport]:
        """Force a server-side passport sync and merge it into the user."""
        if self._user is None:
            raise NotAuthenticated("no signed-in user")
        return await self._sync_and_merge(self._user.id, self._generation)

    async def check_membership(self, timeline_id: Any) -> Dict[str, Any]:
        if self._user is None:
            return dict(NOT_A_MEMBER)
        return await self.passports.check_membership(self._user.id, timeline_id)

    # -- login / register ------------------------------------------------------

    async def login(self, email: str, password: str) -> UserRecord:
        set_correlation_id()
        await self._ensure_restored()
        await self._await_refresh_idle()
        logger.info("login_started", email=email)

        result = await self.api.login(email, password)
        if not result.ok:
            logger.warning(
                "login_failed",
                error=result.error.value if result.error else None,
                status_code=result.status_code,
            )
            raise login_error(result.error or ErrorKind.UNREACHABLE, result.status_code, result.data)

        response = result.data
        user = UserRecord.from_dict(_user_payload(response.user_fields()))
        tokens = TokenPair(response.access_token, response.refresh_token)
        return await self._establish(tokens, user, reason="login")

    async def register(self, username: str, email: str, password: str) -> Dict[str, Any]:
        """Create an account; a returned token signs the new user in."""
        set_correlation_id()
        await self._ensure_restored()
        await self._await_refresh_idle()

        result = await self.api.register(username, email, password)
        if not result.ok:
            logger.warning(
                "register_failed",
                error=result.error.value if result.error else None,
                status_code=result.status_code,
            )
            raise register_error(
                result.error or ErrorKind.UNREACHABLE, result.status_code, result.data
            )

        response = result.data
        payload = response.payload()
        if not response.token:
            logger.info("register_succeeded", implicit_login=False)
            return payload

        user_data = _user_payload(payload)
        if user_data is None:
            validated = await self.api.validate(response.token)
            if not validated.ok:
                logger.warning("register_token_unusable", error=validated.error)
                return payload
            user_data = validated.data.user
        user_fields = {k: v for k, v in user_data.items() if k not in ("token", "refresh_token")}
        await self._establish(
            TokenPair(response.token, response.refresh_token),
            UserRecord.from_dict(user_fields),
            reason="register",
        )
        logger.info("register_succeeded", implicit_login=True)
        return payload

    async def _establish(self, tokens: TokenPair, user: UserRecord, *, reason: str) -> UserRecord:
        previous = self._user
        self._generation += 1
        self._cancel_background_sync()

        # A shared device may still hold another account's membership data
        await self.passport_cache.purge_all()
        async with self.credentials.transaction() as tx:
            tx.clear()
            tx.set_tokens(tokens)
            tx.set_user(user)

        user = await self._apply_cached_passport(user)
        if user.memberships is not None:
            await self.credentials.save_user(user)
        self._user = user
        self._transition(SessionState.AUTHENTICATED)
        self._start_background_sync(user.id)
        notify_identity_change(
            self.identity_listeners, previous.id if previous else None, user.id
        )
        logger.info("session_established", reason=reason, user_id=user.id)
        return user

    # -- profile ---------------------------------------------------------------

    async def update_profile(self, partial: Mapping[str, Any]) -> UserRecord:
        """Merge already-persisted profile changes into the local user."""
        if self._user is None:
            raise NotAuthenticated("no signed-in user")
        updated = self._user.merged(partial)
        await self.credentials.save_user(updated)
        self._user = updated
        logger.debug("profile_updated", user_id=updated.id, fields=sorted(partial))
        return updated

    async def reload_user(self) -> Optional[UserRecord]:
        """Re-read the user from the backend and merge it into the local copy."""
        if self._user is None:
            raise NotAuthenticated("no signed-in user")
        user_id, generation = self._user.id, self._generation
        result = await self.api.me()
        if not result.ok:
            logger.warning(
                "reload_user_failed",
                error=result.error.value if result.error else None,
                status_code=result.status_code,
            )
            if result.error is ErrorKind.TOKEN_EXPIRED and generation == self._generation:
                # The transport already tried one refresh-and-retry
                await self.logout()
            return None
        if generation != self._generation or self._user is None or self._user.id != user_id:
            return None
        updated = self._user.merged(result.data)
        await self.credentials.save_user(updated)
        self._user = updated
        return updated

    # -- logout ----------------------------------------------------------------

    async def logout(self) -> None:
        """Tear down the session. Safe to call when already signed out."""
        set_correlation_id()
        await self._ensure_restored()
        if self._state is SessionState.REFRESHING_TOKEN:
            target = SessionState.LOGGED_OUT
        elif self._state is SessionState.AUTHENTICATED:
            target = SessionState.ANONYMOUS
        else:
            target = None
        await self._end_session(target, reason="logout")

    async def _end_session(self, target: Optional[SessionState], *, reason: str) -> None:
        previous = self._user
        self._generation += 1
        self._cancel_background_sync()
        try:
            await self._teardown_storage(previous.id if previous else None)
        finally:
            self._user = None
            if target is not None:
                self._transition(target)
            if previous is not None:
                notify_identity_change(self.identity_listeners, previous.id, None)
            logger.info("session_ended", reason=reason, user_id=previous.id if previous else None)

    async def _teardown_storage(self, user_id: Any) -> None:
        if user_id is None:
            snapshot = await self.credentials.load_user()
            user_id = snapshot.id if snapshot else None
        await self.credentials.clear()
        await self.passport_cache.purge_user(user_id)

    # -- shutdown --------------------------------------------------------------

    async def close(self) -> None:
        """Stop timers and background work; durable state is left untouched."""
        await self.renewal.stop()
        self._cancel_background_sync()
        for task in (self._restore_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
        logger.debug("session_manager_closed", state=self._state.value)
