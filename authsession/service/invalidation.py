from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

from authsession.logging import get_logger

logger = get_logger(__name__)


class IdentityListener(Protocol):
    def on_identity_change(self, previous_user_id: Any, current_user_id: Any) -> None: ...


def _base_state() -> Dict[str, Any]:
    return {
        "value": None,
        "stats": {"promote_count": 0, "demote_count": 0, "user_vote": None},
        "loading": False,
        "error": None,
        "loaded": False,
    }


class VoteStateCache:
    """Per-event vote state shown to the signed-in user.

    The cached state embeds the user's own vote, so it is dropped whenever
    the identity changes.
    """

    def __init__(self) -> None:
        self._states: Dict[Any, Dict[str, Any]] = {}
        self._listeners: Dict[Any, List[Callable[[Dict[str, Any]], None]]] = {}

    def get(self, event_id: Any) -> Dict[str, Any]:
        return dict(self._states.get(event_id) or _base_state())

    def set(self, event_id: Any, update: Dict[str, Any]) -> Dict[str, Any]:
        state = {**self.get(event_id), **update}
        self._states[event_id] = state
        for listener in list(self._listeners.get(event_id, [])):
            listener(dict(state))
        return state

    def subscribe(
        self, event_id: Any, listener: Callable[[Dict[str, Any]], None]
    ) -> Callable[[], None]:
        self._listeners.setdefault(event_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event_id, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._states)

    def clear(self) -> None:
        self._states.clear()
        self._listeners.clear()

    def on_identity_change(self, previous_user_id: Any, current_user_id: Any) -> None:
        logger.debug(
            "vote_state_cache_cleared",
            previous_user_id=previous_user_id,
            current_user_id=current_user_id,
            entries=len(self._states),
        )
        self.clear()


def notify_identity_change(
    listeners: List[IdentityListener], previous_user_id: Any, current_user_id: Optional[Any]
) -> None:
    """Call every listener; one failing listener does not stop the rest."""
    for listener in listeners:
        try:
            listener.on_identity_change(previous_user_id, current_user_id)
        except Exception as exc:
            logger.error(
                "identity_listener_failed",
                listener=type(listener).__name__,
                error=str(exc),
            )
