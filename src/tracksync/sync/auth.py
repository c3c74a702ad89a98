"""Auth state published by the host application's auth subsystem."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from tracksync.utils.observers import HandlerSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthState:
    """Immutable snapshot of the current session."""

    session_id: str | None = None
    access_token: str | None = None
    needs_reauth: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.session_id is not None and not self.needs_reauth


class AuthStateManager:
    """Single source of auth state with ``subscribe(handler) -> unsubscribe``.

    Handlers receive the new :class:`AuthState` on every change.
    """

    def __init__(self) -> None:
        self._state = AuthState()
        self._handlers = HandlerSet("auth state")

    @property
    def current(self) -> AuthState:
        return self._state

    def subscribe(self, handler: Callable[[AuthState], None]) -> Callable[[], None]:
        return self._handlers.subscribe(handler)

    def sign_in(self, session_id: str, access_token: str | None = None) -> None:
        if not session_id:
            raise ValueError("session_id must be non-empty")
        self._publish(AuthState(session_id=session_id, access_token=access_token))

    def sign_out(self) -> None:
        self._publish(AuthState())

    def mark_auth_error(self, reason: str = "") -> None:
        """Flag that the backend rejected the session; sync pauses until sign-in."""
        if self._state.session_id is None or self._state.needs_reauth:
            return
        logger.warning("Session rejected by backend, re-authentication required: %s", reason)
        self._publish(
            AuthState(
                session_id=self._state.session_id,
                access_token=self._state.access_token,
                needs_reauth=True,
            )
        )

    def _publish(self, state: AuthState) -> None:
        if state == self._state:
            return
        self._state = state
        self._handlers.publish(state)
