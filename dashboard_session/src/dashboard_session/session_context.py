# src/dashboard_session/session_context.py

from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ConfigDict

from .logging import get_logger
from .session_data import SessionState
from .session_manager import InitOptions, SessionManager

logger = get_logger(__name__)


class SessionView(BaseModel):
    """What UI components read. No token material."""
    model_config = ConfigDict(frozen=True)

    authenticated: bool = False
    initialized: bool = False
    username: Optional[str] = None


Observer = Callable[[SessionView], None]


class SessionContext:
    """
    Hands the current session to UI consumers.

    Mounting subscribes and initializes; unmounting only unsubscribes. The
    session itself (handle, refresh timer) belongs to the SessionManager and
    survives any number of remounts.
    """

    def __init__(self, manager: SessionManager, options: Optional[InitOptions] = None):
        self._manager = manager
        self._options = options
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._observers: List[Observer] = []
        self._snapshot = self._view(manager.state)

    @property
    def mounted(self) -> bool:
        return self._unsubscribe is not None

    @property
    def snapshot(self) -> SessionView:
        return self._snapshot

    def _view(self, state: SessionState) -> SessionView:
        return SessionView(
            authenticated=state.authenticated,
            initialized=self._manager.initialized,
            username=state.username if state.authenticated else None,
        )

    def _on_state(self, state: SessionState) -> None:
        self._snapshot = self._view(state)
        for observer in list(self._observers):
            try:
                observer(self._snapshot)
            except Exception:
                logger.exception("session_observer_failed")

    def observe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    async def mount(self) -> SessionView:
        if self.mounted:
            return self._snapshot
        subscription = self._manager.subscribe(self._on_state)
        self._unsubscribe = subscription.unsubscribe
        self._snapshot = self._view(subscription.state)
        logger.info("session_context_mounted", initialized=self._snapshot.initialized)
        await self._manager.initialize(self._options)
        # initialize() may resolve without a transition (session already resolved)
        self._snapshot = self._view(self._manager.state)
        return self._snapshot

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info("session_context_unmounted")

    def login(self, redirect_uri: Optional[str] = None) -> None:
        self._manager.login(redirect_uri)

    async def logout(self) -> None:
        await self._manager.logout()

    async def __aenter__(self) -> "SessionContext":
        await self.mount()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.unmount()
