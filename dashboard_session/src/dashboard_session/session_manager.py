# src/dashboard_session/session_manager.py

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional
from urllib.parse import parse_qsl, urlparse

from pydantic import BaseModel

from .auth_utils import IdentityProviderClient, MsalIdentityProvider
from .callback_server import BrowserNavigator, Navigator
from .config import Settings, settings as default_settings
from .errors import InitializationError, RefreshFailure, SessionError
from .logging import get_logger
from .session_data import (
    ErrorInfo,
    SessionHandle,
    SessionState,
    SessionStatus,
    TokenSet,
    parse_claims,
)

logger = get_logger(__name__)

# refresh(FORCE_REFRESH) skips the remaining-validity check
FORCE_REFRESH = 0

Listener = Callable[[SessionState], None]


class InitOptions(BaseModel):
    on_load: Literal["login-required", "check-sso"] = "login-required"
    redirect_uri: Optional[str] = None


@dataclass
class Subscription:
    state: SessionState
    unsubscribe: Callable[[], None]


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Shared tasks may outlive every awaiting caller
    if not task.cancelled():
        task.exception()


class RefreshTimer:
    """Calls refresh(min_validity) every `interval` seconds while the session is authenticated."""

    def __init__(self, refresh: Callable[[int], Any], interval: float, min_validity: int):
        self._refresh = refresh
        self.interval = interval
        self.min_validity = min_validity
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while not self.cancelled:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> bool:
        if self.cancelled:
            return False
        try:
            return await self._refresh(self.min_validity)
        except RefreshFailure as exc:
            logger.warning("periodic_refresh_failed", error=str(exc))
            return False

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class SessionManager:
    """
    Owns the one logical session against the identity provider.

    Only this class mutates the SessionHandle. Initialization and refresh are
    each backed by a single shared task, so concurrent callers join the work
    already in flight instead of starting a second redirect or a second
    refresh-token exchange.
    """

    def __init__(
        self,
        handle: SessionHandle,
        navigator: Navigator,
        settings: Settings = default_settings,
        clock: Callable[[], float] = time.time,
    ):
        self._handle: Optional[SessionHandle] = handle
        self._navigator = navigator
        self._settings = settings
        self._clock = clock
        self._state = SessionState()
        self._listeners: List[Listener] = []
        self._timer: Optional[RefreshTimer] = None
        self._epoch = 0
        self.initialized = False

    # --- State and subscriptions ---

    @property
    def state(self) -> SessionState:
        return self._state.public()

    @property
    def refresh_timer(self) -> Optional[RefreshTimer]:
        return self._timer

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(state=self.state, unsubscribe=unsubscribe)

    def _transition(self, new_state: SessionState) -> None:
        previous = self._state.status
        self._state = new_state
        if new_state.resolved:
            self.initialized = True
        logger.info(
            "session_transition",
            previous=previous.value,
            status=new_state.status.value,
            username=new_state.username,
            error=new_state.last_error.kind if new_state.last_error else None,
        )
        public_state = new_state.public()
        for listener in list(self._listeners):
            try:
                listener(public_state)
            except Exception:
                logger.exception("session_listener_failed")

    def _require_handle(self) -> SessionHandle:
        if self._handle is None:
            raise SessionError("The session manager has been shut down.")
        return self._handle

    # --- Initialization and login ---

    async def initialize(self, options: Optional[InitOptions] = None) -> SessionState:
        handle = self._require_handle()
        if self._state.resolved:
            return self.state

        if handle.init_task is None:
            options = options or InitOptions(on_load=self._settings.ON_LOAD)
            self._start_flow(
                handle,
                interactive=options.on_load == "login-required",
                redirect_uri=options.redirect_uri,
            )
        task = handle.init_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # The flow itself was aborted, e.g. by logout(); report where that left us.
        return self.state

    def login(self, redirect_uri: Optional[str] = None) -> None:
        handle = self._handle
        if handle is None:
            logger.warning("login_ignored_after_shutdown")
            return
        if handle.init_task is not None and not handle.init_task.done():
            logger.info("login_already_in_progress")
            return
        self._start_flow(handle, interactive=True, redirect_uri=redirect_uri)

    def _start_flow(self, handle: SessionHandle, interactive: bool, redirect_uri: Optional[str]) -> None:
        self._cancel_timer()
        handle.refresh_task = None
        self._epoch += 1
        task = asyncio.get_running_loop().create_task(
            self._authorize(self._epoch, interactive, redirect_uri)
        )
        task.add_done_callback(_retrieve_exception)
        # Registered before any listener runs, so a re-entrant call joins this flow
        handle.init_task = task
        self._transition(SessionState(status=SessionStatus.INITIALIZING))

    async def _authorize(self, epoch: int, interactive: bool, redirect_uri: Optional[str]) -> None:
        handle = self._require_handle()
        try:
            if not interactive:
                # check-sso: nothing is persisted between runs, so there is no session to find
                self._transition(SessionState(status=SessionStatus.UNAUTHENTICATED))
                return

            redirect_uri = redirect_uri or str(self._settings.REDIRECT_URI)
            handle.pending_flow = await handle.client.begin_authorization(redirect_uri)
            callback_url = await self._navigator.authorize(handle.pending_flow["auth_uri"])
            auth_response = dict(parse_qsl(urlparse(callback_url).query))

            flow, handle.pending_flow = handle.pending_flow, None
            if (
                "error" not in auth_response
                and flow.get("state")
                and auth_response.get("state") != flow["state"]
            ):
                raise InitializationError("Authorization callback state does not match the request.")
            tokens = await handle.client.complete_authorization(flow, auth_response)

            if epoch != self._epoch:
                logger.info("authorization_result_discarded", reason="superseded")
                return
            self._establish(tokens)
        except asyncio.CancelledError:
            handle.pending_flow = None
            raise
        except Exception as exc:
            handle.pending_flow = None
            if epoch != self._epoch:
                return
            error = exc if isinstance(exc, InitializationError) else InitializationError(str(exc))
            logger.warning("initialization_failed", error=str(exc), error_type=type(exc).__name__)
            self._transition(
                SessionState(
                    status=SessionStatus.UNAUTHENTICATED,
                    last_error=ErrorInfo.from_exception(error),
                )
            )
        finally:
            if handle.init_task is asyncio.current_task():
                handle.init_task = None

    def _establish(self, tokens: TokenSet) -> None:
        handle = self._require_handle()
        now = self._clock()
        identity = tokens.identity()
        if tokens.id_token:
            handle.id_token = tokens.id_token
        handle.claims = {**parse_claims(tokens.access_token), **tokens.id_token_claims}
        self._transition(
            SessionState(
                status=SessionStatus.AUTHENTICATED,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or self._state.refresh_token,
                expires_at_epoch_seconds=math.floor(now) + tokens.expires_in,
                subject=identity["subject"] or self._state.subject,
                username=identity["username"] or self._state.username,
            )
        )
        if self._timer is None:
            self._timer = RefreshTimer(
                self.refresh,
                interval=self._settings.REFRESH_INTERVAL_SECONDS,
                min_validity=self._settings.REFRESH_MIN_VALIDITY_SECONDS,
            )
            self._timer.start()

    # --- Tokens ---

    def get_access_token(self) -> Optional[str]:
        if self._state.status is SessionStatus.AUTHENTICATED:
            return self._state.access_token
        return None

    def remaining_validity(self) -> Optional[float]:
        if self._state.expires_at_epoch_seconds is None:
            return None
        return self._state.expires_at_epoch_seconds - self._clock()

    async def refresh(self, min_validity_seconds: int) -> bool:
        """Refresh when fewer than `min_validity_seconds` remain; FORCE_REFRESH always refreshes.

        Returns whether a refresh-token exchange took place.
        """
        handle = self._require_handle()
        if handle.refresh_task is not None:
            return await asyncio.shield(handle.refresh_task)

        if self._state.status is not SessionStatus.AUTHENTICATED or not self._state.refresh_token:
            raise RefreshFailure("No authenticated session to refresh.")
        if min_validity_seconds > FORCE_REFRESH:
            remaining = self.remaining_validity()
            if remaining is not None and remaining >= min_validity_seconds:
                return False

        task = asyncio.get_running_loop().create_task(
            self._exchange_refresh_token(self._epoch, self._state.refresh_token)
        )
        task.add_done_callback(_retrieve_exception)
        handle.refresh_task = task
        return await asyncio.shield(task)

    async def _exchange_refresh_token(self, epoch: int, refresh_token: str) -> bool:
        handle = self._require_handle()
        try:
            tokens = await handle.client.refresh(refresh_token)
        except Exception as exc:
            if epoch != self._epoch:
                raise RefreshFailure("Session ended while refreshing.") from exc
            logger.warning("token_refresh_failed", error=str(exc), error_type=type(exc).__name__)
            failure = exc if isinstance(exc, RefreshFailure) else RefreshFailure(str(exc))
            self._end_session(ErrorInfo.from_exception(failure))
            if failure is exc:
                raise
            raise failure from exc
        finally:
            if handle.refresh_task is asyncio.current_task():
                handle.refresh_task = None

        if epoch != self._epoch:
            raise RefreshFailure("Session ended while refreshing.")
        self._establish(tokens)
        logger.info("token_refreshed", expires_at=self._state.expires_at_epoch_seconds)
        return True

    # --- Logout and teardown ---

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _end_session(self, error: Optional[ErrorInfo] = None) -> None:
        self._epoch += 1
        self._cancel_timer()
        if self._handle is not None:
            self._handle.claims = {}
            # An in-flight exchange belongs to the ended session; later refreshes must not join it
            self._handle.refresh_task = None
        self._transition(SessionState(status=SessionStatus.UNAUTHENTICATED, last_error=error))

    async def logout(self, post_logout_redirect_uri: Optional[str] = None) -> None:
        handle = self._handle
        id_token = handle.id_token if handle is not None else None
        if handle is not None:
            handle.id_token = None
            handle.pending_flow = None
            if handle.init_task is not None and not handle.init_task.done():
                handle.init_task.cancel()
            handle.init_task = None
        self._end_session()

        if handle is None:
            return
        redirect_to = post_logout_redirect_uri or self._post_logout_redirect_uri()
        try:
            logout_url = await handle.client.end_session(id_token, redirect_to)
            await self._navigator.redirect(logout_url)
        except Exception as exc:
            # Local state is already cleared; the provider session may outlive us.
            logger.warning("provider_logout_failed", error=str(exc), error_type=type(exc).__name__)

    def _post_logout_redirect_uri(self) -> str:
        parsed = urlparse(str(self._settings.REDIRECT_URI))
        return f"{parsed.scheme}://{parsed.netloc}/"

    async def shutdown(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._cancel_timer()
        pending = [t for t in (handle.init_task, handle.refresh_task) if t is not None and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._handle = None
        await self._navigator.aclose()
        self._listeners.clear()
        logger.info("session_manager_shutdown")

    # --- Diagnostics ---

    def debug_info(self) -> Dict[str, Any]:
        handle = self._handle
        claims = handle.claims if handle is not None else {}
        return {
            "initialized": self.initialized,
            "authenticated": self._state.authenticated,
            "status": self._state.status.value,
            "has_session_handle": handle is not None,
            "has_token": self._state.access_token is not None,
            "has_refresh_token": self._state.refresh_token is not None,
            "has_id_token": bool(handle and handle.id_token),
            "token_parsed": dict(claims),
            "url": str(self._settings.KEYCLOAK_URL),
            "realm": self._settings.KEYCLOAK_REALM,
            "client_id": self._settings.KEYCLOAK_CLIENT_ID,
            "subject": self._state.subject,
            "username": self._state.username,
            "session_id": claims.get("sid"),
            "expires_at": self._state.expires_at_epoch_seconds,
            "flow": "standard",
            "response_mode": "query",
            "has_pending_flow": bool(handle and handle.pending_flow),
            "has_refresh_timer": self._timer is not None,
            "last_error": self._state.last_error.model_dump() if self._state.last_error else None,
        }


def create_session_manager(
    settings: Settings = default_settings,
    client: Optional[IdentityProviderClient] = None,
    navigator: Optional[Navigator] = None,
    clock: Callable[[], float] = time.time,
) -> SessionManager:
    """Application-level factory: the one place a SessionHandle is created."""
    handle = SessionHandle(client=client or MsalIdentityProvider(settings))
    return SessionManager(
        handle,
        navigator or BrowserNavigator(str(settings.REDIRECT_URI)),
        settings=settings,
        clock=clock,
    )
