# src/dashboard_session/main.py

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import Settings, settings as default_settings
from .http_bridge import AuthorizedClient
from .logging import get_logger
from .session_context import SessionContext
from .session_manager import SessionManager, create_session_manager

logger = get_logger(__name__)


@dataclass
class AppSession:
    manager: SessionManager
    context: SessionContext
    api: AuthorizedClient

    async def aclose(self) -> None:
        self.context.unmount()
        await self.api.aclose()
        await self.manager.shutdown()


def create_app_session(
    settings: Settings = default_settings,
    manager: Optional[SessionManager] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppSession:
    manager = manager or create_session_manager(settings)
    return AppSession(
        manager=manager,
        context=SessionContext(manager),
        api=AuthorizedClient(manager, base_url=settings.API_BASE_URL, settings=settings, transport=transport),
    )


def log_startup(settings: Settings) -> None:
    logger.info(
        "dashboard_session_starting",
        authority=settings.AUTHORITY,
        client_id=settings.KEYCLOAK_CLIENT_ID,
        redirect_uri=str(settings.REDIRECT_URI),
        scopes=settings.AUTH_SCOPES,
        on_load=settings.ON_LOAD,
        api_base_url=settings.API_BASE_URL,
        refresh_interval=settings.REFRESH_INTERVAL_SECONDS,
        refresh_min_validity=settings.REFRESH_MIN_VALIDITY_SECONDS,
    )


async def run(app: Optional[AppSession] = None, settings: Settings = default_settings) -> int:
    log_startup(settings)
    app = app or create_app_session(settings)
    try:
        view = await app.context.mount()
        if not view.authenticated:
            logger.warning("not_logged_in", last_error=app.manager.debug_info()["last_error"])
            return 1

        logger.info("logged_in", username=view.username)
        try:
            response = await app.api.get("/user")
            response.raise_for_status()
            logger.info("current_user", user=response.json())
        except httpx.HTTPStatusError as e:
            logger.error("user_lookup_failed", status_code=e.response.status_code, detail=e.response.text)
            return 1
        except httpx.RequestError as e:
            logger.error("backend_unreachable", error=str(e))
            return 1
        return 0
    finally:
        await app.aclose()


def main() -> None:
    raise SystemExit(asyncio.run(run()))
