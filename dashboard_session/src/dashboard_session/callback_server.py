# src/dashboard_session/callback_server.py

import asyncio
import socket
import webbrowser
from typing import Optional, Protocol
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import HTMLResponse

from .errors import InitializationError
from .logging import get_logger

logger = get_logger(__name__)


class Navigator(Protocol):
    """Where SessionManager sends the user agent."""

    async def authorize(self, auth_url: str) -> str:
        """Send the user to auth_url and return the callback URL the provider redirected to."""

    async def redirect(self, url: str) -> None:
        """Fire-and-forget navigation, e.g. the provider's logout page."""

    async def aclose(self) -> None: ...


class CallbackReceiver:
    """
    Loopback endpoint the identity provider redirects back to.
    Only one authorization can be awaited at a time; SessionManager
    guarantees that.
    """

    def __init__(self, callback_path: str = "/auth/callback"):
        self.callback_path = callback_path
        self._waiter: Optional[asyncio.Future] = None
        self.app = FastAPI(
            title="dashboard-session callback",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )
        self.app.add_api_route(self.callback_path, self.auth_callback, methods=["GET"])

    def expect_callback(self) -> asyncio.Future:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.cancel()
        self._waiter = asyncio.get_running_loop().create_future()
        return self._waiter

    async def auth_callback(self, request: Request) -> HTMLResponse:
        logger.info("auth_callback_received", params=sorted(request.query_params.keys()))
        if self._waiter is None or self._waiter.done():
            return HTMLResponse(
                "No login is in progress. Please return to the app.",
                status_code=status.HTTP_409_CONFLICT,
            )
        self._waiter.set_result(str(request.url))

        if "error" in request.query_params:
            return HTMLResponse(
                f"Login failed: {request.query_params.get('error_description') or request.query_params['error']}",
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        return HTMLResponse("Login complete. You can close this window and return to the app.")


class BrowserNavigator:
    """Opens the system browser and waits for the redirect on a local uvicorn server."""

    def __init__(self, redirect_uri: str, open_url=webbrowser.open):
        parsed = urlparse(redirect_uri)
        self._host = parsed.hostname or "localhost"
        self._port = parsed.port or 80
        self._open_url = open_url
        self.receiver = CallbackReceiver(parsed.path or "/auth/callback")
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None

    async def _serve(self, sock: socket.socket) -> None:
        try:
            await self._server.serve(sockets=[sock])
        except SystemExit as exc:
            # uvicorn exits the process on startup failure; keep it inside this task
            raise OSError(f"callback server stopped during startup (exit code {exc.code})") from exc

    async def _ensure_server(self) -> None:
        if self._serve_task is not None and not self._serve_task.done():
            return
        await self.aclose()
        try:
            self._socket = socket.create_server((self._host, self._port))
        except OSError as exc:
            logger.error("callback_server_bind_failed", host=self._host, port=self._port, error=str(exc))
            raise InitializationError(
                f"Callback server could not listen on {self._host}:{self._port}: {exc}"
            ) from exc

        config = uvicorn.Config(
            self.receiver.app,
            log_level="warning",
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._serve(self._socket))
        while not self._server.started:
            if self._serve_task.done():
                exc = self._serve_task.exception() or OSError("callback server exited")
                await self.aclose()
                raise InitializationError(
                    f"Callback server could not start on {self._host}:{self._port}: {exc}"
                ) from exc
            await asyncio.sleep(0.05)
        logger.info("callback_server_started", host=self._host, port=self._port)

    async def authorize(self, auth_url: str) -> str:
        await self._ensure_server()
        waiter = self.receiver.expect_callback()
        await self.redirect(auth_url)
        return await waiter

    async def redirect(self, url: str) -> None:
        logger.info("browser_redirect", url=url.split("?", 1)[0])
        await asyncio.to_thread(self._open_url, url)

    async def aclose(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await asyncio.gather(self._serve_task, return_exceptions=True)
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._serve_task = None
        self._socket = None
