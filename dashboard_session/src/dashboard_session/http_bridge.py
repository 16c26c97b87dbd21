# src/dashboard_session/http_bridge.py

from typing import Any, Iterable, Optional

import httpx

from .config import Settings, settings as default_settings
from .errors import RefreshFailure, RequestAuthFailure
from .logging import get_logger
from .session_manager import FORCE_REFRESH, SessionManager

logger = get_logger(__name__)

# httpx.Request.extensions key carrying the per-request retry flag
RETRY_FLAG = "dashboard_session.auth_retried"


def _bearer(token: str) -> str:
    return f"Bearer {token}"


class RequestAuthBridge:
    """
    Sends requests with the session's bearer token and recovers from an
    expired token: one forced refresh, one resend, then re-login.
    """

    def __init__(
        self,
        manager: SessionManager,
        client: httpx.AsyncClient,
        retry_status_codes: Iterable[int] = (401,),
    ):
        self._manager = manager
        self._client = client
        self._retry_status_codes = frozenset(retry_status_codes)

    def _attach_token(self, request: httpx.Request) -> Optional[str]:
        token = self._manager.get_access_token()
        if token:
            request.headers["Authorization"] = _bearer(token)
        else:
            request.headers.pop("Authorization", None)
        return token

    async def send(self, request: httpx.Request) -> httpx.Response:
        # Buffer the body so the request can be replayed after a refresh
        await request.aread()
        sent_with = self._attach_token(request)
        response = await self._client.send(request)
        if response.status_code not in self._retry_status_codes:
            return response

        if request.extensions.get(RETRY_FLAG):
            return await self._fail(request, response, "Request was rejected again after retry.")
        request.extensions = {**request.extensions, RETRY_FLAG: True}

        current = self._manager.get_access_token()
        if current is None or current == sent_with:
            try:
                await self._manager.refresh(FORCE_REFRESH)
            except RefreshFailure as exc:
                logger.warning("request_refresh_failed", url=str(request.url), error=str(exc))
                return await self._fail(request, response, f"Token refresh failed: {exc}")
        else:
            logger.info("request_token_already_rotated", url=str(request.url))

        await response.aclose()
        logger.info("request_retry_after_refresh", method=request.method, url=str(request.url))
        return await self.send(request)

    async def _fail(
        self, request: httpx.Request, response: httpx.Response, reason: str
    ) -> httpx.Response:
        await response.aread()
        logger.warning(
            "request_auth_failed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            reason=reason,
        )
        # Local token state can no longer be trusted
        self._manager.login()
        raise RequestAuthFailure(
            f"{response.status_code} for {request.method} {request.url}: {reason}",
            request=request,
            response=response,
        )


class AuthorizedClient:
    """httpx.AsyncClient front whose every request goes through RequestAuthBridge."""

    def __init__(
        self,
        manager: SessionManager,
        base_url: str = "",
        settings: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            verify=settings.VERIFY_TLS,
            transport=transport,
        )
        self.bridge = RequestAuthBridge(manager, self._client, settings.AUTH_RETRY_STATUS_CODES)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        request = self._client.build_request(method, url, **kwargs)
        return await self.bridge.send(request)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AuthorizedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
