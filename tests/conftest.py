import asyncio
import inspect
import itertools
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import pytest
from jose import jwt

from dashboard_session.config import Settings
from dashboard_session.errors import IdentityProviderError
from dashboard_session.session_data import SessionHandle, TokenSet
from dashboard_session.session_manager import SessionManager

REDIRECT_URI = "http://localhost:3000/auth/callback"


def make_token(sub: str = "user-1", username: str = "alice", serial: int = 0, **extra: Any) -> str:
    claims = {"sub": sub, "preferred_username": username, "jti": f"jti-{serial}", **extra}
    return jwt.encode(claims, "test-signing-key", algorithm="HS256")


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityProvider:
    """In-memory stand-in for the OIDC provider; counts every contact."""

    def __init__(self, expires_in: int = 300, username: str = "alice"):
        self.expires_in = expires_in
        self.username = username
        self.begin_calls: List[str] = []
        self.complete_calls: List[Dict[str, str]] = []
        self.refresh_calls: List[str] = []
        self.end_session_calls: List[Optional[str]] = []
        self.begin_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self.issued_access_tokens: List[str] = []
        self._serial = itertools.count(1)

    def _issue(self) -> TokenSet:
        serial = next(self._serial)
        access_token = make_token(username=self.username, serial=serial)
        self.issued_access_tokens.append(access_token)
        return TokenSet(
            access_token=access_token,
            refresh_token=f"refresh-{serial}",
            id_token=make_token(username=self.username, serial=serial, sid="sid-1"),
            expires_in=self.expires_in,
            id_token_claims={"sub": "user-1", "preferred_username": self.username, "sid": "sid-1"},
        )

    async def begin_authorization(self, redirect_uri: str) -> Dict[str, Any]:
        self.begin_calls.append(redirect_uri)
        await asyncio.sleep(0)
        if self.begin_error is not None:
            raise self.begin_error
        state = f"state-{len(self.begin_calls)}"
        query = urlencode(
            {
                "client_id": "trading-frontend",
                "redirect_uri": redirect_uri,
                "state": state,
                "code_challenge": "challenge",
                "code_challenge_method": "S256",
            }
        )
        return {
            "auth_uri": f"https://idp.test/realms/trading/protocol/openid-connect/auth?{query}",
            "state": state,
            "code_verifier": "verifier",
            "redirect_uri": redirect_uri,
        }

    async def complete_authorization(self, flow: Dict[str, Any], auth_response: Dict[str, str]) -> TokenSet:
        self.complete_calls.append(auth_response)
        await asyncio.sleep(0)
        if "error" in auth_response:
            raise IdentityProviderError(auth_response["error"], auth_response.get("error_description"))
        return self._issue()

    async def refresh(self, refresh_token: str) -> TokenSet:
        self.refresh_calls.append(refresh_token)
        await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._issue()

    async def end_session(self, id_token_hint: Optional[str], post_logout_redirect_uri: str) -> str:
        self.end_session_calls.append(id_token_hint)
        return f"https://idp.test/logout?{urlencode({'post_logout_redirect_uri': post_logout_redirect_uri})}"


class FakeNavigator:
    """Plays the browser: answers each authorization with a redirect back to the app."""

    def __init__(self):
        self.authorize_calls: List[str] = []
        self.redirects: List[str] = []
        self.callback_error: Optional[str] = None
        self.state_override: Optional[str] = None
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def authorize(self, auth_url: str) -> str:
        self.authorize_calls.append(auth_url)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        query = parse_qs(urlparse(auth_url).query)
        state = self.state_override or query["state"][0]
        if self.callback_error:
            params = {"error": self.callback_error, "error_description": "denied by test", "state": state}
        else:
            params = {"code": "auth-code", "state": state}
        return f"{query['redirect_uri'][0]}?{urlencode(params)}"

    async def redirect(self, url: str) -> None:
        self.redirects.append(url)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def settings():
    return Settings(
        KEYCLOAK_URL="https://idp.test",
        KEYCLOAK_REALM="trading",
        KEYCLOAK_CLIENT_ID="trading-frontend",
        REDIRECT_URI=REDIRECT_URI,
        API_BASE_URL="http://backend.test/api",
        ON_LOAD="login-required",
        REFRESH_INTERVAL_SECONDS=60,
        REFRESH_MIN_VALIDITY_SECONDS=70,
        AUTH_RETRY_STATUS_CODES="401",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def idp():
    return FakeIdentityProvider()


@pytest.fixture
def navigator():
    return FakeNavigator()


@pytest.fixture
def manager(idp, navigator, settings, clock):
    return SessionManager(SessionHandle(client=idp), navigator, settings=settings, clock=clock)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
