# src/dashboard_session/auth_utils.py

import asyncio
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import msal

from .config import Settings
from .errors import IdentityProviderError
from .logging import get_logger
from .session_data import TokenSet

logger = get_logger(__name__)


class IdentityProviderClient(Protocol):
    """What SessionManager needs from the identity provider."""

    async def begin_authorization(self, redirect_uri: str) -> Dict[str, Any]:
        """Start a PKCE flow; the result carries at least 'auth_uri' and 'state'."""

    async def complete_authorization(
        self, flow: Dict[str, Any], auth_response: Dict[str, str]
    ) -> TokenSet: ...

    async def refresh(self, refresh_token: str) -> TokenSet: ...

    async def end_session(self, id_token_hint: Optional[str], post_logout_redirect_uri: str) -> str:
        """Forget cached accounts and return the provider's logout URL."""


def build_logout_url(
    end_session_endpoint: str,
    client_id: str,
    post_logout_redirect_uri: str,
    id_token_hint: Optional[str] = None,
) -> str:
    params = {"client_id": client_id, "post_logout_redirect_uri": post_logout_redirect_uri}
    if id_token_hint:
        params["id_token_hint"] = id_token_hint
    return f"{end_session_endpoint}?{urlencode(params)}"


class MsalIdentityProvider:
    """
    OIDC Authorization Code + PKCE against a Keycloak realm through MSAL.

    MSAL is synchronous (it talks to the provider with requests), so every
    call runs in a worker thread to keep the event loop free. The MSAL
    application does OIDC discovery when constructed, so it is built lazily
    on first use and construction failures surface like any other flow error.
    """

    def __init__(self, settings: Settings, app_factory=None):
        self._settings = settings
        self._app_factory = app_factory or self._build_app
        self._app: Optional[msal.PublicClientApplication] = None

    def _build_app(self) -> msal.PublicClientApplication:
        return msal.PublicClientApplication(
            client_id=self._settings.KEYCLOAK_CLIENT_ID,
            oidc_authority=self._settings.AUTHORITY,
            timeout=self._settings.HTTP_TIMEOUT_SECONDS,
            verify=self._settings.VERIFY_TLS,
        )

    def _get_app(self) -> msal.PublicClientApplication:
        if self._app is None:
            self._app = self._app_factory()
        return self._app

    @property
    def scopes(self) -> List[str]:
        return list(self._settings.AUTH_SCOPES)

    def _initiate(self, redirect_uri: str) -> Dict[str, Any]:
        # MSAL generates the code_verifier and S256 code_challenge itself.
        flow = self._get_app().initiate_auth_code_flow(
            scopes=self.scopes,
            redirect_uri=redirect_uri,
        )
        if "error" in flow:
            raise IdentityProviderError(flow["error"], flow.get("error_description"))
        return flow

    async def begin_authorization(self, redirect_uri: str) -> Dict[str, Any]:
        flow = await asyncio.to_thread(self._initiate, redirect_uri)
        logger.info("authorization_flow_started", state=flow.get("state"), redirect_uri=redirect_uri)
        return flow

    def _exchange(self, flow: Dict[str, Any], auth_response: Dict[str, str]) -> TokenSet:
        try:
            result = self._get_app().acquire_token_by_auth_code_flow(flow, auth_response)
        except ValueError as exc:
            # MSAL raises ValueError on a state mismatch or a malformed response
            raise IdentityProviderError("invalid_callback", str(exc)) from exc
        return TokenSet.from_result(result)

    async def complete_authorization(
        self, flow: Dict[str, Any], auth_response: Dict[str, str]
    ) -> TokenSet:
        if "error" in auth_response:
            raise IdentityProviderError(auth_response["error"], auth_response.get("error_description"))
        if "code" not in auth_response:
            raise IdentityProviderError("invalid_callback", "Callback carries no authorization code.")
        tokens = await asyncio.to_thread(self._exchange, flow, auth_response)
        logger.info("authorization_code_exchanged", expires_in=tokens.expires_in)
        return tokens

    def _refresh(self, refresh_token: str) -> TokenSet:
        result = self._get_app().acquire_token_by_refresh_token(refresh_token, scopes=self.scopes)
        return TokenSet.from_result(result)

    async def refresh(self, refresh_token: str) -> TokenSet:
        tokens = await asyncio.to_thread(self._refresh, refresh_token)
        logger.info("refresh_token_exchanged", expires_in=tokens.expires_in)
        return tokens

    def _forget_accounts(self) -> None:
        if self._app is None:
            return
        for account in self._app.get_accounts():
            self._app.remove_account(account)

    async def end_session(self, id_token_hint: Optional[str], post_logout_redirect_uri: str) -> str:
        await asyncio.to_thread(self._forget_accounts)
        return build_logout_url(
            self._settings.END_SESSION_ENDPOINT,
            self._settings.KEYCLOAK_CLIENT_ID,
            post_logout_redirect_uri,
            id_token_hint,
        )
