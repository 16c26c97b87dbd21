# src/dashboard_session/session_data.py

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, model_validator

from .errors import IdentityProviderError


class SessionStatus(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(kind=type(exc).__name__, message=str(exc) or type(exc).__name__)


class SessionState(BaseModel):
    """
    Authentication status and token material for the one logical session.
    The refresh token is only ever populated on the manager's private copy.
    """
    model_config = ConfigDict(frozen=True)

    status: SessionStatus = SessionStatus.UNINITIALIZED
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at_epoch_seconds: Optional[int] = None
    subject: Optional[str] = None
    username: Optional[str] = None
    last_error: Optional[ErrorInfo] = None

    @model_validator(mode="after")
    def check_token_matches_status(self) -> "SessionState":
        authenticated = self.status is SessionStatus.AUTHENTICATED
        if authenticated and not self.access_token:
            raise ValueError("An authenticated session requires an access token.")
        if not authenticated and (self.access_token or self.refresh_token):
            raise ValueError(f"A session in status '{self.status.value}' cannot hold tokens.")
        return self

    @property
    def authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

    @property
    def resolved(self) -> bool:
        return self.status in (SessionStatus.AUTHENTICATED, SessionStatus.UNAUTHENTICATED)

    def public(self) -> "SessionState":
        """Copy safe to hand to subscribers: no refresh token."""
        if self.refresh_token is None:
            return self
        return self.model_copy(update={"refresh_token": None})


def parse_claims(token: Optional[str]) -> Dict[str, Any]:
    """Unverified JWT claims; the backend is the one that verifies signatures."""
    if not token:
        return {}
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return {}


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: int
    id_token_claims: Dict[str, Any] = {}

    @classmethod
    def from_result(cls, result: Dict[str, Any]) -> "TokenSet":
        """Normalise the dict an MSAL acquire_token_* call returns."""
        if "error" in result:
            raise IdentityProviderError(result["error"], result.get("error_description"))
        access_token = result.get("access_token")
        if not access_token:
            raise IdentityProviderError("invalid_response", "No access token in token response.")

        expires_in = result.get("expires_in")
        if expires_in is None:
            claims = parse_claims(access_token)
            if "exp" in claims and "iat" in claims:
                expires_in = int(claims["exp"]) - int(claims["iat"])
        if expires_in is None or int(expires_in) <= 0:
            raise IdentityProviderError("invalid_response", f"Unusable token lifetime: {expires_in!r}")

        id_token = result.get("id_token")
        return cls(
            access_token=access_token,
            refresh_token=result.get("refresh_token"),
            id_token=id_token,
            expires_in=int(expires_in),
            id_token_claims=result.get("id_token_claims") or parse_claims(id_token),
        )

    def identity(self) -> Dict[str, Optional[str]]:
        claims = {**parse_claims(self.access_token), **self.id_token_claims}
        return {
            "subject": claims.get("sub"),
            "username": claims.get("preferred_username") or claims.get("name"),
        }


@dataclass
class SessionHandle:
    """
    The single identity-provider client plus the work in flight against it.
    Owned by one SessionManager; only SessionManager.shutdown() discards it.
    """
    client: Any
    init_task: Optional["asyncio.Task[Any]"] = None
    refresh_task: Optional["asyncio.Task[bool]"] = None
    pending_flow: Optional[Dict[str, Any]] = None
    id_token: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)
