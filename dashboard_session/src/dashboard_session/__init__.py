# src/dashboard_session/__init__.py

from .errors import (
    IdentityProviderError,
    InitializationError,
    RefreshFailure,
    RequestAuthFailure,
    SessionError,
)
from .http_bridge import AuthorizedClient, RequestAuthBridge
from .session_context import SessionContext, SessionView
from .session_data import SessionState, SessionStatus
from .session_manager import InitOptions, SessionManager, create_session_manager

__all__ = [
    "AuthorizedClient",
    "IdentityProviderError",
    "InitOptions",
    "InitializationError",
    "RefreshFailure",
    "RequestAuthBridge",
    "RequestAuthFailure",
    "SessionContext",
    "SessionError",
    "SessionManager",
    "SessionState",
    "SessionStatus",
    "SessionView",
    "create_session_manager",
]
