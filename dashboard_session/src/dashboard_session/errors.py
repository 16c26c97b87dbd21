# src/dashboard_session/errors.py

from typing import Optional

import httpx


class SessionError(Exception):
    """Base class for everything the session client raises."""


class IdentityProviderError(SessionError):
    """The identity provider SDK answered with an error payload."""

    def __init__(self, error: str, error_description: Optional[str] = None):
        self.error = error
        self.error_description = error_description
        super().__init__(f"{error}: {error_description}" if error_description else error)


class InitializationError(SessionError):
    """The authorization flow could not produce a session.

    Covers an unreachable or misconfigured provider and invalid callback
    parameters. Never raised out of ``SessionManager.initialize``; it is
    recorded as ``SessionState.last_error`` instead.
    """


class RefreshFailure(SessionError):
    """The refresh token was rejected or the provider was unreachable."""


class RequestAuthFailure(httpx.HTTPStatusError):
    """A request kept failing authorization after its single refresh-and-retry."""

    def __init__(self, message: str, *, request: httpx.Request, response: httpx.Response):
        super().__init__(message, request=request, response=response)
