"""
Errors raised by the Portainer API client.

Every failure of a remote call is mapped to one of these so that callers
never have to look at httpx exceptions or raw status codes.
"""

from typing import Optional

import httpx


class PortainerAPIError(Exception):
    """Non-2xx response from the Portainer API."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.url = url


class NotFoundError(PortainerAPIError):
    """Container (or endpoint) does not exist (HTTP 404)."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, status_code=404, url=url)


class AuthenticationError(PortainerAPIError):
    """Token missing, expired or rejected (HTTP 401/403)."""

    def __init__(self, message: str, status_code: int = 401, url: Optional[str] = None):
        super().__init__(message, status_code=status_code, url=url)


class NetworkUnreachableError(PortainerAPIError):
    """
    No HTTP response at all: connection refused, timeout, DNS failure.

    This is the error class that triggers IP failover when the instance
    is fronted by the reverse proxy being upgraded.
    """

    def __init__(self, message: str, url: Optional[str] = None, cause: Optional[Exception] = None):
        super().__init__(message, status_code=None, url=url)
        self.cause = cause


def is_connection_error(error: BaseException) -> bool:
    """
    Classify an error as connection-class (retryable on the IP URL).

    Covers our own NetworkUnreachableError plus any raw httpx transport
    failure that escaped the client (refused, timeout, DNS, protocol).
    """
    if isinstance(error, NetworkUnreachableError):
        return True
    return isinstance(error, httpx.TransportError)
