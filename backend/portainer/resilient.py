"""
Original-URL / IP-URL failover for Portainer calls.

One ResilientRequester lives for the duration of one upgrade. The first
connection-class failure against the primary URL flips it onto the
fallback URL, and it stays there: once the reverse proxy is down, every
later call in the same upgrade goes straight to the IP address.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from portainer.auth import normalize_url_for_storage
from portainer.errors import is_connection_error
from portainer.ip_fallback import host_of
from utils.url_validation import validate_url_for_ssrf

logger = logging.getLogger(__name__)

T = TypeVar('T')

# operation(base_url, host_header) -> result
Operation = Callable[[str, Optional[str]], Awaitable[T]]
FallbackResolver = Callable[[str], Awaitable[str]]


class ResilientRequester:
    """
    Runs operations against a primary URL with sticky failover.

    Args:
        primary_url: Instance URL as configured (hostname form)
        fallback: Async resolver returning the alternate URL for primary_url,
                  or None to disable failover
        is_retryable: Classifier deciding which errors trigger failover
    """

    def __init__(
        self,
        primary_url: str,
        fallback: Optional[FallbackResolver] = None,
        is_retryable: Callable[[BaseException], bool] = is_connection_error,
    ):
        self.primary_url = primary_url
        self.fallback = fallback
        self.is_retryable = is_retryable
        self._fallback_url: Optional[str] = None

    @property
    def failed_over(self) -> bool:
        return self._fallback_url is not None

    @property
    def active_url(self) -> str:
        return self._fallback_url or self.primary_url

    @property
    def host_header(self) -> Optional[str]:
        """Host header to send with the active URL (original host once failed over)."""
        return host_of(self.primary_url) if self.failed_over else None

    async def call(self, operation: Operation) -> T:
        if self.failed_over:
            return await operation(self._fallback_url, self.host_header)

        try:
            return await operation(self.primary_url, None)
        except Exception as e:
            if self.fallback is None or not self.is_retryable(e):
                raise
            fallback_url = await self._resolve_fallback(e)
            if fallback_url is None:
                raise

        return await operation(fallback_url, self.host_header)

    async def _resolve_fallback(self, error: BaseException) -> Optional[str]:
        """Resolve and validate the fallback URL; None means no usable fallback."""
        fallback_url = await self.fallback(self.primary_url)

        if not fallback_url or (
            normalize_url_for_storage(fallback_url) == normalize_url_for_storage(self.primary_url)
        ):
            logger.warning(f"No fallback URL available for {self.primary_url} after error: {error}")
            return None

        try:
            # Pinned, user-configured instance address: private ranges are expected
            validate_url_for_ssrf(fallback_url, allow_private_ips=True)
        except ValueError as validation_error:
            logger.error(f"Rejected fallback URL {fallback_url}: {validation_error}")
            return None

        logger.warning(
            f"Connection to {self.primary_url} failed ({error}); "
            f"switching to IP URL {fallback_url} for the rest of this upgrade"
        )
        self._fallback_url = fallback_url
        return fallback_url
