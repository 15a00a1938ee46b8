"""
Authentication token storage for Portainer instances.

Tokens are keyed by canonical URL. When an instance is reached through
its IP alias the same token is stored under both URL forms so that a
later call on either form finds it.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

AUTH_TYPE_APIKEY = 'apikey'
AUTH_TYPE_PASSWORD = 'password'


def normalize_url_for_storage(url: str) -> str:
    """
    Canonical form of an instance URL: lowercase scheme and host, no trailing slash.

    Examples:
        >>> normalize_url_for_storage("HTTPS://Portainer.lan:9443/")
        'https://portainer.lan:9443'
    """
    if not url:
        return ''
    parsed = urlsplit(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return url.strip().rstrip('/')
    path = parsed.path.rstrip('/')
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}"


@dataclass(frozen=True)
class AuthToken:
    """A token together with how it must be presented."""
    value: str
    auth_type: str = AUTH_TYPE_APIKEY

    def headers(self) -> Dict[str, str]:
        if self.auth_type == AUTH_TYPE_PASSWORD:
            return {'Authorization': f'Bearer {self.value}'}
        return {'X-API-Key': self.value}


class TokenStore:
    """
    Thread-safe token cache shared by concurrent upgrades.

    One instance is injected into every EndpointSession. Reads and writes
    are guarded by a lock because batch upgrades run many sessions at once.
    """

    def __init__(self):
        self._tokens: Dict[str, AuthToken] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> Optional[AuthToken]:
        key = normalize_url_for_storage(url)
        with self._lock:
            return self._tokens.get(key)

    def set(self, url: str, token: AuthToken) -> None:
        key = normalize_url_for_storage(url)
        with self._lock:
            self._tokens[key] = token

    def store_for_aliases(self, urls: Iterable[str], token: AuthToken) -> None:
        """Store one token under several URL forms atomically."""
        keys = {normalize_url_for_storage(url) for url in urls if url}
        with self._lock:
            for key in keys:
                self._tokens[key] = token
        logger.debug(f"Stored auth token for {len(keys)} URL alias(es)")

    def invalidate(self, url: str) -> None:
        key = normalize_url_for_storage(url)
        with self._lock:
            self._tokens.pop(key, None)

    def headers_for(self, url: str) -> Dict[str, str]:
        """Auth headers for a URL, or an empty dict when no token is stored."""
        token = self.get(url)
        return token.headers() if token else {}

    def __contains__(self, url: str) -> bool:
        return self.get(url) is not None


# Global singleton instance
_token_store = None


def get_token_store() -> TokenStore:
    """Get or create the process-wide TokenStore."""
    global _token_store
    if _token_store is None:
        _token_store = TokenStore()
    return _token_store
