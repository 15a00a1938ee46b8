"""
URL and path validation for outbound Portainer API calls.

Every URL the engine talks to comes from user configuration, and the
IP fallback URL is assembled at runtime from a cached address. Both are
checked here before a request is built:

- validate_url_for_ssrf(): scheme allow-list plus loopback/private range blocks
- validate_path_component(): endpoint and container IDs interpolated into paths
"""

import ipaddress
import logging
import re
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ('http', 'https')

_LOCALHOST_NAMES = {'localhost', '0.0.0.0', '::1'}
_PATH_COMPONENT_RE = re.compile(r'^[a-zA-Z0-9_-]+$')
_TRAVERSAL_MARKERS = ('..', '/', '\\', '%2e', '%2f', '%5c')


def validate_url_for_ssrf(url: str, allow_private_ips: bool = False) -> str:
    """
    Validate an outbound URL against server-side request forgery.

    Loopback addresses are always rejected. Private, link-local and
    multicast addresses are rejected unless allow_private_ips is set,
    which is the case for pinned, user-configured instance IPs.

    Args:
        url: Absolute http(s) URL
        allow_private_ips: Permit RFC1918/link-local/multicast targets

    Returns:
        The URL unchanged

    Raises:
        ValueError: If the URL is malformed or targets a blocked address

    Examples:
        >>> validate_url_for_ssrf("https://portainer.example.com:9443")
        'https://portainer.example.com:9443'
        >>> validate_url_for_ssrf("http://192.168.1.20:9000", allow_private_ips=True)
        'http://192.168.1.20:9000'
    """
    if not url:
        raise ValueError("URL cannot be empty")

    try:
        parsed = urlsplit(url)
    except ValueError as e:
        raise ValueError(f"Invalid URL: {e}")

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise ValueError("Only http and https protocols are allowed")

    hostname = (parsed.hostname or '').lower()
    if not hostname:
        raise ValueError("URL must include a hostname")

    if hostname in _LOCALHOST_NAMES or hostname.startswith('127.'):
        raise ValueError("Localhost addresses are not allowed")

    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        # Hostname, not an IP literal
        return url

    if address.is_loopback or address.is_unspecified:
        raise ValueError("Localhost addresses are not allowed")

    if not allow_private_ips:
        if address.is_link_local:
            raise ValueError(f"Link-local addresses ({address}) are not allowed")
        if address.is_multicast:
            raise ValueError(f"Multicast addresses ({address}) are not allowed")
        if address.is_private:
            raise ValueError(f"Private IP addresses ({address}) are not allowed")

    return url


def validate_path_component(component) -> str:
    """
    Validate a value that will be interpolated into a URL path.

    Only letters, digits, hyphens and underscores are accepted. Anything
    resembling traversal (raw or percent-encoded) is rejected.

    Returns:
        The component as a string

    Raises:
        ValueError: If the component is empty or contains invalid characters
    """
    if component is None:
        raise ValueError("Path component cannot be None")

    value = str(component)
    lowered = value.lower()

    if (
        not value
        or value.strip() != value
        or any(marker in lowered for marker in _TRAVERSAL_MARKERS)
        or not _PATH_COMPONENT_RE.match(value)
    ):
        logger.warning(f"Rejected unsafe path component: {value!r}")
        raise ValueError("Path component contains invalid characters")

    return value
