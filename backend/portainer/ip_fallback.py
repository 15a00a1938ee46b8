"""
IP-address fallback for Portainer instances fronted by a reverse proxy.

When the container being upgraded is the reverse proxy in front of
Portainer itself, the instance hostname stops resolving to anything
useful as soon as the proxy is stopped. The instance tracker caches the
instance's IP address; this module turns it into a direct URL.
"""

import logging
import threading
from typing import Dict, Iterable, Optional, Protocol
from urllib.parse import urlsplit

from models.upgrade_models import PortainerInstance
from portainer.auth import normalize_url_for_storage

logger = logging.getLogger(__name__)

DEFAULT_PORTS = {'http': 9000, 'https': 9443}


class InstanceRegistry(Protocol):
    """Read access to stored Portainer instances (owned by the instance tracker)."""

    def get_instance(self, url: str) -> Optional[PortainerInstance]:
        ...


class StaticInstanceRegistry:
    """In-memory InstanceRegistry keyed by canonical instance URL."""

    def __init__(self, instances: Iterable[PortainerInstance] = ()):
        self._instances: Dict[str, PortainerInstance] = {}
        self._lock = threading.Lock()
        for instance in instances:
            self.add(instance)

    def add(self, instance: PortainerInstance) -> None:
        with self._lock:
            self._instances[normalize_url_for_storage(instance.url)] = instance

    def get_instance(self, url: str) -> Optional[PortainerInstance]:
        with self._lock:
            return self._instances.get(normalize_url_for_storage(url))


def build_ip_url(instance_url: str, ip_address: str) -> str:
    """
    Replace the host of an instance URL with an IP address, keeping scheme and port.

    A URL without an explicit port gets Portainer's default for its scheme.

    Examples:
        >>> build_ip_url("https://portainer.example.com", "192.168.1.20")
        'https://192.168.1.20:9443'
        >>> build_ip_url("http://portainer.lan:8000/", "10.0.0.5")
        'http://10.0.0.5:8000'
    """
    parsed = urlsplit(instance_url)
    scheme = (parsed.scheme or 'http').lower()
    port = parsed.port or DEFAULT_PORTS.get(scheme, 9000)
    host = f"[{ip_address}]" if ':' in ip_address else ip_address
    return f"{scheme}://{host}:{port}"


def host_of(url: str) -> str:
    """Host[:port] of a URL, as sent in a Host header."""
    return urlsplit(url).netloc


class ProxyFailoverResolver:
    """
    Resolves the IP-addressed URL for an instance.

    Only reads the cached IP; maintaining it is the instance tracker's job.
    """

    def __init__(self, registry: InstanceRegistry):
        self.registry = registry

    async def resolve(self, instance_url: str) -> str:
        """
        Return the IP URL for instance_url, or instance_url itself when no IP is cached.
        """
        instance = self.registry.get_instance(instance_url)
        ip_address = instance.ip_address if instance else None

        if not ip_address:
            logger.warning(
                f"No cached IP address for {instance_url}; "
                f"DNS-dependent calls may fail while the reverse proxy is down"
            )
            return instance_url

        ip_url = build_ip_url(instance_url, ip_address)
        logger.info(f"Resolved IP fallback for {instance_url}: {ip_url}")
        return ip_url
