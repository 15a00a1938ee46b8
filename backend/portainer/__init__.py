"""
Portainer Module

HTTP access to Portainer-managed Docker endpoints.

Architecture:
- PortainerClient: httpx-based client for the Docker proxy and auth endpoints
- TokenStore: thread-safe token cache keyed by canonical instance URL
- ProxyFailoverResolver: builds the IP URL for proxy-fronted instances
- ResilientRequester: sticky original-URL -> IP-URL failover
- EndpointSession: per-upgrade facade with auth retry
"""

from portainer.auth import AuthToken, TokenStore, get_token_store
from portainer.client import PortainerClient
from portainer.errors import (
    AuthenticationError,
    NetworkUnreachableError,
    NotFoundError,
    PortainerAPIError,
)
from portainer.ip_fallback import InstanceRegistry, ProxyFailoverResolver, StaticInstanceRegistry
from portainer.resilient import ResilientRequester
from portainer.session import EndpointSession

__all__ = [
    'AuthToken',
    'TokenStore',
    'get_token_store',
    'PortainerClient',
    'AuthenticationError',
    'NetworkUnreachableError',
    'NotFoundError',
    'PortainerAPIError',
    'InstanceRegistry',
    'ProxyFailoverResolver',
    'StaticInstanceRegistry',
    'ResilientRequester',
    'EndpointSession',
]
