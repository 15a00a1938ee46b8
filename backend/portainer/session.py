"""
Per-upgrade view of one Portainer endpoint.

EndpointSession binds (instance URL, endpoint ID, proxy-fronted flag) and
routes every Docker call through a ResilientRequester, re-authenticating
once on HTTP 401.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from portainer.client import PortainerClient
from portainer.errors import AuthenticationError
from portainer.ip_fallback import InstanceRegistry, ProxyFailoverResolver, build_ip_url
from portainer.resilient import ResilientRequester

logger = logging.getLogger(__name__)

T = TypeVar('T')


class EndpointSession:
    """
    Remote container operations for one endpoint during one upgrade.

    Failover state is per session: create a fresh session for each upgrade.
    """

    def __init__(
        self,
        client: PortainerClient,
        registry: InstanceRegistry,
        instance_url: str,
        endpoint_id: str,
        proxy_fronted: bool = False,
    ):
        """
        Args:
            client: Shared Portainer HTTP client
            registry: Instance lookup for credentials and cached IP
            instance_url: Instance URL as configured
            endpoint_id: Portainer endpoint ID
            proxy_fronted: True when the upgrade target is the reverse proxy
                           in front of this instance (enables IP failover)
        """
        self.client = client
        self.registry = registry
        self.instance_url = instance_url
        self.endpoint_id = str(endpoint_id)
        self.proxy_fronted = proxy_fronted

        fallback = ProxyFailoverResolver(registry).resolve if proxy_fronted else None
        self.requester = ResilientRequester(instance_url, fallback=fallback)

    @property
    def active_url(self) -> str:
        return self.requester.active_url

    @property
    def failed_over(self) -> bool:
        return self.requester.failed_over

    async def _call(self, operation: Callable[[str, Optional[str]], Awaitable[T]]) -> T:
        try:
            return await self.requester.call(operation)
        except AuthenticationError as e:
            if e.status_code != 401:
                raise
            logger.info(f"Token for {self.instance_url} rejected, re-authenticating")
            await self.reauthenticate()
            return await self.requester.call(operation)

    async def reauthenticate(self) -> None:
        """
        Fetch a new token with the stored credentials and cache it under every URL form.

        Raises:
            AuthenticationError: No stored credentials, or credentials rejected
        """
        instance = self.registry.get_instance(self.instance_url)
        if instance is None:
            raise AuthenticationError(f"No stored credentials for Portainer instance {self.instance_url}")

        token = await self.requester.call(
            lambda url, host: self.client.authenticate(url, instance, host_header=host)
        )

        aliases = {self.instance_url, self.requester.active_url}
        if instance.ip_address:
            aliases.add(build_ip_url(self.instance_url, instance.ip_address))
        self.client.token_store.store_for_aliases(aliases, token)

    async def inspect(self, container_id: str) -> Dict[str, Any]:
        return await self._call(
            lambda url, host: self.client.inspect_container(
                url, self.endpoint_id, container_id, host_header=host, auth_url=self.instance_url
            )
        )

    async def list_containers(self) -> List[Dict[str, Any]]:
        return await self._call(
            lambda url, host: self.client.list_containers(
                url, self.endpoint_id, host_header=host, auth_url=self.instance_url
            )
        )

    async def create(self, spec: Dict[str, Any], name: Optional[str] = None) -> Dict[str, Any]:
        return await self._call(
            lambda url, host: self.client.create_container(
                url, self.endpoint_id, spec, name=name, host_header=host, auth_url=self.instance_url
            )
        )

    async def start(self, container_id: str) -> None:
        await self._call(
            lambda url, host: self.client.start_container(
                url, self.endpoint_id, container_id, host_header=host, auth_url=self.instance_url
            )
        )

    async def stop(self, container_id: str) -> None:
        await self._call(
            lambda url, host: self.client.stop_container(
                url, self.endpoint_id, container_id, host_header=host, auth_url=self.instance_url
            )
        )

    async def remove(self, container_id: str, force: bool = False) -> None:
        await self._call(
            lambda url, host: self.client.remove_container(
                url, self.endpoint_id, container_id, force=force, host_header=host, auth_url=self.instance_url
            )
        )

    async def logs(self, container_id: str, tail: int = 50) -> str:
        return await self._call(
            lambda url, host: self.client.container_logs(
                url, self.endpoint_id, container_id, tail=tail, host_header=host, auth_url=self.instance_url
            )
        )

    async def pull_image(self, repository: str, tag: str) -> None:
        await self._call(
            lambda url, host: self.client.pull_image(
                url, self.endpoint_id, repository, tag, host_header=host, auth_url=self.instance_url
            )
        )
