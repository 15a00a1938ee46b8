"""
Async HTTP client for the Portainer API.

Wraps the Docker Engine proxy that Portainer exposes under
/api/endpoints/{endpoint_id}/docker/... plus Portainer's own auth endpoints.

The client is URL-agnostic: every call takes the base URL to talk to, so
the same client serves both the instance hostname and its IP alias. Auth
headers come from the shared TokenStore.
"""

import logging
import struct
from typing import Any, Dict, List, Optional

import httpx

from models.upgrade_models import PortainerInstance
from portainer.auth import AUTH_TYPE_PASSWORD, AuthToken, TokenStore
from portainer.errors import (
    AuthenticationError,
    NetworkUnreachableError,
    NotFoundError,
    PortainerAPIError,
)
from utils.url_validation import validate_path_component

logger = logging.getLogger(__name__)

# Docker multiplexed log stream frame header: [stream, 0, 0, 0, size(uint32 BE)]
_FRAME_HEADER = struct.Struct('>BxxxI')


def demux_docker_logs(raw: bytes) -> str:
    """
    Strip Docker stream-multiplexing headers from a log payload.

    Containers without a TTY get their stdout/stderr framed in 8-byte
    headers. TTY containers (and some proxies) return plain text, which
    is passed through.
    """
    if not raw:
        return ''

    chunks = []
    offset = 0
    while offset + _FRAME_HEADER.size <= len(raw):
        stream, size = _FRAME_HEADER.unpack_from(raw, offset)
        if stream not in (0, 1, 2) or raw[offset + 1:offset + 4] != b'\x00\x00\x00':
            # Not a framed stream
            return raw.decode('utf-8', errors='replace')
        start = offset + _FRAME_HEADER.size
        chunks.append(raw[start:start + size])
        offset = start + size

    if offset != len(raw) and not chunks:
        return raw.decode('utf-8', errors='replace')

    return b''.join(chunks).decode('utf-8', errors='replace')


def _error_message(response: httpx.Response) -> str:
    """Pull Portainer/Docker's error text out of a response body."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:500] if text else f"HTTP {response.status_code}"
    if isinstance(body, dict):
        message = body.get('message') or body.get('details') or body.get('err')
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


class PortainerClient:
    """
    Client for the Portainer Docker proxy.

    Usage:
        async with PortainerClient(token_store) as client:
            details = await client.inspect_container(url, "1", container_id)
    """

    def __init__(
        self,
        token_store: TokenStore,
        timeout: float = 30.0,
        pull_timeout: float = 600.0,
        verify_tls: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Portainer client.

        Args:
            token_store: Shared token cache used to build auth headers
            timeout: Per-request read timeout in seconds
            pull_timeout: Read timeout for image pulls (streams until done)
            verify_tls: Verify TLS certificates (Portainer often runs self-signed on 9443)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.token_store = token_store
        self.timeout = timeout
        self.pull_timeout = pull_timeout
        self._http = httpx.AsyncClient(
            transport=transport,
            verify=verify_tls,
            timeout=httpx.Timeout(connect=10.0, read=timeout, write=10.0, pool=10.0),
        )

    async def __aenter__(self) -> 'PortainerClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self,
        method: str,
        base_url: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        host_header: Optional[str] = None,
        auth_url: Optional[str] = None,
        read_timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Perform one request and map failures to Portainer errors.

        Args:
            base_url: URL actually connected to (hostname or IP alias)
            host_header: Original hostname, sent as Host when base_url is an IP alias
            auth_url: URL whose stored token to use (defaults to base_url)
        """
        url = f"{base_url.rstrip('/')}{path}"

        if auth_url is None:
            auth_url = base_url
        # auth_url="" means send no stored token (credential exchange)
        request_headers = self.token_store.headers_for(auth_url) if auth_url else {}
        if not request_headers and auth_url and auth_url != base_url:
            request_headers = self.token_store.headers_for(base_url)
        if headers:
            request_headers.update(headers)
        if host_header:
            request_headers['Host'] = host_header

        timeout = httpx.USE_CLIENT_DEFAULT
        if read_timeout is not None:
            timeout = httpx.Timeout(connect=10.0, read=read_timeout, write=10.0, pool=10.0)

        try:
            response = await self._http.request(
                method,
                url,
                params=params,
                json=json,
                headers=request_headers,
                timeout=timeout,
            )
        except httpx.TransportError as e:
            raise NetworkUnreachableError(
                f"Cannot reach Portainer at {base_url}: {type(e).__name__}: {e}",
                url=url,
                cause=e,
            ) from e

        if response.is_success:
            return response

        message = _error_message(response)
        if response.status_code in (401, 403):
            raise AuthenticationError(message, status_code=response.status_code, url=url)
        if response.status_code == 404:
            raise NotFoundError(message, url=url)
        raise PortainerAPIError(message, status_code=response.status_code, url=url)

    @staticmethod
    def _docker_path(endpoint_id: str, suffix: str) -> str:
        endpoint = validate_path_component(endpoint_id)
        return f"/api/endpoints/{endpoint}/docker{suffix}"

    async def authenticate(
        self,
        base_url: str,
        instance: PortainerInstance,
        host_header: Optional[str] = None,
    ) -> AuthToken:
        """
        Obtain a token for an instance using its stored credentials.

        API keys are validated with a cheap GET /api/endpoints. Username and
        password are exchanged for a JWT via POST /api/auth.

        Raises:
            AuthenticationError: Credentials rejected
            NetworkUnreachableError: Instance unreachable at base_url
        """
        if instance.auth_type == AUTH_TYPE_PASSWORD:
            response = await self._request(
                'POST',
                base_url,
                '/api/auth',
                json={'username': instance.username, 'password': instance.password},
                host_header=host_header,
                auth_url='',
            )
            body = response.json()
            jwt = body.get('jwt') or body.get('token')
            if not jwt:
                raise AuthenticationError(
                    f"Authentication response from {base_url} did not contain a token"
                )
            logger.info(f"Authenticated to {base_url} with username/password")
            return AuthToken(value=jwt, auth_type=AUTH_TYPE_PASSWORD)

        await self._request(
            'GET',
            base_url,
            '/api/endpoints',
            headers={'X-API-Key': instance.api_key},
            host_header=host_header,
            auth_url='',
        )
        logger.info(f"Validated API key for {base_url}")
        return AuthToken(value=instance.api_key, auth_type=instance.auth_type)

    async def list_containers(
        self, base_url: str, endpoint_id: str, host_header: Optional[str] = None, auth_url: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            'GET', base_url, self._docker_path(endpoint_id, '/containers/json'),
            params={'all': 'true'}, host_header=host_header, auth_url=auth_url,
        )
        return response.json()

    async def inspect_container(
        self, base_url: str, endpoint_id: str, container_id: str,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        cid = validate_path_component(container_id)
        response = await self._request(
            'GET', base_url, self._docker_path(endpoint_id, f'/containers/{cid}/json'),
            host_header=host_header, auth_url=auth_url,
        )
        return response.json()

    async def create_container(
        self, base_url: str, endpoint_id: str, spec: Dict[str, Any], name: Optional[str] = None,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a container; returns Docker's {"Id": ..., "Warnings": [...]}."""
        params = {'name': name} if name else None
        response = await self._request(
            'POST', base_url, self._docker_path(endpoint_id, '/containers/create'),
            params=params, json=spec, host_header=host_header, auth_url=auth_url,
        )
        return response.json()

    async def start_container(
        self, base_url: str, endpoint_id: str, container_id: str,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> None:
        cid = validate_path_component(container_id)
        # 304 (already started) is not a failure
        try:
            await self._request(
                'POST', base_url, self._docker_path(endpoint_id, f'/containers/{cid}/start'),
                host_header=host_header, auth_url=auth_url,
            )
        except PortainerAPIError as e:
            if e.status_code != 304:
                raise

    async def stop_container(
        self, base_url: str, endpoint_id: str, container_id: str,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> None:
        cid = validate_path_component(container_id)
        # 304 (already stopped) is not a failure
        try:
            await self._request(
                'POST', base_url, self._docker_path(endpoint_id, f'/containers/{cid}/stop'),
                host_header=host_header, auth_url=auth_url,
            )
        except PortainerAPIError as e:
            if e.status_code != 304:
                raise

    async def remove_container(
        self, base_url: str, endpoint_id: str, container_id: str, force: bool = False,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> None:
        cid = validate_path_component(container_id)
        params = {'force': 'true'} if force else None
        await self._request(
            'DELETE', base_url, self._docker_path(endpoint_id, f'/containers/{cid}'),
            params=params, host_header=host_header, auth_url=auth_url,
        )

    async def container_logs(
        self, base_url: str, endpoint_id: str, container_id: str, tail: int = 50,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> str:
        cid = validate_path_component(container_id)
        response = await self._request(
            'GET', base_url, self._docker_path(endpoint_id, f'/containers/{cid}/logs'),
            params={'stdout': 1, 'stderr': 1, 'tail': tail, 'timestamps': 1},
            host_header=host_header, auth_url=auth_url,
        )
        return demux_docker_logs(response.content)

    async def pull_image(
        self, base_url: str, endpoint_id: str, repository: str, tag: str,
        host_header: Optional[str] = None, auth_url: Optional[str] = None,
    ) -> None:
        """
        Pull an image on the endpoint.

        Docker streams JSON progress lines and reports pull failures inside
        the stream with a 200 status, so the body is scanned for "error".
        """
        response = await self._request(
            'POST', base_url, self._docker_path(endpoint_id, '/images/create'),
            params={'fromImage': repository, 'tag': tag},
            host_header=host_header, auth_url=auth_url,
            read_timeout=self.pull_timeout,
        )
        for line in response.text.splitlines():
            if '"error"' in line:
                raise PortainerAPIError(
                    f"Image pull failed for {repository}:{tag}: {line.strip()[:500]}",
                    status_code=response.status_code,
                )
