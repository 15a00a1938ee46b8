"""
In-memory Portainer fixture for end-to-end upgrade tests.

FakePortainer emulates the Docker proxy under /api/endpoints/1/docker/...
behind httpx.MockTransport, so the real PortainerClient, EndpointSession
and UpgradeCoordinator run unmodified against it.
"""

import copy
import hashlib
import itertools
import json
import re
from typing import Any, Dict, List, Optional

import httpx
import pytest

from models.upgrade_models import PortainerInstance
from portainer.auth import TokenStore
from portainer.client import PortainerClient
from portainer.ip_fallback import StaticInstanceRegistry
from upgrades.coordinator import UpgradeCoordinator

INSTANCE_URL = "https://portainer.example.com"
INSTANCE_HOST = "portainer.example.com"
INSTANCE_IP = "192.168.1.20"
API_KEY = "ptr_test_key"

_DOCKER_PATH = re.compile(r'^/api/endpoints/(?P<endpoint>[^/]+)/docker(?P<rest>/.*)$')


def _error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={'message': message})


class FakePortainer:
    """
    Minimal Docker engine state plus the request log.

    image_behaviour maps an image reference to what happens on start:
        {'exit_code': 1}       -> container exits immediately
        {'health': 'healthy'}  -> container reports a Health status
    """

    def __init__(self):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.image_behaviour: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.pulls: List[str] = []
        self.logs_text = "starting...\nfatal: configuration invalid\n"
        self._counter = itertools.count()

    def _new_id(self, name: str) -> str:
        return hashlib.sha256(f"{name}-{next(self._counter)}".encode()).hexdigest()

    def add_container(
        self,
        name: str,
        image: str,
        network_mode: str = 'bridge',
        labels: Optional[Dict[str, str]] = None,
        status: str = 'running',
        **config: Any,
    ) -> str:
        container_id = self._new_id(name)
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f'/{name}',
            'Config': {'Image': image, 'Labels': labels or {}, **config},
            'HostConfig': {'NetworkMode': network_mode, 'RestartPolicy': {'Name': 'unless-stopped'}},
            'NetworkSettings': {'Networks': {}},
            'State': {'Status': status, 'Running': status == 'running', 'ExitCode': 0},
        }
        return container_id

    def resolve(self, ref: str) -> Optional[Dict[str, Any]]:
        """Find a container by full ID, ID prefix or name, like the Docker engine does."""
        if ref in self.containers:
            return self.containers[ref]
        for container in self.containers.values():
            if container['Name'] == f'/{ref}':
                return container
        if len(ref) >= 12:
            for container_id, container in self.containers.items():
                if container_id.startswith(ref):
                    return container
        return None

    def by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.resolve(name)

    def proxy_running(self) -> bool:
        return any(
            'nginx-proxy-manager' in c['Config']['Image'] and c['State']['Status'] == 'running'
            for c in self.containers.values()
        )

    def has_proxy(self) -> bool:
        return any('nginx-proxy-manager' in c['Config']['Image'] for c in self.containers.values())

    def requests_to(self, method: str, path_suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.endswith(path_suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        # Hostname only resolves through the reverse proxy (when there is one)
        if request.url.host == INSTANCE_HOST and self.has_proxy() and not self.proxy_running():
            raise httpx.ConnectError("Connection refused", request=request)

        if request.headers.get('x-api-key') != API_KEY:
            return _error(401, "Unauthorized")

        if request.url.path == '/api/endpoints':
            return httpx.Response(200, json=[{'Id': 1, 'Name': 'local'}])

        match = _DOCKER_PATH.match(request.url.path)
        if not match:
            return _error(404, "Not found")
        return self._docker(request, match.group('rest'))

    def _docker(self, request: httpx.Request, rest: str) -> httpx.Response:
        method = request.method

        if method == 'GET' and rest == '/containers/json':
            return httpx.Response(200, json=[
                {
                    'Id': c['Id'],
                    'Names': [c['Name']],
                    'Image': c['Config']['Image'],
                    'State': c['State']['Status'],
                }
                for c in self.containers.values()
            ])

        if method == 'POST' and rest == '/containers/create':
            return self._create(request)

        if method == 'POST' and rest == '/images/create':
            params = request.url.params
            self.pulls.append(f"{params.get('fromImage')}:{params.get('tag')}")
            return httpx.Response(200, text='{"status":"Pulling"}\n{"status":"Downloaded newer image"}\n')

        parts = rest.strip('/').split('/')
        if len(parts) < 2 or parts[0] != 'containers':
            return _error(404, "Not found")

        container = self.resolve(parts[1])
        if container is None:
            return _error(404, f"No such container: {parts[1]}")

        action = parts[2] if len(parts) > 2 else None
        if method == 'GET' and action == 'json':
            return httpx.Response(200, json=copy.deepcopy(container))
        if method == 'GET' and action == 'logs':
            return httpx.Response(200, content=self.logs_text.encode())
        if method == 'POST' and action == 'start':
            return self._start(container)
        if method == 'POST' and action == 'stop':
            if container['State']['Status'] != 'running':
                return httpx.Response(304)
            container['State'].update(Status='exited', Running=False, ExitCode=0)
            return httpx.Response(204)
        if method == 'DELETE' and action is None:
            if container['State']['Status'] == 'running' and request.url.params.get('force') != 'true':
                return _error(409, "You cannot remove a running container. Stop the container before attempting removal or force remove")
            del self.containers[container['Id']]
            return httpx.Response(204)

        return _error(404, "Not found")

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        name = request.url.params.get('name')
        if name and self.resolve(name) is not None:
            return _error(409, f'Conflict. The container name "/{name}" is already in use')
        if not body.get('Image'):
            return _error(400, "No command specified")

        host_config = copy.deepcopy(body.get('HostConfig') or {})
        host_config.setdefault('NetworkMode', 'bridge')

        container_id = self._new_id(name or 'anon')
        config = {k: copy.deepcopy(v) for k, v in body.items() if k not in ('HostConfig', 'NetworkingConfig')}
        config.setdefault('Labels', {})
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f'/{name or container_id[:12]}',
            'Config': config,
            'HostConfig': host_config,
            'NetworkSettings': {'Networks': {}},
            'State': {'Status': 'created', 'Running': False, 'ExitCode': 0},
        }
        return httpx.Response(201, json={'Id': container_id, 'Warnings': []})

    def _start(self, container: Dict[str, Any]) -> httpx.Response:
        if container['State']['Status'] == 'running':
            return httpx.Response(304)

        network_mode = container['HostConfig'].get('NetworkMode') or ''
        if network_mode.startswith('container:'):
            provider = self.resolve(network_mode[len('container:'):])
            if provider is None or provider['State']['Status'] != 'running':
                return _error(500, f"cannot join network of a non running container: {network_mode}")

        behaviour = self.image_behaviour.get(container['Config']['Image'], {})
        if 'exit_code' in behaviour:
            container['State'].update(Status='exited', Running=False, ExitCode=behaviour['exit_code'])
        else:
            container['State'].update(Status='running', Running=True, ExitCode=0)
            if 'health' in behaviour:
                container['State']['Health'] = {'Status': behaviour['health']}
        return httpx.Response(204)


@pytest.fixture
def portainer():
    return FakePortainer()


@pytest.fixture
def instance():
    return PortainerInstance(url=INSTANCE_URL, name="home", auth_type='apikey', api_key=API_KEY, ip_address=INSTANCE_IP)


@pytest.fixture
def coordinator(portainer, instance, fake_clock):
    """UpgradeCoordinator wired to FakePortainer with a fake clock."""
    client = PortainerClient(TokenStore(), transport=httpx.MockTransport(portainer.handler))
    registry = StaticInstanceRegistry([instance])
    return UpgradeCoordinator(client, registry, clock=fake_clock, sleep=fake_clock.sleep)
