"""
Shared pytest fixtures for Harbormaster tests.

Fixtures provided:
- make_id: Deterministic 64-char container ID builder
- fake_clock: Manual monotonic clock whose async sleep advances time
- settings: Default UpgradeSettings
- mock_session: EndpointSession stand-in with AsyncMock operations
- make_snapshot: Builder for Docker inspect payloads

Note: Nothing here talks to a real Portainer instance. Tests that need the
HTTP layer use httpx.MockTransport.
"""

import copy
import hashlib
import os
import sys
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models.upgrade_models import UpgradeSettings


class FakeClock:
    """Monotonic clock that only moves when sleep() is awaited."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def fake_container_id(seed: str) -> str:
    """Deterministic 64-char hex container ID."""
    return hashlib.sha256(seed.encode()).hexdigest()


@pytest.fixture
def make_id():
    return fake_container_id


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def settings():
    return UpgradeSettings()


@pytest.fixture
def mock_session():
    """
    Mock EndpointSession.

    Every Docker capability is an AsyncMock; tests set return_value or
    side_effect as needed.
    """
    session = Mock()
    session.endpoint_id = "1"
    session.instance_url = "https://portainer.example.com"
    session.proxy_fronted = False
    session.inspect = AsyncMock()
    session.list_containers = AsyncMock(return_value=[])
    session.create = AsyncMock()
    session.start = AsyncMock()
    session.stop = AsyncMock()
    session.remove = AsyncMock()
    session.logs = AsyncMock(return_value="")
    session.pull_image = AsyncMock()
    return session


@pytest.fixture
def make_snapshot():
    """
    Build an inspect payload.

    Usage:
        snapshot = make_snapshot("web", image="nginx:1.27", network_mode="container:vpn")
    """
    def _make(
        name: str,
        image: str = "nginx:latest",
        container_id: Optional[str] = None,
        status: str = "running",
        network_mode: str = "bridge",
        labels: Optional[Dict[str, str]] = None,
        health: Optional[str] = None,
        exit_code: int = 0,
        host_config: Optional[Dict[str, Any]] = None,
        networks: Optional[Dict[str, Any]] = None,
        **config: Any,
    ) -> Dict[str, Any]:
        state: Dict[str, Any] = {
            'Status': status,
            'Running': status == 'running',
            'ExitCode': exit_code,
        }
        if health is not None:
            state['Health'] = {'Status': health}

        hc = copy.deepcopy(host_config) if host_config else {}
        hc.setdefault('NetworkMode', network_mode)

        return {
            'Id': container_id or fake_container_id(name),
            'Name': f'/{name}',
            'Config': {'Image': image, 'Labels': labels or {}, **config},
            'HostConfig': hc,
            'NetworkSettings': {'Networks': networks or {}},
            'State': state,
        }

    return _make
