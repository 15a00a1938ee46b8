"""
Shared types for the upgrade engine.

This module contains dataclasses and types passed between the
coordinator, the dependency resolver and the dependent rebuilder.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from utils.container_id import normalize_container_id
from utils.keys import make_composite_key

# Raw Docker inspect payload (Config, HostConfig, NetworkSettings, State, ...)
InspectSnapshot = Dict[str, Any]

SHARED_NETWORK_PREFIXES = ('service:', 'container:')
STACK_LABELS = ('com.docker.compose.project', 'com.docker.stack.namespace')


class UpgradeStage(Enum):
    """Stages of a container upgrade."""
    INITIATING = "initiating"
    INSPECTING = "inspecting"
    PULLING_IMAGE = "pulling_image"
    REMOVING_DEPENDENTS = "removing_dependents"
    STOPPING_OLD = "stopping_old"
    CREATING_NEW = "creating_new"
    STARTING_NEW = "starting_new"
    READINESS_CHECK = "readiness_check"
    STABILIZING = "stabilizing"
    RESTORING_DEPENDENTS = "restoring_dependents"
    COMPLETED = "completed"
    FAILED = "failed"


class DependencyReason(Enum):
    """Why a container depends on the upgrade target. NETWORK_MODE wins over STACK."""
    NETWORK_MODE = "network_mode"
    STACK = "stack"


@dataclass
class ContainerIdentity:
    """
    Identity of a container on a specific endpoint.

    The remote API accepts either ID form but some paths only resolve
    one, so both are kept.
    """
    id: str  # FULL ID (64 chars) when known
    name: str
    endpoint_id: str
    instance_url: str

    @property
    def short_id(self) -> str:
        return normalize_container_id(self.id)

    @property
    def composite_key(self) -> str:
        return make_composite_key(self.instance_url, self.endpoint_id, self.id)


@dataclass
class UpgradeTarget:
    """
    What to upgrade, handed over by the scheduler.

    image is the container's current image reference. When new_image is
    not given the same repository:tag is re-pulled and recreated.
    """
    instance_url: str
    endpoint_id: str
    container_id: str
    image: str = ''
    new_image: Optional[str] = None
    container_name: Optional[str] = None


@dataclass
class PreparedConfig:
    """Sanitized create request derived from an inspect snapshot."""
    spec: Dict[str, Any]
    is_shared_network_mode: bool
    stack_name: Optional[str] = None


@dataclass
class DependentContainer:
    """A container tied to the upgrade target. Valid for one upgrade only."""
    id: str
    name: str
    is_running: bool
    is_stopped: bool
    reason: DependencyReason
    network_mode: str = ''
    # Inspect payload from the scan that classified this container
    snapshot: Optional[InspectSnapshot] = field(default=None, repr=False, compare=False)


@dataclass
class DependentRestartWarning:
    """Non-fatal failure while restoring a dependent container."""
    container_name: str
    reason: DependencyReason
    message: str

    def __str__(self) -> str:
        return f"{self.container_name} ({self.reason.value}): {self.message}"


@dataclass
class DependentOutcome:
    """Per-dependent result of the rebuild/restart pass."""
    container: DependentContainer
    success: bool
    new_container_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, container: DependentContainer, new_container_id: Optional[str] = None) -> 'DependentOutcome':
        return cls(container=container, success=True, new_container_id=new_container_id)

    @classmethod
    def failed(cls, container: DependentContainer, error: str) -> 'DependentOutcome':
        return cls(container=container, success=False, error=error)

    def to_warning(self) -> Optional[DependentRestartWarning]:
        if self.success:
            return None
        return DependentRestartWarning(
            container_name=self.container.name,
            reason=self.container.reason,
            message=self.error or "unknown error",
        )


@dataclass
class UpgradeResult:
    """
    Result of a successful upgrade.

    Failures are raised as typed errors, so success is True whenever a
    result is returned; dependent problems only show up as warnings.
    """
    success: bool
    new_container_id: str
    container_name: str = ''
    image: str = ''
    dependent_warnings: List[DependentRestartWarning] = field(default_factory=list)
    readiness_warning: Optional[str] = None

    @classmethod
    def success_result(
        cls,
        new_container_id: str,
        container_name: str = '',
        image: str = '',
        dependent_warnings: Optional[List[DependentRestartWarning]] = None,
        readiness_warning: Optional[str] = None,
    ) -> 'UpgradeResult':
        """Create a successful result."""
        return cls(
            success=True,
            new_container_id=new_container_id,
            container_name=container_name,
            image=image,
            dependent_warnings=dependent_warnings or [],
            readiness_warning=readiness_warning,
        )


# Type alias for progress callback
# Signature: async def callback(stage: str, percent: int, message: str) -> None
ProgressCallback = Callable[[str, int, str], Awaitable[None]]

# Injected time sources (tests use a fake clock)
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def is_shared_network_mode(network_mode: Optional[str]) -> bool:
    """True for container:<ref> / service:<ref> network modes."""
    return bool(network_mode) and network_mode.startswith(SHARED_NETWORK_PREFIXES)


def split_network_mode(network_mode: Optional[str]):
    """
    Split a shared network mode into (prefix, reference).

    Returns (None, None) for bridge/host/custom network names.

    Examples:
        >>> split_network_mode("container:vpn")
        ('container:', 'vpn')
        >>> split_network_mode("bridge")
        (None, None)
    """
    if not is_shared_network_mode(network_mode):
        return None, None
    for prefix in SHARED_NETWORK_PREFIXES:
        if network_mode.startswith(prefix):
            return prefix, network_mode[len(prefix):]
    return None, None


def stack_name_from_labels(labels: Optional[Dict[str, str]]) -> Optional[str]:
    """Compose project or swarm stack name from container labels."""
    labels = labels or {}
    for label in STACK_LABELS:
        if labels.get(label):
            return labels[label]
    return None
