"""
Upgrades Module

Container upgrade orchestration against Portainer endpoints.

Architecture:
- UpgradeCoordinator: sequences a single upgrade end to end
- ReadinessMonitor: phase state machine deciding when the new container is ready
- DependencyResolver / DependentRebuilder: find, remove, rebuild and restart dependents
- UpgradeBatchRunner: bounded-parallel batches with a dependency conflict check
"""

from upgrades.batch import BatchResult, DependencyConflictDetector, UpgradeBatchRunner
from upgrades.coordinator import UpgradeCoordinator, get_upgrade_coordinator
from upgrades.errors import (
    ContainerCreateError,
    ContainerExitedError,
    ContainerUnhealthyError,
    DependencyConflictError,
    ReadinessTimeoutError,
    UpgradeError,
    UpgradeInProgressError,
)
from upgrades.lock_manager import UpgradeLockManager
from upgrades.readiness import ReadinessMonitor, ReadinessPhase
from upgrades.types import (
    DependencyReason,
    DependentRestartWarning,
    UpgradeResult,
    UpgradeStage,
    UpgradeTarget,
)

__all__ = [
    'BatchResult',
    'DependencyConflictDetector',
    'UpgradeBatchRunner',
    'UpgradeCoordinator',
    'get_upgrade_coordinator',
    'ContainerCreateError',
    'ContainerExitedError',
    'ContainerUnhealthyError',
    'DependencyConflictError',
    'ReadinessTimeoutError',
    'UpgradeError',
    'UpgradeInProgressError',
    'UpgradeLockManager',
    'ReadinessMonitor',
    'ReadinessPhase',
    'DependencyReason',
    'DependentRestartWarning',
    'UpgradeResult',
    'UpgradeStage',
    'UpgradeTarget',
]
