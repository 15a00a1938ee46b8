"""
Errors raised by the upgrade engine.

Primary-path failures surface to the caller as one of these (or as one
of the portainer.errors types, unmodified). Dependent-container problems
are never raised; see upgrades.types.DependentRestartWarning.
"""

from typing import Optional


class UpgradeError(Exception):
    """Base class for upgrade failures."""

    def __init__(self, message: str, container_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.container_name = container_name


class ContainerExitedError(UpgradeError):
    """New container exited while waiting for readiness."""

    def __init__(self, message: str, exit_code: Optional[int] = None, logs: str = '', container_name: Optional[str] = None):
        super().__init__(message, container_name=container_name)
        self.exit_code = exit_code
        self.logs = logs


class ContainerUnhealthyError(UpgradeError):
    """New container's Docker health check reported unhealthy."""

    def __init__(self, message: str, health_status: str = 'unhealthy', logs: str = '', container_name: Optional[str] = None):
        super().__init__(message, container_name=container_name)
        self.health_status = health_status
        self.logs = logs


class ReadinessTimeoutError(UpgradeError):
    """New container was not running when the readiness window closed."""

    def __init__(self, message: str, state: str = 'unknown', container_name: Optional[str] = None):
        super().__init__(message, container_name=container_name)
        self.state = state


class ContainerCreateError(UpgradeError):
    """The remote API rejected the create request (HTTP 400)."""

    def __init__(self, message: str, status_code: Optional[int] = None, container_name: Optional[str] = None):
        super().__init__(message, container_name=container_name)
        self.status_code = status_code


class UpgradeInProgressError(UpgradeError):
    """Another upgrade of the same container holds the lock."""
    pass


class DependencyConflictError(UpgradeError):
    """A batch contains both a network provider and one of its dependents."""
    pass
