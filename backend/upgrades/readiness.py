"""
Readiness detection for a freshly started container.

The monitor polls inspect at a fixed interval and feeds each observation
into a small state machine:

    WAITING_START -> RUNNING_UNVERIFIED -> HEALTH_STARTING | STABILIZING_NO_HEALTH
                  -> READY | FAILED

Transitions are pure functions of (state, observation, context) so each
one can be tested without a remote API or real time. Remote I/O (inspect,
log tail) and sleeping stay in ReadinessMonitor.

Thresholds:
- Docker HEALTHCHECK present: "healthy" is ready, "unhealthy" fails. If it
  stays "starting"/"none" the container is accepted after 30s and 5
  consecutive running checks (some images never report healthy).
- No HEALTHCHECK: ready after 15s and 3 consecutive running checks, or
  after 5s and 2 checks when the image is not a database.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Optional

from models.upgrade_models import UpgradeSettings
from portainer.session import EndpointSession
from upgrades.errors import ContainerExitedError, ContainerUnhealthyError, ReadinessTimeoutError
from upgrades.types import Clock, InspectSnapshot, Sleep

logger = logging.getLogger(__name__)

LOGS_UNAVAILABLE = "Could not retrieve logs."


class ReadinessPhase(Enum):
    WAITING_START = "waiting_start"
    RUNNING_UNVERIFIED = "running_unverified"
    HEALTH_STARTING = "health_starting"
    STABILIZING_NO_HEALTH = "stabilizing_no_health"
    READY = "ready"
    FAILED = "failed"


class FailureKind(Enum):
    EXITED = "exited"
    UNHEALTHY = "unhealthy"


TERMINAL_PHASES = (ReadinessPhase.READY, ReadinessPhase.FAILED)


@dataclass(frozen=True)
class PollObservation:
    """What one inspect poll saw."""
    elapsed: float
    running: bool = False
    status: str = 'unknown'
    health_status: Optional[str] = None  # None = no Health object at all
    exit_code: Optional[int] = None
    fetch_failed: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: InspectSnapshot, elapsed: float) -> 'PollObservation':
        state = snapshot.get('State') or {}
        status = state.get('Status') or ('running' if state.get('Running') else 'unknown')
        running = status == 'running' or state.get('Running') is True

        health = state.get('Health')
        health_status = (health.get('Status') or 'none') if isinstance(health, dict) and health else None

        return cls(
            elapsed=elapsed,
            running=running,
            status=status,
            health_status=health_status,
            exit_code=state.get('ExitCode'),
        )

    @classmethod
    def failed_fetch(cls, elapsed: float) -> 'PollObservation':
        return cls(elapsed=elapsed, fetch_failed=True)


@dataclass(frozen=True)
class ReadinessState:
    phase: ReadinessPhase = ReadinessPhase.WAITING_START
    consecutive_running: int = 0
    elapsed: float = 0.0
    failure: Optional[FailureKind] = None
    exit_code: Optional[int] = None
    health_status: Optional[str] = None
    reason: str = ''

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


@dataclass(frozen=True)
class ReadinessContext:
    """Per-container inputs to the transitions."""
    settings: UpgradeSettings
    is_database: bool = False


def _ready(state: ReadinessState, reason: str) -> ReadinessState:
    return replace(state, phase=ReadinessPhase.READY, reason=reason)


def _on_waiting_start(state: ReadinessState, obs: PollObservation, ctx: ReadinessContext) -> ReadinessState:
    """Container not (yet) running, or the poll itself failed."""
    if not obs.fetch_failed and obs.status == 'exited':
        return replace(
            state,
            phase=ReadinessPhase.FAILED,
            consecutive_running=0,
            failure=FailureKind.EXITED,
            exit_code=obs.exit_code if obs.exit_code is not None else 0,
            reason=f"exited with code {obs.exit_code if obs.exit_code is not None else 0}",
        )
    return replace(state, phase=ReadinessPhase.WAITING_START, consecutive_running=0)


def _on_running_unverified(state: ReadinessState, obs: PollObservation, ctx: ReadinessContext) -> ReadinessState:
    """Running; route on whether the image defines a HEALTHCHECK."""
    next_phase = (
        ReadinessPhase.HEALTH_STARTING if obs.health_status is not None
        else ReadinessPhase.STABILIZING_NO_HEALTH
    )
    return TRANSITIONS[next_phase](replace(state, phase=next_phase), obs, ctx)


def _on_health_starting(state: ReadinessState, obs: PollObservation, ctx: ReadinessContext) -> ReadinessState:
    settings = ctx.settings
    status = obs.health_status

    if status == 'healthy':
        return _ready(state, "health check passed")
    if status == 'unhealthy':
        return replace(
            state,
            phase=ReadinessPhase.FAILED,
            failure=FailureKind.UNHEALTHY,
            health_status=status,
            reason="health check failed",
        )

    # "starting" / "none"
    if (
        state.elapsed >= settings.health_grace_seconds
        and state.consecutive_running >= settings.health_grace_checks
    ):
        return _ready(state, f"running {state.elapsed:.0f}s with health still '{status}'")
    return replace(state, health_status=status)


def _on_stabilizing_no_health(state: ReadinessState, obs: PollObservation, ctx: ReadinessContext) -> ReadinessState:
    settings = ctx.settings

    if (
        state.elapsed >= settings.no_health_min_seconds
        and state.consecutive_running >= settings.required_stable_checks
    ):
        return _ready(state, f"stable for {state.consecutive_running} checks")

    # Databases get the longer floor above
    if (
        not ctx.is_database
        and state.elapsed >= settings.quick_ready_seconds
        and state.consecutive_running >= settings.quick_ready_checks
    ):
        return _ready(state, f"stable for {state.consecutive_running} checks (quick)")

    return state


TRANSITIONS: Dict[ReadinessPhase, Callable[[ReadinessState, PollObservation, ReadinessContext], ReadinessState]] = {
    ReadinessPhase.WAITING_START: _on_waiting_start,
    ReadinessPhase.RUNNING_UNVERIFIED: _on_running_unverified,
    ReadinessPhase.HEALTH_STARTING: _on_health_starting,
    ReadinessPhase.STABILIZING_NO_HEALTH: _on_stabilizing_no_health,
}


def step(state: ReadinessState, obs: PollObservation, ctx: ReadinessContext) -> ReadinessState:
    """
    Apply one poll observation to the readiness state.

    Terminal states absorb every further observation.
    """
    if state.is_terminal:
        return state

    state = replace(state, elapsed=obs.elapsed)

    if obs.fetch_failed or not obs.running:
        return TRANSITIONS[ReadinessPhase.WAITING_START](state, obs, ctx)

    state = replace(
        state,
        phase=ReadinessPhase.RUNNING_UNVERIFIED,
        consecutive_running=state.consecutive_running + 1,
    )
    return TRANSITIONS[ReadinessPhase.RUNNING_UNVERIFIED](state, obs, ctx)


@dataclass
class ReadinessOutcome:
    """Ready verdict plus an optional warning (accepted at timeout)."""
    elapsed: float
    checks: int
    reason: str = ''
    warning: Optional[str] = None


class ReadinessMonitor:
    """
    Polls a new container until it is ready or has definitively failed.

    Args:
        settings: Thresholds and timings
        clock: Monotonic time source (seconds)
        sleep: Async sleep
    """

    def __init__(
        self,
        settings: UpgradeSettings,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

    async def wait_until_ready(
        self,
        session: EndpointSession,
        container_id: str,
        image: str = '',
        container_name: str = '',
    ) -> ReadinessOutcome:
        """
        Wait for the container to become ready.

        Returns:
            ReadinessOutcome (warning set when accepted on timeout)

        Raises:
            ContainerExitedError: Container exited (carries exit code and log tail)
            ContainerUnhealthyError: Health check reported unhealthy
            ReadinessTimeoutError: Not running when the window closed
        """
        settings = self.settings
        label = container_name or container_id[:12]
        ctx = ReadinessContext(settings=settings, is_database=settings.is_database_image(image))
        state = ReadinessState()
        start = self.clock()

        logger.info(
            f"Waiting for {label} to become ready "
            f"(max {settings.readiness_max_wait:.0f}s, database={ctx.is_database})"
        )

        while self.clock() - start < settings.readiness_max_wait:
            await self.sleep(settings.readiness_interval)
            elapsed = self.clock() - start

            try:
                snapshot = await session.inspect(container_id)
                obs = PollObservation.from_snapshot(snapshot, elapsed)
            except Exception as e:
                logger.debug(f"Readiness poll for {label} failed: {e}")
                obs = PollObservation.failed_fetch(elapsed)

            state = step(state, obs, ctx)

            if state.phase is ReadinessPhase.READY:
                logger.info(f"Container {label} is ready after {elapsed:.1f}s: {state.reason}")
                return ReadinessOutcome(elapsed=elapsed, checks=state.consecutive_running, reason=state.reason)

            if state.phase is ReadinessPhase.FAILED:
                await self._raise_failure(session, container_id, label, state)

            logger.debug(
                f"Container {label} readiness: phase={state.phase.value}, "
                f"status={obs.status}, health={obs.health_status}, checks={state.consecutive_running}"
            )

        return await self._final_check(session, container_id, label, state)

    async def _tail_logs(self, session: EndpointSession, container_id: str) -> Optional[str]:
        try:
            return await session.logs(container_id, tail=self.settings.log_tail_lines)
        except Exception as e:
            logger.warning(f"Could not retrieve logs for {container_id[:12]}: {e}")
            return None

    async def _raise_failure(
        self, session: EndpointSession, container_id: str, label: str, state: ReadinessState
    ) -> None:
        logs = await self._tail_logs(session, container_id)
        tail = self.settings.log_tail_lines
        suffix = f"Last {tail} lines of logs:\n{logs}" if logs is not None else LOGS_UNAVAILABLE

        if state.failure is FailureKind.EXITED:
            logger.error(f"Container {label} exited with code {state.exit_code} during readiness check")
            raise ContainerExitedError(
                f"Container exited with code {state.exit_code}. {suffix}",
                exit_code=state.exit_code,
                logs=logs or '',
                container_name=label,
            )

        logger.error(f"Container {label} reported unhealthy during readiness check")
        raise ContainerUnhealthyError(
            f"Container health check failed. {suffix}",
            health_status=state.health_status or 'unhealthy',
            logs=logs or '',
            container_name=label,
        )

    async def _final_check(
        self, session: EndpointSession, container_id: str, label: str, state: ReadinessState
    ) -> ReadinessOutcome:
        """One last inspect when the window closes; a running container is accepted."""
        max_wait = self.settings.readiness_max_wait
        try:
            snapshot = await session.inspect(container_id)
        except Exception as e:
            logger.error(f"Final readiness check for {label} failed: {e}")
            raise ReadinessTimeoutError(
                f"Container did not become ready within timeout period ({max_wait:.0f}s). "
                f"Container may have failed to start.",
                state='unknown',
                container_name=label,
            )

        obs = PollObservation.from_snapshot(snapshot, self.clock())
        if obs.running:
            warning = f"Timeout reached after {max_wait:.0f}s but container is running, considering it ready"
            logger.warning(f"Container {label}: {warning}")
            return ReadinessOutcome(
                elapsed=max_wait,
                checks=state.consecutive_running,
                reason="running at timeout",
                warning=warning,
            )

        logger.error(f"Container {label} not ready after {max_wait:.0f}s (state: {obs.status})")
        raise ReadinessTimeoutError(
            f"Container did not become ready within timeout period ({max_wait:.0f}s). "
            f"Current state: {obs.status}",
            state=obs.status,
            container_name=label,
        )


async def wait_for_stabilization(
    session: EndpointSession,
    container_id: str,
    settings: UpgradeSettings,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """
    Short extra wait before dependents are woken up.

    A container with a HEALTHCHECK still "starting" is polled until healthy
    (up to stabilization_max_wait). A container without one gets a single
    brief pause. Never fails the upgrade.

    Returns:
        True if the container was confirmed healthy or had no health check
    """
    short_id = container_id[:12]
    try:
        snapshot = await session.inspect(container_id)
    except Exception as e:
        logger.warning(f"Could not check upgraded container {short_id} health, proceeding anyway: {e}")
        await sleep(settings.stabilization_interval)
        return False

    health = (snapshot.get('State') or {}).get('Health')
    if not health:
        await sleep(settings.stabilization_interval)
        return True

    status = health.get('Status')
    if status == 'healthy':
        logger.info(f"Upgraded container {short_id} is already healthy")
        return True
    if status not in ('starting', 'none', None):
        logger.warning(f"Upgraded container {short_id} health is '{status}', proceeding with dependents")
        return False

    logger.info("Waiting for upgraded container health check to pass before restarting dependents...")
    attempts = max(1, int(settings.stabilization_max_wait // settings.stabilization_interval))
    for _ in range(attempts):
        await sleep(settings.stabilization_interval)
        try:
            current = await session.inspect(container_id)
        except Exception as e:
            logger.debug(f"Stabilization poll for {short_id} failed: {e}")
            continue
        if ((current.get('State') or {}).get('Health') or {}).get('Status') == 'healthy':
            logger.info(f"Upgraded container {short_id} is now healthy")
            return True

    logger.warning("Upgraded container health check not ready, but proceeding with dependent restarts")
    return False
