"""
Upgrade Coordinator

Sequences one container upgrade against a Portainer endpoint:

1. Inspect the target (IP failover enabled when it is the reverse proxy)
2. Pull the new image
3. Remove NETWORK_MODE dependents bound to the old container ID
4. Stop and remove the target
5. Create and start the replacement
6. Wait for readiness (failure aborts; no dependent work is attempted)
7. Let the replacement stabilize
8. Rebuild NETWORK_MODE dependents against the new ID, restart STACK dependents

The primary outcome never depends on dependent handling: dependent
failures come back as warnings on a successful UpgradeResult.
"""

import asyncio
import logging
import time
from typing import List, Optional, Tuple

from config.settings import load_upgrade_settings
from models.upgrade_models import UpgradeSettings
from portainer.auth import get_token_store
from portainer.client import PortainerClient
from portainer.errors import PortainerAPIError
from portainer.ip_fallback import InstanceRegistry, StaticInstanceRegistry
from portainer.session import EndpointSession
from upgrades.config_preparer import prepare_container_config
from upgrades.dependency_resolver import DependencyResolver, container_status
from upgrades.dependent_rebuilder import DependentRebuilder
from upgrades.details_fetcher import DetailsFetcher
from upgrades.errors import ContainerCreateError
from upgrades.lock_manager import UpgradeLockManager
from upgrades.readiness import ReadinessMonitor, wait_for_stabilization
from upgrades.stop_monitor import StopMonitor
from upgrades.types import (
    Clock,
    ContainerIdentity,
    DependencyReason,
    DependentContainer,
    DependentOutcome,
    DependentRestartWarning,
    InspectSnapshot,
    ProgressCallback,
    Sleep,
    UpgradeResult,
    UpgradeStage,
    UpgradeTarget,
)
from utils.container_id import clean_container_name
from utils.image_ref import image_matches_any, normalize_image_reference, split_image_reference

logger = logging.getLogger(__name__)


class UpgradeCoordinator:
    """
    Runs container upgrades.

    One coordinator serves any number of concurrent upgrades; all
    per-upgrade state lives in the EndpointSession created for each call.
    """

    def __init__(
        self,
        client: PortainerClient,
        registry: InstanceRegistry,
        settings: Optional[UpgradeSettings] = None,
        lock_manager: Optional[UpgradeLockManager] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        """
        Initialize coordinator.

        Args:
            client: Portainer HTTP client (shares the TokenStore)
            registry: Instance lookup for credentials and cached IPs
            settings: Timings and thresholds (defaults if omitted)
            lock_manager: Per-container upgrade locks
            clock: Monotonic time source (injectable for tests)
            sleep: Async sleep (injectable for tests)
        """
        self.client = client
        self.registry = registry
        self.settings = settings or UpgradeSettings()
        self.lock_manager = lock_manager or UpgradeLockManager(self.settings.lock_ttl_seconds, clock=clock)
        self.sleep = sleep

        self.details_fetcher = DetailsFetcher()
        self.resolver = DependencyResolver()
        self.rebuilder = DependentRebuilder(self.settings, sleep=sleep)
        self.readiness_monitor = ReadinessMonitor(self.settings, clock=clock, sleep=sleep)
        self.stop_monitor = StopMonitor(self.settings, clock=clock, sleep=sleep)

    def is_proxy_image(self, image: str) -> bool:
        return image_matches_any(image, self.settings.reverse_proxy_image_markers)

    async def upgrade(
        self,
        target: UpgradeTarget,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> UpgradeResult:
        """
        Upgrade one container.

        Args:
            target: Container to upgrade and the image to move to
            progress_callback: Optional async (stage, percent, message) callback

        Returns:
            UpgradeResult with the new container ID and any dependent warnings

        Raises:
            UpgradeInProgressError: Container already being upgraded
            NotFoundError / AuthenticationError / NetworkUnreachableError: Remote API failures
            ContainerCreateError: Create request rejected
            ContainerExitedError / ContainerUnhealthyError / ReadinessTimeoutError: New container not ready
        """
        try:
            session, snapshot = await self._inspect_target(target, progress_callback)
            # Keyed on the engine's ID so name and ID references of one container collide
            container_id = snapshot.get('Id') or target.container_id
            with self.lock_manager.hold(target.instance_url, target.endpoint_id, container_id):
                return await self._upgrade(target, session, snapshot, progress_callback)
        except Exception as e:
            logger.error(f"Upgrade of container {target.container_id[:12]} failed: {e}")
            await self._report(progress_callback, UpgradeStage.FAILED, 100, str(e))
            raise

    async def _inspect_target(
        self,
        target: UpgradeTarget,
        progress_callback: Optional[ProgressCallback],
    ) -> Tuple[EndpointSession, InspectSnapshot]:
        """Step 1: inspect the target, enabling IP fallback when it is the reverse proxy."""
        proxy_fronted = self.is_proxy_image(target.image)
        session = EndpointSession(self.client, self.registry, target.instance_url, target.endpoint_id, proxy_fronted)
        await self._report(progress_callback, UpgradeStage.INSPECTING, 5, "Reading container configuration")

        snapshot = await self.details_fetcher.fetch(session, target.container_id)

        current_image = target.image or (snapshot.get('Config') or {}).get('Image') or ''
        if not proxy_fronted and self.is_proxy_image(current_image):
            logger.info("Target is the reverse proxy fronting Portainer, enabling IP fallback")
            session = EndpointSession(self.client, self.registry, target.instance_url, target.endpoint_id, True)
        return session, snapshot

    async def _upgrade(
        self,
        target: UpgradeTarget,
        session: EndpointSession,
        snapshot: InspectSnapshot,
        progress_callback: Optional[ProgressCallback],
    ) -> UpgradeResult:
        settings = self.settings
        current_image = target.image or (snapshot.get('Config') or {}).get('Image') or ''

        identity = ContainerIdentity(
            id=snapshot.get('Id') or target.container_id,
            name=clean_container_name(snapshot.get('Name', '')) or target.container_name or target.container_id[:12],
            endpoint_id=session.endpoint_id,
            instance_url=target.instance_url,
        )
        new_image = target.new_image or normalize_image_reference(current_image)
        prepared = prepare_container_config(snapshot, new_image, identity.name)

        logger.info(
            f"Starting upgrade of {identity.name} ({identity.short_id}) on endpoint {identity.endpoint_id}: "
            f"{current_image} -> {new_image} (proxy_fronted={session.proxy_fronted})"
        )

        # Step 2: Pull new image (nothing has been touched yet if this fails)
        if settings.pull_image_before_create:
            repository, tag = split_image_reference(new_image)
            await self._report(progress_callback, UpgradeStage.PULLING_IMAGE, 15, f"Pulling {repository}:{tag}")
            await session.pull_image(repository, tag)

        # Step 3: Remove dependents bound to the old container ID
        await self._report(progress_callback, UpgradeStage.REMOVING_DEPENDENTS, 25, "Checking for dependent containers")
        pre_dependents = await self._find_dependents(session, identity, network_mode_only=True)
        captured = await self.rebuilder.remove_before_upgrade(session, pre_dependents)

        # Step 4: Stop and remove target
        await self._report(progress_callback, UpgradeStage.STOPPING_OLD, 35, "Stopping old container")
        await session.stop(identity.id)
        await self.stop_monitor.wait_until_stopped(session, identity.id)
        await session.remove(identity.id)

        # Step 5: Create and start replacement
        await self._report(progress_callback, UpgradeStage.CREATING_NEW, 50, "Creating new container")
        new_container_id = await self._create(session, prepared.spec, identity.name)

        await self._report(progress_callback, UpgradeStage.STARTING_NEW, 60, "Starting new container")
        await session.start(new_container_id)

        # Step 6: Readiness (raises on failure)
        await self._report(progress_callback, UpgradeStage.READINESS_CHECK, 70, "Waiting for container to become ready")
        readiness = await self.readiness_monitor.wait_until_ready(session, new_container_id, new_image, identity.name)

        # Step 7: Stabilize before touching dependents
        await self._report(progress_callback, UpgradeStage.STABILIZING, 80, "Waiting for container to stabilize")
        await wait_for_stabilization(session, new_container_id, settings, sleep=self.sleep)

        # Step 8: Restore dependents
        await self._report(progress_callback, UpgradeStage.RESTORING_DEPENDENTS, 90, "Restoring dependent containers")
        outcomes = await self._restore_dependents(
            session, identity, prepared.stack_name, new_container_id, pre_dependents, captured
        )
        warnings: List[DependentRestartWarning] = [w for w in (o.to_warning() for o in outcomes) if w]
        for warning in warnings:
            logger.warning(f"Dependent container not restored: {warning}")

        await self._report(progress_callback, UpgradeStage.COMPLETED, 100, "Upgrade completed successfully")
        logger.info(
            f"Upgrade of {identity.name} completed: new container {new_container_id[:12]}"
            + (f", {len(warnings)} dependent warning(s)" if warnings else "")
        )

        return UpgradeResult.success_result(
            new_container_id=new_container_id,
            container_name=identity.name,
            image=new_image,
            dependent_warnings=warnings,
            readiness_warning=readiness.warning,
        )

    async def _create(self, session: EndpointSession, spec: dict, name: str) -> str:
        try:
            created = await session.create(spec, name=name)
        except PortainerAPIError as e:
            if e.status_code != 400:
                raise
            logger.error(f"Failed to create container {name} - invalid configuration: {e.message}")
            raise ContainerCreateError(
                f"Failed to create container: {e.message}. "
                f"This may be due to invalid network configuration, port conflicts, or other container settings. "
                f"Please check the container configuration in Portainer.",
                status_code=400,
                container_name=name,
            ) from e
        return created['Id']

    async def _find_dependents(
        self,
        session: EndpointSession,
        identity: ContainerIdentity,
        stack_name: Optional[str] = None,
        new_id: Optional[str] = None,
        network_mode_only: bool = False,
    ) -> List[DependentContainer]:
        try:
            return await self.resolver.find(
                session, identity, stack_name=stack_name, new_id=new_id, network_mode_only=network_mode_only
            )
        except Exception as e:
            logger.error(f"Error finding dependent containers of {identity.name}: {e}")
            return []

    async def _restore_dependents(
        self,
        session: EndpointSession,
        identity: ContainerIdentity,
        stack_name: Optional[str],
        new_container_id: str,
        pre_dependents: List[DependentContainer],
        captured: dict,
    ) -> List[DependentOutcome]:
        post_dependents = await self._find_dependents(session, identity, stack_name, new_id=new_container_id)

        network_dependents = [d for d in post_dependents if d.reason is DependencyReason.NETWORK_MODE]
        stack_dependents = [d for d in post_dependents if d.reason is DependencyReason.STACK]

        # Dependents removed before the upgrade are not listed any more
        rediscovered = {d.name for d in network_dependents}
        missing = [d for d in pre_dependents if d.name not in rediscovered]
        network_dependents += [d for d in missing if d.name in captured]

        outcomes: List[DependentOutcome] = []
        for dependent in missing:
            if dependent.name not in captured:
                logger.error(f"Dependent {dependent.name} was not found after the upgrade and has no saved configuration")
                outcomes.append(DependentOutcome.failed(
                    dependent, "not found after upgrade and no configuration was captured; recreate it manually"
                ))

        if not network_dependents and not stack_dependents:
            if not outcomes:
                logger.info("No dependent containers found")
            return outcomes

        logger.info(
            f"Found {len(network_dependents)} network_mode and {len(stack_dependents)} stack dependent container(s)"
        )

        if network_dependents:
            error = await self._verify_upgraded_running(session, new_container_id, identity.name)
            if error:
                outcomes += [DependentOutcome.failed(d, error) for d in network_dependents]
            else:
                outcomes += await self.rebuilder.rebuild_network_dependents(
                    session, network_dependents, new_container_id, captured
                )

        outcomes += await self.rebuilder.restart_stack_dependents(session, stack_dependents)
        return outcomes

    async def _verify_upgraded_running(self, session: EndpointSession, container_id: str, name: str) -> Optional[str]:
        """Namespace owner must be running before dependents join it; returns an error message if not."""
        try:
            if container_status(await session.inspect(container_id)) == 'running':
                return None
            logger.warning(f"Network container {name} is not running, waiting...")
            await self.sleep(self.settings.verify_running_delay)
            if container_status(await session.inspect(container_id)) == 'running':
                logger.info(f"Network container {name} is now running")
                return None
        except Exception as e:
            logger.error(f"Could not verify new container {name}: {e}")
            return f"Failed to verify network container {name}: {e}"

        logger.error(f"Network container {name} is still not running")
        return f"Network container {name} is not running. Cannot create dependent containers."

    async def _report(
        self,
        progress_callback: Optional[ProgressCallback],
        stage: UpgradeStage,
        percent: int,
        message: str,
    ) -> None:
        if progress_callback is None:
            return
        try:
            await progress_callback(stage.value, percent, message)
        except Exception as e:
            logger.warning(f"Progress callback failed at stage {stage.value}: {e}")


# Global singleton instance
_upgrade_coordinator = None


def get_upgrade_coordinator(registry: Optional[InstanceRegistry] = None) -> UpgradeCoordinator:
    """
    Get or create the process-wide UpgradeCoordinator.

    Settings come from HARBORMASTER_* environment variables; the token
    cache is the process-wide TokenStore.
    """
    global _upgrade_coordinator
    if _upgrade_coordinator is None:
        settings = load_upgrade_settings()
        client = PortainerClient(
            get_token_store(),
            timeout=settings.request_timeout,
            pull_timeout=settings.pull_timeout,
        )
        _upgrade_coordinator = UpgradeCoordinator(client, registry or StaticInstanceRegistry(), settings)
    elif registry is not None:
        _upgrade_coordinator.registry = registry
    return _upgrade_coordinator
