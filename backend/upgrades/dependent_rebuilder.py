"""
Dependent container handling around an upgrade.

NETWORK_MODE dependents are bound to the namespace of a specific container
ID, so they cannot simply be restarted once the target has been replaced:
they are removed before the upgrade and rebuilt from scratch afterwards
with NetworkMode pinned to the new container ID.

STACK dependents are restarted.

Every dependent is handled independently and produces a DependentOutcome;
nothing here raises to the coordinator.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from models.upgrade_models import UpgradeSettings
from portainer.errors import NotFoundError
from portainer.session import EndpointSession
from upgrades.config_preparer import build_networking_config
from upgrades.errors import UpgradeError
from upgrades.types import (
    DependentContainer,
    DependentOutcome,
    InspectSnapshot,
    Sleep,
    is_shared_network_mode,
    split_network_mode,
)
from utils.container_id import clean_container_name

logger = logging.getLogger(__name__)

DEFAULT_SHM_SIZE = 67108864  # 64MB, Docker's default

# HostConfig fields carried over to a rebuilt dependent, with defaults
REBUILD_HOST_CONFIG_DEFAULTS: Dict[str, Any] = {
    'Binds': [],
    'Memory': 0,
    'MemorySwap': 0,
    'CpuShares': 0,
    'CpuPeriod': 0,
    'CpuQuota': 0,
    'CpusetCpus': '',
    'CpusetMems': '',
    'Devices': [],
    'DeviceRequests': [],
    'CapAdd': [],
    'CapDrop': [],
    'SecurityOpt': [],
    'LogConfig': {},
    'Privileged': False,
    'ReadonlyRootfs': False,
    'ShmSize': DEFAULT_SHM_SIZE,
    'Tmpfs': {},
    'Ulimits': [],
    'UsernsMode': '',
    'IpcMode': '',
    'PidMode': '',
    'Isolation': '',
    'AutoRemove': False,
}


def build_dependent_host_config(original: Optional[Dict[str, Any]], network_mode: str) -> Dict[str, Any]:
    """
    Rebuild a dependent's HostConfig from an explicit allow-list.

    Copying the inspected HostConfig wholesale would carry fields that
    still reference the old namespace owner. Empty lists and dicts are
    dropped. Port fields are only kept when network_mode is not shared.
    """
    original = original or {}

    restart_policy = original.get('RestartPolicy')
    if isinstance(restart_policy, str) and restart_policy:
        restart_policy = {'Name': restart_policy}
    elif not isinstance(restart_policy, dict) or not restart_policy:
        restart_policy = {'Name': 'unless-stopped'}

    host_config: Dict[str, Any] = {
        'NetworkMode': network_mode,
        'RestartPolicy': copy.deepcopy(restart_policy),
    }
    for key, default in REBUILD_HOST_CONFIG_DEFAULTS.items():
        value = original.get(key)
        host_config[key] = copy.deepcopy(value) if value else default

    host_config = {
        key: value for key, value in host_config.items()
        if not (isinstance(value, (list, dict)) and not value)
    }

    if not is_shared_network_mode(network_mode):
        if original.get('PortBindings'):
            host_config['PortBindings'] = copy.deepcopy(original['PortBindings'])
        if original.get('PublishAllPorts') is not None:
            host_config['PublishAllPorts'] = original['PublishAllPorts']

    return host_config


def build_dependent_spec(snapshot: InspectSnapshot, new_container_id: str) -> Tuple[Dict[str, Any], str]:
    """
    Build the create request for a rebuilt NETWORK_MODE dependent.

    Returns:
        (spec, expected_network_mode)
    """
    host_config = snapshot.get('HostConfig') or {}
    prefix, _ = split_network_mode(host_config.get('NetworkMode'))
    expected_network_mode = f"{prefix or 'container:'}{new_container_id}"

    clean_host = build_dependent_host_config(host_config, expected_network_mode)
    shared_mode = is_shared_network_mode(expected_network_mode)
    config = snapshot.get('Config') or {}

    spec: Dict[str, Any] = {'Image': config.get('Image'), 'HostConfig': clean_host}
    for key in ('Cmd', 'Env', 'Labels', 'WorkingDir', 'Entrypoint'):
        if config.get(key):
            spec[key] = config[key]
    if not shared_mode and config.get('ExposedPorts'):
        spec['ExposedPorts'] = config['ExposedPorts']

    networking_config = build_networking_config(snapshot, shared_mode)
    if networking_config:
        spec['NetworkingConfig'] = networking_config

    return spec, expected_network_mode


class DependentRebuilder:
    """Removes, rebuilds and restarts dependents of an upgraded container."""

    def __init__(self, settings: UpgradeSettings, sleep: Sleep = asyncio.sleep):
        self.settings = settings
        self.sleep = sleep

    async def remove_before_upgrade(
        self,
        session: EndpointSession,
        dependents: List[DependentContainer],
    ) -> Dict[str, InspectSnapshot]:
        """
        Stop and remove NETWORK_MODE dependents so nothing recreates them
        against the old container ID. A dependent whose configuration
        cannot be captured is left running rather than destroyed.

        Returns:
            Snapshots captured before removal, keyed by container name,
            for the rebuild after the upgrade
        """
        captured: Dict[str, InspectSnapshot] = {}
        if not dependents:
            return captured

        logger.info(f"Removing {len(dependents)} dependent container(s) before upgrading main container")

        for dependent in dependents:
            snapshot = dependent.snapshot
            if snapshot is None:
                try:
                    snapshot = await session.inspect(dependent.id)
                except Exception as e:
                    logger.warning(f"Could not capture configuration of {dependent.name}, leaving it in place: {e}")
                    continue
            captured[dependent.name] = snapshot

            try:
                await session.stop(dependent.id)
            except Exception as stop_error:
                logger.debug(f"Container {dependent.name} may already be stopped: {stop_error}")

            try:
                await session.remove(dependent.id)
                logger.info(f"Removed dependent {dependent.name}")
            except Exception as e:
                logger.warning(f"Failed to remove dependent {dependent.name}: {e}")

        await self.sleep(self.settings.dependent_cleanup_delay)
        return captured

    async def rebuild_network_dependents(
        self,
        session: EndpointSession,
        dependents: List[DependentContainer],
        new_container_id: str,
        captured: Optional[Dict[str, InspectSnapshot]] = None,
    ) -> List[DependentOutcome]:
        """
        Rebuild NETWORK_MODE dependents against new_container_id.

        Every dependent's configuration is captured before any of them is
        removed. Dependents removed before the upgrade fall back to the
        snapshot captured at that point.
        """
        captured = captured or {}
        outcomes: List[DependentOutcome] = []
        snapshots: Dict[str, InspectSnapshot] = {}

        for dependent in dependents:
            try:
                snapshots[dependent.id] = await session.inspect(dependent.id)
            except Exception as e:
                fallback = captured.get(dependent.name) or dependent.snapshot
                if fallback is not None:
                    snapshots[dependent.id] = fallback
                else:
                    logger.error(f"Failed to get details for {dependent.name}: {e}")
                    outcomes.append(DependentOutcome.failed(dependent, f"could not capture configuration: {e}"))

        to_rebuild = [d for d in dependents if d.id in snapshots]
        if not to_rebuild:
            return outcomes

        logger.info(f"Removing {len(to_rebuild)} dependent container(s) to clear stale network references")
        for dependent in to_rebuild:
            try:
                await session.remove(dependent.id, force=True)
            except NotFoundError:
                pass  # already removed before the upgrade
            except Exception as e:
                logger.debug(f"Could not remove {dependent.name}: {e}")

        await self.sleep(self.settings.dependent_rebuild_delay)

        logger.info(f"Recreating {len(to_rebuild)} dependent container(s) with new network reference")
        for dependent in to_rebuild:
            try:
                new_id = await self._rebuild_one(session, dependent, snapshots[dependent.id], new_container_id)
                outcomes.append(DependentOutcome.ok(dependent, new_id))
            except Exception as e:
                logger.error(f"Failed to recreate {dependent.name}: {e}", exc_info=True)
                outcomes.append(DependentOutcome.failed(dependent, str(e)))

        return outcomes

    async def _rebuild_one(
        self,
        session: EndpointSession,
        dependent: DependentContainer,
        snapshot: InspectSnapshot,
        new_container_id: str,
    ) -> str:
        spec, expected_network_mode = build_dependent_spec(snapshot, new_container_id)
        name = clean_container_name(snapshot.get('Name', '')) or dependent.name

        logger.info(
            f"Recreating {name}: NetworkMode "
            f"{(snapshot.get('HostConfig') or {}).get('NetworkMode', '')[:50]} -> {expected_network_mode[:50]}"
        )

        await self._remove_stale_by_name(session, name)

        created = await session.create(spec, name=name)
        verified_id = await self._verify_network_mode(session, created['Id'], name, spec, expected_network_mode)

        await session.start(verified_id)
        logger.info(f"Dependent {name} recreated and started")
        return verified_id

    async def _remove_stale_by_name(self, session: EndpointSession, name: str) -> None:
        """Remove a leftover container holding the name we are about to create."""
        try:
            containers = await session.list_containers()
        except Exception as e:
            logger.warning(f"Could not check for existing container {name}: {e}")
            return

        for summary in containers:
            names = [clean_container_name(n) for n in (summary.get('Names') or [])]
            if name not in names:
                continue
            logger.warning(f"Container {name} already exists, removing it first")
            try:
                await session.stop(summary['Id'])
            except Exception as e:
                logger.debug(f"Stop of stale {name} failed (may already be stopped): {e}")
            await session.remove(summary['Id'], force=True)
            await self.sleep(self.settings.stale_name_removal_delay)
            return

    async def _verify_network_mode(
        self,
        session: EndpointSession,
        container_id: str,
        name: str,
        spec: Dict[str, Any],
        expected: str,
    ) -> str:
        """
        Check the created container's actual NetworkMode; retry the create once on mismatch.

        Raises:
            UpgradeError: NetworkMode still wrong after the retry
        """
        try:
            details = await session.inspect(container_id)
        except Exception as e:
            logger.warning(f"Could not verify NetworkMode of {name}: {e}")
            return container_id

        actual = (details.get('HostConfig') or {}).get('NetworkMode') or ''
        if actual == expected:
            return container_id

        logger.error(f"MISMATCH: {name} created with NetworkMode={actual!r}, expected {expected!r}; retrying once")
        await session.remove(container_id, force=True)
        await self.sleep(self.settings.stale_name_removal_delay)

        retry_spec = dict(spec)
        retry_spec['HostConfig'] = {**spec.get('HostConfig', {}), 'NetworkMode': expected}
        retry = await session.create(retry_spec, name=name)

        retry_details = await session.inspect(retry['Id'])
        retry_actual = (retry_details.get('HostConfig') or {}).get('NetworkMode') or ''
        if retry_actual != expected:
            raise UpgradeError(
                f"Failed to create {name} with correct NetworkMode. Got {retry_actual!r} instead of {expected!r}",
                container_name=name,
            )

        logger.info(f"Retry successful: {name} NetworkMode is now correct")
        return retry['Id']

    async def restart_stack_dependents(
        self,
        session: EndpointSession,
        dependents: List[DependentContainer],
    ) -> List[DependentOutcome]:
        outcomes: List[DependentOutcome] = []
        for dependent in dependents:
            try:
                await self._restart_one(session, dependent)
                outcomes.append(DependentOutcome.ok(dependent))
            except Exception as e:
                logger.error(f"Failed to restart {dependent.name}: {e}")
                outcomes.append(DependentOutcome.failed(dependent, str(e)))
        return outcomes

    async def _restart_one(self, session: EndpointSession, dependent: DependentContainer) -> None:
        pause = self.settings.restart_pause

        if dependent.is_running:
            logger.info(f"Restarting {dependent.name} ({dependent.reason.value})")
            await session.stop(dependent.id)
            await self.sleep(pause)
            await session.start(dependent.id)
            return

        if dependent.is_stopped:
            logger.info(f"Starting {dependent.name} (was stopped, {dependent.reason.value})")
            try:
                await session.start(dependent.id)
                return
            except Exception as start_error:
                logger.info(f"Start of {dependent.name} failed ({start_error}), attempting full restart")

            try:
                await session.stop(dependent.id)
            except Exception as stop_error:
                logger.debug(f"Ignoring stop error for {dependent.name}: {stop_error}")
            await self.sleep(pause)
            await session.start(dependent.id)
