"""
Batch upgrades with bounded concurrency.

Independent upgrades run in parallel, at most max_concurrent_upgrades at
a time. Before anything runs the batch is checked for network-mode
provider/dependent pairs: upgrading both at once makes the provider's
dependent rebuild collide with the dependent's own upgrade.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from portainer.session import EndpointSession
from upgrades.coordinator import UpgradeCoordinator
from upgrades.errors import DependencyConflictError
from upgrades.types import InspectSnapshot, ProgressCallback, UpgradeResult, UpgradeTarget, split_network_mode
from utils.container_id import clean_container_name, normalize_container_id
from utils.keys import make_composite_key

logger = logging.getLogger(__name__)


def target_key(target: UpgradeTarget) -> str:
    return make_composite_key(target.instance_url, target.endpoint_id, target.container_id)


class DependencyConflictDetector:
    """
    Detects container dependency conflicts in upgrade batches.

    When a container uses network_mode: container:X, it shares the network
    namespace with container X (the "provider"). If both containers are
    upgraded simultaneously:

    1. Provider upgrades, gets new container ID
    2. Provider rebuilds its dependent (points to new ID)
    3. Dependent's own upgrade is running in parallel
    4. Both try to recreate the same container

    This detector prevents that scenario by failing fast with a clear error.
    """

    def __init__(self, coordinator: UpgradeCoordinator):
        self.coordinator = coordinator

    async def check_batch(
        self,
        targets: List[UpgradeTarget],
        snapshots: Optional[Dict[str, InspectSnapshot]] = None,
    ) -> Optional[str]:
        """
        Check if an upgrade batch contains a network provider and one of its dependents.

        Args:
            targets: Batch of upgrade targets
            snapshots: Optional pre-fetched {target_key: inspect snapshot};
                       fetched from the endpoints when not provided

        Returns:
            Error message if conflict detected, None otherwise
        """
        if len(targets) < 2:
            return None

        if snapshots is None:
            snapshots = await self._fetch_snapshots(targets)

        for target in targets:
            snapshot = snapshots.get(target_key(target))
            if not snapshot:
                continue

            prefix, provider_ref = split_network_mode((snapshot.get('HostConfig') or {}).get('NetworkMode'))
            if not prefix:
                continue

            provider = self._find_provider_in_batch(provider_ref, target, targets, snapshots)
            if provider is not None:
                dependent_name = clean_container_name(snapshot.get('Name', '')) or target.container_id[:12]
                provider_name = clean_container_name(snapshots[target_key(provider)].get('Name', '')) or provider.container_id[:12]
                conflict_msg = (
                    f"Cannot upgrade containers with network dependencies simultaneously. "
                    f"Container '{dependent_name}' depends on '{provider_name}' for networking. "
                    f"Please upgrade '{provider_name}' first - '{dependent_name}' will be "
                    f"automatically recreated with the new network connection."
                )
                logger.error(f"DEPENDENCY CONFLICT DETECTED: {conflict_msg}")
                return conflict_msg

        return None

    async def ensure_no_conflicts(self, targets: List[UpgradeTarget]) -> None:
        """
        Raises:
            DependencyConflictError: Batch contains a provider and one of its dependents
        """
        conflict_msg = await self.check_batch(targets)
        if conflict_msg:
            raise DependencyConflictError(conflict_msg)

    async def _fetch_snapshots(self, targets: List[UpgradeTarget]) -> Dict[str, InspectSnapshot]:
        snapshots: Dict[str, InspectSnapshot] = {}
        for target in targets:
            session = EndpointSession(
                self.coordinator.client, self.coordinator.registry, target.instance_url, target.endpoint_id
            )
            try:
                snapshots[target_key(target)] = await self.coordinator.details_fetcher.fetch(session, target.container_id)
            except Exception as e:
                logger.warning(f"Could not inspect {target.container_id[:12]} for dependency check: {e}")
        return snapshots

    @staticmethod
    def _find_provider_in_batch(
        provider_ref: str,
        dependent: UpgradeTarget,
        targets: List[UpgradeTarget],
        snapshots: Dict[str, InspectSnapshot],
    ) -> Optional[UpgradeTarget]:
        """Provider can be referenced by name, short ID, or full ID; must be on the same endpoint."""
        for other in targets:
            if other is dependent:
                continue
            if (other.instance_url, str(other.endpoint_id)) != (dependent.instance_url, str(dependent.endpoint_id)):
                continue

            snapshot = snapshots.get(target_key(other)) or {}
            full_id = snapshot.get('Id') or other.container_id
            name = clean_container_name(snapshot.get('Name', ''))
            short_id = normalize_container_id(full_id)

            if provider_ref in (name, full_id, short_id) or provider_ref.startswith(short_id):
                return other
        return None


@dataclass
class BatchResult:
    """Outcome of a batch: successful results and per-target errors."""
    results: Dict[str, UpgradeResult] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    conflict: Optional[str] = None

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "attempted": len(self.results) + len(self.errors),
            "successful": len(self.results),
            "failed": len(self.errors),
        }


class UpgradeBatchRunner:
    """Runs a batch of independent upgrades with bounded parallelism."""

    def __init__(self, coordinator: UpgradeCoordinator, max_concurrent: Optional[int] = None):
        self.coordinator = coordinator
        self.max_concurrent = max_concurrent or coordinator.settings.max_concurrent_upgrades
        self.conflict_detector = DependencyConflictDetector(coordinator)

    async def run(
        self,
        targets: List[UpgradeTarget],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        batch = BatchResult()
        if not targets:
            return batch

        try:
            await self.conflict_detector.ensure_no_conflicts(targets)
        except DependencyConflictError as e:
            batch.conflict = e.message
            batch.errors = {target_key(t): e.message for t in targets}
            return batch

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def upgrade_with_semaphore(target: UpgradeTarget):
            """Execute single upgrade with semaphore to limit concurrency"""
            async with semaphore:
                return await self.coordinator.upgrade(target, progress_callback)

        # Execute all upgrades with bounded parallelism
        results = await asyncio.gather(
            *(upgrade_with_semaphore(t) for t in targets),
            return_exceptions=True,
        )

        for target, result in zip(targets, results):
            key = target_key(target)
            if isinstance(result, BaseException):
                logger.error(f"Upgrade of {target.container_id[:12]} failed: {result}")
                batch.errors[key] = str(result)
            else:
                batch.results[key] = result

        logger.info(f"Batch upgrade complete (parallel, max={self.max_concurrent}): {batch.stats}")
        return batch
