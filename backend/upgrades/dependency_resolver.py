"""
Finds containers that depend on the upgrade target.

Two kinds of dependency are recognized:

- NETWORK_MODE: the container shares the target's network namespace
  (network_mode: container:<ref> or service:<ref>), where ref is the
  target's name, its old full ID, or (after the upgrade) its new full ID.
- STACK: the container belongs to the same compose project / swarm stack.

A container is never classified twice; NETWORK_MODE wins.
"""

import logging
from typing import Any, Dict, List, Optional

from portainer.session import EndpointSession
from upgrades.types import (
    ContainerIdentity,
    DependencyReason,
    DependentContainer,
    InspectSnapshot,
    split_network_mode,
    stack_name_from_labels,
)
from utils.container_id import clean_container_name, is_full_container_id

logger = logging.getLogger(__name__)


def container_status(snapshot: InspectSnapshot) -> str:
    state = snapshot.get('State') or {}
    return state.get('Status') or ('running' if state.get('Running') else 'exited')


def network_mode_references_target(
    network_mode: Optional[str],
    target_name: str,
    old_id: Optional[str] = None,
    new_id: Optional[str] = None,
) -> bool:
    """
    True if a shared network mode points at the target.

    IDs only match in their full 64-hex form; Docker always records the
    full ID when a network mode was given by ID.

    Examples:
        >>> network_mode_references_target("container:vpn", "vpn")
        True
        >>> network_mode_references_target("container:" + "a" * 64, "vpn", new_id="a" * 64)
        True
        >>> network_mode_references_target("bridge", "vpn")
        False
    """
    prefix, reference = split_network_mode(network_mode)
    if not prefix or not reference:
        return False

    if reference == target_name:
        return True
    if is_full_container_id(reference):
        return reference in (old_id, new_id)
    return False


def classify_dependent(
    snapshot: InspectSnapshot,
    target_name: str,
    old_id: Optional[str] = None,
    new_id: Optional[str] = None,
    stack_name: Optional[str] = None,
) -> Optional[DependencyReason]:
    """Classify one inspected container against the target (None = independent)."""
    network_mode = (snapshot.get('HostConfig') or {}).get('NetworkMode') or ''
    if network_mode_references_target(network_mode, target_name, old_id, new_id):
        return DependencyReason.NETWORK_MODE

    if stack_name:
        labels = (snapshot.get('Config') or {}).get('Labels')
        status = container_status(snapshot)
        if stack_name_from_labels(labels) == stack_name and status in ('running', 'exited', 'stopped'):
            return DependencyReason.STACK

    return None


def _display_name(summary: Dict[str, Any]) -> str:
    names = summary.get('Names') or []
    if names:
        return clean_container_name(names[0])
    return (summary.get('Id') or '')[:12]


class DependencyResolver:
    """Scans an endpoint for containers tied to the upgrade target."""

    async def find(
        self,
        session: EndpointSession,
        target: ContainerIdentity,
        stack_name: Optional[str] = None,
        new_id: Optional[str] = None,
        network_mode_only: bool = False,
    ) -> List[DependentContainer]:
        """
        Find dependents of target on the session's endpoint.

        Args:
            session: Endpoint session
            target: Upgrade target (id is the OLD full ID)
            stack_name: Target's compose project / stack, if any
            new_id: Replacement's full ID (post-upgrade pass)
            network_mode_only: Skip stack classification (pre-upgrade pass)

        Returns:
            Dependents in listing order
        """
        containers = await session.list_containers()
        excluded = {target.id, new_id}
        dependents: List[DependentContainer] = []

        for summary in containers:
            container_id = summary.get('Id') or ''
            if not container_id or container_id in excluded:
                continue

            name = _display_name(summary)
            try:
                snapshot = await session.inspect(container_id)
            except Exception as e:
                logger.debug(f"Could not inspect container {name}: {e}")
                continue

            reason = classify_dependent(
                snapshot,
                target_name=target.name,
                old_id=target.id,
                new_id=new_id,
                stack_name=None if network_mode_only else stack_name,
            )
            if reason is None:
                continue

            status = container_status(snapshot)
            network_mode = (snapshot.get('HostConfig') or {}).get('NetworkMode') or ''
            dependent = DependentContainer(
                id=container_id,
                name=name,
                is_running=status == 'running',
                is_stopped=status in ('exited', 'stopped'),
                reason=reason,
                network_mode=network_mode,
                snapshot=snapshot,
            )
            dependents.append(dependent)
            logger.info(
                f"Found {reason.value} dependency: {name} -> {target.name}"
                + (f" (NetworkMode: {network_mode[:50]})" if reason is DependencyReason.NETWORK_MODE else "")
            )

        return dependents
