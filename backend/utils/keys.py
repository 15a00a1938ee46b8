"""
Utility functions for upgrade lock key management.

Provides the centralized function for creating the composite
keys that identify a container across Portainer instances and endpoints.
"""

from utils.container_id import normalize_container_id


def make_composite_key(instance_url: str, endpoint_id: str, container_id: str) -> str:
    """
    Create composite key in format: instance_url|endpoint_id|container_id

    The container ID is normalized to its 12-char short form so that the
    same container always maps to the same key regardless of which ID
    format the caller had at hand.

    Args:
        instance_url: Portainer instance URL
        endpoint_id: Portainer endpoint ID
        container_id: Container ID (12 or 64 chars)

    Returns:
        Composite key string (e.g., "https://portainer.lan:9443|1|67c5d2141338")
    """
    if not instance_url:
        raise ValueError("instance_url cannot be empty")
    if not endpoint_id:
        raise ValueError("endpoint_id cannot be empty")
    if not container_id:
        raise ValueError("container_id cannot be empty")

    return f"{instance_url.rstrip('/')}|{endpoint_id}|{normalize_container_id(container_id)}"

