"""
Container create-request preparation.

Turns an inspect snapshot into a request body for POST /containers/create.
The snapshot carries runtime-only fields (paths containing the old ID,
restart counters) that the engine rejects or that would tie the new
container to the old one.
"""

import copy
import logging
from typing import Any, Dict, Optional

from upgrades.types import (
    InspectSnapshot,
    PreparedConfig,
    is_shared_network_mode,
    stack_name_from_labels,
)

logger = logging.getLogger(__name__)

# Host config fields bound to the old container's identity or not accepted on create
IDENTITY_BOUND_HOST_FIELDS = (
    'ContainerIDFile',
    'ResolvConfPath',
    'HostnamePath',
    'HostsPath',
    'Runtime',
    'RestartCount',
    'AutoRemove',
)

# Rejected by the engine alongside container:/service: network modes
SHARED_MODE_HOST_FIELDS = ('PortBindings', 'PublishAllPorts')


def clean_host_config(host_config: Optional[Dict[str, Any]], container_name: str = '') -> Dict[str, Any]:
    """
    Strip identity-bound fields and shared-mode conflicts from a HostConfig.

    Args:
        host_config: HostConfig from the inspect snapshot
        container_name: For logging only

    Returns:
        A new HostConfig dict (the input is not modified)
    """
    cleaned = copy.deepcopy(host_config or {})

    for field_name in IDENTITY_BOUND_HOST_FIELDS:
        cleaned.pop(field_name, None)

    network_mode = cleaned.get('NetworkMode') or ''
    if is_shared_network_mode(network_mode):
        for field_name in SHARED_MODE_HOST_FIELDS:
            if cleaned.pop(field_name, None) is not None:
                logger.info(
                    f"Removing {field_name} from {container_name or 'container'} "
                    f"(conflicts with shared network mode {network_mode})"
                )

    restart_policy = cleaned.get('RestartPolicy')
    if isinstance(restart_policy, dict):
        if not restart_policy.get('Name'):
            cleaned['RestartPolicy'] = {'Name': 'no'}
    elif isinstance(restart_policy, str) and restart_policy:
        cleaned['RestartPolicy'] = {'Name': restart_policy}
    else:
        cleaned['RestartPolicy'] = {'Name': 'no'}

    return cleaned


def build_networking_config(snapshot: InspectSnapshot, shared_mode: bool) -> Optional[Dict[str, Any]]:
    """
    Rebuild NetworkingConfig.EndpointsConfig from NetworkSettings.Networks.

    Only IPAMConfig, Links and Aliases are carried over, and only when
    non-empty, and networks with nothing to carry are dropped. Returns None
    in shared mode (the namespace owner's networks apply) or when nothing
    is left.
    """
    if shared_mode:
        return None

    networks = (snapshot.get('NetworkSettings') or {}).get('Networks') or {}
    endpoints_config = {}

    for network_name, network_data in networks.items():
        if not isinstance(network_data, dict):
            continue
        endpoint = {}
        for key in ('IPAMConfig', 'Links', 'Aliases'):
            if network_data.get(key):
                endpoint[key] = network_data[key]
        if endpoint:
            endpoints_config[network_name] = endpoint

    if not endpoints_config:
        return None
    return {'EndpointsConfig': endpoints_config}


def prepare_container_config(snapshot: InspectSnapshot, new_image: str, container_name: str = '') -> PreparedConfig:
    """
    Build a sanitized create request from an inspect snapshot.

    Image is always set; every other field is included only when present
    and non-empty. In shared network mode PortBindings, PublishAllPorts,
    ExposedPorts and NetworkingConfig are never emitted.

    Args:
        snapshot: Inspect payload of the container being replaced
        new_image: Image reference for the new container
        container_name: For logging only

    Returns:
        PreparedConfig with the request body, shared-mode flag and stack name

    Examples:
        >>> prepared = prepare_container_config(snapshot, "nginx:1.27")
        >>> prepared.spec["Image"]
        'nginx:1.27'
    """
    if not new_image:
        raise ValueError("new_image is required")

    config = snapshot.get('Config') or {}
    host_config = clean_host_config(snapshot.get('HostConfig'), container_name)
    shared_mode = is_shared_network_mode(host_config.get('NetworkMode'))

    spec: Dict[str, Any] = {'Image': new_image}

    if config.get('Cmd'):
        spec['Cmd'] = config['Cmd']
    if isinstance(config.get('Env'), list) and config['Env']:
        spec['Env'] = config['Env']
    if not shared_mode and config.get('ExposedPorts'):
        spec['ExposedPorts'] = config['ExposedPorts']
    if host_config:
        spec['HostConfig'] = host_config
    if config.get('Labels'):
        spec['Labels'] = config['Labels']
    if config.get('WorkingDir'):
        spec['WorkingDir'] = config['WorkingDir']
    if config.get('Entrypoint'):
        spec['Entrypoint'] = config['Entrypoint']

    networking_config = build_networking_config(snapshot, shared_mode)
    if networking_config:
        spec['NetworkingConfig'] = networking_config

    return PreparedConfig(
        spec=spec,
        is_shared_network_mode=shared_mode,
        stack_name=stack_name_from_labels(config.get('Labels')),
    )
