"""
Resilient container inspect.

Auth retry and IP failover are handled by the EndpointSession; this
module adds the container-ID fallback and the user-facing not-found message.
"""

import logging

from portainer.errors import NotFoundError
from portainer.session import EndpointSession
from upgrades.types import InspectSnapshot
from utils.container_id import FULL_ID_LENGTH, normalize_container_id

logger = logging.getLogger(__name__)


def not_found_message(container_id: str) -> str:
    return (
        "Container not found. It may have been deleted, stopped, or the container ID is incorrect. "
        "Please refresh the container list and try again. "
        f"Container ID: {normalize_container_id(container_id)}..."
    )


class DetailsFetcher:
    """Fetches inspect snapshots, retrying 64-char IDs in short form on 404."""

    async def fetch(self, session: EndpointSession, container_id: str) -> InspectSnapshot:
        """
        Inspect a container.

        Args:
            session: Endpoint session (carries instance URL, endpoint and proxy flag)
            container_id: 64-char or 12-char container ID

        Returns:
            Raw inspect payload

        Raises:
            NotFoundError: Container does not exist under either ID form
            AuthenticationError: Re-authentication failed
            NetworkUnreachableError: Instance unreachable on every URL form
        """
        try:
            return await session.inspect(container_id)
        except NotFoundError:
            if len(container_id) != FULL_ID_LENGTH:
                logger.warning(f"Container {container_id} not found on endpoint {session.endpoint_id}")
                raise NotFoundError(not_found_message(container_id))

        short_id = normalize_container_id(container_id)
        logger.info(f"Container {short_id}... not found by full ID, retrying with short ID")
        try:
            return await session.inspect(short_id)
        except NotFoundError:
            logger.warning(f"Container {short_id} not found on endpoint {session.endpoint_id}")
            raise NotFoundError(not_found_message(container_id))
