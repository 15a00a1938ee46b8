"""
Confirms that a stopped/removed container has actually gone away.
"""

import asyncio
import logging
import time

from models.upgrade_models import UpgradeSettings
from portainer.errors import NotFoundError
from portainer.session import EndpointSession
from upgrades.types import Clock, Sleep

logger = logging.getLogger(__name__)

STOPPED_STATUSES = ('exited', 'stopped')


class StopMonitor:
    """
    Polls inspect until the container reports stopped or disappears (404).

    Best effort: on timeout it returns False with a warning and the caller
    carries on.
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

    async def wait_until_stopped(self, session: EndpointSession, container_id: str) -> bool:
        """
        Returns:
            True if the container stopped or was removed, False on timeout
        """
        short_id = container_id[:12]
        start = self.clock()

        while self.clock() - start < self.settings.stop_max_wait:
            try:
                snapshot = await session.inspect(container_id)
            except NotFoundError:
                logger.info(f"Container {short_id} no longer exists, treating as stopped")
                return True
            except Exception as e:
                logger.debug(f"Stop poll for {short_id} failed: {e}")
            else:
                status = (snapshot.get('State') or {}).get('Status', '')
                if status in STOPPED_STATUSES:
                    logger.info(f"Container {short_id} stopped (status: {status})")
                    return True

            await self.sleep(self.settings.stop_interval)

        logger.warning(
            f"Container {short_id} did not stop within timeout "
            f"({self.settings.stop_max_wait:.0f}s), proceeding anyway"
        )
        return False
