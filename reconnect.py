import logging
import time
from typing import Callable

import constants
import custom_exceptions

logger = logging.getLogger(__name__)


class ReconnectPolicy:
    """Time-boxed reconnect refresh.

    This is not failure-triggered retry: when enabled, the connection is torn
    down and rebuilt once the window has elapsed, whatever its health.
    """

    def __init__(
        self,
        interval: float = constants.RECONNECT_INTERVAL,
        enabled: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self.enabled = enabled
        self._clock = clock
        self.next_reconnect = clock() + interval

    def due(self) -> bool:
        return self.enabled and self._clock() >= self.next_reconnect

    def reset(self) -> None:
        self.next_reconnect = self._clock() + self.interval

    def perform(self, reconnect: Callable[[], None]) -> bool:
        """Call ``reconnect`` if the window has elapsed.

        A failed reconnect is logged; the next attempt is scheduled either way.

        Returns:
            bool: True if a reconnect was attempted
        """
        if not self.due():
            return False

        try:
            logger.debug("automatic reconnect window elapsed, reconnecting")
            reconnect()

        except custom_exceptions.ConnectionFailure as exp:
            logger.error(f"Failed to reconnect to the server: {exp}")

        finally:
            self.reset()

        return True
