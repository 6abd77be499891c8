"""Keep-alive messages so the platform doesn't drop an idle session."""

import logging
from typing import Optional

from .periodic import PeriodicTask

logger = logging.getLogger(__name__)

HEARTBEAT_TEXT = "still alive"


class HeartbeatEmitter(PeriodicTask):
    """Sends a fixed message to a configured address every `interval` seconds."""

    name = "Heartbeat"

    def __init__(
        self,
        supervisor,
        address: Optional[str],
        interval: float = 60,
        text: str = HEARTBEAT_TEXT,
    ):
        super().__init__(interval)
        self.supervisor = supervisor
        self.address = address
        self.text = text
        self.sent = 0
        self.failures = 0

    def start(self):
        if not self.address:
            logger.info("Heartbeat disabled (no heartbeat address configured)")
            return
        super().start()

    async def tick(self):
        # Failures are logged only; the watchdog decides whether the driver is dead
        try:
            await self.supervisor.send_message(self.address, self.text)
            self.sent += 1
        except Exception as e:
            self.failures += 1
            logger.error(f"Error sending keep-alive message: {e}")
