"""Health watchdog - detects a driver that died without reporting a disconnect."""

import logging
from typing import Optional

from .heartbeat import HeartbeatEmitter
from .models import SessionState, SilentDeath
from .periodic import PeriodicTask

logger = logging.getLogger(__name__)


class HealthWatchdog(PeriodicTask):
    """
    Probes the current driver's liveness every `interval` seconds.

    A failed probe (False or an exception) is treated as silent death: the
    watchdog stops itself and the heartbeat, asks the supervisor for a full
    rebuild, then restarts both against the new driver. Watchdog rebuilds do
    not consume the reconnect budget. If the rebuild fails, the watchdog
    stays stopped.
    """

    name = "Health watchdog"

    def __init__(self, supervisor, heartbeat: Optional[HeartbeatEmitter] = None, interval: float = 30):
        """
        Args:
            supervisor: SessionSupervisor owning the current driver
            heartbeat: Heartbeat emitter paused while the driver is rebuilt
            interval: Seconds between probes
        """
        super().__init__(interval)
        self.supervisor = supervisor
        self.heartbeat = heartbeat
        self.silent_deaths = 0

    async def check(self):
        """
        Probe the driver that is current right now.

        Raises:
            SilentDeath: If there is no driver, the probe raised, or it returned False
        """
        driver = self.supervisor.handle.current
        if driver is None:
            raise SilentDeath("no current session driver")
        try:
            alive = await driver.is_alive()
        except Exception as e:
            raise SilentDeath(f"liveness probe raised: {e}") from e
        if not alive:
            raise SilentDeath("driver reports it is not running")

    async def probe(self) -> bool:
        """Return True if the current driver reports itself alive."""
        try:
            await self.check()
        except SilentDeath:
            return False
        return True

    async def tick(self):
        if self.supervisor.state is SessionState.FAILED or self.supervisor.closing:
            return
        if self.supervisor.rebuild_in_progress:
            logger.debug("Rebuild in progress, skipping liveness probe")
            return
        try:
            await self.check()
            return
        except SilentDeath as e:
            death = e

        # A rebuild may have started while we were probing the old driver
        if self.supervisor.rebuild_in_progress:
            return

        self.silent_deaths += 1
        logger.error(f"Session driver is unresponsive ({death}), rebuilding")
        await self.stop()
        if self.heartbeat:
            await self.heartbeat.stop()

        rebuilds_before = self.supervisor.rebuilds
        try:
            rebuilt = await self.supervisor.rebuild("watchdog: silent death")
        except Exception as e:
            logger.error(f"Failed to reinitialize session driver: {e}", exc_info=True)
            return

        if self.supervisor.closing or self.supervisor.state is SessionState.FAILED:
            return
        if not rebuilt and self.supervisor.rebuilds != rebuilds_before:
            logger.error(
                f"Watchdog rebuild failed (session {self.supervisor.state.value}); "
                f"liveness monitoring and heartbeat are stopped for the rest of this process"
            )
            return

        # Either our rebuild succeeded or a concurrent one replaced the driver
        self.start()
        if self.heartbeat:
            self.heartbeat.start()
