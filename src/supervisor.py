"""
Session lifecycle supervisor.

Owns the session state machine and the single current driver. Driver
lifecycle events move the state machine; disconnects trigger bounded
reconnection with backoff, auth failures are fatal, and the watchdog can
request an out-of-band rebuild. Only one rebuild runs at a time.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Optional, Protocol

from .backoff import BackoffPolicy
from .credential_store import CredentialStoreAdapter
from .models import (
    DriverAuthFailure,
    DriverDisconnected,
    KeeperError,
    RebuildPolicy,
    SessionState,
    StoreError,
)
from .session_driver import DriverFactory, MessageHandler, SessionDriver

logger = logging.getLogger(__name__)


class BackgroundService(Protocol):
    async def stop(self) -> None: ...


class SessionHandle:
    """Cell holding the current driver. Replaced by swap(), never mutated in place."""

    def __init__(self):
        self._driver: Optional[SessionDriver] = None

    @property
    def current(self) -> Optional[SessionDriver]:
        return self._driver

    def swap(self, driver: Optional[SessionDriver]) -> Optional[SessionDriver]:
        """Install a new driver and return the previous one."""
        previous, self._driver = self._driver, driver
        return previous


class SessionSupervisor:
    """Runs the session state machine around a replaceable SessionDriver."""

    def __init__(
        self,
        driver_factory: DriverFactory,
        credentials: CredentialStoreAdapter,
        backoff: Optional[BackoffPolicy] = None,
        reconnect_budget: int = 5,
        rebuild_policy: RebuildPolicy = RebuildPolicy.RESUME,
        pairing_display: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            driver_factory: Builds a new driver around the credential adapter
            credentials: Adapter shared by every driver instance
            backoff: Delay policy between reconnection attempts
            reconnect_budget: Reconnection attempts allowed before FAILED
            rebuild_policy: Whether rebuilt drivers resume or re-pair
            pairing_display: Renders a pairing code for the operator
        """
        self.driver_factory = driver_factory
        self.credentials = credentials
        self.backoff = backoff or BackoffPolicy()
        self.reconnect_budget = reconnect_budget
        self.rebuild_policy = rebuild_policy
        self.pairing_display = pairing_display

        self.handle = SessionHandle()
        self.state = SessionState.INITIALIZING
        self.reconnect_attempts = 0
        self.rebuilds = 0
        self.last_rebuild_reason: Optional[str] = None
        self.connected_since: Optional[datetime] = None
        self.last_pairing_code_at: Optional[datetime] = None
        self.exit_code: Optional[int] = None
        self.failure: Optional[KeeperError] = None

        self._message_handler: Optional[MessageHandler] = None
        self._services: list[BackgroundService] = []
        self._rebuild_lock = asyncio.Lock()
        self._reconnect_task: Optional[asyncio.Task] = None
        # Task waiting on a rebuilt driver's initialize(); shutdown cancels it
        self._rebuild_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._closing = False
        self._finished = asyncio.Event()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_message_handler(self, handler: MessageHandler):
        """Set the handler registered on every driver for inbound messages."""
        self._message_handler = handler

    def register_service(self, service: BackgroundService):
        """Register a background service stopped on failure and shutdown (in order)."""
        self._services.append(service)

    @property
    def rebuild_in_progress(self) -> bool:
        return self._rebuild_lock.locked()

    @property
    def closing(self) -> bool:
        return self._closing

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "reconnect_attempts": self.reconnect_attempts,
            "reconnect_budget": self.reconnect_budget,
            "rebuilds": self.rebuilds,
            "last_rebuild_reason": self.last_rebuild_reason,
            "rebuild_in_progress": self.rebuild_in_progress,
            "failure": f"{type(self.failure).__name__}: {self.failure}" if self.failure else None,
            "connected_since": self.connected_since.isoformat() if self.connected_since else None,
            "last_pairing_code_at": (
                self.last_pairing_code_at.isoformat() if self.last_pairing_code_at else None
            ),
        }

    def _set_state(self, state: SessionState, reason: str = ""):
        if state is self.state:
            return
        logger.info(
            f"Session state {self.state.value} -> {state.value}" + (f" ({reason})" if reason else "")
        )
        self.state = state

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _is_current(self, driver: SessionDriver, event: str) -> bool:
        if driver is not self.handle.current:
            logger.debug(f"Ignoring {event} from a replaced driver")
            return False
        return True

    # ------------------------------------------------------------------
    # Driver lifecycle
    # ------------------------------------------------------------------

    def _build_driver(self) -> SessionDriver:
        driver = self.driver_factory(self.credentials)
        driver.set_pairing_code_handler(partial(self._on_pairing_code, driver))
        driver.set_ready_handler(partial(self._on_ready, driver))
        driver.set_disconnected_handler(partial(self._on_disconnected, driver))
        driver.set_auth_failure_handler(partial(self._on_auth_failure, driver))
        if self._message_handler:
            driver.set_message_handler(self._message_handler)
        return driver

    async def start(self):
        """Construct the first driver and start it."""
        driver = self._build_driver()
        self.handle.swap(driver)
        self._set_state(SessionState.INITIALIZING, "starting")
        try:
            await driver.initialize()
        except Exception as e:
            logger.error(f"Session driver failed to start: {e}", exc_info=True)
            self._schedule_reconnect(f"start failed: {e}")

    async def rebuild(self, reason: str) -> bool:
        """
        Destroy the current driver and start a fresh one.

        Returns:
            True if the new driver initialized, False if it failed or the
            request was ignored (rebuild already running, FAILED or closing)
        """
        if self.state is SessionState.FAILED or self._closing:
            logger.info(f"Rebuild ({reason}) ignored: supervisor is {self.state.value}")
            return False
        if self._rebuild_lock.locked():
            logger.info(f"Rebuild ({reason}) ignored: another rebuild is in progress")
            return False

        async with self._rebuild_lock:
            logger.info(f"Rebuilding session driver ({reason})")
            self.rebuilds += 1
            self.last_rebuild_reason = reason

            old = self.handle.swap(None)
            if old is not None:
                try:
                    await old.destroy()
                except Exception as e:
                    logger.warning(f"Error destroying old driver: {e}")

            if self.rebuild_policy is RebuildPolicy.REPAIR:
                try:
                    await asyncio.to_thread(self.credentials.clear)
                except StoreError as e:
                    logger.error(f"Could not clear credentials before re-pairing: {e}")

            if self._closing:
                return False

            driver = self._build_driver()
            self.handle.swap(driver)
            self.connected_since = None
            self._set_state(SessionState.INITIALIZING, f"rebuild: {reason}")
            self._rebuild_task = asyncio.current_task()
            try:
                await driver.initialize()
            except Exception as e:
                logger.error(f"Rebuilt driver failed to initialize: {e}", exc_info=True)
                return False
            finally:
                self._rebuild_task = None

            if self._closing:
                logger.info("Shutdown started while the rebuilt driver initialized")
                return False
            return True

    async def _on_pairing_code(self, driver: SessionDriver, code: str):
        if not self._is_current(driver, "pairing code") or self.state is SessionState.FAILED:
            return
        self.last_pairing_code_at = datetime.now(timezone.utc)
        self._set_state(SessionState.PAIRING_REQUIRED, "pairing code received")
        if self.pairing_display:
            try:
                self.pairing_display(code)
            except Exception as e:
                logger.error(f"Could not display pairing code: {e}")

    async def _on_ready(self, driver: SessionDriver):
        if not self._is_current(driver, "ready") or self.state is SessionState.FAILED:
            return
        self._set_state(SessionState.CONNECTED, "session ready")
        self.reconnect_attempts = 0
        self.connected_since = datetime.now(timezone.utc)
        # Driver recovered on its own while a reconnect was still backing off
        if (
            self._reconnect_task
            and not self._reconnect_task.done()
            and not self.rebuild_in_progress
            and self._reconnect_task is not asyncio.current_task()
        ):
            self._reconnect_task.cancel()

    async def _on_disconnected(self, driver: SessionDriver, reason: str):
        if not self._is_current(driver, "disconnect") or self.state is SessionState.FAILED:
            return
        logger.warning(f"Session disconnected: {reason}")
        self._set_state(SessionState.DISCONNECTED, reason)
        self._schedule_reconnect(reason)

    async def _on_auth_failure(self, driver: SessionDriver, reason: str):
        if not self._is_current(driver, "auth failure") or self.state is SessionState.FAILED:
            return
        logger.error(f"Authentication failure: {reason}")
        try:
            await asyncio.to_thread(self.credentials.clear)
        except StoreError as e:
            logger.error(f"Failed to clear stale credentials: {e}")
        self._fail(DriverAuthFailure(reason))

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self, reason: str):
        if self._closing or self.state is SessionState.FAILED:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            logger.info(f"Reconnect already pending, ignoring: {reason}")
            return
        self._reconnect_task = self._spawn(self._reconnect(reason))

    async def _reconnect(self, reason: str):
        self._set_state(SessionState.RECONNECTING, reason)
        self.reconnect_attempts += 1
        if self.reconnect_attempts > self.reconnect_budget:
            logger.error(
                f"Max reconnection attempts ({self.reconnect_budget}) reached. "
                f"Manual intervention required."
            )
            self._fail(DriverDisconnected(f"reconnect budget exhausted, last disconnect: {reason}"))
            return

        delay = self.backoff.delay(self.reconnect_attempts)
        logger.info(
            f"Reconnect attempt {self.reconnect_attempts}/{self.reconnect_budget} in {delay:.2f}s"
        )
        await asyncio.sleep(delay)
        if self._closing or self.state is SessionState.FAILED:
            return

        if self._rebuild_lock.locked():
            # A watchdog rebuild is already replacing the driver
            logger.info("Rebuild already in progress, reconnect attempt skipped")
            return
        if not await self.rebuild(f"reconnect attempt {self.reconnect_attempts}"):
            self._reconnect_task = None
            self._schedule_reconnect("rebuilt driver failed to start")

    # ------------------------------------------------------------------
    # Failure and shutdown
    # ------------------------------------------------------------------

    def _fail(self, error: KeeperError):
        self.failure = error
        self._set_state(SessionState.FAILED, f"{type(error).__name__}: {error}")
        self._spawn(self.shutdown(exit_code=1))

    async def send_message(self, address: str, text: str):
        """Send through whichever driver is current right now."""
        driver = self.handle.current
        if driver is None:
            raise DriverDisconnected("No active session driver")
        await driver.send_message(address, text)

    async def shutdown(self, exit_code: int = 0) -> int:
        """
        Stop background services, destroy the driver and close the store.

        Safe to call more than once; later calls wait for the first.

        Returns:
            exit_code, or 1 if any release step failed
        """
        if self._closing:
            await self._finished.wait()
            return self.exit_code
        self._closing = True
        status = exit_code
        logger.info("Shutting down session supervisor...")

        for service in self._services:
            try:
                await service.stop()
            except Exception as e:
                logger.error(f"Error stopping {type(service).__name__}: {e}")
                status = 1

        current = asyncio.current_task()
        if self._reconnect_task and self._reconnect_task is not current:
            self._reconnect_task.cancel()
        rebuild_task = self._rebuild_task
        if rebuild_task and rebuild_task is not current and not rebuild_task.done():
            logger.info("Cancelling in-flight driver rebuild")
            rebuild_task.cancel()

        # A rebuild still destroying the old driver sees _closing and stops
        async with self._rebuild_lock:
            driver = self.handle.swap(None)
        if driver is not None:
            try:
                await driver.destroy()
            except Exception as e:
                logger.error(f"Error destroying session driver: {e}")
                status = 1

        try:
            await asyncio.to_thread(self.credentials.close)
        except Exception as e:
            logger.error(f"Error closing credential store: {e}")
            status = 1

        self.exit_code = status
        self._finished.set()
        logger.info(f"Session supervisor stopped (exit code {status})")
        return status

    async def wait_finished(self) -> int:
        """Block until shutdown completes; returns the exit code."""
        await self._finished.wait()
        return self.exit_code
