"""Unit tests for the SessionSupervisor state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.backoff import BackoffPolicy
from src.models import DriverAuthFailure, DriverDisconnected, RebuildPolicy, SessionState
from src.supervisor import SessionHandle, SessionSupervisor


class TestSessionHandle:
    def test_swap_returns_previous(self):
        handle = SessionHandle()
        first, second = object(), object()

        assert handle.swap(first) is None
        assert handle.swap(second) is first
        assert handle.current is second


class TestStartup:
    """INITIALIZING -> PAIRING_REQUIRED -> CONNECTED."""

    @pytest.mark.asyncio
    async def test_resume_goes_straight_to_connected(self, supervisor, driver_factory):
        await supervisor.start()

        assert supervisor.state is SessionState.CONNECTED
        assert supervisor.handle.current is driver_factory.current
        assert supervisor.connected_since is not None

    @pytest.mark.asyncio
    async def test_pairing_code_then_ready(self, driver_factory, credentials, no_delay):
        shown = []
        supervisor = SessionSupervisor(
            driver_factory, credentials, backoff=no_delay, pairing_display=shown.append
        )
        driver_factory.on_initialize = "pairing"

        await supervisor.start()
        assert supervisor.state is SessionState.PAIRING_REQUIRED
        assert shown == ["PAIR-123"]
        assert supervisor.last_pairing_code_at is not None

        await driver_factory.current.emit_ready()
        assert supervisor.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_pairing_display_error_is_contained(self, driver_factory, credentials, no_delay):
        def broken_display(code):
            raise OSError("no terminal")

        supervisor = SessionSupervisor(
            driver_factory, credentials, backoff=no_delay, pairing_display=broken_display
        )
        driver_factory.on_initialize = "pairing"

        await supervisor.start()

        assert supervisor.state is SessionState.PAIRING_REQUIRED

    @pytest.mark.asyncio
    async def test_message_handler_registered_on_driver(self, supervisor, driver_factory):
        handler = AsyncMock()
        supervisor.set_message_handler(handler)

        await supervisor.start()

        assert driver_factory.current._on_message is handler

    @pytest.mark.asyncio
    async def test_start_failure_schedules_reconnect(self, supervisor, driver_factory, settle):
        driver_factory.fail_initialize = True

        await supervisor.start()
        driver_factory.fail_initialize = False
        await settle(supervisor)

        assert supervisor.state is SessionState.CONNECTED
        assert len(driver_factory.drivers) == 2
        assert driver_factory.drivers[0].destroyed


class TestReconnection:
    """Disconnects trigger bounded, backed-off rebuilds."""

    @pytest.mark.asyncio
    async def test_disconnect_rebuilds_driver(self, supervisor, driver_factory, settle):
        await supervisor.start()
        first = driver_factory.current

        await first.emit_disconnected("NAVIGATION")
        await settle(supervisor)

        second = driver_factory.current
        assert second is not first
        assert first.destroyed
        assert second.initialized
        assert supervisor.handle.current is second
        assert supervisor.state is SessionState.CONNECTED
        # Reset on re-entering CONNECTED
        assert supervisor.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_old_driver_destroyed_before_new_one_built(self, supervisor, driver_factory, settle):
        await supervisor.start()
        first = driver_factory.current
        order = []
        original_call = driver_factory.__class__.__call__

        async def tracking_destroy():
            order.append("destroy-old")
            first.destroyed = True

        first.destroy = tracking_destroy

        def tracking_factory(credentials):
            order.append("build-new")
            return original_call(driver_factory, credentials)

        supervisor.driver_factory = tracking_factory

        await first.emit_disconnected()
        await settle(supervisor)

        assert order == ["destroy-old", "build-new"]

    @pytest.mark.asyncio
    async def test_counter_increments_without_connected(self, supervisor, driver_factory, settle):
        await supervisor.start()
        driver_factory.on_initialize = None  # rebuilt drivers never become ready

        for expected in range(1, 4):
            await driver_factory.current.emit_disconnected()
            await settle(supervisor)
            assert supervisor.reconnect_attempts == expected
            assert supervisor.state is SessionState.INITIALIZING

    @pytest.mark.asyncio
    async def test_budget_exhaustion_fails_and_stops_reconnecting(
        self, supervisor, driver_factory, memory_store, settle
    ):
        await supervisor.start()
        driver_factory.on_initialize = None

        for _ in range(supervisor.reconnect_budget):
            await driver_factory.current.emit_disconnected()
            await settle(supervisor)
        assert supervisor.state is SessionState.INITIALIZING
        assert len(driver_factory.drivers) == 1 + supervisor.reconnect_budget

        # The next disconnect is over budget
        await driver_factory.current.emit_disconnected()
        await settle(supervisor)

        assert supervisor.state is SessionState.FAILED
        assert len(driver_factory.drivers) == 1 + supervisor.reconnect_budget
        assert await supervisor.wait_finished() == 1
        assert isinstance(supervisor.failure, DriverDisconnected)
        assert supervisor.snapshot()["failure"].startswith("DriverDisconnected: reconnect budget exhausted")
        assert driver_factory.current.destroyed
        assert memory_store.closed

        # Nothing further happens after FAILED
        await driver_factory.current.emit_disconnected()
        await settle(supervisor)
        assert len(driver_factory.drivers) == 1 + supervisor.reconnect_budget

    @pytest.mark.asyncio
    async def test_failed_rebuilds_consume_budget(self, supervisor, driver_factory, settle):
        await supervisor.start()
        driver_factory.fail_initialize = True

        await driver_factory.current.emit_disconnected()
        await settle(supervisor)

        assert supervisor.state is SessionState.FAILED
        # One rebuild per budgeted attempt, none after
        assert len(driver_factory.drivers) == 1 + supervisor.reconnect_budget

    @pytest.mark.asyncio
    async def test_backoff_delay_uses_attempt_count(self, driver_factory, credentials, settle):
        backoff = MagicMock(spec=BackoffPolicy)
        backoff.delay.return_value = 0
        supervisor = SessionSupervisor(driver_factory, credentials, backoff=backoff)
        await supervisor.start()
        driver_factory.on_initialize = None

        await driver_factory.current.emit_disconnected()
        await settle(supervisor)
        await driver_factory.current.emit_disconnected()
        await settle(supervisor)

        assert [c.args[0] for c in backoff.delay.call_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_disconnects_schedule_one_reconnect(self, driver_factory, credentials, settle):
        supervisor = SessionSupervisor(
            driver_factory, credentials, backoff=BackoffPolicy(base=0.01, cap=0.01, jitter_max=0)
        )
        await supervisor.start()
        first = driver_factory.current

        await first.emit_disconnected()
        await first.emit_disconnected()
        await settle(supervisor)

        assert len(driver_factory.drivers) == 2
        assert supervisor.rebuilds == 1

    @pytest.mark.asyncio
    async def test_ready_during_backoff_cancels_reconnect(self, driver_factory, credentials, settle):
        supervisor = SessionSupervisor(
            driver_factory, credentials, backoff=BackoffPolicy(base=5, cap=5, jitter_max=0)
        )
        await supervisor.start()
        driver = driver_factory.current

        await driver.emit_disconnected()
        await asyncio.sleep(0)
        assert supervisor.state is SessionState.RECONNECTING

        await driver.emit_ready()
        await settle(supervisor)

        assert supervisor.state is SessionState.CONNECTED
        assert len(driver_factory.drivers) == 1
        assert supervisor.reconnect_attempts == 0


class TestAuthFailure:
    """Auth failures clear credentials and are terminal."""

    @pytest.mark.asyncio
    async def test_auth_failure_clears_credentials_and_fails(
        self, supervisor, driver_factory, credentials, settle
    ):
        credentials.save({"owner_chat_id": 1})
        await supervisor.start()

        await driver_factory.current.emit_auth_failure("token revoked")
        await settle(supervisor)

        assert supervisor.state is SessionState.FAILED
        assert credentials.load() is None
        assert isinstance(supervisor.failure, DriverAuthFailure)
        assert await supervisor.wait_finished() == 1
        assert driver_factory.current.destroyed

    @pytest.mark.asyncio
    async def test_auth_failure_with_store_error_still_fails(
        self, supervisor, driver_factory, memory_store, settle
    ):
        await supervisor.start()
        memory_store.fail_delete = True

        await driver_factory.current.emit_auth_failure()
        await settle(supervisor)

        assert supervisor.state is SessionState.FAILED
        assert supervisor.exit_code == 1


class TestRebuild:
    """Out-of-band rebuilds (used by the watchdog)."""

    @pytest.mark.asyncio
    async def test_rebuild_does_not_touch_reconnect_counter(self, supervisor, driver_factory):
        await supervisor.start()
        supervisor.reconnect_attempts = 3
        driver_factory.on_initialize = None

        assert await supervisor.rebuild("watchdog: silent death") is True

        assert supervisor.reconnect_attempts == 3
        assert supervisor.state is SessionState.INITIALIZING
        assert supervisor.rebuilds == 1
        assert supervisor.last_rebuild_reason == "watchdog: silent death"

    @pytest.mark.asyncio
    async def test_rebuild_returns_false_when_new_driver_fails(self, supervisor, driver_factory):
        await supervisor.start()
        driver_factory.fail_initialize = True

        assert await supervisor.rebuild("watchdog") is False
        assert supervisor.handle.current is driver_factory.current

    @pytest.mark.asyncio
    async def test_rebuild_ignored_after_failure(self, supervisor, driver_factory, settle):
        await supervisor.start()
        await driver_factory.current.emit_auth_failure()
        await settle(supervisor)

        assert await supervisor.rebuild("watchdog") is False
        assert len(driver_factory.drivers) == 1

    @pytest.mark.asyncio
    async def test_concurrent_rebuild_is_rejected(self, supervisor, driver_factory):
        await supervisor.start()
        gate = asyncio.Event()
        first = driver_factory.current

        async def slow_destroy():
            await gate.wait()
            first.destroyed = True

        first.destroy = slow_destroy

        in_flight = asyncio.create_task(supervisor.rebuild("watchdog"))
        await asyncio.sleep(0)
        assert supervisor.rebuild_in_progress

        assert await supervisor.rebuild("disconnect") is False

        gate.set()
        assert await in_flight is True
        assert len(driver_factory.drivers) == 2

    @pytest.mark.asyncio
    async def test_repair_policy_clears_credentials(self, driver_factory, credentials, no_delay):
        supervisor = SessionSupervisor(
            driver_factory, credentials, backoff=no_delay, rebuild_policy=RebuildPolicy.REPAIR
        )
        credentials.save({"owner_chat_id": 1})
        await supervisor.start()

        await supervisor.rebuild("watchdog")

        assert credentials.load() is None

    @pytest.mark.asyncio
    async def test_resume_policy_keeps_credentials(self, supervisor, credentials):
        credentials.save({"owner_chat_id": 1})
        await supervisor.start()

        await supervisor.rebuild("watchdog")

        assert credentials.load() == {"owner_chat_id": 1}

    @pytest.mark.asyncio
    async def test_destroy_error_does_not_block_rebuild(self, supervisor, driver_factory):
        await supervisor.start()
        driver_factory.current.destroy = AsyncMock(side_effect=RuntimeError("already dead"))

        assert await supervisor.rebuild("watchdog") is True
        assert len(driver_factory.drivers) == 2


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_sends_through_current_driver(self, supervisor, driver_factory):
        await supervisor.start()

        await supervisor.send_message("1001", "hello")

        assert driver_factory.current.sent == [("1001", "hello")]

    @pytest.mark.asyncio
    async def test_raises_without_driver(self, supervisor):
        with pytest.raises(DriverDisconnected):
            await supervisor.send_message("1001", "hello")


class TestShutdown:
    """Coordinated release of timers, driver and store."""

    @pytest.mark.asyncio
    async def test_services_stopped_before_driver_destroyed(self, supervisor, driver_factory, memory_store):
        order = []
        service = MagicMock()
        service.stop = AsyncMock(side_effect=lambda: order.append("service"))
        supervisor.register_service(service)
        await supervisor.start()
        driver = driver_factory.current
        original_destroy = driver.destroy

        async def tracking_destroy():
            order.append("driver")
            await original_destroy()

        driver.destroy = tracking_destroy

        assert await supervisor.shutdown() == 0
        assert order == ["service", "driver"]
        assert memory_store.closed
        assert supervisor.handle.current is None

    @pytest.mark.asyncio
    async def test_release_error_returns_one(self, supervisor, driver_factory):
        await supervisor.start()
        driver_factory.current.destroy = AsyncMock(side_effect=RuntimeError("stuck"))

        assert await supervisor.shutdown() == 1

    @pytest.mark.asyncio
    async def test_store_close_error_returns_one(self, supervisor, memory_store):
        await supervisor.start()
        memory_store.fail_close = True

        assert await supervisor.shutdown() == 1

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, supervisor, driver_factory):
        await supervisor.start()
        driver = driver_factory.current
        driver.destroy = AsyncMock()

        results = await asyncio.gather(supervisor.shutdown(), supervisor.shutdown())

        assert results == [0, 0]
        driver.destroy.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_reconnect(self, driver_factory, credentials):
        supervisor = SessionSupervisor(
            driver_factory, credentials, backoff=BackoffPolicy(base=5, cap=5, jitter_max=0)
        )
        await supervisor.start()
        await driver_factory.current.emit_disconnected()
        await asyncio.sleep(0)

        await supervisor.shutdown()
        await asyncio.sleep(0)

        assert supervisor._reconnect_task.cancelled() or supervisor._reconnect_task.done()
        assert len(driver_factory.drivers) == 1

    @pytest.mark.asyncio
    async def test_shutdown_cancels_rebuild_waiting_on_initialize(self, supervisor, driver_factory):
        await supervisor.start()
        first = driver_factory.current
        driver_factory.initialize_gate = asyncio.Event()
        rebuild = asyncio.create_task(supervisor.rebuild("watchdog: silent death"))
        for _ in range(100):
            if len(driver_factory.drivers) == 2:
                break
            await asyncio.sleep(0)
        rebuilt = driver_factory.current

        assert await supervisor.shutdown() == 0

        with pytest.raises(asyncio.CancelledError):
            await rebuild
        assert first.destroyed
        assert rebuilt.events == ["initialize", "destroy"]
        assert supervisor.handle.current is None
        assert not supervisor.rebuild_in_progress

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_rebuild_destroying_old_driver(self, supervisor, driver_factory):
        await supervisor.start()
        first = driver_factory.current
        gate = asyncio.Event()
        original_destroy = first.destroy

        async def slow_destroy():
            await gate.wait()
            await original_destroy()

        first.destroy = slow_destroy
        rebuild = asyncio.create_task(supervisor.rebuild("reconnect attempt 1"))
        await asyncio.sleep(0)
        shutdown = asyncio.create_task(supervisor.shutdown())
        await asyncio.sleep(0)

        assert not shutdown.done()
        gate.set()
        assert await rebuild is False
        assert await shutdown == 0
        # No replacement driver was built once shutdown had started
        assert len(driver_factory.drivers) == 1
        assert first.destroyed
        assert supervisor.handle.current is None

    @pytest.mark.asyncio
    async def test_rebuild_reports_failure_if_shutdown_starts_during_initialize(
        self, supervisor, driver_factory
    ):
        await supervisor.start()
        original_factory = supervisor.driver_factory

        def closing_factory(credentials):
            driver = original_factory(credentials)
            original_initialize = driver.initialize

            async def initialize():
                await original_initialize()
                supervisor._closing = True

            driver.initialize = initialize
            return driver

        supervisor.driver_factory = closing_factory

        assert await supervisor.rebuild("watchdog: silent death") is False

    @pytest.mark.asyncio
    async def test_events_after_shutdown_ignored(self, supervisor, driver_factory, settle):
        await supervisor.start()
        driver = driver_factory.current
        await supervisor.shutdown()

        await driver.emit_disconnected()
        await settle(supervisor)

        assert len(driver_factory.drivers) == 1


def test_snapshot_shape(supervisor):
    snapshot = supervisor.snapshot()

    assert snapshot["state"] == "initializing"
    assert snapshot["reconnect_attempts"] == 0
    assert snapshot["reconnect_budget"] == 5
    assert snapshot["rebuild_in_progress"] is False
    assert snapshot["connected_since"] is None
    assert snapshot["failure"] is None
