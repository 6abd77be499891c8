"""Shared pytest fixtures for session keeper tests."""

import asyncio
from typing import Optional

import pytest

from src.backoff import BackoffPolicy
from src.credential_store import CredentialStoreAdapter
from src.models import StoreError
from src.supervisor import SessionSupervisor


class MemoryStore:
    """In-memory KeyValueStore with switchable failures."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.fail_get = False
        self.fail_set = False
        self.fail_delete = False
        self.fail_close = False
        self.closed = False

    def set(self, key, value):
        if self.fail_set:
            raise StoreError("set failed")
        self.data[key] = value

    def get(self, key):
        if self.fail_get:
            raise StoreError("get failed")
        return self.data.get(key)

    def delete(self, key):
        if self.fail_delete:
            raise StoreError("delete failed")
        self.data.pop(key, None)

    def close(self):
        if self.fail_close:
            raise StoreError("close failed")
        self.closed = True


class FakeDriver:
    """
    SessionDriver test double.

    on_initialize controls what initialize() emits: "ready", "pairing" or None.
    initialize_gate, when set, holds initialize() until the event fires.
    """

    def __init__(
        self,
        credentials,
        on_initialize: Optional[str] = "ready",
        fail_initialize: bool = False,
        initialize_gate: Optional[asyncio.Event] = None,
    ):
        self.credentials = credentials
        self.on_initialize = on_initialize
        self.fail_initialize = fail_initialize
        self.initialize_gate = initialize_gate
        self.initialized = False
        self.destroyed = False
        self.alive = True
        self.probe_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.sent: list[tuple[str, str]] = []
        self.events: list[str] = []
        self._on_pairing_code = None
        self._on_ready = None
        self._on_disconnected = None
        self._on_auth_failure = None
        self._on_message = None

    def set_pairing_code_handler(self, handler):
        self._on_pairing_code = handler

    def set_ready_handler(self, handler):
        self._on_ready = handler

    def set_disconnected_handler(self, handler):
        self._on_disconnected = handler

    def set_auth_failure_handler(self, handler):
        self._on_auth_failure = handler

    def set_message_handler(self, handler):
        self._on_message = handler

    async def initialize(self):
        self.initialized = True
        self.events.append("initialize")
        if self.initialize_gate is not None:
            await self.initialize_gate.wait()
        if self.fail_initialize:
            raise RuntimeError("browser failed to launch")
        if self.on_initialize == "ready":
            await self.emit_ready()
        elif self.on_initialize == "pairing":
            await self.emit_pairing_code("PAIR-123")

    async def send_message(self, address, text):
        if self.destroyed:
            raise RuntimeError("driver destroyed")
        if self.send_error:
            raise self.send_error
        self.sent.append((address, text))

    async def destroy(self):
        self.events.append("destroy")
        self.destroyed = True

    async def is_alive(self):
        if self.probe_error:
            raise self.probe_error
        return self.alive and not self.destroyed

    async def emit_ready(self):
        await self._on_ready()

    async def emit_pairing_code(self, code):
        await self._on_pairing_code(code)

    async def emit_disconnected(self, reason="NAVIGATION"):
        await self._on_disconnected(reason)

    async def emit_auth_failure(self, reason="bad session"):
        await self._on_auth_failure(reason)

    async def emit_message(self, message):
        await self._on_message(message)


class DriverFactory:
    """Builds FakeDrivers and remembers every instance."""

    def __init__(self):
        self.drivers: list[FakeDriver] = []
        self.on_initialize: Optional[str] = "ready"
        self.fail_initialize = False
        self.initialize_gate: Optional[asyncio.Event] = None

    def __call__(self, credentials):
        driver = FakeDriver(
            credentials,
            on_initialize=self.on_initialize,
            fail_initialize=self.fail_initialize,
            initialize_gate=self.initialize_gate,
        )
        self.drivers.append(driver)
        return driver

    @property
    def current(self) -> FakeDriver:
        return self.drivers[-1]


class FakeGenerator:
    """Generator whose behavior per call comes from a script of values/exceptions."""

    def __init__(self, *script, default="generated reply"):
        self.script = list(script)
        self.default = default
        self.calls: list[str] = []

    async def generate_content(self, text):
        self.calls.append(text)
        if self.script:
            step = self.script.pop(0)
        else:
            step = self.default
        if isinstance(step, BaseException):
            raise step
        if step == "hang":
            await asyncio.sleep(3600)
        return step


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def credentials(memory_store) -> CredentialStoreAdapter:
    return CredentialStoreAdapter(memory_store)


@pytest.fixture
def no_delay() -> BackoffPolicy:
    """Backoff that never sleeps."""
    return BackoffPolicy(base=0, cap=0, jitter_max=0)


@pytest.fixture
def driver_factory() -> DriverFactory:
    return DriverFactory()


@pytest.fixture
def supervisor(driver_factory, credentials, no_delay) -> SessionSupervisor:
    return SessionSupervisor(
        driver_factory=driver_factory,
        credentials=credentials,
        backoff=no_delay,
        reconnect_budget=5,
    )


@pytest.fixture
def settle():
    """Return a coroutine function that waits for pending reconnects and shutdown tasks."""

    async def _settle(supervisor: SessionSupervisor):
        for _ in range(100):
            pending = [t for t in list(supervisor._tasks) if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        await asyncio.sleep(0)

    return _settle
