"""Interface between the supervisor and a messaging-session driver."""

from typing import Awaitable, Callable, Protocol

from .credential_store import CredentialStoreAdapter
from .models import InboundMessage

PairingCodeHandler = Callable[[str], Awaitable[None]]
ReadyHandler = Callable[[], Awaitable[None]]
DisconnectedHandler = Callable[[str], Awaitable[None]]
AuthFailureHandler = Callable[[str], Awaitable[None]]
MessageHandler = Callable[[InboundMessage], Awaitable[None]]


class SessionDriver(Protocol):
    """
    A single messaging session.

    The driver owns its credentials and persists them through the adapter it
    was constructed with. Lifecycle and message events are delivered to the
    handlers registered with the set_*_handler methods.
    """

    def set_pairing_code_handler(self, handler: PairingCodeHandler) -> None: ...

    def set_ready_handler(self, handler: ReadyHandler) -> None: ...

    def set_disconnected_handler(self, handler: DisconnectedHandler) -> None: ...

    def set_auth_failure_handler(self, handler: AuthFailureHandler) -> None: ...

    def set_message_handler(self, handler: MessageHandler) -> None: ...

    async def initialize(self) -> None: ...

    async def send_message(self, address: str, text: str) -> None: ...

    async def destroy(self) -> None: ...

    async def is_alive(self) -> bool: ...


# Builds a fresh driver around the shared credential adapter
DriverFactory = Callable[[CredentialStoreAdapter], SessionDriver]
