"""Data models for the session keeper."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional


class SessionState(Enum):
    """Lifecycle state of the single messaging session."""
    INITIALIZING = "initializing"            # Driver starting, no pairing code or ready yet
    PAIRING_REQUIRED = "pairing_required"    # Waiting for the operator to scan the code
    CONNECTED = "connected"                  # Session live, messages flowing
    DISCONNECTED = "disconnected"            # Driver reported a disconnect
    RECONNECTING = "reconnecting"            # Backing off before a rebuild
    FAILED = "failed"                        # Terminal, operator intervention required


class RebuildPolicy(Enum):
    """What a rebuilt driver does with stored credentials."""
    RESUME = "resume"  # Reuse stored credentials
    REPAIR = "repair"  # Clear stored credentials, force a fresh pairing


class KeeperError(Exception):
    """Base class for session keeper errors."""


class ConfigError(KeeperError):
    """Required startup configuration is missing or invalid."""


class StoreError(KeeperError):
    """Credential persistence I/O failure."""


class DriverAuthFailure(KeeperError):
    """The messaging platform rejected the session credentials."""


class DriverDisconnected(KeeperError):
    """The driver reported that the session dropped."""


class SilentDeath(KeeperError):
    """The driver stopped responding without reporting a disconnect."""


class GeneratorError(KeeperError):
    """The text-generation backend failed or returned an unusable response."""


@dataclass
class InboundMessage:
    """A message received on the session, consumed once by the dispatcher."""
    address: str
    body: str
    is_group: bool = False
    is_status: bool = False
    is_ephemeral: bool = False
    has_quoted_message: bool = False
    # Supplied by the driver; returns the quoted message body or None
    fetch_quoted_body: Optional[Callable[[], Awaitable[Optional[str]]]] = field(
        default=None, repr=False, compare=False
    )

    async def get_quoted_body(self) -> Optional[str]:
        """Fetch the body of the quoted message, if the driver can provide it."""
        if not self.has_quoted_message or self.fetch_quoted_body is None:
            return None
        return await self.fetch_quoted_body()


@dataclass
class RetryContext:
    """Attempt state for one generation request."""
    text: str
    attempt: int = 0
