"""Main entry point - orchestrates all components."""

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .backoff import BackoffPolicy
from .credential_store import CredentialStoreAdapter, SqliteKeyValueStore, DEFAULT_CREDENTIALS_KEY
from .dispatcher import MessageDispatcher
from .generation import DEFAULT_GEMINI_BASE_URL, GeminiGenerator, GenerationClient
from .heartbeat import HEARTBEAT_TEXT, HeartbeatEmitter
from .models import ConfigError, RebuildPolicy, StoreError
from .pairing import display_pairing_code
from .server import create_app
from .supervisor import SessionSupervisor
from .telegram_driver import TelegramSessionDriver
from .watchdog import HealthWatchdog

logger = logging.getLogger(__name__)


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def resolve_secrets(config: dict) -> tuple[str, str]:
    """
    Return (telegram_token, generator_api_key); environment wins over the file.

    Raises:
        ConfigError: If either secret is missing
    """
    token = os.environ.get("TELEGRAM_BOT_TOKEN") or config.get("telegram", {}).get("token")
    api_key = (
        os.environ.get("GEMINI_API_KEY")
        or os.environ.get("API_KEY")
        or config.get("generator", {}).get("api_key")
    )
    if not token:
        raise ConfigError("Telegram bot token is not set (TELEGRAM_BOT_TOKEN or telegram.token)")
    if not api_key:
        raise ConfigError("API_KEY environment variable is not set (GEMINI_API_KEY, API_KEY or generator.api_key)")
    return token, api_key


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the keeper."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class SessionKeeperApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config
        self.token, api_key = resolve_secrets(config)

        # Server config
        server_config = config.get("server", {})
        self.host = server_config.get("host", "0.0.0.0")
        self.port = int(os.environ.get("PORT") or server_config.get("port", 3000))

        # Credential persistence
        store_config = config.get("store", {})
        self.store = SqliteKeyValueStore(
            db_path=store_config.get("db_path", "~/.local/share/session-keeper/credentials.db"),
        )
        self.credentials = CredentialStoreAdapter(
            self.store,
            key=store_config.get("key", DEFAULT_CREDENTIALS_KEY),
        )

        self.backoff = BackoffPolicy.from_config(config)

        # Reply generation
        generator_config = config.get("generator", {})
        timeout = generator_config.get("timeout_seconds", 30)
        self.generation = GenerationClient(
            GeminiGenerator(
                api_key=api_key,
                model=generator_config.get("model", "gemini-1.5-flash"),
                base_url=generator_config.get("base_url", DEFAULT_GEMINI_BASE_URL),
                timeout=timeout,
            ),
            backoff=self.backoff,
            timeout=timeout,
            max_retries=generator_config.get("max_retries", 3),
        )

        # Session lifecycle
        session_config = config.get("session", {})
        try:
            rebuild_policy = RebuildPolicy(session_config.get("rebuild_policy", "resume"))
        except ValueError as e:
            raise ConfigError(f"Invalid session.rebuild_policy: {e}") from e
        self.supervisor = SessionSupervisor(
            driver_factory=self._make_driver,
            credentials=self.credentials,
            backoff=self.backoff,
            reconnect_budget=session_config.get("reconnect_budget", 5),
            rebuild_policy=rebuild_policy,
            pairing_display=display_pairing_code,
        )

        heartbeat_config = config.get("heartbeat", {})
        address = heartbeat_config.get("address")
        self.heartbeat = HeartbeatEmitter(
            self.supervisor,
            address=str(address) if address is not None else None,
            interval=heartbeat_config.get("interval_seconds", 60),
            text=heartbeat_config.get("text", HEARTBEAT_TEXT),
        )
        self.watchdog = HealthWatchdog(
            self.supervisor,
            heartbeat=self.heartbeat,
            interval=config.get("watchdog", {}).get("interval_seconds", 30),
        )
        self.dispatcher = MessageDispatcher(self.supervisor, self.generation)
        self.supervisor.set_message_handler(self.dispatcher.on_message)

        # Timers stop before the driver is destroyed; watchdog first so it can't restart the heartbeat
        self.supervisor.register_service(self.watchdog)
        self.supervisor.register_service(self.heartbeat)
        self.supervisor.register_service(self.dispatcher)

        self.app = create_app(
            supervisor=self.supervisor,
            watchdog=self.watchdog,
            heartbeat=self.heartbeat,
            config=config,
        )
        self.server: Optional[HealthServer] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    def _make_driver(self, credentials: CredentialStoreAdapter) -> TelegramSessionDriver:
        telegram_config = self.config.get("telegram", {})
        return TelegramSessionDriver(
            token=self.token,
            credentials=credentials,
            allowed_chat_ids=telegram_config.get("allowed_chat_ids"),
            poll_timeout=telegram_config.get("poll_timeout", 10),
            stall_seconds=telegram_config.get("stall_seconds", 45),
            max_network_errors=telegram_config.get("max_network_errors", 5),
        )

    async def run(self) -> int:
        """Start all components and block until the supervisor shuts down."""
        logger.info("Starting session keeper...")

        try:
            self.store.connect()
        except StoreError as e:
            logger.error(f"Credential store unavailable: {e}")
            return 1

        self.server = HealthServer(uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        ))
        server_task = asyncio.create_task(self.server.serve())
        logger.info(f"Health server on http://{self.host}:{self.port}")

        await self.supervisor.start()
        self.watchdog.start()
        self.heartbeat.start()

        exit_code = await self.supervisor.wait_finished()

        self.server.should_exit = True
        try:
            await asyncio.wait_for(server_task, timeout=5)
        except Exception as e:
            logger.warning(f"Health server did not stop cleanly: {e}")

        logger.info("Shutdown complete")
        return exit_code

    def request_shutdown(self, sig: Optional[signal.Signals] = None, exit_code: int = 0):
        """Signal-safe shutdown trigger."""
        if sig is not None:
            logger.info(f"Received signal {sig.name}, shutting down...")
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(
                self.supervisor.shutdown(exit_code=exit_code)
            )

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict):
        """Unhandled errors in background tasks take the same path as a signal."""
        exc = context.get("exception")
        logger.error(f"Uncaught exception: {context.get('message')}", exc_info=exc)
        if not self.supervisor.closing:
            self.request_shutdown(exit_code=1)


async def run_app(app: SessionKeeperApp) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.request_shutdown, sig)
    loop.set_exception_handler(app.handle_loop_exception)
    return await app.run()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Keep a chat bot session alive and answer messages")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config file")
    args = parser.parse_args(argv)

    config = load_config(args.config)

    logging.basicConfig(
        level=config.get("logging", {}).get("level", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        app = SessionKeeperApp(config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    return asyncio.run(run_app(app))


def run():
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    run()
