"""Telegram implementation of the session driver."""

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Callable, Optional

from telegram import Update
from telegram.constants import ChatType
from telegram.error import Conflict, Forbidden, InvalidToken, NetworkError, TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)
from telegram.request import HTTPXRequest

from .credential_store import CredentialStoreAdapter
from .models import InboundMessage, StoreError
from .periodic import PeriodicTask
from .session_driver import (
    AuthFailureHandler,
    DisconnectedHandler,
    MessageHandler as InboundHandler,
    PairingCodeHandler,
    ReadyHandler,
)

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than this
MAX_MESSAGE_LENGTH = 4096


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split text into chunks Telegram accepts, preferring line breaks."""
    if len(text) <= limit:
        return [text]
    chunks = []
    while len(text) > limit:
        cut = text.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


class PollTrackingRequest(HTTPXRequest):
    """
    Request object used only for getUpdates.

    Calls on_success after every HTTP 200 so the driver knows when polling
    last worked. Timeouts are retried silently inside the updater and never
    reach its error callback, so this is the only reliable stall signal.
    """

    __slots__ = ("_on_success",)

    def __init__(self, on_success: Callable[[], None], **kwargs):
        super().__init__(**kwargs)
        self._on_success = on_success

    async def do_request(self, *args, **kwargs):
        code, payload = await super().do_request(*args, **kwargs)
        if code == HTTPStatus.OK:
            self._on_success()
        return code, payload


class PollingStallMonitor(PeriodicTask):
    """Asks the driver to check its last successful poll."""

    name = "Polling stall monitor"

    def __init__(self, driver: "TelegramSessionDriver", interval: float):
        super().__init__(interval)
        self.driver = driver

    async def tick(self):
        await self.driver.check_polling()


class TelegramSessionDriver:
    """
    Telegram bot session driven by long polling.

    Pairing: with no stored credentials the driver issues a one-time deep
    link (https://t.me/<bot>?start=<code>). The first private chat that sends
    /start <code> becomes the owner and the credentials are saved. Stored
    credentials for the same bot resume straight to ready.

    Session loss is reported once per driver:
    - no successful getUpdates for stall_seconds: getMe decides whether the
      token was revoked (auth failure) or the network is gone (disconnect)
    - a run of polling errors, or a polling conflict with another instance
      (disconnect)
    - an invalid or revoked token (auth failure)
    """

    def __init__(
        self,
        token: str,
        credentials: CredentialStoreAdapter,
        allowed_chat_ids: Optional[list[int]] = None,
        poll_timeout: int = 10,
        stall_seconds: float = 45,
        max_network_errors: int = 5,
    ):
        """
        Args:
            token: Telegram bot token from BotFather
            credentials: Adapter used to persist the pairing
            allowed_chat_ids: Chats allowed to talk to the bot (None = allow all)
            poll_timeout: Long-poll timeout passed to getUpdates
            stall_seconds: Longest gap between successful polls before the session counts as lost
            max_network_errors: Consecutive polling errors that count as a disconnect
        """
        self.token = token
        self.credentials = credentials
        self.allowed_chat_ids = set(allowed_chat_ids) if allowed_chat_ids else None
        self.poll_timeout = poll_timeout
        self.stall_seconds = stall_seconds
        self.max_network_errors = max_network_errors
        self.application: Optional[Application] = None

        self.bot_username: Optional[str] = None
        self.owner_chat_id: Optional[int] = None
        self._pairing_code: Optional[str] = None
        self._network_errors = 0
        self._last_error_ts = 0.0
        self._last_get_updates_ts = 0.0
        self._stall_monitor: Optional[PollingStallMonitor] = None
        self._session_lost = False
        self._destroyed = False
        self._event_tasks: set[asyncio.Task] = set()

        self._on_pairing_code: Optional[PairingCodeHandler] = None
        self._on_ready: Optional[ReadyHandler] = None
        self._on_disconnected: Optional[DisconnectedHandler] = None
        self._on_auth_failure: Optional[AuthFailureHandler] = None
        self._on_message: Optional[InboundHandler] = None

    def set_pairing_code_handler(self, handler: PairingCodeHandler):
        """Set handler for pairing codes. Handler receives the deep link."""
        self._on_pairing_code = handler

    def set_ready_handler(self, handler: ReadyHandler):
        self._on_ready = handler

    def set_disconnected_handler(self, handler: DisconnectedHandler):
        """Set handler for disconnects. Handler receives a reason string."""
        self._on_disconnected = handler

    def set_auth_failure_handler(self, handler: AuthFailureHandler):
        """Set handler for auth failures. Handler receives a reason string."""
        self._on_auth_failure = handler

    def set_message_handler(self, handler: InboundHandler):
        """Set handler for inbound messages. Handler receives InboundMessage."""
        self._on_message = handler

    def _is_allowed(self, chat_id: int) -> bool:
        return self.allowed_chat_ids is None or chat_id in self.allowed_chat_ids

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self):
        """Connect, resume or start pairing, and begin polling."""
        self.application = (
            Application.builder()
            .token(self.token)
            .get_updates_request(PollTrackingRequest(
                self._mark_poll_ok,
                connection_pool_size=1,
                read_timeout=self.poll_timeout + 5,
                write_timeout=5,
                connect_timeout=5,
                pool_timeout=5,
            ))
            .build()
        )
        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("logout", self._cmd_logout))
        self.application.add_handler(MessageHandler(filters.StatusUpdate.ALL, self._handle_status_update))
        self.application.add_handler(MessageHandler(filters.ALL, self._handle_message))

        try:
            await self.application.initialize()
        except (InvalidToken, Forbidden) as e:
            logger.error(f"Telegram rejected the bot token: {e}")
            self._session_lost = True
            if self._on_auth_failure:
                await self._on_auth_failure(str(e))
            return

        self.bot_username = self.application.bot.username
        stored = await asyncio.to_thread(self.credentials.load)
        resumed = self._resume(stored)

        await self.application.start()
        await self._start_polling()
        logger.info(f"Telegram session started as @{self.bot_username}")

        if resumed:
            logger.info(f"Resumed stored session (owner chat {self.owner_chat_id})")
            if self._on_ready:
                await self._on_ready()
            return

        self._pairing_code = secrets.token_urlsafe(12)
        link = f"https://t.me/{self.bot_username}?start={self._pairing_code}"
        if self._on_pairing_code:
            await self._on_pairing_code(link)

    async def _start_polling(self):
        # Grace period: the first poll has not completed yet
        self._last_get_updates_ts = time.monotonic()
        await self.application.updater.start_polling(
            poll_interval=0.0,
            timeout=self.poll_timeout,
            drop_pending_updates=False,
            error_callback=self._polling_error,
        )
        self._stall_monitor = PollingStallMonitor(self, interval=self.stall_seconds / 3)
        self._stall_monitor.start()

    def _resume(self, stored) -> bool:
        if not isinstance(stored, dict):
            return False
        if stored.get("bot_username") != self.bot_username or not stored.get("owner_chat_id"):
            logger.info("Stored credentials belong to another bot, pairing required")
            return False
        self.owner_chat_id = stored["owner_chat_id"]
        return True

    async def destroy(self):
        """Stop polling and release the HTTP session."""
        self._destroyed = True
        if self._stall_monitor:
            await self._stall_monitor.stop()
        for task in list(self._event_tasks):
            task.cancel()
        if not self.application:
            return
        if self.application.updater and self.application.updater.running:
            try:
                await self.application.updater.stop()
            except TelegramError as e:
                # Re-raised from a polling task that already died (e.g. revoked token)
                logger.warning(f"Polling had already stopped: {e}")
        if self.application.running:
            await self.application.stop()
        await self.application.shutdown()
        logger.info("Telegram session stopped")

    async def is_alive(self) -> bool:
        if self._destroyed or not self.application:
            return False
        updater = self.application.updater
        if not (self.application.running and updater and updater.running):
            return False
        # The stall monitor reports first; this catches a driver whose report went nowhere
        return self._poll_age() <= 2 * self.stall_seconds

    async def send_message(self, address: str, text: str):
        if not self.application or self._destroyed:
            raise NetworkError("Telegram session is not running")
        chat_id = int(address) if address.lstrip("-").isdigit() else address
        for chunk in split_message(text):
            await self.application.bot.send_message(chat_id=chat_id, text=chunk)

    # ------------------------------------------------------------------
    # Polling health
    # ------------------------------------------------------------------

    def _mark_poll_ok(self):
        self._last_get_updates_ts = time.monotonic()

    def _poll_age(self) -> float:
        return time.monotonic() - self._last_get_updates_ts

    async def check_polling(self):
        """Report the session lost if getUpdates has not succeeded for stall_seconds."""
        if self._destroyed or self._session_lost:
            return
        elapsed = self._poll_age()
        if elapsed <= self.stall_seconds:
            return

        logger.warning(f"No successful getUpdates for {elapsed:.0f}s, checking the bot token")
        try:
            await self.application.bot.get_me()
        except (InvalidToken, Forbidden) as e:
            logger.error(f"Telegram rejected the bot token while polling: {e}")
            self._report_auth_failure(str(e))
            return
        except TelegramError as e:
            logger.warning(f"Telegram unreachable: {e}")
        self._report_disconnect(f"polling stalled, no successful getUpdates for {elapsed:.0f}s")

    def _polling_error(self, error: TelegramError):
        """Updater error callback. Runs on the event loop, must not block."""
        if self._destroyed:
            return

        if isinstance(error, (InvalidToken, Forbidden)):
            self._report_auth_failure(str(error))
            return

        if isinstance(error, Conflict):
            logger.error(f"Polling conflict, another instance is using this token: {error}")
            self._report_disconnect(f"polling conflict: {error}")
            return

        now = time.monotonic()
        if now - self._last_error_ts > self.stall_seconds:
            self._network_errors = 0
        self._last_error_ts = now
        self._network_errors += 1
        logger.warning(
            f"Telegram polling error ({self._network_errors}/{self.max_network_errors}): {error}"
        )
        if self._network_errors >= self.max_network_errors:
            self._report_disconnect(f"{self._network_errors} consecutive polling errors: {error}")

    def _report_disconnect(self, reason: str):
        if self._session_lost:
            return
        self._session_lost = True
        self._emit(self._on_disconnected, reason)

    def _report_auth_failure(self, reason: str):
        if self._session_lost:
            return
        self._session_lost = True
        self._emit(self._on_auth_failure, reason)

    def _emit(self, handler, *args):
        if handler is None:
            return
        task = asyncio.get_running_loop().create_task(handler(*args))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start - completes pairing when it carries the pending code."""
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None:
            return

        if self._pairing_code is None or chat.type != ChatType.PRIVATE:
            await self._handle_message(update, context)
            return

        if not context.args or not secrets.compare_digest(context.args[0], self._pairing_code):
            logger.warning(f"Pairing attempt with wrong code from chat {chat.id}")
            return

        self._pairing_code = None
        self.owner_chat_id = chat.id
        blob = {
            "owner_chat_id": chat.id,
            "owner_user_id": update.effective_user.id if update.effective_user else None,
            "bot_username": self.bot_username,
            "paired_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(self.credentials.save, blob)
        except StoreError:
            # Session keeps working in memory; it just won't survive a restart
            logger.warning("Pairing not persisted, it will be lost on restart")

        logger.info(f"Paired with chat {chat.id}")
        await message.reply_text("Paired. I'm online.")
        if self._on_ready:
            await self._on_ready()

    async def _cmd_logout(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /logout from the owner - forget the pairing and re-pair."""
        chat = update.effective_chat
        if chat is None or self.owner_chat_id is None or chat.id != self.owner_chat_id:
            await self._handle_message(update, context)
            return
        try:
            await asyncio.to_thread(self.credentials.clear)
        except StoreError:
            await update.effective_message.reply_text("Logout failed: could not clear the session.")
            return
        await update.effective_message.reply_text("Logged out. A new pairing code will be issued.")
        self._report_disconnect("logged out by owner")

    async def _handle_status_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Service messages (members joining, pins, title changes)."""
        await self._dispatch(update, is_status=True)

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._dispatch(update, is_status=False)

    async def _dispatch(self, update: Update, is_status: bool):
        """Translate a Telegram update into an InboundMessage."""
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None or not self._on_message:
            return
        if not self._is_allowed(chat.id):
            return

        # Stickers and photos carry no text but may still quote a message
        body = message.text or message.caption or ""
        quoted = message.reply_to_message

        async def fetch_quoted_body() -> Optional[str]:
            if quoted is None:
                return None
            return quoted.text or quoted.caption

        inbound = InboundMessage(
            address=str(chat.id),
            body=body,
            is_group=chat.type in (ChatType.GROUP, ChatType.SUPERGROUP),
            is_status=is_status
            or update.channel_post is not None
            or update.edited_channel_post is not None,
            is_ephemeral=update.edited_message is not None,
            has_quoted_message=quoted is not None,
            fetch_quoted_body=fetch_quoted_body,
        )
        await self._on_message(inbound)
