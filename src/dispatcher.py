"""Routes inbound messages to the generation client and sends the replies."""

import asyncio
import logging
from typing import Optional

from .generation import GenerationClient
from .models import InboundMessage

logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, I encountered an error. Please try again."
QUOTE_UNAVAILABLE_REPLY = "Sorry, I could not read the quoted message."


class MessageDispatcher:
    """
    Handles each inbound message in its own task.

    - Status and ephemeral messages are dropped
    - Direct messages get a generated reply
    - Group messages get a reply only when they quote another message,
      generated from the quoted text
    """

    def __init__(self, supervisor, generation: GenerationClient):
        """
        Args:
            supervisor: SessionSupervisor; replies go through its current driver
            generation: Client used to generate reply text
        """
        self.supervisor = supervisor
        self.generation = generation
        self._tasks: set[asyncio.Task] = set()

    async def on_message(self, message: InboundMessage):
        """Driver message handler: schedule handling and return immediately."""
        if self.supervisor.closing:
            return
        task = asyncio.create_task(self.handle(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, message: InboundMessage):
        try:
            reply = await self._reply_for(message)
            if reply is not None:
                await self.supervisor.send_message(message.address, reply)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing message from {message.address}: {e}", exc_info=True)
            try:
                await self.supervisor.send_message(message.address, ERROR_REPLY)
            except Exception as send_error:
                logger.error(f"Error sending error message: {send_error}")

    async def _reply_for(self, message: InboundMessage) -> Optional[str]:
        """Return the reply text for a message, or None when nothing should be sent."""
        if message.is_status or message.is_ephemeral:
            return None

        if not message.is_group:
            if not message.body:
                return None
            logger.info(f"New message received: {message.body[:80]}")
            return await self.generation.generate(message.body)

        if not message.has_quoted_message:
            return None

        try:
            quoted = await message.get_quoted_body()
        except Exception as e:
            logger.warning(f"Could not fetch quoted message in {message.address}: {e}")
            return QUOTE_UNAVAILABLE_REPLY

        if not quoted:
            return None
        logger.info(f"Processing quoted message: {quoted[:80]}")
        return await self.generation.generate(quoted)

    async def stop(self):
        """Cancel in-flight message handling."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
