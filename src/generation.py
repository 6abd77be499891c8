"""
Text generation for replies.

GenerationClient wraps a Generator backend with a per-attempt timeout and
bounded retries, and always resolves to displayable text.
"""

import asyncio
import logging
from typing import Optional, Protocol

import httpx

from .backoff import BackoffPolicy
from .models import GeneratorError, RetryContext

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I encountered a network error while processing your request. Please try again later."
)
EMPTY_REPLY = "I apologize, but I was unable to generate a response."

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class Generator(Protocol):
    """Text-generation backend."""

    async def generate_content(self, text: str) -> str: ...


class GeminiGenerator:
    """Calls the Gemini generateContent REST endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-1.5-flash",
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def generate_content(self, text: str) -> str:
        """
        Generate a reply for the given text.

        Returns:
            Text of the first candidate ("" when the backend returned none)

        Raises:
            GeneratorError: On a non-200 response or an undecodable body
        """
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        payload = {"contents": [{"role": "user", "parts": [{"text": text}]}]}

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                headers=headers,
                json=payload,
            )

        if response.status_code != 200:
            raise GeneratorError(f"Gemini API error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise GeneratorError(f"Gemini API returned invalid JSON: {e}") from e

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


class GenerationClient:
    """Bounded-retry wrapper around a Generator. generate() never raises."""

    def __init__(
        self,
        generator: Generator,
        backoff: Optional[BackoffPolicy] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        """
        Args:
            generator: Backend to call
            backoff: Delay policy between attempts
            timeout: Seconds allowed per attempt
            max_retries: Retries after the first attempt (total calls = max_retries + 1)
        """
        self.generator = generator
        self.backoff = backoff or BackoffPolicy()
        self.timeout = timeout
        self.max_retries = max_retries

    async def generate(self, text: str) -> str:
        ctx = RetryContext(text=text)
        while True:
            try:
                reply = await asyncio.wait_for(
                    self.generator.generate_content(ctx.text),
                    timeout=self.timeout,
                )
                if not reply or not reply.strip():
                    return EMPTY_REPLY
                return reply
            except asyncio.TimeoutError:
                logger.error(
                    f"Generation timed out after {self.timeout}s (attempt {ctx.attempt + 1})"
                )
            except Exception as e:
                logger.error(f"Failed to generate reply (attempt {ctx.attempt + 1}): {e}")

            if ctx.attempt >= self.max_retries:
                logger.warning(f"Generation gave up after {ctx.attempt + 1} attempts")
                return FALLBACK_REPLY

            delay = self.backoff.delay(ctx.attempt)
            logger.info(f"Retrying generation in {delay:.2f}s...")
            await asyncio.sleep(delay)
            ctx.attempt += 1
