import asyncio
import logging

from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
DEFAULT_TIMEOUT_SECONDS = 30.0


class ClaudeClient:
    """The external text-generation service.

    Every caller treats an exception from ``complete`` as recoverable and falls
    back to a deterministic result."""

    def __init__(self, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.client = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.timeout = timeout

    async def _call(
        self,
        system: str,
        messages: list[dict],
        max_tokens: int = 1000,
        temperature: float = 0.3,
    ) -> str:
        """Make a Claude API call with retry logic and prompt caching."""
        # Use cache_control on system prompt to reduce TTFT on repeat calls
        system_with_cache = [
            {
                "type": "text",
                "text": system,
                "cache_control": {"type": "ephemeral"},
            }
        ]
        last_error = None
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await asyncio.wait_for(
                    self.client.messages.create(
                        model=self.model,
                        max_tokens=max_tokens,
                        temperature=temperature,
                        system=system_with_cache,
                        messages=messages,
                    ),
                    timeout=self.timeout,
                )
                return "".join(
                    block.text for block in response.content if getattr(block, "type", "") == "text"
                )
            except Exception as e:
                last_error = e
                if attempt < MAX_RETRIES:
                    logger.warning(f"Claude API attempt {attempt + 1} failed: {e!r}")
                    await asyncio.sleep(2 ** attempt)
        raise last_error

    async def complete(
        self,
        system_prompt: str,
        transcript: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> str:
        """Single-turn completion: the transcript goes in as the user message."""
        messages = [{"role": "user", "content": transcript}]
        return await self._call(system_prompt, messages, max_tokens=max_tokens, temperature=temperature)
