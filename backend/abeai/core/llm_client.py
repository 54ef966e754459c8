"""OpenAI chat-completion client wrapper with retry on transient failures."""

import asyncio
import logging
from typing import Optional, List
from dataclasses import dataclass

from openai import AsyncOpenAI, APIConnectionError, APIStatusError, APITimeoutError

from abeai.config import get_settings

# 524 is the gateway timeout returned by Cloudflare in front of the API
RETRYABLE_STATUS_CODES = {429, 503, 524}

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """The completion API could not produce an answer."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class LLMResponse:
    """Response from the LLM."""

    text: str
    stop_reason: str = "stop"
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class LLMClient:
    """Client for interacting with the OpenAI chat-completions API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.settings = get_settings()
        # Retries are handled here so only the statuses we choose are retried
        self.client = client or AsyncOpenAI(
            api_key=self.settings.openai_api_key,
            base_url=self.settings.openai_base_url,
            timeout=self.settings.llm_timeout_seconds,
            max_retries=0,
        )

    async def complete(
        self,
        system_prompt: str,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """
        Send a completion request to OpenAI.

        Args:
            system_prompt: The system prompt for context
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config)
            temperature: Temperature for generation (defaults to config)
            max_tokens: Max tokens to generate (defaults to config)

        Returns:
            LLMResponse with text and usage metadata

        Raises:
            LLMError: on a non-retryable failure, an empty answer, or when
                every attempt failed
        """
        settings = self.settings
        model = model or settings.default_model
        temperature = temperature if temperature is not None else settings.default_temperature
        max_tokens = max_tokens or settings.max_tokens_for("free")
        max_attempts = max(1, settings.llm_max_retries)

        # Build messages with system prompt
        openai_messages = [{"role": "system", "content": system_prompt}]
        openai_messages.extend(messages)

        request_kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": openai_messages,
            "temperature": temperature,
        }

        logger.debug(f"Sending request to OpenAI: model={model}, messages={len(openai_messages)}")

        last_error: Optional[LLMError] = None
        for attempt in range(max_attempts):
            try:
                response = await self.client.chat.completions.create(**request_kwargs)
                return self._parse(response)

            except (APIConnectionError, APITimeoutError) as e:
                last_error = LLMError(f"Connection error: {e}")

            except APIStatusError as e:
                if e.status_code not in RETRYABLE_STATUS_CODES:
                    # Don't retry other client/server errors
                    logger.error(f"OpenAI API error {e.status_code}: {e}")
                    raise LLMError(f"OpenAI API error: {e.status_code}", e.status_code) from e
                last_error = LLMError(f"OpenAI API error: {e.status_code}", e.status_code)

            if attempt + 1 < max_attempts:
                delay = settings.llm_retry_delay_base * (2 ** attempt)
                logger.warning(
                    f"LLM request failed (attempt {attempt + 1}/{max_attempts}), "
                    f"retrying in {delay}s: {last_error}"
                )
                await asyncio.sleep(delay)

        logger.error(f"LLM request failed after {max_attempts} attempts: {last_error}")
        raise last_error

    def _parse(self, response) -> LLMResponse:
        """Pull the answer text out of a completion, rejecting malformed bodies."""
        choices = getattr(response, "choices", None)
        if not choices:
            raise LLMError("Invalid OpenAI response: no choices")

        message = getattr(choices[0], "message", None)
        text = (getattr(message, "content", None) or "").strip()
        if not text:
            raise LLMError("Invalid OpenAI response: empty content")

        usage = getattr(response, "usage", None)
        return LLMResponse(
            text=text,
            stop_reason=choices[0].finish_reason or "stop",
            model=getattr(response, "model", "") or "",
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# Global client instance
_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Get or create the LLM client singleton."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client
