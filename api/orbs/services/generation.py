"""Text generation service backed by OpenAI chat completions.

GenerationService wraps openai.AsyncOpenAI so the rest of the pipeline
sees two outcomes: a GenerationResult, or a GenerationError. The client
is constructed once at process start and injected into the worker.
"""

from dataclasses import dataclass
from typing import Optional

import openai
import structlog

from orbs.config import settings

log = structlog.get_logger(__name__)


class GenerationError(Exception):
    """Raised when a generation call fails (timeout, API error, empty reply)."""
    pass


class GenerationSkippedError(GenerationError):
    """Raised when no API key is configured; retrying cannot help."""
    pass


@dataclass(frozen=True)
class GenerationResult:
    text: str
    total_tokens: Optional[int] = None


class GenerationService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.orbs_openai_model
        self.timeout = timeout if timeout is not None else settings.openai_timeout_seconds
        self.temperature = (
            temperature if temperature is not None else settings.label_temperature
        )
        self._client: Optional[openai.AsyncOpenAI] = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def complete(self, system: str, user: str) -> GenerationResult:
        """Run one chat completion and return the trimmed reply text.

        Raises:
            GenerationSkippedError: No OPENAI_API_KEY configured
            GenerationError: Any API, network or timeout failure
        """
        if not self.api_key:
            raise GenerationSkippedError("OPENAI_API_KEY not configured")

        try:
            resp = await self._get_client().chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except openai.OpenAIError as exc:
            raise GenerationError(str(exc)) from exc

        text = ""
        if resp.choices and resp.choices[0].message.content:
            text = resp.choices[0].message.content.strip()
        if not text:
            raise GenerationError("empty completion")

        total_tokens = resp.usage.total_tokens if resp.usage else None
        return GenerationResult(text=text, total_tokens=total_tokens)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
