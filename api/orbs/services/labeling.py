"""Three-word label generation.

Builds a deterministic prompt from candidate item titles, calls the text
generation service with a single retry, and sanitizes the reply into
exactly three uppercase words plus an optional sentiment color.

The output hash (sha256 over the normalized words) is what the promotion
state machine compares between consecutive attempts.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from orbs.schemas.orbs import LabelCandidateItem
from orbs.services.generation import GenerationError, GenerationService, GenerationSkippedError

log = structlog.get_logger(__name__)

PLACEHOLDER = "…"
SENTIMENTS = ("red", "amber", "green")

_WS_RE = re.compile(r"\s+")
_DELIM_RE = re.compile(r"[,|/]")
_DISALLOWED_RE = re.compile(r"[^a-zA-Z0-9\- ]")


def normalize_title(title: str) -> str:
    return _WS_RE.sub(" ", title or "").strip()


def safe_three_words(raw: str) -> list[str]:
    """Sanitize a reply line into exactly three uppercase words.

    "Markets, Rally, Globally" -> ["MARKETS", "RALLY", "GLOBALLY"]
    Pads with the placeholder when fewer than three tokens survive.
    """
    cleaned = normalize_title(raw)
    parts = [p.strip() for p in _DELIM_RE.split(cleaned)]
    parts = [p for p in parts if p]

    words = [_DISALLOWED_RE.sub("", p).strip() for p in parts[:3]]
    words = [w for w in words if w][:3]

    while len(words) < 3:
        words.append(PLACEHOLDER)
    return [w.upper() for w in words]


def parse_sentiment(lines: list[str]) -> Optional[str]:
    """Return the sentiment color from a ``SENTIMENT: <color>`` line, if valid."""
    for line in lines:
        if line.lower().startswith("sentiment:"):
            value = line.split(":", 1)[1].strip().lower()
            return value if value in SENTIMENTS else None
    return None


def hash_words(words: list[str]) -> str:
    norm = "|".join(w.strip().upper() for w in words)
    return hashlib.sha256(norm.encode("utf-8")).hexdigest()


def build_prompt(
    topic_name: str,
    topic_slug: str,
    items: list[LabelCandidateItem],
    wants_sentiment: bool,
) -> tuple[str, str]:
    """Return the (system, user) messages for a label request."""
    bullets = "\n".join(
        f"- {normalize_title(it.title)} ({it.published_at})" for it in items
    )

    system_lines = [
        "You generate a concise 3-word headline for a topic based on recent RSS item titles.",
        "Rules:",
        "- Output EXACTLY three words in ALL CAPS, separated by commas.",
        "- No extra text.",
        "- Prefer concrete entities/themes over generic words.",
        "- Avoid profanity.",
    ]
    if wants_sentiment:
        system_lines.append("- Also choose a sentiment color: red, amber, or green.")

    user_lines = [
        f"Topic: {topic_name} ({topic_slug})",
        "Recent items:",
        bullets,
        "",
        "Return:",
        "Line 1: WORD, WORD, WORD",
    ]
    if wants_sentiment:
        user_lines.append("Line 2: SENTIMENT: red|amber|green")

    return "\n".join(system_lines), "\n".join(user_lines)


@dataclass(frozen=True)
class GeneratedLabel:
    words: list[str]
    sentiment_label: Optional[str]
    output_hash: str
    raw: str
    token_estimate: Optional[int]


@dataclass
class LabelAttempt:
    """Outcome of one generation attempt, including retry diagnostics."""

    label: Optional[GeneratedLabel] = None
    error: Optional[str] = None
    retry_attempted: bool = False
    retry_succeeded: bool = False


def parse_label(text: str, wants_sentiment: bool, token_estimate: Optional[int] = None) -> GeneratedLabel:
    lines = [line.strip() for line in text.split("\n")]
    lines = [line for line in lines if line]

    words = safe_three_words(lines[0] if lines else "")
    sentiment = parse_sentiment(lines) if wants_sentiment else None
    return GeneratedLabel(
        words=words,
        sentiment_label=sentiment,
        output_hash=hash_words(words),
        raw=text,
        token_estimate=token_estimate,
    )


class LabelGenerator:
    def __init__(
        self,
        generation: GenerationService,
        retry_delay: float = 0.6,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.generation = generation
        self.retry_delay = retry_delay
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.generation.model

    async def _generate_once(self, system: str, user: str, wants_sentiment: bool) -> GeneratedLabel:
        result = await self.generation.complete(system, user)
        return parse_label(result.text, wants_sentiment, result.total_tokens)

    async def generate(
        self,
        topic_name: str,
        topic_slug: str,
        items: list[LabelCandidateItem],
        wants_sentiment: bool,
    ) -> LabelAttempt:
        """Generate a label, retrying exactly once after a fixed delay.

        Never raises GenerationError: failures are reported on the attempt.
        """
        system, user = build_prompt(topic_name, topic_slug, items, wants_sentiment)
        attempt = LabelAttempt()
        errors: list[str] = []
        calls = 0

        def _log_retry(retry_state: RetryCallState) -> None:
            log.warning("label_generation_retry", topic=topic_slug, error=errors[-1])

        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.retry_delay),
            retry=(
                retry_if_exception_type(GenerationError)
                & retry_if_not_exception_type(GenerationSkippedError)
            ),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

        try:
            async for retry_attempt in retrying:
                calls += 1
                with retry_attempt:
                    try:
                        attempt.label = await self._generate_once(system, user, wants_sentiment)
                    except GenerationError as exc:
                        errors.append(str(exc))
                        raise
        except GenerationSkippedError as exc:
            log.warning("label_generation_skipped", topic=topic_slug, reason=str(exc))
        except GenerationError:
            log.error("label_generation_failed", topic=topic_slug, error="; retry_failed: ".join(errors))

        attempt.retry_attempted = calls > 1
        attempt.retry_succeeded = attempt.retry_attempted and attempt.label is not None
        if attempt.label is None:
            attempt.error = "; retry_failed: ".join(errors)
        return attempt
