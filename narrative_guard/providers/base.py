"""Provider adapter abstraction."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from narrative_guard.config.models import ProviderConfig
from narrative_guard.core.token_counter import TokenUsage, estimate_prompt_tokens, estimate_tokens

NARRATOR_SYSTEM_PROMPT = (
    "You are a narrator for short interactive stories set in liminal transit spaces. "
    "Write one or two sentences of atmosphere and action, never use emoji, and end "
    "every beat with exactly one binary choice in the form \"Question? (Y/N)\". "
    "When the story concludes, end with \"(Restart?)\" instead."
)


@dataclass(frozen=True)
class ConversationTurn:
    """One prior exchange in the story so far."""
    role: str
    content: str


@dataclass(frozen=True)
class GeneratedContent:
    """Text returned by a provider plus its token accounting.

    ``estimated`` is set when the provider did not report usage and the
    counts come from the deterministic estimator.
    """
    text: str
    tokens_in: int
    tokens_out: int
    raw_metadata: Dict[str, Any] = field(default_factory=dict)
    estimated: bool = False

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self.tokens_in, self.tokens_out, self.estimated)


class AdapterErrorKind(Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"


class AdapterError(RuntimeError):
    """Raised when a provider request fails.

    ``usage`` is set when the provider billed for the failed call, for
    example a truncated response it still charged for.
    """
    kind: AdapterErrorKind = AdapterErrorKind.NETWORK_ERROR

    def __init__(self, message: str, usage: Optional[TokenUsage] = None) -> None:
        super().__init__(message)
        self.usage = usage


class RateLimited(AdapterError):
    kind = AdapterErrorKind.RATE_LIMITED


class AuthFailure(AdapterError):
    kind = AdapterErrorKind.AUTH_FAILURE


class NetworkError(AdapterError):
    kind = AdapterErrorKind.NETWORK_ERROR


class ProviderTimeout(AdapterError):
    kind = AdapterErrorKind.TIMEOUT


class MalformedResponse(AdapterError):
    kind = AdapterErrorKind.MALFORMED_RESPONSE


class ProviderAdapter:
    """Uniform contract over one external AI service.

    Subclasses implement ``_complete``; ``generate`` applies the checks and
    the timeout every adapter shares. Adapters hold configuration only, so
    one instance can serve concurrent requests.
    """
    kind: str

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def system_prompt(self) -> str:
        return self.config.system_prompt or NARRATOR_SYSTEM_PROMPT

    async def generate(
        self,
        prompt: str,
        context_history: Sequence[ConversationTurn],
        max_tokens: int,
        timeout_ms: int,
    ) -> GeneratedContent:
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if not 0 < max_tokens <= self.config.max_tokens:
            raise ValueError(
                f"max_tokens must be between 1 and {self.config.max_tokens} for {self.name}"
            )
        try:
            content = await asyncio.wait_for(
                self._complete(prompt, context_history, max_tokens),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(f"{self.name} did not respond within {timeout_ms}ms") from None
        if not content.text or not content.text.strip():
            raise MalformedResponse(f"{self.name} returned an empty completion", usage=content.usage)
        return content

    async def _complete(
        self,
        prompt: str,
        context_history: Sequence[ConversationTurn],
        max_tokens: int,
    ) -> GeneratedContent:  # pragma: no cover - interface
        raise NotImplementedError


def build_messages(
    prompt: str,
    context_history: Sequence[ConversationTurn],
    system_prompt: Optional[str] = None,
) -> list:
    """Chat-style message list: optional system prompt, history, then the prompt."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in context_history:
        messages.append({"role": turn.role, "content": turn.content})
    messages.append({"role": "user", "content": prompt})
    return messages


def estimated_content(
    text: str,
    prompt: str,
    context_history: Sequence[ConversationTurn],
    raw_metadata: Optional[Dict[str, Any]] = None,
) -> GeneratedContent:
    """GeneratedContent with token counts from the estimator, flagged as such."""
    return GeneratedContent(
        text=text,
        tokens_in=estimate_prompt_tokens(prompt, [turn.content for turn in context_history]),
        tokens_out=estimate_tokens(text),
        raw_metadata=raw_metadata or {},
        estimated=True,
    )


def reported_content(
    text: str,
    tokens_in: Any,
    tokens_out: Any,
    prompt: str,
    context_history: Sequence[ConversationTurn],
    raw_metadata: Optional[Dict[str, Any]] = None,
) -> GeneratedContent:
    """GeneratedContent with the provider's own counts.

    Counts that are missing, non-integer or negative are replaced by
    estimates, the same as a response without usage.
    """
    counts = (tokens_in, tokens_out)
    if not all(isinstance(c, int) and not isinstance(c, bool) and c >= 0 for c in counts):
        return estimated_content(text, prompt, context_history, raw_metadata)
    return GeneratedContent(
        text=text,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        raw_metadata=raw_metadata or {},
    )
