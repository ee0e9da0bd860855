"""Anthropic-compatible messages provider."""
from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, Optional, Sequence

import aiohttp

from narrative_guard.config.models import ProviderConfig
from .base import (
    AuthFailure,
    ConversationTurn,
    GeneratedContent,
    MalformedResponse,
    NetworkError,
    ProviderAdapter,
    ProviderTimeout,
    RateLimited,
    estimated_content,
    reported_content,
)

DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


def raise_for_status(provider_name: str, status: int, data: Dict[str, Any]) -> None:
    """Translate an HTTP error status into the matching AdapterError."""
    if status < 400:
        return
    error = data.get("error") if isinstance(data, dict) else None
    message = error.get("message", "") if isinstance(error, dict) else ""
    detail = f"{provider_name} error {status}: {message}".rstrip(": ")
    # 529 is Anthropic's "overloaded", which behaves like a rate limit
    if status in (429, 529):
        raise RateLimited(detail)
    if status in (401, 403):
        raise AuthFailure(detail)
    raise NetworkError(detail)


def parse_response(
    provider_name: str,
    data: Any,
    prompt: str,
    context_history: Sequence[ConversationTurn],
) -> GeneratedContent:
    """Build GeneratedContent from a messages API response body."""
    if not isinstance(data, dict) or not isinstance(data.get("content"), list):
        raise MalformedResponse(f"{provider_name} response did not include content")
    parts = [
        part.get("text") or "" for part in data["content"]
        if isinstance(part, dict) and part.get("type", "text") == "text"
    ]
    if not all(isinstance(part, str) for part in parts):
        raise MalformedResponse(f"{provider_name} response had a non-text content block")
    text = "".join(parts)
    metadata = {
        "id": data.get("id"),
        "model": data.get("model"),
        "stop_reason": data.get("stop_reason"),
    }
    usage = data.get("usage")
    if not isinstance(usage, dict) or "input_tokens" not in usage or "output_tokens" not in usage:
        return estimated_content(text, prompt, context_history, metadata)
    return reported_content(
        text, usage["input_tokens"], usage["output_tokens"], prompt, context_history, metadata
    )


class AnthropicAdapter(ProviderAdapter):
    """Any endpoint speaking the Anthropic messages API.

    Each call opens its own HTTP session, so a hung request never holds a
    connection another request is waiting on.
    """
    kind = "anthropic"

    def __init__(self, config: ProviderConfig, api_key: Optional[str] = None) -> None:
        super().__init__(config)
        self.api_key = api_key or (os.getenv(config.api_key_env) if config.api_key_env else None)
        self.base_url = (config.base_url or DEFAULT_BASE_URL).rstrip("/")

    async def _complete(
        self,
        prompt: str,
        context_history: Sequence[ConversationTurn],
        max_tokens: int,
    ) -> GeneratedContent:
        if not self.api_key:
            raise AuthFailure(f"{self.config.api_key_env} is not set for {self.name}")

        url = f"{self.base_url}/v1/messages"
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        messages = [
            {"role": "assistant" if turn.role == "assistant" else "user", "content": turn.content}
            for turn in context_history
        ]
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.config.model,
            "max_tokens": max_tokens,
            "system": self.system_prompt,
            "messages": messages,
        }
        if self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, headers=headers, json=payload) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as exc:
                        raise MalformedResponse(
                            f"{self.name} returned a non-JSON body (status {response.status})"
                        ) from exc
                    raise_for_status(self.name, response.status, data or {})
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(f"{self.name} timed out") from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(f"{self.name} connection failed: {exc}") from exc
        return parse_response(self.name, data, prompt, context_history)
