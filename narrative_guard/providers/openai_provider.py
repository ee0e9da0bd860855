"""OpenAI-compatible chat completions provider."""
from __future__ import annotations

import os
from typing import Optional, Sequence

import openai
from openai import AsyncOpenAI

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
    build_messages,
    estimated_content,
    reported_content,
)


class OpenAIAdapter(ProviderAdapter):
    """Any endpoint speaking the OpenAI chat completions API.

    The SDK's own retries are disabled; fallback is the router's job.
    """
    kind = "openai"

    def __init__(self, config: ProviderConfig, api_key: Optional[str] = None) -> None:
        super().__init__(config)
        api_key = api_key or (os.getenv(config.api_key_env) if config.api_key_env else None)
        self.client: Optional[AsyncOpenAI] = None
        if api_key:
            self.client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)

    async def _complete(
        self,
        prompt: str,
        context_history: Sequence[ConversationTurn],
        max_tokens: int,
    ) -> GeneratedContent:
        if self.client is None:
            raise AuthFailure(f"{self.config.api_key_env} is not set for {self.name}")

        messages = build_messages(prompt, context_history, self.system_prompt)
        options = {}
        if self.config.temperature is not None:
            options["temperature"] = self.config.temperature
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                max_tokens=max_tokens,
                timeout=self.config.timeout_ms / 1000,
                **options,
            )
        except openai.RateLimitError as exc:
            raise RateLimited(f"{self.name} rate limited: {exc}") from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise AuthFailure(f"{self.name} rejected credentials: {exc}") from exc
        except openai.APITimeoutError as exc:
            raise ProviderTimeout(f"{self.name} timed out: {exc}") from exc
        except openai.APIConnectionError as exc:
            raise NetworkError(f"{self.name} connection failed: {exc}") from exc
        except openai.APIStatusError as exc:
            raise NetworkError(f"{self.name} error {exc.status_code}: {exc}") from exc
        except openai.APIResponseValidationError as exc:
            raise MalformedResponse(f"{self.name} response failed validation: {exc}") from exc
        except openai.APIError as exc:
            raise NetworkError(f"{self.name} request failed: {exc}") from exc

        if not response.choices:
            raise MalformedResponse(f"{self.name} response did not include choices")
        choice = response.choices[0]
        text = (choice.message.content or "") if choice.message else ""
        metadata = {
            "id": response.id,
            "model": response.model,
            "finish_reason": choice.finish_reason,
        }

        usage = response.usage
        if usage is None:
            return estimated_content(text, prompt, context_history, metadata)
        return reported_content(
            text, usage.prompt_tokens, usage.completion_tokens, prompt, context_history, metadata
        )
