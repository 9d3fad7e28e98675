from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any

from briefing.config import get_settings
from briefing.errors import LLMCallError
from briefing.usage import AIMetadata

log = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "openai_compatible": "gpt-4o",
}


@dataclass(frozen=True)
class Completion:
    """Raw text returned by the model plus resource usage for the call."""
    text: str
    model: str
    input_tokens: int
    output_tokens: int
    duration_ms: int

    def metadata(self, project_status: str | None = None) -> AIMetadata:
        return AIMetadata(
            model=self.model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            duration=self.duration_ms,
            project_status=project_status,
        )


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or DEFAULT_MODELS["anthropic"]
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or DEFAULT_MODELS[self.provider]
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str, kind: str = "report") -> Completion:
        """Send system+user messages and return the raw text with usage data."""
        log.info("LLM %s call started (model=%s, prompt=%d chars)", kind, self.model, len(user))
        started = time.monotonic()
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                block = response.content[0] if response.content else None
                if block is None or getattr(block, "type", None) != "text":
                    raise LLMCallError("unexpected response: not text")
                if getattr(response, "stop_reason", None) == "max_tokens":
                    log.warning("LLM %s output hit the %d token ceiling", kind, self.max_tokens)
                text = block.text
                model = getattr(response, "model", None) or self.model
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                choice = response.choices[0]
                text = choice.message.content
                if not isinstance(text, str):
                    raise LLMCallError("unexpected response: not text")
                if getattr(choice, "finish_reason", None) == "length":
                    log.warning("LLM %s output hit the %d token ceiling", kind, self.max_tokens)
                model = getattr(response, "model", None) or self.model
                usage = getattr(response, "usage", None)
                input_tokens = getattr(usage, "prompt_tokens", 0) or 0
                output_tokens = getattr(usage, "completion_tokens", 0) or 0
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}") from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info("LLM %s response received in %dms (%d chars)", kind, duration_ms, len(text))
        return Completion(
            text=text,
            model=model,
            input_tokens=int(input_tokens or 0),
            output_tokens=int(output_tokens or 0),
            duration_ms=duration_ms,
        )
