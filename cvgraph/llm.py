"""cvgraph LLM boundary — the one call nodes make to a language model.

Nodes depend only on the ``ChatModel`` protocol:

    invoke(system_prompt, history) -> generated text

``LLMProvider`` is the production implementation: a multi-provider client
with exponential backoff and automatic fallback to the next provider when the
primary is exhausted.  Provider SDKs are imported lazily so only the one in
use needs to be installed.

Environment variables
---------------------
LLM_PROVIDER          Primary provider name (default: ``"anthropic"``).
LLM_MODEL             Default model for all providers.
LLM_MODEL_<PROVIDER>  Per-provider model override, e.g. ``LLM_MODEL_OPENAI``.
ANTHROPIC_API_KEY     API key for Anthropic.
OPENAI_API_KEY        API key for OpenAI.
GEMINI_API_KEY        API key for Google Gemini.
OPENROUTER_API_KEY    API key for OpenRouter.
"""

from __future__ import annotations

import os
import random
import time
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Dict, List, Protocol, Sequence

from cvgraph.errors import NodeExecutionError
from cvgraph.logging import get_logger
from cvgraph.state import Message

if TYPE_CHECKING:
    from cvgraph.config import Settings

_log = get_logger("llm")

_DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "gemini": "gemini-2.0-flash",
    "openrouter": "anthropic/claude-sonnet-4",
}

_API_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}

_OPENROUTER_URL = "https://openrouter.ai/api/v1"


def make_client(provider: str):
    """Build the SDK client for *provider*.  ValueError if its API key is unset."""
    key_var = _API_KEY_VARS.get(provider)
    if key_var is None:
        raise ValueError(f"Unknown provider: {provider}")
    api_key = os.environ.get(key_var)
    if not api_key:
        raise ValueError(f"{key_var} not set")

    if provider == "anthropic":
        from anthropic import Anthropic

        return Anthropic(api_key=api_key)
    if provider == "gemini":
        from google import genai

        return genai.Client(api_key=api_key)

    from openai import OpenAI

    if provider == "openrouter":
        return OpenAI(base_url=_OPENROUTER_URL, api_key=api_key)
    return OpenAI(api_key=api_key)


class ChatModel(Protocol):
    def invoke(self, system_prompt: str, history: Sequence[Message]) -> str:
        ...


class LLMCallError(NodeExecutionError):
    """Every provider and every retry failed."""


@dataclass
class LLMResponse:
    """Structured LLM response with metadata."""

    content: str
    success: bool
    provider: str
    model: str
    attempts: int
    total_time: float
    error_history: List[Dict[str, Any]] | None = None


def _to_chat_messages(history: Sequence[Message]) -> list[dict[str, str]]:
    """Keep user/assistant turns; a chat must open with a user turn."""
    messages = [
        {"role": m.role, "content": m.content}
        for m in history
        if m.role in ("user", "assistant") and m.content
    ]
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    if not messages:
        messages = [{"role": "user", "content": "Please proceed."}]
    return messages


class LLMProvider:
    """Multi-provider chat client with retry and provider fallback.

    Parameters
    ----------
    primary_provider :
        ``"anthropic"`` | ``"openai"`` | ``"gemini"`` | ``"openrouter"``.
    fallback_providers :
        Tried in order once the primary has used up ``max_retries``.
    model :
        Model name; resolved per provider from env / built-in defaults if
        omitted.
    """

    def __init__(
        self,
        primary_provider: str | None = None,
        fallback_providers: list[str] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        max_retries: int | None = None,
        initial_wait: float | None = None,
        max_wait: float | None = None,
    ):
        self.primary_provider = primary_provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.fallback_providers = fallback_providers if fallback_providers is not None else []
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries or int(os.environ.get("LLM_MAX_RETRIES", "3"))
        self.initial_wait = initial_wait or float(os.environ.get("LLM_INITIAL_WAIT", "1"))
        self.max_wait = max_wait or float(os.environ.get("LLM_MAX_WAIT", "30"))

        self._client_factories = {name: partial(make_client, name) for name in _API_KEY_VARS}
        self.provider_stats: Dict[str, Dict[str, Any]] = {
            name: {"successes": 0, "failures": 0, "avg_time": 0.0}
            for name in self._client_factories
        }

    @classmethod
    def from_settings(cls, settings: "Settings") -> "LLMProvider":
        return cls(
            primary_provider=settings.llm_provider,
            fallback_providers=list(settings.llm_fallbacks),
            model=settings.llm_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            max_retries=settings.max_retries,
        )

    # -- public API ----------------------------------------------------------

    def invoke(self, system_prompt: str, history: Sequence[Message]) -> str:
        """Return generated text or raise LLMCallError."""
        response = self.call(system_prompt, history)
        if not response.success:
            errors = response.error_history or []
            last = errors[-1]["error"] if errors else "unknown error"
            raise LLMCallError(f"LLM call failed after {response.attempts} attempts: {last}")
        return response.content

    def call(self, system_prompt: str, history: Sequence[Message]) -> LLMResponse:
        start_time = time.time()
        error_history: List[Dict[str, Any]] = []
        messages = _to_chat_messages(history)

        providers_to_try = [self.primary_provider] + [
            p for p in self.fallback_providers if p != self.primary_provider
        ]
        for provider_name in providers_to_try:
            if provider_name not in self._client_factories:
                _log.warning("Unknown LLM provider '%s' skipped", provider_name)
                continue

            result = self._try_provider(provider_name, system_prompt, messages)
            elapsed = time.time() - start_time
            if result.success:
                result.total_time = elapsed
                self._update_stats(provider_name, True, elapsed)
                _log.info(
                    "llm_call provider=%s model=%s attempts=%d time=%.2fs",
                    provider_name, result.model, result.attempts, elapsed,
                )
                return result

            error_history.extend(result.error_history or [])
            self._update_stats(provider_name, False, elapsed)

        return LLMResponse(
            content="",
            success=False,
            provider="all_failed",
            model=self.model or "unknown",
            attempts=len(error_history),
            total_time=time.time() - start_time,
            error_history=error_history,
        )

    def get_provider_stats(self) -> Dict[str, Any]:
        """Return per-provider success rates and average response times."""
        return {
            name: {
                **stats,
                "success_rate": stats["successes"] / max(stats["successes"] + stats["failures"], 1),
            }
            for name, stats in self.provider_stats.items()
        }

    # -- internals -----------------------------------------------------------

    def _try_provider(
        self, provider_name: str, system_prompt: str, messages: list[dict[str, str]]
    ) -> LLMResponse:
        model = self.model or self._default_model(provider_name)
        local_errors: List[Dict[str, Any]] = []
        try:
            client = self._client_factories[provider_name]()
        except Exception as exc:
            local_errors.append(self._error_entry(provider_name, 0, exc))
            _log.warning("llm provider=%s unavailable: %s", provider_name, exc)
            return LLMResponse("", False, provider_name, model, 0, 0.0, local_errors)

        wait_time = self.initial_wait
        for attempt in range(self.max_retries):
            try:
                content = self._make_call(client, provider_name, model, system_prompt, messages)
                return LLMResponse(
                    content=content,
                    success=True,
                    provider=provider_name,
                    model=model,
                    attempts=attempt + 1,
                    total_time=0.0,
                    error_history=local_errors or None,
                )
            except Exception as exc:
                local_errors.append(self._error_entry(provider_name, attempt + 1, exc))
                _log.warning(
                    "llm retry provider=%s attempt=%d/%d error=%s",
                    provider_name, attempt + 1, self.max_retries, exc,
                )
                if attempt < self.max_retries - 1:
                    jitter = random.uniform(0.1, 0.3) * wait_time
                    time.sleep(wait_time + jitter)
                    wait_time = min(wait_time * 2, self.max_wait)

        return LLMResponse("", False, provider_name, model, self.max_retries, 0.0, local_errors)

    @staticmethod
    def _error_entry(provider_name: str, attempt: int, exc: Exception) -> Dict[str, Any]:
        return {
            "provider": provider_name,
            "attempt": attempt,
            "error": str(exc),
            "error_type": type(exc).__name__,
            "timestamp": time.time(),
        }

    def _make_call(
        self,
        client,
        provider_name: str,
        model: str,
        system_prompt: str,
        messages: list[dict[str, str]],
    ) -> str:
        """Dispatch to the appropriate SDK method."""
        if provider_name == "anthropic":
            resp = client.messages.create(
                model=model,
                system=system_prompt,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
            return "".join(
                block.text for block in resp.content if getattr(block, "type", "") == "text"
            )

        if provider_name in ("openai", "openrouter"):
            resp = client.chat.completions.create(
                model=model,
                messages=[{"role": "system", "content": system_prompt}, *messages],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
            return resp.choices[0].message.content or ""

        if provider_name == "gemini":
            from google.genai import types

            contents = [
                types.Content(
                    role="model" if m["role"] == "assistant" else "user",
                    parts=[types.Part(text=m["content"])],
                )
                for m in messages
            ]
            resp = client.models.generate_content(
                model=model,
                contents=contents,
                config=types.GenerateContentConfig(
                    system_instruction=system_prompt,
                    temperature=self.temperature,
                    max_output_tokens=self.max_tokens,
                ),
            )
            return resp.text or ""

        raise ValueError(f"Unknown provider: {provider_name}")

    @staticmethod
    def _default_model(provider_name: str) -> str:
        """Resolve default model from env vars or built-in defaults."""
        env_model = (
            os.environ.get(f"LLM_MODEL_{provider_name.upper()}")
            or os.environ.get("LLM_MODEL")
        )
        return env_model or _DEFAULT_MODELS.get(provider_name, "gpt-4o")

    def _update_stats(self, provider_name: str, success: bool, elapsed: float):
        stats = self.provider_stats[provider_name]
        if success:
            stats["successes"] += 1
        else:
            stats["failures"] += 1
        total = stats["successes"] + stats["failures"]
        stats["avg_time"] = (stats["avg_time"] * (total - 1) + elapsed) / total
