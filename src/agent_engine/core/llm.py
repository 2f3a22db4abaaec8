"""Provider capability: streamed completions from a remote model via LiteLLM."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Sequence, Union, runtime_checkable

import litellm

from agent_engine.core.errors import ProviderError, ProviderFatalError, ProviderTransientError

if TYPE_CHECKING:
    from agent_engine.config import EngineConfig
    from agent_engine.core.models import Message

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """Declares a new tool call (first delta for an index) or extends its arguments."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass(frozen=True)
class UsageDelta:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ErrorDelta:
    """An error reported inside the stream rather than raised."""

    error: ProviderError


StreamDelta = Union[TextDelta, ToolCallDelta, UsageDelta, ErrorDelta]


@runtime_checkable
class Provider(Protocol):
    """Uniform capability over any concrete model API.

    send() returns a finite, non-restartable async sequence of deltas. The
    caller may stop consuming it early (aclose) to cancel the request.
    """

    def send(
        self,
        history: Sequence[Message],
        tools: list[dict[str, Any]],
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        ...


_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

_FATAL_TYPES: tuple[type[BaseException], ...] = (
    litellm.AuthenticationError,
    litellm.BadRequestError,
    litellm.NotFoundError,
)


def classify_provider_error(error: BaseException, api_base: str | None = None) -> ProviderError:
    """Map an exception from a provider call onto the transient/fatal taxonomy.

    Rate limits, timeouts, connection failures and 5xx responses are transient;
    authentication failures, malformed requests and anything unrecognised are fatal.
    """
    if isinstance(error, ProviderError):
        return error

    server = api_base or "provider default"
    detail = getattr(error, "message", None) or str(error) or type(error).__name__

    if isinstance(error, _FATAL_TYPES):
        if isinstance(error, litellm.AuthenticationError):
            return ProviderFatalError(
                f"Authentication failed.\n\n  Server: {server}\n  Error: {detail}\n\n"
                f"Check your api_key in ~/.agent-engine/config.yaml"
            )
        return ProviderFatalError(f"Model rejected the request.\n\n  Server: {server}\n  Error: {detail}")

    if isinstance(error, litellm.RateLimitError):
        return ProviderTransientError(f"Rate limited by provider.\n\n  Server: {server}\n  Error: {detail}")

    if isinstance(error, _TRANSIENT_TYPES):
        return ProviderTransientError(
            f"Provider unavailable or timed out.\n\n  Server: {server}\n  Error: {detail}"
        )

    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        if status >= 500 or status in (408, 429):
            return ProviderTransientError(f"Provider request failed (status {status}).\n\n  Error: {detail}")
        return ProviderFatalError(f"Provider request failed (status {status}).\n\n  Error: {detail}")

    return ProviderFatalError(f"Unexpected provider error.\n\n  Server: {server}\n  Error: {type(error).__name__}: {detail}")


def to_provider_messages(history: Sequence[Message], system_prompt: str | None = None) -> list[dict[str, Any]]:
    """Flatten engine messages into OpenAI-style chat dicts."""
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for message in history:
        messages.extend(message.to_provider_messages())
    return messages


class LiteLLMProvider:
    """Provider backed by litellm for multi-provider support.

    Usage:
        provider = LiteLLMProvider.from_config(config)
        async for delta in provider.send(view, registry.to_openai_tools()):
            ...
    """

    def __init__(
        self,
        model: str,
        *,
        api_base: str | None = None,
        api_key: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        max_output_tokens: int = 4096,
        request_timeout: float | None = 300.0,
        **kwargs: Any,
    ) -> None:
        self.model = model
        self.api_base = api_base
        self.api_key = api_key
        self.temperature = temperature
        self.top_p = top_p
        self.max_output_tokens = max_output_tokens
        self.request_timeout = request_timeout
        self._kwargs = kwargs

    @classmethod
    def from_config(cls, config: EngineConfig) -> LiteLLMProvider:
        return cls(
            config.model,
            api_base=config.api_base,
            api_key=config.api_key,
            temperature=config.temperature,
            top_p=config.top_p,
            max_output_tokens=config.max_output_tokens,
            request_timeout=config.request_timeout,
        )

    def _build_kwargs(self, messages: list[dict[str, Any]], *, stream: bool, max_tokens: int | None = None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_output_tokens,
            "stream": stream,
            **self._kwargs,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.top_p is not None:
            kwargs["top_p"] = self.top_p
        if self.request_timeout is not None:
            kwargs["timeout"] = self.request_timeout
        if stream:
            kwargs["stream_options"] = {"include_usage": True}
        return kwargs

    async def send(
        self,
        history: Sequence[Message],
        tools: list[dict[str, Any]],
        *,
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Stream a completion, yielding text, tool-call and usage deltas.

        Raises:
            ProviderTransientError: Timeouts, rate limits, 5xx responses.
            ProviderFatalError: Authentication, malformed request, unknown failures.
        """
        kwargs = self._build_kwargs(to_provider_messages(history, system_prompt), stream=True)
        if tools:
            kwargs["tools"] = tools
        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage:
                    yield UsageDelta(
                        prompt_tokens=usage.prompt_tokens or 0,
                        completion_tokens=usage.completion_tokens or 0,
                        total_tokens=usage.total_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    yield TextDelta(delta.content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    function = tc.function
                    yield ToolCallDelta(
                        index=tc.index if tc.index is not None else 0,
                        id=tc.id,
                        name=function.name if function else None,
                        arguments=(function.arguments or "") if function else "",
                    )
        except ProviderError:
            raise
        except Exception as exc:
            raise classify_provider_error(exc, self.api_base) from exc

    async def complete(self, history: Sequence[Message], *, max_tokens: int | None = None) -> str:
        """Non-streaming completion returning only the text."""
        kwargs = self._build_kwargs(to_provider_messages(history), stream=False, max_tokens=max_tokens)
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as exc:
            raise classify_provider_error(exc, self.api_base) from exc
        return response.choices[0].message.content or ""

    async def verify_connection(self) -> None:
        """Send a one-token request to confirm the server is reachable and the key is valid.

        Raises:
            ProviderError: Classified failure.
        """
        kwargs = self._build_kwargs([{"role": "user", "content": "ping"}], stream=False, max_tokens=1)
        kwargs["timeout"] = 10
        try:
            await litellm.acompletion(**kwargs)
        except Exception as exc:
            raise classify_provider_error(exc, self.api_base) from exc
