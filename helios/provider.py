"""LLM backend adapter over LiteLLM.

Normalizes non-streaming responses and streamed chunks from every
supported provider into ProviderResponse / StreamChunk, reassembles
streamed tool calls, and retries without tools when a model rejects them.
"""

import asyncio
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from .errors import ConfigError, ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVIDERS = ("openrouter", "openai", "anthropic", "lmstudio", "custom")

DEFAULT_MODELS = {
    "openrouter": "google/gemini-2.0-flash-exp:free",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
}

API_KEY_ENV = {
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

LMSTUDIO_URL = "http://127.0.0.1:1234"

DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_MAX_RETRIES = 3

_TOOLS_UNSUPPORTED_STATUS = (400, 404, 422)
_TOOLS_UNSUPPORTED_RE = re.compile(
    r"supports?\s+tool[\s_-]?(?:use|calls?|calling)"
    r"|(?:not|n't)\s+support\w*\W+(?:\w+\W+){0,4}?(?:tools?|functions?|function[\s_]calling)\b"
    r"|(?:tools?|functions?|tool_choice)\W+(?:\w+\W+){0,3}?(?:not supported|unsupported|not available)",
    re.IGNORECASE,
)

_NO_RETRY_STATUS = (401, 403)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex}"


def timeout_message(timeout_ms: int) -> str:
    return f"Request timed out after {timeout_ms}ms"


@dataclass
class ChatOptions:
    model: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    temperature: float | None = 0.7
    max_retries: int = DEFAULT_MAX_RETRIES
    max_output_tokens: int | None = 8192


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ProviderResponse:
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage | None = None


@dataclass
class StreamChunk:
    type: str  # "text" | "tool_call" | "error" | "done"
    content: str = ""
    tool_call: ToolCall | None = None
    error: str | None = None
    timed_out: bool = False


class ToolCallAccumulator:
    """Rebuilds whole tool calls from streamed fragments.

    A fragment carrying an id that differs from the open call starts a new
    call and hands back the previous one. Fragments without an id, or with
    the open call's id, are appended to the open call.
    """

    def __init__(self):
        self._current: ToolCall | None = None

    def feed(
        self, call_id: str | None, name: str | None, arguments: str | None
    ) -> ToolCall | None:
        if self._current is not None and (not call_id or call_id == self._current.id):
            self._current.name += name or ""
            self._current.arguments += arguments or ""
            return None
        finished = self._current
        self._current = ToolCall(
            id=call_id or new_call_id(), name=name or "", arguments=arguments or ""
        )
        return finished

    def close(self) -> ToolCall | None:
        finished, self._current = self._current, None
        return finished


def status_code_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    status = getattr(getattr(exc, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def is_tools_unsupported_error(exc: BaseException) -> bool:
    """Heuristic for "this model/endpoint cannot do tool calling"."""
    if status_code_of(exc) not in _TOOLS_UNSUPPORTED_STATUS:
        return False
    return bool(_TOOLS_UNSUPPORTED_RE.search(str(exc)))


def is_retryable(exc: BaseException) -> bool:
    import litellm

    if isinstance(exc, (litellm.AuthenticationError, litellm.PermissionDeniedError)):
        return False
    if isinstance(exc, ConfigError):
        return False
    return status_code_of(exc) not in _NO_RETRY_STATUS


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = 1.0,
) -> T:
    """Await fn() up to *max_retries* times with exponential backoff.

    Authentication failures are raised immediately. Cancellation is never
    caught.
    """
    attempts = max(1, max_retries)
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            attempt += 1
            if attempt >= attempts or not is_retryable(e):
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.debug("provider call failed (%s), retrying in %.1fs", e, delay)
            await asyncio.sleep(delay)


class _ToolsUnsupported(Exception):
    pass


class Provider:
    """Interface every LLM backend implements."""

    name = "base"
    model: str | None = None

    async def chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        options: ChatOptions | None = None,
    ) -> ProviderResponse:
        raise NotImplementedError

    def stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        options: ChatOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError


class LiteLLMProvider(Provider):
    def __init__(
        self,
        provider: str,
        model: str,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self.name = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self._tools_unsupported: set[str] = set()

    # -- Routing ---------------------------------------------------------------

    def _route(self, model: str) -> tuple[str, dict]:
        """Map (provider, model) to a LiteLLM model string and credentials."""
        if self.name == "lmstudio":
            base = (self.base_url or LMSTUDIO_URL).rstrip("/")
            return f"openai/{model}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
        if self.name == "custom":
            return f"openai/{model.removeprefix('openai/')}", {
                "api_base": self.base_url,
                "api_key": self.api_key or "none",
            }
        if self.name == "openrouter":
            # Strip only a doubled LiteLLM prefix, keep org names like "openrouter/free".
            bare = (
                model[len("openrouter/") :]
                if model.startswith("openrouter/openrouter/")
                else model
            )
            kwargs = {"api_key": self.api_key}
        else:
            bare = model.removeprefix(f"{self.name}/")
            kwargs = {"api_key": self.api_key}
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return f"{self.name}/{bare}", kwargs

    def supports_tools(self, model: str | None = None) -> bool:
        return (model or self.model) not in self._tools_unsupported

    def _completion_kwargs(
        self, messages, tools, options: ChatOptions, model: str, stream: bool
    ) -> dict:
        model_str, routing = self._route(model)
        kwargs = dict(
            model=model_str,
            messages=messages,
            timeout=options.timeout_ms / 1000,
            **routing,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_output_tokens:
            kwargs["max_tokens"] = options.max_output_tokens
        if stream:
            kwargs["stream"] = True
        return kwargs

    async def _request(self, messages, tools, options: ChatOptions, model: str, stream: bool):
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self._completion_kwargs(messages, tools, options, model, stream)
        try:
            async with asyncio.timeout(options.timeout_ms / 1000):
                return await litellm.acompletion(**kwargs)
        except TimeoutError:
            raise ProviderTimeoutError(timeout_message(options.timeout_ms)) from None
        except litellm.Timeout as e:
            raise ProviderTimeoutError(timeout_message(options.timeout_ms)) from e
        except Exception as e:
            if tools and is_tools_unsupported_error(e):
                raise _ToolsUnsupported(str(e)) from e
            raise ProviderError(
                f"{self.name} API error: {e}", status_code=status_code_of(e)
            ) from e

    async def _request_with_fallback(self, messages, tools, options, stream: bool):
        model = options.model or self.model
        if tools and self.supports_tools(model):
            try:
                return await self._request(messages, tools, options, model, stream)
            except _ToolsUnsupported as e:
                logger.info("%s/%s rejected tools, retrying without: %s", self.name, model, e)
                self._tools_unsupported.add(model)
        return await self._request(messages, None, options, model, stream)

    # -- Non-streaming -----------------------------------------------------------

    async def chat(self, messages, tools=None, options=None) -> ProviderResponse:
        options = options or ChatOptions()
        response = await self._request_with_fallback(messages, tools, options, stream=False)
        return _parse_response(response)

    # -- Streaming ---------------------------------------------------------------

    async def stream(self, messages, tools=None, options=None):
        options = options or ChatOptions()
        try:
            response = await self._request_with_fallback(messages, tools, options, stream=True)
        except ProviderError as e:
            yield StreamChunk(
                "error", error=str(e), timed_out=isinstance(e, ProviderTimeoutError)
            )
            return

        timeout = options.timeout_ms / 1000
        accumulator = ToolCallAccumulator()
        iterator = response.__aiter__()
        try:
            while True:
                try:
                    async with asyncio.timeout(timeout):
                        raw = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    yield StreamChunk(
                        "error", error=timeout_message(options.timeout_ms), timed_out=True
                    )
                    return
                except Exception as e:
                    yield StreamChunk("error", error=f"{self.name} stream error: {e}")
                    return

                text, fragments = _delta_parts(raw)
                if text:
                    yield StreamChunk("text", content=text)
                for call_id, name, arguments in fragments:
                    finished = accumulator.feed(call_id, name, arguments)
                    if finished is not None:
                        yield StreamChunk("tool_call", tool_call=finished)
        finally:
            await _close_stream(response)

        last = accumulator.close()
        if last is not None:
            yield StreamChunk("tool_call", tool_call=last)
        yield StreamChunk("done")


def _parse_response(response) -> ProviderResponse:
    choice = response.choices[0]
    message = choice.message
    calls = [
        ToolCall(
            id=tc.id or new_call_id(),
            name=tc.function.name,
            arguments=tc.function.arguments or "",
        )
        for tc in (getattr(message, "tool_calls", None) or [])
    ]
    usage = getattr(response, "usage", None)
    return ProviderResponse(
        content=getattr(message, "content", None),
        tool_calls=calls,
        finish_reason=choice.finish_reason or ("tool_calls" if calls else "stop"),
        usage=Usage(
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            total_tokens=getattr(usage, "total_tokens", 0) or 0,
        )
        if usage is not None
        else None,
    )


def _delta_parts(raw) -> tuple[str, list[tuple[str | None, str | None, str | None]]]:
    """Extract (text, [(id, name_fragment, args_fragment), ...]) from a stream chunk."""
    choices = getattr(raw, "choices", None) or []
    if not choices:
        return "", []
    delta = getattr(choices[0], "delta", None)
    if delta is None:
        return "", []
    text = getattr(delta, "content", None) or ""
    fragments = []
    for tc in getattr(delta, "tool_calls", None) or []:
        fn = getattr(tc, "function", None)
        fragments.append(
            (
                getattr(tc, "id", None),
                getattr(fn, "name", None),
                getattr(fn, "arguments", None),
            )
        )
    return text, fragments


async def _close_stream(response) -> None:
    aclose = getattr(response, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:
        logger.debug("error closing provider stream: %s", e)


def resolve_provider(
    provider: str | None = None,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> LiteLLMProvider:
    """Pick a backend from explicit settings or from API keys in the environment."""
    if provider is None:
        if api_key:
            provider = "custom" if base_url else "openrouter"
        else:
            for name, env in API_KEY_ENV.items():
                if os.environ.get(env):
                    provider = name
                    break
            else:
                if base_url:
                    provider = "custom"
                else:
                    raise ConfigError(
                        "no provider configured: set OPENROUTER_API_KEY, "
                        "ANTHROPIC_API_KEY or OPENAI_API_KEY, or pass --provider"
                    )

    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")

    if provider in API_KEY_ENV:
        api_key = api_key or os.environ.get(API_KEY_ENV[provider])
        if not api_key:
            raise ConfigError(
                f"--provider {provider} requires an API key "
                f"(--api-key or {API_KEY_ENV[provider]})"
            )
    if provider == "custom" and not base_url:
        raise ConfigError("--provider custom requires --base-url")

    model = model or DEFAULT_MODELS.get(provider)
    if not model:
        raise ConfigError(f"--provider {provider} requires --model")

    return LiteLLMProvider(provider, model, api_key=api_key, base_url=base_url)

