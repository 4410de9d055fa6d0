"""
Completion client for mcpchat.

This module is the only place that *directly* calls an LLM.  Everything else (orchestration loop,
tools, sessions) stays model-agnostic.

We support two back-ends out of the box:

1. **Jan** (or any OpenAI-compatible local server) via plain ``httpx``.
2. **OpenAI** via the official SDK, for hosted models.

Additional back-ends can be added by subclassing :class:`CompletionClient` and registering via
:func:`register_backend`.  All of them honour the same retry discipline: only connection-level
failures are retried; an HTTP error response is deterministic and surfaces immediately.
"""

import logging
import time
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Sequence,
    Type,
)

import httpx
from pydantic import ValidationError

from mcpchat.config import settings
from mcpchat.core.errors import (
    UpstreamParseError,
    UpstreamProtocolError,
    UpstreamUnavailableError,
)
from mcpchat.core.retry import call_with_retries
from mcpchat.core.schema import (
    CompletionResponse,
    Message,
)

logger = logging.getLogger(__name__)

# Keys the loop owns; callers cannot override them through request options.
_RESERVED_KEYS = {"messages", "tools", "stream"}


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_BACKEND_REGISTRY: dict[str, Type["CompletionClient"]] = {}


def register_backend(name: str) -> Callable:
    """Decorator to register a completion client class under *name*."""

    def wrapper(cls: Type["CompletionClient"]) -> Type["CompletionClient"]:
        _BACKEND_REGISTRY[name] = cls
        return cls

    return wrapper


def load_completion_client(name: str | None = None) -> "CompletionClient":
    """
    Factory that returns an instantiated completion client.

    Fallback order:
    1. *name* arg
    2. ``settings.COMPLETION_BACKEND``
    3. default: ``"jan"``
    """
    target = name or getattr(settings, "COMPLETION_BACKEND", "jan")
    cls = _BACKEND_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Completion backend '{target}' is not registered.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class CompletionClient(ABC):
    """Sends a conversation (plus optional tools) to a chat completion endpoint."""

    def __init__(
        self,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        retries: int | None = None,
        retry_delay_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model or settings.JAN_MODEL
        self.max_tokens = settings.JAN_MAX_TOKENS if max_tokens is None else max_tokens
        self.temperature = settings.JAN_TEMPERATURE if temperature is None else temperature
        self.retries = settings.JAN_RETRIES if retries is None else retries
        self.retry_delay_ms = (
            settings.JAN_RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
        )
        self._sleep = sleep

    def build_payload(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Merge caller options with provider defaults into a request body."""
        payload: Dict[str, Any] = {
            k: v for k, v in (options or {}).items() if k not in _RESERVED_KEYS and v is not None
        }
        payload.setdefault("model", self.model)
        payload.setdefault("max_tokens", self.max_tokens)
        payload.setdefault("temperature", self.temperature)
        payload["stream"] = False
        payload["messages"] = [m.to_payload() for m in messages]
        if tools:
            payload["tools"] = list(tools)
        else:
            # a model given no tools cannot be asked to call one
            payload.pop("tool_choice", None)
            payload.pop("parallel_tool_calls", None)
        return payload

    @staticmethod
    def parse_body(data: Any) -> CompletionResponse:
        if not isinstance(data, Mapping):
            raise UpstreamParseError(f"Expected a JSON object, got {type(data).__name__}")
        try:
            return CompletionResponse.from_payload(data)
        except (ValueError, ValidationError) as exc:
            raise UpstreamParseError(f"Failed to parse completion response: {exc}") from exc

    @abstractmethod
    def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> CompletionResponse:
        """
        Return the assistant turn for *messages*.

        Raises
        ------
        UpstreamUnavailableError
            Connection failure after retries.
        UpstreamProtocolError
            Non-2xx status or non-JSON content type.
        UpstreamParseError
            Body could not be decoded.
        """

    def list_models(self) -> List[str]:
        return []

    def check_connection(self) -> bool:
        """Return True when the endpoint answers a model listing."""
        try:
            self.list_models()
            return True
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Completion endpoint unreachable: %s", exc)
            return False


# ---------------------------------------------------------------------------
# Concrete clients
# ---------------------------------------------------------------------------
@register_backend("jan")
class JanCompletionClient(CompletionClient):
    """OpenAI-compatible local server (Jan) over httpx."""

    def __init__(
        self,
        base_url: str | None = None,
        auth_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.base_url = (base_url or settings.JAN_API_URL).rstrip("/")
        self.auth_token = auth_token if auth_token is not None else settings.JAN_AUTH_TOKEN
        self.timeout = settings.JAN_TIMEOUT if timeout is None else timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        def send() -> httpx.Response:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                return client.request(method, url, headers=self._headers(), **kwargs)

        try:
            return call_with_retries(
                send,
                attempts=self.retries + 1,
                delay_ms=self.retry_delay_ms,
                retry_on=(httpx.TransportError,),
                sleep=self._sleep,
                label=f"{method} {url}",
            )
        except httpx.TimeoutException as exc:
            logger.error("Jan API connection timeout after %ss: %s", self.timeout, exc)
            raise UpstreamUnavailableError(
                f"Jan API request timed out after {self.timeout} seconds. The model may be "
                "taking too long to respond or MCP tools are hanging."
            ) from exc
        except httpx.TransportError as exc:
            logger.error("Jan API connection failed: %s", exc)
            raise UpstreamUnavailableError(f"Could not reach Jan API at {url}: {exc}") from exc

    def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> CompletionResponse:
        payload = self.build_payload(messages, tools, options)
        payload.setdefault("cache_prompt", True)
        url = f"{self.base_url}/v1/chat/completions"

        logger.info(
            "Sending request to Jan API (url=%s, model=%s, messages=%d, tools=%d)",
            url,
            payload["model"],
            len(payload["messages"]),
            len(payload.get("tools", [])),
        )
        resp = self._send("POST", url, json=payload)

        if not resp.is_success:
            logger.error("Jan API request failed (status=%d): %s", resp.status_code, resp.text)
            raise UpstreamProtocolError(
                f"Jan API request failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        content_type = resp.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error("Jan API returned non-JSON response (content-type=%s)", content_type)
            raise UpstreamProtocolError(
                f"Jan API returned non-JSON response (Content-Type: {content_type})",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("Failed to parse Jan API response as JSON: %s", exc)
            raise UpstreamParseError(f"Failed to parse Jan API response: {exc}") from exc
        return self.parse_body(data)

    def list_models(self) -> List[str]:
        resp = self._send("GET", f"{self.base_url}/v1/models")
        resp.raise_for_status()
        return [m.get("id", "") for m in resp.json().get("data", [])]


@register_backend("openai")
class OpenAICompletionClient(CompletionClient):
    """Hosted OpenAI (or compatible) endpoint through the official SDK."""

    _KNOWN_PARAMS = {
        "model",
        "messages",
        "tools",
        "tool_choice",
        "parallel_tool_calls",
        "max_tokens",
        "temperature",
        "top_p",
        "stop",
        "seed",
        "presence_penalty",
        "frequency_penalty",
        "stream",
    }

    def __init__(self, client: Any = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if client is None:
            import openai  # pylint: disable=import-outside-toplevel

            client = openai.OpenAI(
                api_key=settings.OPENAI_API_KEY,
                base_url=settings.OPENAI_BASE_URL,
                timeout=settings.JAN_TIMEOUT,
                max_retries=0,  # retries are ours, connection failures only
            )
        self._client = client

    def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> CompletionResponse:
        import openai  # pylint: disable=import-outside-toplevel

        payload = self.build_payload(messages, tools, options)
        extra_body = {k: payload.pop(k) for k in list(payload) if k not in self._KNOWN_PARAMS}
        if extra_body:
            payload["extra_body"] = extra_body

        logger.info(
            "Sending request to OpenAI (model=%s, messages=%d, tools=%d)",
            payload["model"],
            len(payload["messages"]),
            len(payload.get("tools", [])),
        )
        try:
            resp = call_with_retries(
                lambda: self._client.chat.completions.create(**payload),
                attempts=self.retries + 1,
                delay_ms=self.retry_delay_ms,
                retry_on=(openai.APIConnectionError,),
                sleep=self._sleep,
                label="OpenAI chat completion",
            )
        except openai.APIConnectionError as exc:
            raise UpstreamUnavailableError(f"Could not reach OpenAI: {exc}") from exc
        except openai.APIStatusError as exc:
            raise UpstreamProtocolError(
                f"OpenAI request failed with status {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
                body=str(exc.body),
            ) from exc

        return self.parse_body(resp.model_dump())

    def list_models(self) -> List[str]:
        return [m.id for m in self._client.models.list()]
