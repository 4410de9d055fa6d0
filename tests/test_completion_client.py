"""
Tests for the completion clients.

Run with:
$ pytest -q
"""

import json

import httpx
import pytest
from helpers import (
    text_reply,
    tool_reply,
)

from mcpchat.core.errors import (
    UpstreamParseError,
    UpstreamProtocolError,
    UpstreamUnavailableError,
)
from mcpchat.core.schema import (
    CompletionResponse,
    Message,
)
from mcpchat.llm.client import (
    JanCompletionClient,
    OpenAICompletionClient,
    load_completion_client,
)

MESSAGES = [Message.system("Be brief."), Message.user("Hello")]


class Recorder:
    """MockTransport handler replaying queued responses and recording requests."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.responses.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _jan(recorder: Recorder, **kwargs) -> JanCompletionClient:
    params = {
        "base_url": "http://jan.test/",
        "auth_token": "secret",
        "model": "llama-test",
        "max_tokens": 256,
        "temperature": 0.1,
        "retries": 2,
        "retry_delay_ms": 0,
        "sleep": lambda _: None,
    }
    params.update(kwargs)
    return JanCompletionClient(transport=httpx.MockTransport(recorder), **params)


def test_request_carries_defaults_and_auth() -> None:
    """Defaults fill in unset options; reserved keys cannot be overridden."""

    recorder = Recorder(httpx.Response(200, json=text_reply("Hi!")))
    client = _jan(recorder)

    response = client.complete(MESSAGES, None, {"temperature": 0.9, "stream": True})

    assert response.message.content == "Hi!"
    request = recorder.requests[0]
    assert str(request.url) == "http://jan.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["model"] == "llama-test"
    assert body["max_tokens"] == 256
    assert body["temperature"] == 0.9
    assert body["stream"] is False
    assert body["cache_prompt"] is True
    assert "tools" not in body
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hello"},
    ]


def test_tool_choice_dropped_without_tools() -> None:
    recorder = Recorder(httpx.Response(200, json=text_reply("ok")))

    _jan(recorder, auth_token="").complete(
        MESSAGES, [], {"tool_choice": "auto", "parallel_tool_calls": False}
    )

    body = json.loads(recorder.requests[0].content)
    assert "tool_choice" not in body
    assert "parallel_tool_calls" not in body
    assert "Authorization" not in recorder.requests[0].headers


def test_tools_are_sent_when_offered() -> None:
    schema = {"type": "function", "function": {"name": "sensor_stats", "parameters": {}}}
    recorder = Recorder(httpx.Response(200, json=tool_reply(("call_1", "sensor_stats", {}))))

    response = _jan(recorder).complete(MESSAGES, [schema], {"tool_choice": "auto"})

    body = json.loads(recorder.requests[0].content)
    assert body["tools"] == [schema]
    assert body["tool_choice"] == "auto"
    assert [c.name for c in response.tool_calls] == ["sensor_stats"]


def test_http_error_is_not_retried() -> None:
    """A 500 surfaces immediately as a protocol error."""

    recorder = Recorder(httpx.Response(500, text="model crashed"))

    with pytest.raises(UpstreamProtocolError) as info:
        _jan(recorder).complete(MESSAGES)
    assert info.value.status_code == 500
    assert info.value.body == "model crashed"
    assert len(recorder.requests) == 1


def test_non_json_content_type() -> None:
    recorder = Recorder(httpx.Response(200, text="<html>proxy</html>"))

    with pytest.raises(UpstreamProtocolError, match="non-JSON"):
        _jan(recorder).complete(MESSAGES)


def test_unparseable_body() -> None:
    """JSON without choices cannot be turned into an assistant turn."""

    recorder = Recorder(
        httpx.Response(200, json={"error": "overloaded"}),
        httpx.Response(
            200, content=b"{broken", headers={"content-type": "application/json"}
        ),
    )
    client = _jan(recorder)

    with pytest.raises(UpstreamParseError):
        client.complete(MESSAGES)
    with pytest.raises(UpstreamParseError):
        client.complete(MESSAGES)


def test_connection_errors_are_retried() -> None:
    """Transport failures are retried; success on the last attempt is returned."""

    recorder = Recorder(
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        httpx.Response(200, json=text_reply("finally")),
    )

    response = _jan(recorder, retries=2).complete(MESSAGES)

    assert response.message.content == "finally"
    assert len(recorder.requests) == 3


def test_connection_errors_exhaust_retries() -> None:
    recorder = Recorder(*[httpx.ConnectError("refused") for _ in range(3)])

    with pytest.raises(UpstreamUnavailableError):
        _jan(recorder, retries=2).complete(MESSAGES)
    assert len(recorder.requests) == 3


def test_timeout_is_reported_as_unavailable() -> None:
    recorder = Recorder(httpx.ReadTimeout("slow"))

    with pytest.raises(UpstreamUnavailableError, match="timed out"):
        _jan(recorder, retries=0).complete(MESSAGES)


def test_nameless_tool_calls_are_dropped() -> None:
    """Entries without a function name are discarded; missing ids are generated."""

    payload = tool_reply(("", "sensor_stats", {}))
    payload["choices"][0]["message"]["tool_calls"].append({"id": "x", "function": {}})

    response = CompletionResponse.from_payload(payload)

    assert len(response.tool_calls) == 1
    assert response.tool_calls[0].id.startswith("call_")
    assert response.usage is None


def test_check_connection_lists_models() -> None:
    recorder = Recorder(
        httpx.Response(200, json={"data": [{"id": "llama-test"}]}),
        httpx.ConnectError("down"),
    )
    client = _jan(recorder, retries=0)

    assert client.check_connection()
    assert not client.check_connection()


def test_unknown_backend() -> None:
    with pytest.raises(ValueError, match="not registered"):
        load_completion_client("nonexistent")


class _FakeCompletions:
    def __init__(self) -> None:
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        return _Dumpable(text_reply("from openai"))


class _Dumpable:
    def __init__(self, data) -> None:
        self.data = data

    def model_dump(self):
        return self.data


class _FakeOpenAI:
    def __init__(self) -> None:
        self.chat = type("Chat", (), {})()
        self.chat.completions = _FakeCompletions()


def test_openai_backend_moves_unknown_params_to_extra_body() -> None:
    """Provider-specific options travel in ``extra_body``."""

    fake = _FakeOpenAI()
    client = OpenAICompletionClient(client=fake, model="gpt-test", retry_delay_ms=0)

    response = client.complete(MESSAGES, None, {"cache_prompt": True, "top_p": 0.5})

    kwargs = fake.chat.completions.kwargs
    assert kwargs["model"] == "gpt-test"
    assert kwargs["top_p"] == 0.5
    assert kwargs["extra_body"] == {"cache_prompt": True}
    assert response.message.content == "from openai"
