"""
Tests for the CLI client helpers.

Run with:
$ pytest -q
"""

import httpx

from mcpchat.client import cli
from mcpchat.client.cli import (
    call_api,
    describe_event,
    extract_reply,
    follow_channel,
)
from mcpchat.main import build_parser


def _answer(text: str) -> dict:
    return {"choices": [{"message": {"content": text}}]}


def test_call_api_retries_until_server_is_up() -> None:
    """Connection refusals back off exponentially before the request goes through."""

    attempts = []
    sleeps = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("refused")
        return httpx.Response(200, json={"success": True, "data": {}})

    resp = call_api(
        "/chat",
        {"message": "hi"},
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )

    assert resp == {"success": True, "data": {}}
    assert sleeps == [0.5, 1.0]
    assert attempts[0].url.path == "/chat"


def test_call_api_gives_up() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused")

    resp = call_api(
        "/chat",
        {"message": "hi"},
        max_retries=2,
        transport=httpx.MockTransport(handler),
        sleep=lambda _: None,
    )

    assert resp["success"] is False
    assert "Error connecting to API" in resp["message"]


def test_extract_reply() -> None:
    ok = {"success": True, "data": {"choices": [{"message": {"content": "Hello!"}}]}}
    failed = {"success": False, "error": "upstream_unavailable", "message": "Jan is down"}

    assert extract_reply(ok) == "Hello!"
    assert extract_reply({"success": True, "data": {}}) == "No response from API"
    assert extract_reply(failed).endswith("Jan is down")


def test_describe_event() -> None:
    executing = {
        "kind": "tools_executing",
        "payload": {"tool_calls": [{"function": {"name": "compressor_ai_readings"}}]},
    }
    completed = {
        "kind": "completed",
        "payload": {"response": {"data": {"choices": [{"message": {"content": "Done"}}]}}},
    }
    partial = {"kind": "tools_completed", "payload": {"results": [{"ok": True}, {"ok": False}]}}

    assert describe_event(executing) == ("🔧 calling compressor_ai_readings", "info")
    assert describe_event(completed) == ("Done", "reply")
    assert describe_event(partial)[0].endswith("1/2 tool call(s) succeeded")
    assert describe_event({"kind": "failed", "payload": {"error": "boom"}})[1] == "error"


def test_follow_channel_stops_at_terminal_event(capsys) -> None:
    """Polling resumes from the returned cursor and ends on ``completed``."""

    pages = [
        {"events": [{"kind": "queued", "payload": {"message": "Processing"}}], "next": 1},
        {"events": [], "next": 1},
        {"events": [{"kind": "completed", "payload": {"response": {}}}], "next": 2},
    ]
    cursors = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursors.append(request.url.params["after"])
        return httpx.Response(200, json=pages.pop(0))

    event = follow_channel(
        "u1", "c1", transport=httpx.MockTransport(handler), sleep=lambda _: None
    )

    assert event["kind"] == "completed"
    assert cursors == ["0", "1", "1"]
    assert "Processing" in capsys.readouterr().out


def test_follow_channel_starts_after_earlier_turns() -> None:
    """Events of previous turns on the same channel are skipped."""

    log = [
        {"kind": "queued", "payload": {}},
        {"kind": "completed", "payload": {"response": {"data": _answer("FIRST ANSWER")}}},
        {"kind": "queued", "payload": {}},
        {"kind": "completed", "payload": {"response": {"data": _answer("SECOND ANSWER")}}},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        after = int(request.url.params["after"])
        return httpx.Response(200, json={"events": log[after:], "next": len(log)})

    event = follow_channel(
        "u1", "c1", after=2, transport=httpx.MockTransport(handler), sleep=lambda _: None
    )

    assert describe_event(event) == ("SECOND ANSWER", "reply")


def test_async_shell_follows_each_turn(monkeypatch, capsys) -> None:
    """Every queued message is followed from the position the server reported."""

    log = []
    messages = iter([("one", True), ("two", True), ("", False)])

    def fake_call_api(endpoint, data=None, max_retries=5, **kwargs):
        if kwargs.get("method", "POST") == "POST":
            position = len(log)
            log.append({"kind": "queued", "payload": {"message": data["message"]}})
            answer = _answer(f"answer to {data['message']}")
            log.append({"kind": "completed", "payload": {"response": {"data": answer}}})
            return {"success": True, "events_after": position}
        after = kwargs["params"]["after"]
        return {"events": log[after:], "next": len(log)}

    monkeypatch.setattr(cli, "get_user_message", lambda: next(messages))
    monkeypatch.setattr(cli, "call_api", fake_call_api)

    cli.run_cli(run_async=True)

    out = capsys.readouterr().out
    assert out.count("answer to one") == 1
    assert out.count("answer to two") == 1


def test_follow_channel_times_out() -> None:
    ticks = iter([0.0, 0.0, 5.0])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"events": [], "next": 0})

    result = follow_channel(
        "u1",
        "c1",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
        sleep=lambda _: None,
        clock=lambda: next(ticks),
    )

    assert result is None


def test_parser_defaults() -> None:
    args = build_parser().parse_args(["--mode", "CLI", "--log-level", "debug"])

    assert args.mode == "cli"
    assert args.log_level == "debug"
    assert args.run_async is False
    assert build_parser().parse_args(["--async"]).run_async is True
