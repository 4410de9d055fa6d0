"""
CLI client for the mcpchat API.

In the default mode every message is answered synchronously by ``POST /chat``.  With ``--async``
the message is queued and the client follows the conversation's progress channel until the run
completes or fails, printing each lifecycle event as it arrives.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import (
    Any,
    Callable,
    Dict,
    Tuple,
    cast,
)

import httpx

from mcpchat.config import settings

logger = logging.getLogger(__name__)

_STYLES = {
    "error": "\033[91m",
    "info": "\033[92m",
    "reply": "\033[33m",
    "prompt": "\033[94m",
}
_RESET = "\033[0m"
_TERMINAL_EVENTS = {"completed", "failed"}


def say(text: str, style: str, **kwargs: Any) -> None:
    """Print *text* in the colour of *style* (error, info, reply or prompt)."""
    print(f"{_STYLES[style]}{text}{_RESET}", **kwargs)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # SIGINT must break out of a blocking read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        return input().strip(), True
    except (EOFError, KeyboardInterrupt):
        return "", False


def call_api(
    endpoint: str,
    data: Dict[str, Any] | None = None,
    max_retries: int = 5,
    *,
    method: str = "POST",
    headers: Dict[str, str] | None = None,
    params: Dict[str, Any] | None = None,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    Call the API and return the decoded body.

    Connection refusals (the server is still starting) are retried with exponential backoff;
    every other failure is returned as ``{"success": False, "message": ...}``.
    """
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=settings.JAN_TIMEOUT, transport=transport) as client:
                response = client.request(
                    method, api_url, json=data, headers=headers, params=params
                )
        except httpx.ConnectError as e:
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                sleep(retry_delay)
                continue
            logger.error("API request error: %s", e)
            return {"success": False, "message": f"Error connecting to API: {e}"}
        except httpx.HTTPError as e:
            logger.error("API request error: %s", e)
            return {"success": False, "message": f"Error connecting to API: {e}"}

        try:
            return cast(Dict[str, Any], response.json())
        except ValueError:
            return {"success": False, "message": f"API error: HTTP {response.status_code}"}

    return {"success": False, "message": f"Failed to connect to API after {max_retries} attempts"}


def extract_reply(response: Dict[str, Any]) -> str:
    """Pull the assistant text out of a ``/chat`` response, or describe the failure."""
    if not response.get("success"):
        return f"⚠️ {response.get('message') or response.get('error') or 'Unknown error'}"
    choices = (response.get("data") or {}).get("choices") or [{}]
    content = choices[0].get("message", {}).get("content")
    return content or "No response from API"


def describe_event(event: Dict[str, Any]) -> Tuple[str, str]:
    """Return ``(text, style)`` for one progress event."""
    kind = event.get("kind")
    payload = event.get("payload", {})
    if kind == "queued":
        return f"… {payload.get('message', 'Queued')}", "info"
    if kind == "api_responding":
        return f"… thinking (iteration {payload.get('iteration')})", "info"
    if kind == "tools_executing":
        names = [c.get("function", {}).get("name") for c in payload.get("tool_calls", [])]
        return f"🔧 calling {', '.join(n for n in names if n)}", "info"
    if kind == "tools_completed":
        results = payload.get("results", [])
        succeeded = sum(1 for r in results if r.get("ok"))
        return f"🔧 {succeeded}/{len(results)} tool call(s) succeeded", "info"
    if kind == "completed":
        reply = extract_reply({"success": True, "data": payload.get("response", {}).get("data")})
        return reply, "reply"
    return f"⚠️ {payload.get('error', 'Run failed')}", "error"


def follow_channel(
    user_id: str,
    conversation_id: str,
    after: int = 0,
    poll_interval: float = 0.5,
    timeout: float | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any] | None:
    """
    Print the events of a conversation channel from position *after* until a terminal one
    arrives.

    Channels keep earlier turns, so pass the ``events_after`` of the queued response.  Returns
    the terminal event, or ``None`` when *timeout* elapses first.
    """
    deadline = None if timeout is None else clock() + timeout
    while deadline is None or clock() < deadline:
        page = call_api(
            f"/channels/{user_id}/{conversation_id}/events",
            method="GET",
            params={"after": after},
            transport=transport,
            sleep=sleep,
        )
        for event in page.get("events", []):
            text, style = describe_event(event)
            say(text, style)
            if event.get("kind") in _TERMINAL_EVENTS:
                return event
        after = page.get("next", after)
        sleep(poll_interval)
    return None


def run_cli(run_async: bool = False) -> None:
    """Run the CLI client that communicates with the API."""
    conversation_id = str(uuid.uuid4())
    user_id = f"cli-{uuid.uuid4().hex[:8]}"

    say("\n🔮 mcpchat shell - type 'exit' or 'quit' (or Ctrl+C) to exit", "info")
    while True:
        say("\n🧑 You: ", "prompt", end="")
        user_msg, ok = get_user_message()
        if not ok or user_msg.lower() in {"exit", "quit"}:
            break

        body = {"message": user_msg, "conversation_id": conversation_id}
        if run_async:
            queued = call_api("/chat", {**body, "async": True}, headers={"X-User-Id": user_id})
            if not queued.get("success"):
                say(extract_reply(queued), "error")
                continue
            follow_channel(
                user_id,
                conversation_id,
                after=queued.get("events_after", 0),
                timeout=settings.JAN_TIMEOUT,
            )
            continue

        response = call_api("/chat", body)
        say(extract_reply(response), "reply" if response.get("success") else "error")
        metrics = response.get("metrics")
        if metrics:
            say(f"[{metrics['iterations']} iteration(s), {metrics['duration_seconds']}s]", "info")


if __name__ == "__main__":
    run_cli()
