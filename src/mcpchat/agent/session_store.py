"""Durable conversation history keyed by (user, conversation id)."""

import hashlib
import json
import logging
import threading
from abc import (
    ABC,
    abstractmethod,
)
from pathlib import Path
from typing import (
    Dict,
    List,
    Sequence,
    Tuple,
)

from mcpchat.core.schema import Message

logger = logging.getLogger(__name__)


class SessionStore(ABC):
    """Conversation history store; the loop borrows a copy and writes back at the end."""

    @abstractmethod
    def get(self, user_id: str, conversation_id: str) -> List[Message]:
        """Return the stored history, or an empty list."""

    @abstractmethod
    def put(self, user_id: str, conversation_id: str, messages: Sequence[Message]) -> None:
        """Replace the stored history."""

    @abstractmethod
    def clear(self, user_id: str, conversation_id: str) -> None:
        """Forget the conversation."""


class InMemorySessionStore(SessionStore):
    """Process-local store (lost on restart)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[Tuple[str, str], List[Message]] = {}

    def get(self, user_id: str, conversation_id: str) -> List[Message]:
        with self._lock:
            stored = self._sessions.get((user_id, conversation_id), [])
            return [m.model_copy(deep=True) for m in stored]

    def put(self, user_id: str, conversation_id: str, messages: Sequence[Message]) -> None:
        with self._lock:
            self._sessions[(user_id, conversation_id)] = [
                m.model_copy(deep=True) for m in messages
            ]

    def clear(self, user_id: str, conversation_id: str) -> None:
        with self._lock:
            self._sessions.pop((user_id, conversation_id), None)


class JsonFileSessionStore(SessionStore):
    """
    One JSON document per conversation under *root*; writes go through a temp file.

    Ids are arbitrary client-supplied strings, so each path component is the SHA-256 digest of
    its id.  Distinct keys never share a file and no id can leave *root*.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, user_id: str, conversation_id: str) -> Path:
        user = _digest(user_id)
        conversation = _digest(conversation_id)
        return self.root / "conversations" / user / f"{conversation}.json"

    def get(self, user_id: str, conversation_id: str) -> List[Message]:
        path = self._path(user_id, conversation_id)
        with self._lock:
            if not path.exists():
                return []
            data = json.loads(path.read_text(encoding="utf-8"))
        return [Message.model_validate(item) for item in data.get("messages", [])]

    def put(self, user_id: str, conversation_id: str, messages: Sequence[Message]) -> None:
        path = self._path(user_id, conversation_id)
        document = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            "messages": [m.model_dump(mode="json", exclude_none=True) for m in messages],
        }
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(document), encoding="utf-8")
            tmp.replace(path)
        logger.debug("Saved %d messages for conversation %s", len(messages), conversation_id)

    def clear(self, user_id: str, conversation_id: str) -> None:
        with self._lock:
            self._path(user_id, conversation_id).unlink(missing_ok=True)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
