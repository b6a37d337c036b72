# convstore.py
"""
Topic-scoped conversation history on disk.

One JSON file per topic (``<data_dir>/<topic>.json``):

    {"messages": [...], "total_tokens": 0}

Every mutation loads the whole record, changes it in memory and replaces the
file in one ``os.replace``. A single invocation owns the file; there is no
locking between concurrent invocations.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import orjson

from errors import StorageCorrupt, StorageWriteError

logger = logging.getLogger(__name__)

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

TOTAL_TOKENS_FILE = "total_tokens"
# Exit code for a failed per-topic token update, distinct from a failed append.
TOKEN_WRITE_EXIT = 7


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class FunctionCall:
    name: str
    # Parsed JSON when the model produced valid JSON, else the raw string.
    arguments: Any


MessageBody = Union[TextContent, FunctionCall]


@dataclass(frozen=True)
class Message:
    role: str
    body: MessageBody

    @classmethod
    def text(cls, role: str, text: str) -> "Message":
        return cls(role, TextContent(text))

    @property
    def content(self) -> Optional[str]:
        return self.body.text if isinstance(self.body, TextContent) else None

    @property
    def function_call(self) -> Optional[FunctionCall]:
        return self.body if isinstance(self.body, FunctionCall) else None

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.body, FunctionCall):
            return {
                "role": self.role,
                "content": None,
                "function_call": {"name": self.body.name, "arguments": self.body.arguments},
            }
        return {"role": self.role, "content": self.body.text}

    def to_wire(self) -> Dict[str, Any]:
        """Request form: function-call arguments travel as a JSON string."""
        data = self.to_dict()
        fc = data.get("function_call")
        if fc is not None and not isinstance(fc["arguments"], str):
            fc["arguments"] = orjson.dumps(fc["arguments"]).decode()
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> "Message":
        if not isinstance(raw, dict):
            raise ValueError("message is not an object")
        role = raw.get("role")
        if not isinstance(role, str) or not role:
            raise ValueError("message role is missing")
        fc = raw.get("function_call")
        if fc is not None:
            if not isinstance(fc, dict) or not isinstance(fc.get("name"), str):
                raise ValueError("malformed function_call")
            return cls(role, FunctionCall(fc["name"], fc.get("arguments")))
        content = raw.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise ValueError("message content is not a string")
        return cls(role, TextContent(content))


@dataclass
class ConversationRecord:
    messages: List[Message] = field(default_factory=list)
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "ConversationRecord":
        if not isinstance(raw, dict):
            raise ValueError("record is not an object")
        messages = raw.get("messages", [])
        if not isinstance(messages, list):
            raise ValueError("messages is not a list")
        total = raw.get("total_tokens", 0)
        # bool is an int subclass; reject it explicitly
        if isinstance(total, bool) or not isinstance(total, int):
            raise ValueError("total_tokens is not an integer")
        return cls(messages=[Message.from_dict(m) for m in messages], total_tokens=total)


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class ConversationStore:
    def __init__(self, data_dir: Union[str, Path]) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, topic: str) -> Path:
        return self.data_dir / f"{topic}.json"

    @property
    def tokens_path(self) -> Path:
        return self.data_dir / TOTAL_TOKENS_FILE

    def exists(self, topic: str) -> bool:
        return self.path_for(topic).is_file()

    def load(self, topic: str) -> ConversationRecord:
        path = self.path_for(topic)
        if not path.exists():
            return ConversationRecord()
        try:
            return ConversationRecord.from_dict(orjson.loads(path.read_bytes()))
        except (OSError, ValueError) as exc:
            # orjson.JSONDecodeError is a ValueError
            raise StorageCorrupt(f"Error reading or parsing conversation file '{path}': {exc}") from exc

    def _save(self, topic: str, record: ConversationRecord, exit_code: Optional[int] = None) -> None:
        path = self.path_for(topic)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, orjson.dumps(record.to_dict(), option=orjson.OPT_INDENT_2))
        except OSError as exc:
            raise StorageWriteError(f"Error writing conversation file '{path}': {exc}", exit_code=exit_code) from exc

    def append(self, topic: str, message: Message) -> ConversationRecord:
        record = self.load(topic)
        record.messages.append(message)
        self._save(topic, record)
        logger.debug("appended %s message to topic %r (%d total)", message.role, topic, len(record.messages))
        return record

    def create_topic(self, topic: str, system_prompt: str) -> ConversationRecord:
        return self.append(topic, Message.text(ROLE_SYSTEM, system_prompt))

    def add_tokens(self, topic: str, n: int) -> None:
        if n < 0:
            raise ValueError("token count cannot be negative")
        if self.exists(topic):
            record = self.load(topic)
            record.total_tokens += n
            self._save(topic, record, exit_code=TOKEN_WRITE_EXIT)
        self._bump_global_tokens(n)

    def global_tokens(self) -> int:
        try:
            return int(self.tokens_path.read_text().strip())
        except (OSError, ValueError):
            return 0

    def _bump_global_tokens(self, n: int) -> None:
        path = self.tokens_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, str(self.global_tokens() + n).encode())
        except OSError as exc:
            logger.warning("Failed to update global token file '%s': %s", path, exc)
