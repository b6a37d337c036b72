# streaming.py
"""
Incremental decoder for chat-completion event streams.

Each line of the response body looks like ``data: {...chunk...}``. Chunks
carry a ``choices[0].delta`` with either ``content`` fragments or
``function_call`` fragments (name first, then ``arguments`` pieces), and
eventually a ``finish_reason``.

The decoder picks its mode on the first delta that carries a content fragment
or a function-call name, and keeps that mode for the rest of the response:

    AWAITING_FIRST_DELTA -> DECODING_CONTENT       -> TERMINATED
                         -> DECODING_FUNCTION_CALL -> TERMINATED

Once terminated, the text is frozen but the stream is still read up to the
``[DONE]`` sentinel, because a usage-only chunk (``"choices": []``) may trail
the finish reason.

Fragments are handed back as soon as they are decoded so the caller can echo
them; nothing else is buffered between the network and the terminal.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, Dict, List, Optional, TextIO

import orjson

from convstore import ROLE_ASSISTANT, FunctionCall, Message, MessageBody, TextContent
from errors import ApiError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
NORMAL_FINISH_REASONS = frozenset({"stop", "function_call"})
STREAM_API_ERROR_EXIT = 10


class DecoderState(enum.Enum):
    AWAITING_FIRST_DELTA = "awaiting_first_delta"
    DECODING_CONTENT = "decoding_content"
    DECODING_FUNCTION_CALL = "decoding_function_call"
    TERMINATED = "terminated"


@dataclass
class Reply:
    """Final assistant turn, however it was obtained."""

    role: str
    body: MessageBody
    total_tokens: Optional[int] = None

    @property
    def is_function_call(self) -> bool:
        return isinstance(self.body, FunctionCall)

    def to_message(self) -> Message:
        return Message(self.role, self.body)


def usage_tokens(chunk: Dict[str, Any]) -> Optional[int]:
    usage = chunk.get("usage")
    if not isinstance(usage, dict):
        return None
    total = usage.get("total_tokens")
    if isinstance(total, int) and not isinstance(total, bool):
        return total
    return None


def parse_arguments(raw: str) -> Any:
    """Function-call arguments as JSON, or the raw text if they are not JSON."""
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        logger.warning("Function call arguments were not valid JSON.")
        return raw


class StreamDecoder:
    def __init__(self) -> None:
        self.state = DecoderState.AWAITING_FIRST_DELTA
        self.role = ROLE_ASSISTANT
        self.function_name: Optional[str] = None
        self.finish_reason: Optional[str] = None
        self.total_tokens: Optional[int] = None
        self.malformed = 0
        # Set once the [DONE] sentinel is seen.
        self.done = False
        # Content or argument fragments, depending on the latched mode.
        self._parts: List[str] = []

    @property
    def terminated(self) -> bool:
        return self.state is DecoderState.TERMINATED

    @property
    def buffer(self) -> str:
        return "".join(self._parts)

    def feed(self, line: str) -> Optional[str]:
        """Decode one line; return the fragment it contributed, if any."""
        if self.done:
            return None
        text = line.strip()
        if text.startswith(DATA_PREFIX):
            text = text[len(DATA_PREFIX):].strip()
        elif text.startswith(":") or text.startswith("event:"):
            # SSE comment / heartbeat or event name
            return None
        if not text:
            return None
        if text == DONE_SENTINEL:
            self.done = True
            return None

        chunk = self._parse(text)
        if chunk is None:
            return None

        tokens = usage_tokens(chunk)
        if tokens is not None:
            self.total_tokens = tokens
        if self.terminated:
            # Chunks after the finish reason only contribute usage.
            return None

        choices = chunk.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        choice = choices[0]

        fragment = None
        delta = choice.get("delta")
        if isinstance(delta, dict):
            fragment = self._apply_delta(delta)

        reason = choice.get("finish_reason")
        if reason:
            self.finish_reason = str(reason)
            self.state = DecoderState.TERMINATED
            if self.finish_reason not in NORMAL_FINISH_REASONS:
                raise ApiError(f"API error: {self.finish_reason}", exit_code=STREAM_API_ERROR_EXIT)
        return fragment

    def _parse(self, text: str) -> Optional[Dict[str, Any]]:
        try:
            chunk = orjson.loads(text)
        except orjson.JSONDecodeError as exc:
            self.malformed += 1
            logger.warning("Failed to parse JSON stream chunk: %s - Line: %r", exc, text)
            return None
        if not isinstance(chunk, dict):
            self.malformed += 1
            logger.warning("Unexpected stream chunk, expected an object - Line: %r", text)
            return None
        return chunk

    def _apply_delta(self, delta: Dict[str, Any]) -> Optional[str]:
        role = delta.get("role")
        if isinstance(role, str) and role:
            self.role = role

        fc = delta.get("function_call")
        if not isinstance(fc, dict):
            fc = None
        content = delta.get("content")

        if self.state is DecoderState.AWAITING_FIRST_DELTA:
            if fc is not None and fc.get("name"):
                self.state = DecoderState.DECODING_FUNCTION_CALL
                self.function_name = str(fc["name"])
            elif isinstance(content, str) and content:
                self.state = DecoderState.DECODING_CONTENT

        if self.state is DecoderState.DECODING_FUNCTION_CALL:
            fragment = fc.get("arguments") if fc is not None else None
            if fragment is None:
                fragment = content
        elif self.state is DecoderState.DECODING_CONTENT:
            if fc is not None and fc.get("name"):
                logger.warning("Ignoring function call %r in a content response.", fc.get("name"))
            fragment = content
        else:
            fragment = None

        if not isinstance(fragment, str) or not fragment:
            return None
        self._parts.append(fragment)
        return fragment

    def finish(self) -> Reply:
        if not self.terminated:
            logger.debug("stream closed without a finish reason")
            self.state = DecoderState.TERMINATED
        if self.function_name is not None:
            body: MessageBody = FunctionCall(self.function_name, parse_arguments(self.buffer))
        else:
            body = TextContent(self.buffer)
        return Reply(self.role, body, self.total_tokens)


async def decode_stream(
    lines: AsyncIterable[str],
    out: TextIO,
    decoder: Optional[StreamDecoder] = None,
) -> Reply:
    """Feed ``lines`` through a decoder, echoing each fragment to ``out``."""
    decoder = decoder or StreamDecoder()
    try:
        async for line in lines:
            fragment = decoder.feed(line)
            if fragment:
                out.write(fragment)
                out.flush()
            if decoder.done:
                break
    finally:
        out.write("\n")
        out.flush()
    return decoder.finish()
