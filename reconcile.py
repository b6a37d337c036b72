# reconcile.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import orjson

from convstore import ROLE_ASSISTANT, ROLE_USER, ConversationStore, FunctionCall, Message, TextContent
from streaming import Reply, parse_arguments, usage_tokens

logger = logging.getLogger(__name__)


def reply_from_body(body: Any) -> Optional[Reply]:
    """Interpret a buffered (or pre-recorded) completion body.

    Returns ``None`` when the body has no ``choices[0].message``.
    """
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None

    role = message.get("role")
    if not isinstance(role, str) or not role:
        role = ROLE_ASSISTANT

    fc = message.get("function_call")
    if isinstance(fc, dict) and fc.get("name"):
        arguments = fc.get("arguments")
        if isinstance(arguments, str):
            arguments = parse_arguments(arguments)
        reply_body: Any = FunctionCall(str(fc["name"]), arguments)
    else:
        content = message.get("content")
        reply_body = TextContent(content if isinstance(content, str) else "")
    return Reply(role, reply_body, usage_tokens(body))


def render_reply(reply: Reply) -> str:
    if isinstance(reply.body, FunctionCall):
        data: Dict[str, Any] = {"name": reply.body.name, "arguments": reply.body.arguments}
        return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()
    return reply.body.text


def commit(
    store: ConversationStore,
    topic: str,
    prompt: str,
    reply: Reply,
    *,
    dry_run: bool = False,
    replayed: bool = False,
) -> bool:
    """Append the prompt and the reply to the topic; returns whether it wrote."""
    if dry_run or replayed:
        return False
    # User turn first so the log keeps causal order.
    store.append(topic, Message.text(ROLE_USER, prompt))
    store.append(topic, reply.to_message())
    return True


def account_tokens(store: ConversationStore, topic: str, reply: Reply) -> None:
    if reply.total_tokens is None:
        return
    store.add_tokens(topic, reply.total_tokens)
    logger.debug("recorded %d tokens for topic %r", reply.total_tokens, topic)
