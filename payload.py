# payload.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from convstore import ROLE_USER, ConversationRecord

DEFAULT_TOPIC = "General"


def history_for(record: ConversationRecord, topic: str, chat_mode: bool) -> List[Dict[str, Any]]:
    """Stored messages to replay ahead of the new prompt."""
    # The default topic is one-shot: nothing is replayed.
    if topic == DEFAULT_TOPIC or not record.messages:
        return []
    if chat_mode:
        return [m.to_wire() for m in record.messages]
    return [record.messages[0].to_wire()]


def build_chat_payload(
    properties: Mapping[str, Any],
    record: ConversationRecord,
    topic: str,
    chat_mode: bool,
    prompt: str,
    model: str,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"model": model, "stream": True}
    payload.update(properties)
    messages = history_for(record, topic, chat_mode)
    messages.append({"role": ROLE_USER, "content": prompt})
    payload["messages"] = messages
    return payload


def is_streaming(payload: Mapping[str, Any]) -> bool:
    return bool(payload.get("stream", True))


def build_api_payload(
    defaults: Mapping[str, Any],
    properties: Mapping[str, Any],
    protected: Iterable[str] = (),
) -> Dict[str, Any]:
    """Defaults overlaid with properties; ``protected`` keys keep their default."""
    locked = {k.lower() for k in protected}
    payload = dict(defaults)
    for key, value in properties.items():
        if key.lower() in locked:
            continue
        payload[key] = value
    return payload
