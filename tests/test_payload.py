from convstore import ConversationRecord, FunctionCall, Message
from payload import DEFAULT_TOPIC, build_api_payload, build_chat_payload, is_streaming


def _record():
    return ConversationRecord(
        messages=[
            Message.text("system", "You are a pirate."),
            Message.text("user", "hi"),
            Message.text("assistant", "arr"),
        ],
        total_tokens=42,
    )


def test_defaults_and_prompt():
    payload = build_chat_payload({}, ConversationRecord(), DEFAULT_TOPIC, False, "ping", "gpt-4o")
    assert payload == {
        "model": "gpt-4o",
        "stream": True,
        "messages": [{"role": "user", "content": "ping"}],
    }


def test_properties_override_defaults():
    props = {"stream": False, "model": "other", "temperature": 0.2}
    payload = build_chat_payload(props, ConversationRecord(), DEFAULT_TOPIC, False, "x", "gpt-4o")
    assert payload["stream"] is False
    assert payload["model"] == "other"
    assert payload["temperature"] == 0.2
    assert not is_streaming(payload)


def test_messages_property_cannot_replace_history():
    payload = build_chat_payload({"messages": []}, ConversationRecord(), DEFAULT_TOPIC, False, "x", "m")
    assert payload["messages"] == [{"role": "user", "content": "x"}]


def test_chat_mode_replays_whole_topic():
    payload = build_chat_payload({}, _record(), "pirate", True, "next", "m")
    assert len(payload["messages"]) == 4
    assert payload["messages"][0] == {"role": "system", "content": "You are a pirate."}
    assert payload["messages"][-1] == {"role": "user", "content": "next"}


def test_non_chat_mode_replays_only_first_message():
    payload = build_chat_payload({}, _record(), "pirate", False, "next", "m")
    assert payload["messages"] == [
        {"role": "system", "content": "You are a pirate."},
        {"role": "user", "content": "next"},
    ]


def test_default_topic_never_replays():
    for chat in (True, False):
        payload = build_chat_payload({}, _record(), DEFAULT_TOPIC, chat, "q", "m")
        assert payload["messages"] == [{"role": "user", "content": "q"}]


def test_replayed_function_call_uses_string_arguments():
    record = ConversationRecord(messages=[
        Message.text("system", "s"),
        Message("assistant", FunctionCall("f", {"x": 1})),
    ])
    payload = build_chat_payload({}, record, "t", True, "q", "m")
    assert payload["messages"][1] == {
        "role": "assistant",
        "content": None,
        "function_call": {"name": "f", "arguments": '{"x":1}'},
    }
    # the stored record is untouched
    assert record.messages[1].body.arguments == {"x": 1}


def test_builder_does_not_mutate_properties():
    props = {"n": 2}
    build_chat_payload(props, ConversationRecord(), DEFAULT_TOPIC, False, "x", "m")
    assert props == {"n": 2}


def test_is_streaming_defaults_to_true():
    assert is_streaming({})
    assert is_streaming({"stream": True})
    assert not is_streaming({"stream": 0})


def test_api_payload_protected_keys():
    payload = build_api_payload(
        {"n": 1, "response_format": "url"},
        {"n": 3, "Response_Format": "b64_json"},
        protected=("response_format",),
    )
    assert payload == {"n": 3, "response_format": "url"}
