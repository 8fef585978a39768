# tests/test_messages.py
"""Tests für Flattening, OpenAI-Format und Bereinigung der Antwort-Nachrichten."""
from __future__ import annotations
import json

from app.messages import (
    ChatMessage,
    MessagePart,
    flatten_content,
    get_most_recent_user_message,
    response_message_content,
    sanitize_response_messages,
    to_openai_messages,
)


class TestFlatten:

    def test_string_and_none(self):
        assert flatten_content("hello") == "hello"
        assert flatten_content(None) == ""

    def test_parts_joined_with_space(self):
        parts = [MessagePart(text="Look"), MessagePart(type="file", url="http://x/a.png"), MessagePart(type="x")]
        assert flatten_content(parts) == "Look http://x/a.png "

    def test_structured_content_as_json(self):
        assert json.loads(flatten_content([{"type": "tool-call", "args": {"a": 1}}])) == [
            {"type": "tool-call", "args": {"a": 1}}
        ]


def test_most_recent_user_message():
    msgs = [
        ChatMessage(role="user", content="first"),
        ChatMessage(role="assistant", content="answer"),
        ChatMessage(role="user", content="second"),
        ChatMessage(role="assistant", content="again"),
    ]
    assert get_most_recent_user_message(msgs).content == "second"
    assert get_most_recent_user_message(msgs[1:2]) is None


def test_openai_format_for_images():
    msg = ChatMessage.model_validate({
        "role": "user",
        "content": [{"type": "text", "text": "What is this?"}, {"type": "image", "image": "data:image/png;base64,AA"}],
    })
    out = to_openai_messages([msg])
    assert out[0]["content"] == [
        {"type": "text", "text": "What is this?"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AA"}},
    ]


class TestSanitize:

    def _call(self, id, name="getWeather"):
        return {"id": id, "type": "function", "function": {"name": name, "arguments": "{}"}}

    def test_unresolved_call_dropped(self):
        messages = [
            {"role": "assistant", "content": "", "tool_calls": [self._call("a")]},
            {"role": "tool", "tool_call_id": "a", "name": "getWeather", "content": "{}"},
            {"role": "assistant", "content": "", "tool_calls": [self._call("b")]},
        ]
        out = sanitize_response_messages(messages)
        assert out == messages[:2]

    def test_empty_assistant_dropped(self):
        assert sanitize_response_messages([{"role": "assistant", "content": "  "}]) == []

    def test_partial_resolution_drops_whole_message(self):
        messages = [
            {"role": "assistant", "content": "", "tool_calls": [self._call("a"), self._call("b")]},
            {"role": "tool", "tool_call_id": "a", "name": "getWeather", "content": "{}"},
        ]
        assert sanitize_response_messages(messages) == []


class TestResponseContent:

    def test_plain_text(self):
        assert response_message_content({"role": "assistant", "content": "Hi"}) == "Hi"

    def test_tool_call_parts(self):
        content = response_message_content({
            "role": "assistant",
            "content": "Checking.",
            "tool_calls": [{"id": "a", "function": {"name": "getWeather", "arguments": '{"latitude": 1}'}}],
        })
        assert json.loads(content) == [
            {"type": "text", "text": "Checking."},
            {"type": "tool-call", "toolCallId": "a", "toolName": "getWeather", "args": {"latitude": 1}},
        ]

    def test_tool_result_parts(self):
        content = response_message_content(
            {"role": "tool", "tool_call_id": "a", "name": "getWeather", "content": '{"t": 3}'}
        )
        assert json.loads(content) == [{"type": "tool-result", "toolCallId": "a", "toolName": "getWeather", "result": {"t": 3}}]
