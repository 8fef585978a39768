"""
Nachrichten-Helfer:
- ChatMessage / MessagePart: eingehende Nachrichten (Client-Format)
- Flattening für die Persistenz (Inhalt wird immer als String gespeichert)
- Umwandlung ins OpenAI-Format für das Modell
- Bereinigung der Antwort-Nachrichten vor dem Speichern
"""
from __future__ import annotations
import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system", "tool"]


class MessagePart(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "text"
    text: Optional[str] = None
    url: Optional[str] = None
    image: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    role: Role
    content: Union[str, List[MessagePart], None] = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None


def get_part_content(part: Union[MessagePart, str]) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part.text, str):
        return part.text
    if isinstance(part.url, str):
        return part.url
    return ""


def flatten_content(content: Any) -> str:
    """
    Reduziert Nachrichteninhalt auf einen String.
    Text-Parts -> Text, URL-Parts -> URL (mit Leerzeichen verbunden);
    sonstige strukturierte Inhalte -> JSON.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        if all(isinstance(p, (MessagePart, str)) for p in content):
            return " ".join(get_part_content(p) for p in content)
        return json.dumps(content, ensure_ascii=False)
    if isinstance(content, dict):
        return json.dumps(content, ensure_ascii=False)
    return ""


def get_most_recent_user_message(messages: List[ChatMessage]) -> Optional[ChatMessage]:
    return next((m for m in reversed(messages) if m.role == "user"), None)


def _to_openai_part(part: MessagePart) -> Dict[str, Any]:
    if part.type == "image":
        url = part.image or part.url or ""
        return {"type": "image_url", "image_url": {"url": url}}
    return {"type": "text", "text": get_part_content(part)}


def to_openai_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for m in messages:
        if isinstance(m.content, list):
            if m.role == "user":
                content: Any = [_to_openai_part(p) for p in m.content]
            else:
                content = flatten_content(m.content)
        else:
            content = m.content or ""
        msg: Dict[str, Any] = {"role": m.role, "content": content}
        if m.role == "assistant" and m.tool_calls:
            msg["tool_calls"] = m.tool_calls
        if m.role == "tool" and m.tool_call_id:
            msg["tool_call_id"] = m.tool_call_id
        out.append(msg)
    return out


# ---------- Antwort-Nachrichten ----------
def sanitize_response_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Entfernt Assistant-Nachrichten mit Tool-Calls ohne zugehöriges Tool-Ergebnis.
    Tool-Nachrichten, deren Call damit wegfällt, werden ebenfalls entfernt.
    Leere Assistant-Nachrichten (kein Text, keine Calls) fallen weg.
    """
    result_ids = {m.get("tool_call_id") for m in messages if m.get("role") == "tool"}

    kept: List[Dict[str, Any]] = []
    kept_call_ids: set[str] = set()
    for m in messages:
        role = m.get("role")
        if role == "assistant":
            calls = m.get("tool_calls") or []
            if any(c.get("id") not in result_ids for c in calls):
                continue
            if not calls and not (m.get("content") or "").strip():
                continue
            kept_call_ids.update(c.get("id") for c in calls)
            kept.append(m)
        elif role == "tool":
            if m.get("tool_call_id") in kept_call_ids:
                kept.append(m)
        else:
            kept.append(m)
    return kept


def response_message_content(message: Dict[str, Any]) -> str:
    """
    Speicherform einer Antwort-Nachricht.
    Reiner Text bleibt Text; Tool-Calls/-Ergebnisse werden als Part-Liste (JSON) abgelegt.
    """
    role = message.get("role")
    if role == "assistant" and message.get("tool_calls"):
        parts: List[Dict[str, Any]] = []
        if message.get("content"):
            parts.append({"type": "text", "text": message["content"]})
        for call in message["tool_calls"]:
            fn = call.get("function") or {}
            parts.append({
                "type": "tool-call",
                "toolCallId": call.get("id"),
                "toolName": fn.get("name"),
                "args": _loads_or_raw(fn.get("arguments")),
            })
        return flatten_content(parts)
    if role == "tool":
        return flatten_content([{
            "type": "tool-result",
            "toolCallId": message.get("tool_call_id"),
            "toolName": message.get("name"),
            "result": _loads_or_raw(message.get("content")),
        }])
    return flatten_content(message.get("content"))


def _loads_or_raw(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value
