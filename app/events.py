"""
Stream-Events eines Turns.

Geschlossene Menge von Varianten, unterschieden über das Feld `type`.
Jede Variante ist genau einem SSE-Kanal zugeordnet (siehe CHANNELS);
neue Varianten müssen dort eingetragen werden.
"""
from __future__ import annotations
import asyncio
from typing import Annotated, Any, AsyncIterator, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sse_starlette.sse import ServerSentEvent


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# ---------- Daten-Events (Dokumente/Vorschläge) ----------
class IdEvent(_Event):
    type: Literal["id"] = "id"
    content: str


class TitleEvent(_Event):
    type: Literal["title"] = "title"
    content: str


class KindEvent(_Event):
    type: Literal["kind"] = "kind"
    content: Literal["text", "code", "image"]


class ClearEvent(_Event):
    type: Literal["clear"] = "clear"
    content: str = ""


class TextDeltaEvent(_Event):
    type: Literal["text-delta"] = "text-delta"
    content: str


class CodeDeltaEvent(_Event):
    """Kumulativ: enthält jeweils den gesamten bisherigen Code."""
    type: Literal["code-delta"] = "code-delta"
    content: str


class ImageDeltaEvent(_Event):
    type: Literal["image-delta"] = "image-delta"
    content: str


class SuggestionPayload(_Event):
    id: str
    document_id: str = Field(alias="documentId")
    original_text: str = Field(alias="originalText")
    suggested_text: str = Field(alias="suggestedText")
    description: str
    is_resolved: bool = Field(default=False, alias="isResolved")


class SuggestionEvent(_Event):
    type: Literal["suggestion"] = "suggestion"
    content: SuggestionPayload


class FinishEvent(_Event):
    type: Literal["finish"] = "finish"
    content: str = ""


# ---------- Annotation ----------
class MessageAnnotation(_Event):
    message_id_from_server: str = Field(alias="messageIdFromServer")


class MessageAnnotationEvent(_Event):
    type: Literal["message-annotation"] = "message-annotation"
    content: MessageAnnotation


# ---------- Generierung ----------
class AssistantTextEvent(_Event):
    type: Literal["text"] = "text"
    content: str


class ToolCallEvent(_Event):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    args: Any = None


class ToolResultEvent(_Event):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    result: Any = None


class StepFinishEvent(_Event):
    type: Literal["step-finish"] = "step-finish"
    finish_reason: Optional[str] = Field(default=None, alias="finishReason")
    is_continued: bool = Field(default=False, alias="isContinued")


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    content: str


class DoneEvent(_Event):
    type: Literal["done"] = "done"
    ok: bool


StreamEvent = Annotated[
    Union[
        IdEvent,
        TitleEvent,
        KindEvent,
        ClearEvent,
        TextDeltaEvent,
        CodeDeltaEvent,
        ImageDeltaEvent,
        SuggestionEvent,
        FinishEvent,
        MessageAnnotationEvent,
        AssistantTextEvent,
        ToolCallEvent,
        ToolResultEvent,
        StepFinishEvent,
        ErrorEvent,
        DoneEvent,
    ],
    Field(discriminator="type"),
]

stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

CHANNELS: Dict[str, str] = {
    "id": "data",
    "title": "data",
    "kind": "data",
    "clear": "data",
    "text-delta": "data",
    "code-delta": "data",
    "image-delta": "data",
    "suggestion": "data",
    "finish": "data",
    "message-annotation": "annotation",
    "text": "text",
    "tool-call": "tool_call",
    "tool-result": "tool_result",
    "step-finish": "step_finish",
    "error": "error",
    "done": "done",
}


def to_sse(event: StreamEvent) -> ServerSentEvent:
    """Ein Event = ein SSE-Frame; der Kanal trennt Daten von Annotationen."""
    return ServerSentEvent(
        event=CHANNELS[event.type],
        data=event.model_dump_json(by_alias=True),
    )


class DataStream:
    """
    Geordnete Event-Queue eines Turns.
    Schreiber: Orchestrator und Tools. Leser: genau ein Konsument.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, event: StreamEvent) -> None:
        if self._closed:
            raise RuntimeError("data stream already closed")
        self._queue.put_nowait(event)

    def write_annotation(self, message_id: str) -> None:
        self.write(MessageAnnotationEvent(content=MessageAnnotation(message_id_from_server=message_id)))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
