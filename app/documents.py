"""
Dokument-Tools: createDocument, updateDocument, requestSuggestions.

Ablauf je Erzeugung/Änderung:
    Announce (id, title, kind, clear) -> Deltas -> finish -> Persist.
Persistiert wird genau einmal und erst nach der Generierung. Wirft die
Generierung, gibt es kein finish und keine Zeile in der Datenbank.
"""
from __future__ import annotations
from contextlib import aclosing
from typing import Any, AsyncGenerator, Dict, List, Optional
import asyncio
import logging
import uuid

from pydantic import BaseModel, ValidationError
from pydantic_core import from_json

from .events import (
    ClearEvent,
    CodeDeltaEvent,
    FinishEvent,
    IdEvent,
    ImageDeltaEvent,
    KindEvent,
    SuggestionEvent,
    SuggestionPayload,
    TextDeltaEvent,
    TitleEvent,
)
from .prompting import CODE_PROMPT, SUGGESTIONS_PROMPT, TEXT_DOCUMENT_PROMPT, update_document_prompt
from .storage import Suggestion
from .tools import CreateDocumentParams, RequestSuggestionsParams, ToolContext, UpdateDocumentParams

log = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5

JSON_MODE = {"type": "json_object"}


class SuggestionDraft(BaseModel):
    originalSentence: str
    suggestedSentence: str
    description: str


def parse_partial_json(buffer: str, trailing_strings: bool = False) -> Any:
    """Unvollständiges JSON so weit wie möglich lesen; None, solange nichts lesbar ist."""
    if not buffer.strip():
        return None
    try:
        return from_json(buffer, allow_partial="trailing-strings" if trailing_strings else True)
    except ValueError:
        return None


def _announce(ctx: ToolContext, id: str, title: str, kind: str) -> None:
    ctx.stream.write(IdEvent(content=id))
    ctx.stream.write(TitleEvent(content=title))
    ctx.stream.write(KindEvent(content=kind))
    ctx.stream.write(ClearEvent(content=""))


async def _stream_code(ctx: ToolContext, system: str, prompt: str) -> AsyncGenerator[str, None]:
    """Liefert den jeweils vollständigen bisherigen Code, wenn er sich ändert."""
    buffer = ""
    last = ""
    async for delta in ctx.llm.stream_text(
        system, prompt, model=ctx.model.api_identifier, response_format=JSON_MODE
    ):
        buffer += delta
        obj = parse_partial_json(buffer, trailing_strings=True)
        code = obj.get("code") if isinstance(obj, dict) else None
        if isinstance(code, str) and code and code != last:
            last = code
            yield code


async def generate_content(
    ctx: ToolContext,
    kind: str,
    system: str,
    prompt: str,
    prediction: Optional[str] = None,
) -> str:
    """Erzeugt den Inhalt je nach kind, streamt die Deltas und schließt mit finish ab."""
    draft = ""
    if kind == "text":
        async for delta in ctx.llm.stream_text(
            system,
            prompt,
            model=ctx.model.api_identifier,
            prediction={"type": "content", "content": prediction} if prediction else None,
        ):
            draft += delta
            ctx.stream.write(TextDeltaEvent(content=delta))
    elif kind == "code":
        async for code in _stream_code(ctx, system, prompt):
            draft = code
            ctx.stream.write(CodeDeltaEvent(content=code))
    elif kind == "image":
        draft = await ctx.llm.generate_image(prompt)
        ctx.stream.write(ImageDeltaEvent(content=draft))
    else:
        raise ValueError(f"Unsupported document kind: {kind}")

    ctx.stream.write(FinishEvent())
    return draft


async def create_document(ctx: ToolContext, params: CreateDocumentParams) -> Dict[str, Any]:
    id = str(uuid.uuid4())
    _announce(ctx, id, params.title, params.kind)

    system = CODE_PROMPT if params.kind == "code" else TEXT_DOCUMENT_PROMPT
    content = await generate_content(ctx, params.kind, system, params.title)

    await asyncio.shield(ctx.storage.save_document(
        id=id,
        title=params.title,
        kind=params.kind,
        content=content,
        user_id=ctx.identity.user_id,
    ))

    return {
        "id": id,
        "title": params.title,
        "kind": params.kind,
        "content": "A document was created and is now visible to the user.",
    }


async def update_document(ctx: ToolContext, params: UpdateDocumentParams) -> Dict[str, Any]:
    document = await ctx.storage.get_document_by_id(params.id)
    if document is None:
        return {"error": "Document not found"}

    _announce(ctx, document.id, document.title, document.kind)

    if document.kind == "image":
        content = await generate_content(ctx, "image", "", params.description)
    else:
        content = await generate_content(
            ctx,
            document.kind,
            update_document_prompt(document.content, document.kind),
            params.description,
            prediction=document.content if document.kind == "text" else None,
        )

    await asyncio.shield(ctx.storage.save_document(
        id=document.id,
        title=document.title,
        kind=document.kind,
        content=content,
        user_id=ctx.identity.user_id,
    ))

    return {
        "id": document.id,
        "title": document.title,
        "kind": document.kind,
        "content": "The document has been updated successfully.",
    }


async def _stream_suggestion_drafts(ctx: ToolContext, content: str) -> AsyncGenerator[SuggestionDraft, None]:
    """
    Liest {"suggestions": [...]} inkrementell. Ein Element gilt als fertig,
    sobald das nächste beginnt oder der Stream endet.
    """
    buffer = ""
    emitted = 0

    def _items() -> List[Any]:
        obj = parse_partial_json(buffer)
        items = obj.get("suggestions") if isinstance(obj, dict) else None
        return items if isinstance(items, list) else []

    def _validated(item: Any) -> Optional[SuggestionDraft]:
        try:
            return SuggestionDraft.model_validate(item)
        except ValidationError as e:
            log.warning("Dropping malformed suggestion: %s", e)
            return None

    async for delta in ctx.llm.stream_text(
        SUGGESTIONS_PROMPT, content, model=ctx.model.api_identifier, response_format=JSON_MODE
    ):
        buffer += delta
        items = _items()
        while emitted < len(items) - 1:
            draft = _validated(items[emitted])
            emitted += 1
            if draft is not None:
                yield draft

    for item in _items()[emitted:]:
        draft = _validated(item)
        if draft is not None:
            yield draft


async def request_suggestions(ctx: ToolContext, params: RequestSuggestionsParams) -> Dict[str, Any]:
    document = await ctx.storage.get_document_by_id(params.documentId)
    if document is None or not document.content:
        return {"error": "Document not found"}

    buffered: List[Suggestion] = []
    try:
        async with aclosing(_stream_suggestion_drafts(ctx, document.content)) as drafts:
            async for draft in drafts:
                payload = SuggestionPayload(
                    id=str(uuid.uuid4()),
                    document_id=params.documentId,
                    original_text=draft.originalSentence,
                    suggested_text=draft.suggestedSentence,
                    description=draft.description,
                )
                ctx.stream.write(SuggestionEvent(content=payload))
                buffered.append(Suggestion(
                    id=payload.id,
                    document_id=params.documentId,
                    document_created_at=document.created_at,
                    original_text=payload.original_text,
                    suggested_text=payload.suggested_text,
                    description=payload.description,
                    user_id=ctx.identity.user_id,
                ))
                if len(buffered) >= MAX_SUGGESTIONS:
                    break
    finally:
        # auch bei Abbruch: genau die bereits gestreamten Vorschläge
        if buffered:
            await asyncio.shield(ctx.storage.save_suggestions(buffered))

    return {
        "id": params.documentId,
        "title": document.title,
        "kind": document.kind,
        "message": "Suggestions have been added to the document",
    }
