"""
Tool-Registry für den Chat-Turn.

Jedes Tool: Name, Beschreibung (für die Tool-Auswahl des Modells),
Parameter-Schema (pydantic) und Executor. Argumente werden vor der
Ausführung validiert; jeder Fehler wird zu einem strukturierten
Ergebnis {"error": ...}, das an das Modell zurückgeht.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type
import json
import logging

import httpx
from pydantic import BaseModel, Field, ValidationError

from .ai_models import ModelDescriptor
from .config import Settings
from .events import DataStream
from .identity import Identity
from .llm import LLMAdapter
from .retrieval import RetrievalClient
from .storage import Storage

log = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Alles, was ein Executor während eines Turns braucht."""
    identity: Identity
    model: ModelDescriptor
    stream: DataStream
    storage: Storage
    llm: LLMAdapter
    retrieval: RetrievalClient
    http: httpx.AsyncClient
    settings: Settings


Executor = Callable[[ToolContext, Any], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: Type[BaseModel]
    execute: Executor

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.model_json_schema(),
            },
        }


# ---------- Parameter ----------
class GetWeatherParams(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class CreateDocumentParams(BaseModel):
    title: str = Field(min_length=1)
    kind: Literal["text", "code", "image"]


class UpdateDocumentParams(BaseModel):
    id: str = Field(description="The ID of the document to update")
    description: str = Field(description="The description of changes that need to be made")


class RequestSuggestionsParams(BaseModel):
    documentId: str = Field(description="The ID of the document to request edits")


class FetchContextParams(BaseModel):
    query: str = Field(min_length=1, description="What to look up in the RINCK Convention Manual")


# ---------- Executoren ohne Dokumentbezug ----------
async def get_weather(ctx: ToolContext, params: GetWeatherParams) -> Dict[str, Any]:
    r = await ctx.http.get(
        ctx.settings.WEATHER_BASE_URL.rstrip("/") + "/forecast",
        params={
            "latitude": params.latitude,
            "longitude": params.longitude,
            "current": "temperature_2m",
            "hourly": "temperature_2m",
            "daily": "sunrise,sunset",
            "timezone": "auto",
        },
    )
    r.raise_for_status()
    return r.json()


async def fetch_context(ctx: ToolContext, params: FetchContextParams) -> List[Dict[str, Any]]:
    passages = await ctx.retrieval.retrieve(params.query)
    return [p.model_dump() for p in passages]


class ToolRegistry:
    """
    Registry der aufrufbaren Tools eines Turns.
    Aufrufe laufen sequentiell; call_tool wirft nie.
    """

    def __init__(self, ctx: ToolContext, tools: Optional[List[Tool]] = None) -> None:
        self.ctx = ctx
        self.tools: Dict[str, Tool] = {t.name: t for t in (tools if tools is not None else default_tools())}

    def schemas(self) -> List[Dict[str, Any]]:
        return [t.schema() for t in self.tools.values()]

    async def call_tool(self, tool_name: str, raw_arguments: str | Dict[str, Any] | None) -> Any:
        tool = self.tools.get(tool_name)
        if tool is None:
            log.warning("Model requested unknown tool %s", tool_name)
            return {"error": f"Tool '{tool_name}' not found"}

        try:
            args = json.loads(raw_arguments or "{}") if not isinstance(raw_arguments, dict) else raw_arguments
            params = tool.parameters.model_validate(args)
        except (ValueError, ValidationError) as e:
            log.warning("Invalid arguments for tool %s: %s", tool_name, e)
            return {"error": f"Invalid arguments: {e}"}

        try:
            result = await tool.execute(self.ctx, params)
        except Exception as e:
            log.exception("Tool execution error in %s", tool_name)
            return {"error": str(e) or type(e).__name__}

        log.debug("Tool executed: user=%s tool=%s", self.ctx.identity.user_id, tool_name)
        return result


def default_tools() -> List[Tool]:
    # documents importiert ToolContext; daher spät
    from .documents import create_document, request_suggestions, update_document

    return [
        Tool(
            name="getWeather",
            description="Get the current weather at a location",
            parameters=GetWeatherParams,
            execute=get_weather,
        ),
        Tool(
            name="createDocument",
            description=(
                "Create a document for a writing or content creation activities like image generation. "
                "This tool will call other functions that will generate the contents of the document "
                "based on the title and kind."
            ),
            parameters=CreateDocumentParams,
            execute=create_document,
        ),
        Tool(
            name="updateDocument",
            description="Update a document with the given description.",
            parameters=UpdateDocumentParams,
            execute=update_document,
        ),
        Tool(
            name="requestSuggestions",
            description="Request suggestions for a document",
            parameters=RequestSuggestionsParams,
            execute=request_suggestions,
        ),
        Tool(
            name="fetchContext",
            description="Fetch more relevant context from the EHF RINCK Convention knowledge base",
            parameters=FetchContextParams,
            execute=fetch_context,
        ),
    ]
