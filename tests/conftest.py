# tests/conftest.py
"""
Pytest-Konfiguration und gemeinsame Fakes.

- settings:  Settings auf tmp_path (Embedding-Snapshot-Attrappe, SQLite-Datei)
- storage:   initialisierte Storage-Instanz
- FakeLLM:   skriptbare Antworten für stream_chat / stream_text / complete
- FakeRetrieval: feste Passagen statt POST /retrieve
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from app.config import Settings
from app.core import ApplicationCore
from app.events import DataStream
from app.ai_models import MODELS
from app.identity import Identity
from app.llm import LLMAdapter
from app.retrieval import RetrievalClient, RetrievedPassage
from app.storage import Storage
from app.tools import ToolContext

pytest_plugins = ["pytest_asyncio"]


# ---------- Chunk-Helfer (OpenAI-Stream-Format) ----------
def text_chunk(text: str) -> Dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]}


def tool_chunk(call_id: Optional[str], name: str, arguments: Any, index: int = 0) -> Dict[str, Any]:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return {
        "choices": [{
            "index": 0,
            "delta": {"tool_calls": [{
                "index": index,
                "id": call_id,
                "type": "function",
                "function": {"name": name, "arguments": arguments},
            }]},
            "finish_reason": None,
        }]
    }


def finish_chunk(reason: str = "stop") -> Dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


class Sleep:
    """Skript-Element: blockiert den Stream für `seconds`."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds


class FakeLLM(LLMAdapter):
    """
    scripts: ein Eintrag pro stream_chat-Aufruf (Liste von Chunks, Sleep oder Exceptions)
    texts:   ein Eintrag pro stream_text-Aufruf (Liste von Text-Deltas)
    """

    def __init__(
        self,
        settings: Settings,
        scripts: Optional[List[List[Any]]] = None,
        texts: Optional[List[List[Any]]] = None,
        title: Any = "Handball coaching basics",
        image: str = "aW1hZ2U=",
        title_delay: float = 0.0,
    ) -> None:
        super().__init__(settings)
        self.scripts = list(scripts or [])
        self.texts = list(texts or [])
        self.title = title
        self.image = image
        self.title_delay = title_delay
        self.calls: List[Dict[str, Any]] = []
        self.text_calls: List[Dict[str, Any]] = []
        self.image_prompts: List[str] = []

    async def startup(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    async def stream_chat(self, messages, model, tools=None, temperature=None, response_format=None, prediction=None):
        self.calls.append({"messages": messages, "model": model, "tools": tools})
        script = self.scripts.pop(0) if self.scripts else [text_chunk("OK"), finish_chunk("stop")]
        for item in script:
            if isinstance(item, Sleep):
                await asyncio.sleep(item.seconds)
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    async def stream_text(self, system, prompt, model, response_format=None, prediction=None):
        self.text_calls.append({
            "system": system, "prompt": prompt, "response_format": response_format, "prediction": prediction,
        })
        deltas = self.texts.pop(0) if self.texts else []
        for d in deltas:
            if isinstance(d, Sleep):
                await asyncio.sleep(d.seconds)
                continue
            if isinstance(d, Exception):
                raise d
            yield d

    async def complete(self, messages, model, temperature=None) -> str:
        if self.title_delay:
            await asyncio.sleep(self.title_delay)
        if isinstance(self.title, Exception):
            raise self.title
        return self.title

    async def generate_image(self, prompt: str) -> str:
        self.image_prompts.append(prompt)
        return self.image


class FakeRetrieval(RetrievalClient):
    def __init__(self, settings: Settings, passages: Optional[List[str]] = None) -> None:
        super().__init__(settings)
        self.passages = passages or []
        self.queries: List[str] = []

    async def retrieve(self, query: str, k: Optional[int] = None) -> List[RetrievedPassage]:
        self.queries.append(query)
        return [RetrievedPassage(text=t, rank=i + 1, score=0.9) for i, t in enumerate(self.passages)]


def weather_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={
        "latitude": float(request.url.params["latitude"]),
        "longitude": float(request.url.params["longitude"]),
        "current": {"temperature_2m": 17.5},
    })


async def collect(agen) -> List[Any]:
    return [e async for e in agen]


# ---------- Fixtures ----------
@pytest.fixture
def settings(tmp_path) -> Settings:
    embedder = tmp_path / "embedder"
    embedder.mkdir()
    (embedder / "config.json").write_text("{}")
    return Settings(
        _env_file=None,
        LLM_BASE_URL="http://llm.test/v1",
        LLM_API_KEY="test-key",
        EMBEDDING_MODEL=str(embedder),
        CHROMA_PATH=str(tmp_path / "chroma"),
        RETRIEVAL_URL="http://retrieval.test",
        WEATHER_BASE_URL="http://weather.test/v1",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
    )


@pytest_asyncio.fixture
async def storage(settings):
    s = Storage(settings.DATABASE_URL)
    await s.init()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def http():
    client = httpx.AsyncClient(transport=httpx.MockTransport(weather_handler))
    yield client
    await client.aclose()


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="user-1", authenticated=True)


@pytest.fixture
def make_core(settings, storage, http):
    def _make(llm: FakeLLM, passages: Optional[List[str]] = None, **overrides) -> ApplicationCore:
        s = settings.model_copy(update=overrides) if overrides else settings
        return ApplicationCore(
            s,
            storage=storage,
            llm=llm,
            retrieval=FakeRetrieval(s, passages),
            http=http,
        )
    return _make


@pytest.fixture
def make_ctx(settings, storage, http, identity):
    def _make(llm: FakeLLM, stream: Optional[DataStream] = None) -> ToolContext:
        return ToolContext(
            identity=identity,
            model=MODELS[0],
            stream=stream or DataStream(),
            storage=storage,
            llm=llm,
            retrieval=FakeRetrieval(settings),
            http=http,
            settings=settings,
        )
    return _make
