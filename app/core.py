from __future__ import annotations
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncGenerator, Dict, List, Optional, Set
import asyncio
import json
import logging
import time
import uuid

import httpx

from .ai_models import MODELS, ModelDescriptor, find_model
from .config import Settings
from .errors import ModelNotFoundError, NoUserMessageError
from .events import (
    AssistantTextEvent,
    DataStream,
    DoneEvent,
    ErrorEvent,
    StepFinishEvent,
    StreamEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from .identity import Identity
from .llm import LLMAdapter
from .messages import (
    ChatMessage,
    flatten_content,
    get_most_recent_user_message,
    response_message_content,
    sanitize_response_messages,
    to_openai_messages,
)
from .prompting import TITLE_PROMPT, build_system_prompt
from .retrieval import RetrievalClient
from .storage import Message, Storage, utcnow
from .tools import Tool, ToolContext, ToolRegistry

log = logging.getLogger(__name__)
metrics_log = logging.getLogger("metrics")

FALLBACK_TITLE = "New chat"


@dataclass
class PreparedTurn:
    """Ergebnis der Validierung (Schritte 1-4); ab hier wird gestreamt."""
    conversation_id: str
    messages: List[ChatMessage]
    model: ModelDescriptor
    identity: Identity
    user_message: ChatMessage
    query: str


@dataclass
class _Metrics:
    t0: float = field(default_factory=time.perf_counter)
    t_retrieval_start: Optional[float] = None
    t_retrieval_end: Optional[float] = None
    t_prompt_start: Optional[float] = None
    t_prompt_end: Optional[float] = None
    t_llm_req: Optional[float] = None
    t_first_token: Optional[float] = None
    t_last_token: Optional[float] = None
    emitted_chars: int = 0
    chunks: int = 0
    steps: int = 0
    tool_calls: int = 0
    passages: int = 0


class ApplicationCore:
    """
    Orchestrierung eines Turns:
    User-Message -> Retrieval -> Prompt -> LLM-Stream mit Tools -> Persistenz.

    prepare_turn validiert und speichert die Eingabe (wirft vor dem Stream),
    stream_turn liefert die Events. Der eigentliche Turn läuft als eigener
    Task; bricht der Client ab, laufen begonnene Tool-Seiteneffekte zu Ende.
    """

    def __init__(
        self,
        _settings: Settings,
        storage: Storage,
        llm: LLMAdapter,
        retrieval: RetrievalClient,
        http: httpx.AsyncClient,
        models: tuple[ModelDescriptor, ...] = MODELS,
        tools: Optional[List[Tool]] = None,
    ) -> None:
        self._settings = _settings
        self.storage = storage
        self.llm = llm
        self.retrieval = retrieval
        self.http = http
        self.models = models
        self.tools = tools
        self._tasks: Set[asyncio.Task] = set()

    # ---------- Schritte 1-4 ----------
    async def prepare_turn(
        self,
        conversation_id: str,
        messages: List[ChatMessage],
        model_id: str,
        identity: Identity,
    ) -> PreparedTurn:
        model = find_model(model_id, self.models)
        if model is None:
            raise ModelNotFoundError(model_id)

        user_message = get_most_recent_user_message(messages)
        if user_message is None:
            raise NoUserMessageError()

        query = flatten_content(user_message.content)

        conversation = await self.storage.get_conversation(conversation_id)
        if conversation is None:
            title = await self._generate_title(query)
            await self.storage.save_conversation(id=conversation_id, user_id=identity.user_id, title=title)

        await self.storage.save_messages([
            Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=user_message.role,
                content=query,
                created_at=utcnow(),
            )
        ])

        return PreparedTurn(
            conversation_id=conversation_id,
            messages=messages,
            model=model,
            identity=identity,
            user_message=user_message,
            query=query,
        )

    async def _generate_title(self, text: str) -> str:
        try:
            title = await self.llm.complete(
                [
                    {"role": "system", "content": TITLE_PROMPT},
                    {"role": "user", "content": text},
                ],
                model=self._settings.TITLE_MODEL,
            )
            title = title.strip().strip('"').replace(":", "")[:80].strip()
            if title:
                return title
        except Exception as e:
            log.warning("Title generation failed, using fallback: %s", e)
        return self.fallback_title(text)

    @staticmethod
    def fallback_title(text: str) -> str:
        derived = " ".join(text.split())[:80].strip()
        return derived or FALLBACK_TITLE

    # ---------- Schritte 5-10 ----------
    async def stream_turn(self, turn: PreparedTurn) -> AsyncGenerator[StreamEvent, None]:
        stream = DataStream()
        task = asyncio.create_task(self._execute(turn, stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        async for event in stream:
            yield event

    async def handle_turn(
        self,
        conversation_id: str,
        messages: List[ChatMessage],
        model_id: str,
        identity: Identity,
    ) -> AsyncGenerator[StreamEvent, None]:
        turn = await self.prepare_turn(conversation_id, messages, model_id, identity)
        async for event in self.stream_turn(turn):
            yield event

    async def drain(self) -> None:
        """Wartet auf laufende Turns (Shutdown, Tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _execute(self, turn: PreparedTurn, stream: DataStream) -> None:
        ok = False
        try:
            ok = await asyncio.wait_for(self._run_turn(turn, stream), timeout=self._settings.MAX_TURN_SECONDS)
        except asyncio.TimeoutError:
            log.warning(
                "Turn for conversation %s exceeded %.0fs and was terminated",
                turn.conversation_id, self._settings.MAX_TURN_SECONDS,
            )
            stream.write(ErrorEvent(content="The response took too long and was stopped."))
        except Exception:
            log.exception("Turn for conversation %s failed", turn.conversation_id)
            stream.write(ErrorEvent(content="An error occurred while generating the response."))
        finally:
            stream.write(DoneEvent(ok=ok))
            stream.close()

    async def _run_turn(self, turn: PreparedTurn, stream: DataStream) -> bool:
        m = _Metrics()

        # 5) Retrieval (Fehler -> kein Kontext)
        m.t_retrieval_start = time.perf_counter()
        passages = await self.retrieval.retrieve(turn.query)
        m.t_retrieval_end = time.perf_counter()
        m.passages = len(passages)
        if not passages:
            log.info("No context found for conversation %s", turn.conversation_id)

        # 6) Prompt bauen
        m.t_prompt_start = time.perf_counter()
        system = build_system_prompt(passages)
        m.t_prompt_end = time.perf_counter()

        # 7/8) Schrittschleife
        registry = ToolRegistry(
            ToolContext(
                identity=turn.identity,
                model=turn.model,
                stream=stream,
                storage=self.storage,
                llm=self.llm,
                retrieval=self.retrieval,
                http=self.http,
                settings=self._settings,
            ),
            tools=self.tools,
        )
        history = to_openai_messages(turn.messages)
        response_messages: List[Dict[str, Any]] = []
        ok = True

        m.t_llm_req = time.perf_counter()
        for step in range(self._settings.MAX_STEPS):
            m.steps = step + 1
            text_parts: List[str] = []
            calls: Dict[int, Dict[str, Any]] = {}
            finish_reason: Optional[str] = None
            try:
                async for chunk in self.llm.stream_chat(
                    [{"role": "system", "content": system}, *history, *map(self._for_model, response_messages)],
                    model=turn.model.api_identifier,
                    tools=registry.schemas(),
                ):
                    if m.t_first_token is None:
                        m.t_first_token = time.perf_counter()
                    text, tool_deltas, reason = self._extract_delta(chunk)
                    if text:
                        text_parts.append(text)
                        m.emitted_chars += len(text)
                        m.chunks += 1
                        stream.write(AssistantTextEvent(content=text))
                    for d in tool_deltas:
                        self._merge_tool_delta(calls, d)
                    finish_reason = reason or finish_reason
                    m.t_last_token = time.perf_counter()
            except Exception as e:
                # Abbruch mitten im Schritt: bisherige Teile bleiben, unvollständige
                # Tool-Calls fallen bei der Bereinigung weg.
                log.error("LLM stream error in conversation %s: %s", turn.conversation_id, e)
                stream.write(ErrorEvent(content="The model stream was interrupted."))
                response_messages.append(self._assistant_message(text_parts, calls))
                ok = False
                break

            assistant = self._assistant_message(text_parts, calls)
            response_messages.append(assistant)
            if not assistant.get("tool_calls"):
                stream.write(StepFinishEvent(finish_reason=finish_reason or "stop", is_continued=False))
                break

            # Tools sequentiell, Ergebnisse zurück ins Modell
            for call in assistant["tool_calls"]:
                name = call["function"]["name"]
                raw_args = call["function"]["arguments"]
                stream.write(ToolCallEvent(
                    tool_call_id=call["id"], tool_name=name, args=self._loads_or_raw(raw_args),
                ))
                result = await registry.call_tool(name, raw_args)
                m.tool_calls += 1
                response_messages.append({
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "name": name,
                    "content": json.dumps(result, ensure_ascii=False, default=str),
                })
                stream.write(ToolResultEvent(tool_call_id=call["id"], tool_name=name, result=result))

            stream.write(StepFinishEvent(
                finish_reason=finish_reason or "tool_calls",
                is_continued=step + 1 < self._settings.MAX_STEPS,
            ))

        # 9) Bereinigen + Persistieren (best effort)
        await self._persist_response(turn, response_messages, stream)

        metrics = self._build_metrics(m, ok)
        metrics_log.info(json.dumps(metrics, ensure_ascii=False))
        return ok

    async def _persist_response(
        self, turn: PreparedTurn, response_messages: List[Dict[str, Any]], stream: DataStream
    ) -> None:
        try:
            sanitized = sanitize_response_messages(response_messages)
            rows: List[Message] = []
            base = utcnow()
            for i, message in enumerate(sanitized):
                message_id = str(uuid.uuid4())
                if message["role"] == "assistant":
                    stream.write_annotation(message_id)
                rows.append(Message(
                    id=message_id,
                    conversation_id=turn.conversation_id,
                    role=message["role"],
                    content=response_message_content(message),
                    # streng monoton, damit die Reihenfolge beim Lesen erhalten bleibt
                    created_at=base + timedelta(microseconds=i),
                ))
            await asyncio.shield(self.storage.save_messages(rows))
        except Exception:
            log.exception("Failed to save chat %s", turn.conversation_id)

    # ---------- Helfer ----------
    @staticmethod
    def _extract_delta(chunk: Dict[str, Any]) -> tuple[Optional[str], List[Dict[str, Any]], Optional[str]]:
        """
        Erwartet einen OpenAI-Stream-Chunk.
        Liefert (Text-Delta, Tool-Call-Deltas, finish_reason).
        """
        choices = chunk.get("choices") or []
        if not choices:
            return None, [], None
        choice = choices[0] or {}
        delta = choice.get("delta") or {}
        return delta.get("content"), delta.get("tool_calls") or [], choice.get("finish_reason")

    @staticmethod
    def _merge_tool_delta(calls: Dict[int, Dict[str, Any]], delta: Dict[str, Any]) -> None:
        index = delta.get("index", 0)
        call = calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
        if delta.get("id"):
            call["id"] = delta["id"]
        fn = delta.get("function") or {}
        if fn.get("name"):
            call["name"] += fn["name"]
        if fn.get("arguments"):
            call["arguments"] += fn["arguments"]

    @staticmethod
    def _assistant_message(text_parts: List[str], calls: Dict[int, Dict[str, Any]]) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "assistant", "content": "".join(text_parts)}
        if calls:
            message["tool_calls"] = [
                {
                    "id": c["id"] or f"call_{uuid.uuid4().hex[:24]}",
                    "type": "function",
                    "function": {"name": c["name"], "arguments": c["arguments"]},
                }
                for _, c in sorted(calls.items())
            ]
        return message

    @staticmethod
    def _for_model(message: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in message.items() if k != "name"}

    @staticmethod
    def _loads_or_raw(value: str) -> Any:
        try:
            return json.loads(value)
        except ValueError:
            return value

    @staticmethod
    def _ms(a: Optional[float], b: Optional[float]) -> Optional[float]:
        if a is None or b is None:
            return None
        return round((b - a) * 1000.0, 2)

    def _build_metrics(self, m: _Metrics, ok: bool) -> Dict:
        return {
            "durations_ms": {
                "retrieval": self._ms(m.t_retrieval_start, m.t_retrieval_end),
                "prompt_build": self._ms(m.t_prompt_start, m.t_prompt_end),
                "llm_time_to_first_token": self._ms(m.t_llm_req, m.t_first_token),
                "llm_stream_duration": self._ms(m.t_first_token, m.t_last_token),
                "total": self._ms(m.t0, time.perf_counter()),
            },
            "sizes": {"emitted_chars": m.emitted_chars, "chunks": m.chunks, "passages": m.passages},
            "steps": m.steps,
            "tool_calls": m.tool_calls,
            "ok": ok,
        }
