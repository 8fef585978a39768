# tests/test_api.py
"""HTTP-Tests über httpx.ASGITransport (ohne Lifespan; Storage kommt aus der Fixture)."""
from __future__ import annotations
import json
from datetime import timedelta

import httpx
import pytest_asyncio

from app.api import create_app
from app.retrieval import RetrievalService
from app.storage import Message, utcnow

from .conftest import FakeLLM, finish_chunk, text_chunk
from .test_retrieval import FakeIndex

USER = {"X-User-Id": "user-1"}
CHAT_BODY = {
    "id": "c1",
    "messages": [{"id": "m1", "role": "user", "content": "What is the RINCK Convention?"}],
    "modelId": "gpt-4o-mini",
}


@pytest_asyncio.fixture
async def client(settings, storage, make_core):
    llm = FakeLLM(settings, scripts=[[text_chunk("The RINCK Convention is ..."), finish_chunk("stop")]])
    core = make_core(llm)
    kb = FakeIndex(["Passage A", "Passage B"])
    app = create_app(settings, storage, core, RetrievalService(kb, settings))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        c.core = core
        c.kb = kb
        yield c


def _sse_events(body: str):
    events = []
    for block in body.replace("\r\n", "\n").split("\n\n"):
        lines = dict(
            line.split(": ", 1) for line in block.split("\n") if line and not line.startswith(":") and ": " in line
        )
        if "event" in lines:
            events.append((lines["event"], json.loads(lines["data"])))
    return events


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200 and r.json() == {"status": "ok"}


class TestChat:

    async def test_unknown_model(self, client, storage):
        r = await client.post("/chat", json={**CHAT_BODY, "modelId": "gpt-9"})
        assert r.status_code == 404
        assert r.text == "Model not found"
        assert await storage.get_conversation("c1") is None

    async def test_missing_model_id_is_rejected(self, client, storage):
        body = {k: v for k, v in CHAT_BODY.items() if k != "modelId"}
        r = await client.post("/chat", json=body, headers=USER)
        assert r.status_code == 422
        assert await storage.get_conversation("c1") is None

    async def test_no_user_message(self, client):
        body = {**CHAT_BODY, "messages": [{"role": "assistant", "content": "Hi"}]}
        r = await client.post("/chat", json=body)
        assert r.status_code == 400
        assert r.text == "No user message found"

    async def test_streams_events(self, client, storage):
        r = await client.post("/chat", json=CHAT_BODY, headers=USER)
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(r.text)
        channels = [e[0] for e in events]
        assert channels == ["text", "step_finish", "annotation", "done"]
        assert events[0][1] == {"type": "text", "content": "The RINCK Convention is ..."}
        assert events[-1][1] == {"type": "done", "ok": True}

        await client.core.drain()
        conversation = await storage.get_conversation("c1")
        assert conversation.user_id == "user-1"
        rows = await storage.get_messages_by_conversation("c1")
        assert events[2][1]["content"]["messageIdFromServer"] == rows[-1].id


class TestDeleteChat:

    async def _seed(self, storage, owner="user-1"):
        await storage.save_conversation(id="c1", user_id=owner, title="T")

    async def test_missing_id(self, client):
        r = await client.delete("/chat", headers=USER)
        assert r.status_code == 404

    async def test_unauthenticated(self, client, storage):
        await self._seed(storage)
        r = await client.delete("/chat", params={"id": "c1"})
        assert r.status_code == 401
        assert await storage.get_conversation("c1") is not None

    async def test_foreign_owner(self, client, storage):
        await self._seed(storage, owner="someone-else")
        r = await client.delete("/chat", params={"id": "c1"}, headers=USER)
        assert r.status_code == 401

    async def test_unknown_conversation(self, client):
        r = await client.delete("/chat", params={"id": "nope"}, headers=USER)
        assert r.status_code == 404

    async def test_owner_deletes(self, client, storage):
        await self._seed(storage)
        r = await client.delete("/chat", params={"id": "c1"}, headers=USER)
        assert r.status_code == 200
        assert r.text == "Chat deleted"
        assert await storage.get_conversation("c1") is None


class TestRetrieve:

    async def test_results(self, client):
        r = await client.post("/retrieve", json={"query": "coach"})
        assert r.status_code == 200
        assert [x["text"] for x in r.json()["results"]] == ["Passage A", "Passage B"]

    async def test_k_limits_results(self, client):
        r = await client.post("/retrieve", json={"query": "coach", "k": 1})
        assert [x["text"] for x in r.json()["results"]] == ["Passage A"]

    async def test_missing_query(self, client):
        r = await client.post("/retrieve", json={})
        assert r.status_code == 200
        assert r.json()["results"] == []
        assert "query" in r.json()["message"]

    async def test_invalid_body(self, client):
        r = await client.post("/retrieve", content=b"{not json", headers={"Content-Type": "application/json"})
        assert r.status_code == 200
        assert r.json()["results"] == []

    async def test_index_failure(self, client):
        def broken(query, n=8):
            raise RuntimeError("index offline")

        client.kb.query = broken
        r = await client.post("/retrieve", json={"query": "coach"})
        assert r.status_code == 200
        assert r.json() == {"results": [], "message": "index offline"}


class TestSupplementaryEndpoints:

    async def test_history(self, client, storage):
        await storage.save_conversation(id="c1", user_id="user-1", title="Mine")
        await storage.save_conversation(id="c2", user_id="other", title="Theirs")
        r = await client.get("/history", headers=USER)
        assert [c["id"] for c in r.json()] == ["c1"]

    async def test_vote_roundtrip(self, client, storage):
        await storage.save_conversation(id="c1", user_id="user-1", title="T")
        for kind in ("up", "down"):
            r = await client.patch("/vote", json={"chatId": "c1", "messageId": "m1", "type": kind}, headers=USER)
            assert r.status_code == 200
        votes = (await client.get("/vote", params={"chatId": "c1"})).json()
        assert len(votes) == 1 and votes[0]["is_upvoted"] is False

    async def test_vote_unknown_chat(self, client):
        r = await client.patch("/vote", json={"chatId": "nope", "messageId": "m1", "type": "up"})
        assert r.status_code == 404

    async def test_documents(self, client, storage):
        r = await client.post("/document", params={"id": "d1"}, headers=USER,
                              json={"title": "Plan", "kind": "text", "content": "v1"})
        assert r.status_code == 200
        first_created_at = r.json()["created_at"]
        await client.post("/document", params={"id": "d1"}, headers=USER,
                          json={"title": "Plan", "kind": "text", "content": "v2"})

        versions = (await client.get("/document", params={"id": "d1"})).json()
        assert [v["content"] for v in versions] == ["v1", "v2"]

        r = await client.patch("/document", params={"id": "d1"}, headers=USER, json={"timestamp": first_created_at})
        assert r.status_code == 200
        versions = (await client.get("/document", params={"id": "d1"})).json()
        assert [v["content"] for v in versions] == ["v1"]

    async def test_document_not_found(self, client):
        r = await client.get("/document", params={"id": "missing"})
        assert r.status_code == 404

    async def test_visibility_requires_owner(self, client, storage):
        await storage.save_conversation(id="c1", user_id="user-1", title="T")
        r = await client.patch("/chat/visibility", json={"chatId": "c1", "visibility": "public"})
        assert r.status_code == 401
        r = await client.patch("/chat/visibility", json={"chatId": "c1", "visibility": "public"}, headers=USER)
        assert r.status_code == 200
        assert (await storage.get_conversation("c1")).visibility == "public"

    async def test_suggestions_requires_document_id(self, client):
        r = await client.get("/suggestions")
        assert r.status_code == 404
        r = await client.get("/suggestions", params={"documentId": "d1"})
        assert r.json() == []

    async def test_delete_trailing_messages(self, client, storage):
        await storage.save_conversation(id="c1", user_id="user-1", title="T")
        t0 = utcnow()
        await storage.save_messages([
            Message(id=f"m{i}", conversation_id="c1", role="user", content=str(i), created_at=t0 + timedelta(seconds=i))
            for i in range(3)
        ])
        r = await client.delete("/messages/trailing", params={"id": "m1"})
        assert r.status_code == 401
        r = await client.delete("/messages/trailing", params={"id": "m1"}, headers=USER)
        assert r.status_code == 200
        assert [m.id for m in await storage.get_messages_by_conversation("c1")] == ["m0"]
