from __future__ import annotations
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Protocol
import logging
import re

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import Settings

log = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[A-Za-zÄÖÜäöüß0-9\-]+")


class RetrievedPassage(BaseModel):
    """Ein Treffer aus dem Vektorindex. Lebt nur für einen Turn."""
    text: str
    rank: int = 0
    score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VectorIndex(Protocol):
    def query(self, query: str, n: int = 8) -> Dict[str, Any]: ...

    def count(self) -> int: ...


def _word_tokens(text: str) -> List[str]:
    return _WORD_RE.findall(text.lower())


def _listify(x) -> List[str]:
    if not x:
        return []
    if isinstance(x, str):
        # trenne an Kommas oder Whitespace
        return [t.strip() for t in re.split(r"[,\s]+", x) if t.strip()]
    if isinstance(x, (list, tuple, set)):
        return [str(t).strip() for t in x if str(t).strip()]
    return [str(x).strip()]


def _meta_boost(meta: Dict[str, Any], q_tokens: set[str]) -> float:
    """
    Leichter Boost, wenn Query-Tokens in Topics/Keywords/Tags vorkommen.
    Funktioniert für String (kommagetrennt) und Listen.
    """
    meta = meta or {}
    bag = " ".join([
        *_listify(meta.get("topics")),
        *_listify(meta.get("keywords")),
        *_listify(meta.get("imageTags") or meta.get("tags")),
    ]).lower()
    if not bag:
        return 0.0

    b = 0.0
    if any(t in bag for t in q_tokens):
        b += 0.22
        if len(q_tokens) >= 2:
            b += 0.10
        if len(q_tokens) >= 3:
            b += 0.12
    return min(b, 0.44)


@dataclass
class RetrievalService:
    """
    Retrieval-Layer über dem Vektorindex:
    - Query mit Domain-Anker (RETRIEVAL_QUERY_PREFIX)
    - Einfaches Re-Ranking (Cosine-Score + Meta-Boost)
    - Duplikatreduktion nach Chunk-Text
    """
    kb: VectorIndex
    _settings: Settings

    def anchored(self, query: str) -> str:
        return f"{self._settings.RETRIEVAL_QUERY_PREFIX}{query}"

    def search(self, query: str, top_k: int | None = None) -> List[RetrievedPassage]:
        top_k = top_k or self._settings.TOP_K
        if self.kb.count() == 0:
            return []
        raw = self.kb.query(self.anchored(query), n=max(12, top_k * 3))

        rows: List[Dict[str, Any]] = []
        for doc, meta, dist in zip((raw.get("documents") or [[]])[0],
                                   (raw.get("metadatas") or [[]])[0],
                                   (raw.get("distances") or [[]])[0]):
            if not doc:
                continue
            rows.append({"text": doc, "meta": meta or {}, "score": 1.0 - float(dist)})

        if not rows:
            return []

        q_tokens = set(_word_tokens(query))
        for r in rows:
            r["combo_score"] = 0.70 * r["score"] + 0.30 * _meta_boost(r["meta"], q_tokens)
        rows.sort(key=lambda x: x["combo_score"], reverse=True)

        out: List[RetrievedPassage] = []
        seen = set()
        for r in rows:
            key = " ".join(r["text"].split())
            if key in seen:
                continue
            seen.add(key)
            out.append(RetrievedPassage(
                text=r["text"],
                rank=len(out) + 1,
                score=round(r["combo_score"], 4),
                metadata=r["meta"],
            ))
            if len(out) >= top_k:
                break
        return out


class RetrievalClient:
    """
    Client für POST /retrieve.
    Fehler (Netzwerk, Status, Format) werden geloggt und als "kein Kontext" behandelt.
    """

    def __init__(self, _settings: Settings, client: Optional[httpx.AsyncClient] = None) -> None:
        self._settings = _settings
        self._client = client

    async def retrieve(self, query: str, k: Optional[int] = None) -> List[RetrievedPassage]:
        """k: Anzahl Treffer; ohne Angabe entscheidet der Dienst (TOP_K)."""
        if not query.strip():
            return []
        url = self._settings.RETRIEVAL_URL.rstrip("/") + "/retrieve"
        payload: Dict[str, Any] = {"query": query}
        if k is not None:
            payload["k"] = k
        try:
            if self._client is not None:
                r = await self._client.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(15.0)) as c:
                    r = await c.post(url, json=payload)
            if r.status_code != 200:
                log.warning("Retrieval returned %s: %s", r.status_code, r.text[:200])
                return []
            body = r.json()
            if body.get("message"):
                log.warning("Retrieval message: %s", body["message"])
            return [RetrievedPassage.model_validate(x) for x in body.get("results") or []]
        except (httpx.HTTPError, ValueError, ValidationError, AttributeError) as e:
            log.warning("Failed to fetch context: %s", e)
            return []
