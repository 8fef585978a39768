from __future__ import annotations
from dataclasses import dataclass
from typing import List, Dict, Any
import logging
import time

import chromadb
from chromadb.config import Settings as ChromaSettings
from chromadb.api.types import Documents
from chromadb.utils.embedding_functions import EmbeddingFunction
from sentence_transformers import SentenceTransformer

from .config import Settings

log = logging.getLogger(__name__)


class LocalEmbeddingFn(EmbeddingFunction):
    def __init__(self, model_path: str) -> None:
        t0 = time.perf_counter()
        self.model = SentenceTransformer(model_path)

        # ---- robust max_seq_length ----
        # Viele ST-Modelle haben effektiv ~512 Token.
        # Wir lesen mögliche Quellen aus und klemmen konservativ auf 512.
        maxs = []
        seq = getattr(self.model, "max_seq_length", None)
        if isinstance(seq, int):
            maxs.append(seq)
        tok = getattr(self.model, "tokenizer", None)
        mlen = getattr(tok, "model_max_length", None)
        if isinstance(mlen, int) and 0 < mlen < 10_000:
            maxs.append(mlen)

        resolved = min([v for v in maxs if v > 0], default=512)
        self.model.max_seq_length = min(resolved, 512)
        # --------------------------------

        self.model.eval()
        self._loaded_sec = time.perf_counter() - t0
        log.info("embedder loaded from %s in %.2fs", model_path, self._loaded_sec)

    def __call__(self, input: Documents) -> List[List[float]]:
        vecs = self.model.encode(list(input), normalize_embeddings=True)
        return vecs.tolist()


@dataclass
class KnowledgeBase:
    """
    Kapselt die Chroma-Verbindung.
    Der Index wird extern gebaut; hier wird nur abgefragt.
    Mit CHROMA_HOST wird ein entfernter Chroma-Server genutzt, sonst CHROMA_PATH.
    """
    _settings: Settings

    def __post_init__(self) -> None:
        if self._settings.CHROMA_HOST:
            self.client = chromadb.HttpClient(
                host=self._settings.CHROMA_HOST,
                port=self._settings.CHROMA_PORT,
            )
        else:
            self.client = chromadb.PersistentClient(
                path=self._settings.CHROMA_PATH,
                settings=ChromaSettings(allow_reset=False),
            )
        self.collection = self.client.get_or_create_collection(
            name=self._settings.CHROMA_COLLECTION,
            embedding_function=LocalEmbeddingFn(self._settings.EMBEDDING_MODEL),
            metadata={"hnsw:space": "cosine"},
        )

    def count(self) -> int:
        return self.collection.count()

    def query(self, query: str, n: int = 8) -> Dict[str, Any]:
        return self.collection.query(query_texts=[query], n_results=n)
