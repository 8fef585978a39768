# main.py
"""
Entry point.
Fehlkonfiguration (fehlende LLM_*/EMBEDDING_MODEL) ist hier fatal.
"""
import logging, sys

import httpx

from app.api import create_app
from app.config import get_settings
from app.core import ApplicationCore
from app.db import KnowledgeBase
from app.llm import LLMAdapter
from app.retrieval import RetrievalClient, RetrievalService
from app.storage import Storage

root = logging.getLogger()
if not root.handlers:
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(h)
    root.setLevel(logging.INFO)

settings = get_settings()
http = httpx.AsyncClient(timeout=httpx.Timeout(15.0))
storage = Storage(settings.DATABASE_URL)
core = ApplicationCore(
    settings,
    storage=storage,
    llm=LLMAdapter(settings),
    retrieval=RetrievalClient(settings, client=http),
    http=http,
)
app = create_app(settings, storage, core, RetrievalService(KnowledgeBase(settings), settings))  # noqa
