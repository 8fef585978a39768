# app/__init__.py
"""
App-Paket für den RINCK-Coaching-Chat.
Struktur:
- config.py      : Konfiguration via Pydantic Settings
- errors.py      : Fehler mit HTTP-Status (Modell/Nachricht fehlt)
- identity.py    : Identity des Aufrufers
- ai_models.py   : Modellkatalog
- events.py      : Stream-Events + DataStream (SSE-Kanäle)
- messages.py    : Chat-Nachrichten (Flatten, Sanitizing, OpenAI-Format)
- db.py          : KnowledgeBase (Chroma + lokales Embedding)
- retrieval.py   : RetrievalService (Query, Re-Ranking) + RetrievalClient
- prompting.py   : System-Prompt, Kontext-Regeln, Dokument-Prompts
- llm.py         : LLMAdapter (Streaming, Titel, Bilder)
- storage.py     : Persistenz (SQLModel, async)
- tools.py       : ToolRegistry (getWeather, fetchContext, ...)
- documents.py   : createDocument / updateDocument / requestSuggestions
- core.py        : ApplicationCore (Orchestrierung Turn→Tools→Persistenz)
- api.py         : FastAPI Endpoints (/chat, /retrieve, /history, /vote, /document, ...)
"""
