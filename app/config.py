from __future__ import annotations
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Globale App-Einstellungen.

    Pflichtwerte kommen aus .env bzw. der Umgebung. Fehlen sie, schlägt
    schon der Import von main.py fehl – der Prozess nimmt dann keinen
    Traffic an.
    EMBEDDING_MODEL muss auf einen lokalen Sentence-Transformer Snapshot zeigen
    (Ordner mit config.json).
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # LLM (OpenAI-kompatibles Backend)
    LLM_BASE_URL: str
    LLM_API_KEY: str
    TITLE_MODEL: str = "gpt-4o-mini"
    IMAGE_MODEL: str = "dall-e-3"
    TEMPERATURE: float = 0.7

    # Embeddings (lokaler Snapshot, Ordner mit config.json)
    EMBEDDING_MODEL: str

    # Chroma (Index wird extern befüllt)
    CHROMA_PATH: str = "data/chroma"
    CHROMA_HOST: str | None = None
    CHROMA_PORT: int = 8000
    CHROMA_COLLECTION: str = "rinck_convention"

    # Retrieval
    RETRIEVAL_URL: str = "http://127.0.0.1:8080"
    RETRIEVAL_QUERY_PREFIX: str = "EHF RINCK Convention: "
    TOP_K: int = 5

    # Persistenz
    DATABASE_URL: str = "sqlite+aiosqlite:///data/chat.db"

    # Turn-Steuerung
    MAX_STEPS: int = 5
    MAX_TURN_SECONDS: float = 60.0
    PING_INTERVAL_SECONDS: int = 10

    # Tools
    WEATHER_BASE_URL: str = "https://api.open-meteo.com/v1"

    # Identität ohne vorgeschaltete Auth
    DEFAULT_USER_ID: str = "00000000-0000-0000-0000-000000000000"

    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    @field_validator("EMBEDDING_MODEL", mode="after")
    def _check_embedder_path(cls, v: str) -> str:
        p = Path(v)
        if not p.exists():
            raise ValueError(f"EMBEDDING_MODEL path not found: {p}")
        if not (p / "config.json").exists():
            raise ValueError("EMBEDDING_MODEL must point to a snapshot folder containing config.json")
        return str(p)

    @field_validator("CHROMA_PATH", mode="after")
    def _ensure_dirs(cls, v: str) -> str:
        Path(v).mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("MAX_STEPS", "TOP_K", mode="after")
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
