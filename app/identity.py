from __future__ import annotations
from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """
    Wer einen Turn ausführt bzw. Daten besitzt.
    Wird explizit durch Orchestrator, Tools und Storage gereicht.
    """
    user_id: str
    authenticated: bool = False
