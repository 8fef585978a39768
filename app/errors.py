"""Fehlerklassen für Turn-Validierung und Persistenz."""
from __future__ import annotations


class ChatError(Exception):
    """Basisklasse für Fehler, die vor dem Streaming abgelehnt werden."""
    status_code = 500


class ModelNotFoundError(ChatError):
    status_code = 404

    def __init__(self, model_id: str) -> None:
        super().__init__("Model not found")
        self.model_id = model_id


class NoUserMessageError(ChatError):
    status_code = 400

    def __init__(self) -> None:
        super().__init__("No user message found")


class ConversationNotFoundError(Exception):
    """Nachricht verweist auf eine Conversation, die (noch) nicht existiert."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} does not exist")
        self.conversation_id = conversation_id
