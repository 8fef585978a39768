"""
Persistenz-Gateway: Conversations, Messages, Documents, Suggestions, Votes.

Alle Schreibzugriffe auf den Store laufen über `Storage`. Konflikte werden
vom Store serialisiert (Transaktionen), nicht im Prozess.

Documents sind versioniert: jede Änderung ist eine neue Zeile mit gleicher
id; die aktuelle Version ist die mit dem jüngsten created_at.
Suggestions referenzieren eine Document-Version schwach über
(document_id, document_created_at), ohne Fremdschlüssel.
"""
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Literal, Optional, Sequence
import logging

from sqlalchemy import delete, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import Field, SQLModel, col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from .errors import ConversationNotFoundError

log = logging.getLogger(__name__)

Visibility = Literal["public", "private"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(SQLModel, table=True):
    __tablename__ = "conversation"

    id: str = Field(primary_key=True)
    title: str
    user_id: str = Field(index=True)
    visibility: str = Field(default="private", max_length=10)
    created_at: datetime = Field(default_factory=utcnow)


class Message(SQLModel, table=True):
    __tablename__ = "message"

    id: str = Field(primary_key=True)
    conversation_id: str = Field(foreign_key="conversation.id", index=True)
    role: str = Field(max_length=20)  # user | assistant | system | tool
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class Vote(SQLModel, table=True):
    __tablename__ = "vote"

    conversation_id: str = Field(foreign_key="conversation.id", primary_key=True)
    message_id: str = Field(foreign_key="message.id", primary_key=True)
    is_upvoted: bool


class Document(SQLModel, table=True):
    __tablename__ = "document"

    id: str = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, primary_key=True)
    title: str
    kind: str = Field(max_length=10)  # text | code | image
    content: str = ""
    user_id: str = Field(index=True)


class Suggestion(SQLModel, table=True):
    __tablename__ = "suggestion"

    id: str = Field(primary_key=True)
    document_id: str = Field(index=True)
    document_created_at: datetime
    original_text: str
    suggested_text: str
    description: Optional[str] = None
    is_resolved: bool = False
    user_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Storage:
    """Schmale CRUD-API über einer async SQLAlchemy-Engine."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=echo)

    def _session(self) -> AsyncSession:
        return AsyncSession(self.engine, expire_on_commit=False)

    async def init(self) -> None:
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # ---------- Conversations ----------
    async def save_conversation(self, id: str, user_id: str, title: str) -> Conversation:
        """
        Idempotent: legt ein paralleler Turn die Conversation zuerst an,
        wird dessen Zeile zurückgegeben.
        """
        conversation = Conversation(id=id, user_id=user_id, title=title)
        async with self._session() as session:
            session.add(conversation)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await session.get(Conversation, id)
                if existing is None:
                    raise
                log.info("Conversation %s already created by a concurrent turn", id)
                return existing
        return conversation

    async def get_conversation(self, id: str) -> Optional[Conversation]:
        async with self._session() as session:
            return await session.get(Conversation, id)

    async def get_conversations_by_user(self, user_id: str) -> List[Conversation]:
        async with self._session() as session:
            result = await session.exec(
                select(Conversation)
                .where(Conversation.user_id == user_id)
                .order_by(col(Conversation.created_at).desc())
            )
            return list(result.all())

    async def delete_conversation(self, id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(Vote).where(col(Vote.conversation_id) == id))
            await session.execute(delete(Message).where(col(Message.conversation_id) == id))
            await session.execute(delete(Conversation).where(col(Conversation.id) == id))
            await session.commit()

    async def update_conversation_visibility(self, id: str, visibility: Visibility) -> None:
        async with self._session() as session:
            await session.execute(
                update(Conversation).where(col(Conversation.id) == id).values(visibility=visibility)
            )
            await session.commit()

    # ---------- Messages ----------
    async def save_messages(self, messages: Sequence[Message]) -> None:
        """
        Referenzprüfung im Gateway: jede referenzierte Conversation muss
        existieren, sonst wird nichts geschrieben.
        """
        if not messages:
            return
        async with self._session() as session:
            for conversation_id in {m.conversation_id for m in messages}:
                if await session.get(Conversation, conversation_id) is None:
                    log.error("Failed to save messages: conversation %s missing", conversation_id)
                    raise ConversationNotFoundError(conversation_id)
            session.add_all(list(messages))
            await session.commit()

    async def get_messages_by_conversation(self, conversation_id: str) -> List[Message]:
        async with self._session() as session:
            result = await session.exec(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at).asc())
            )
            return list(result.all())

    async def get_message_by_id(self, id: str) -> Optional[Message]:
        async with self._session() as session:
            return await session.get(Message, id)

    async def delete_messages_after(self, conversation_id: str, timestamp: datetime) -> None:
        """Löscht Nachrichten ab (einschließlich) timestamp samt ihrer Votes."""
        async with self._session() as session:
            ids = select(Message.id).where(
                Message.conversation_id == conversation_id,
                col(Message.created_at) >= timestamp,
            )
            await session.execute(
                delete(Vote).where(
                    col(Vote.conversation_id) == conversation_id,
                    col(Vote.message_id).in_(ids),
                )
            )
            await session.execute(
                delete(Message).where(
                    col(Message.conversation_id) == conversation_id,
                    col(Message.created_at) >= timestamp,
                )
            )
            await session.commit()

    # ---------- Votes ----------
    async def vote_message(self, conversation_id: str, message_id: str, up: bool) -> Vote:
        """Upsert: eine Stimme pro (conversation, message), letzte gewinnt."""
        async with self._session() as session:
            vote = await session.get(Vote, (conversation_id, message_id))
            if vote is None:
                vote = Vote(conversation_id=conversation_id, message_id=message_id, is_upvoted=up)
            else:
                vote.is_upvoted = up
            session.add(vote)
            await session.commit()
            return vote

    async def get_votes_by_conversation(self, conversation_id: str) -> List[Vote]:
        async with self._session() as session:
            result = await session.exec(select(Vote).where(Vote.conversation_id == conversation_id))
            return list(result.all())

    # ---------- Documents ----------
    async def save_document(
        self, id: str, title: str, kind: str, content: str, user_id: str
    ) -> Document:
        document = Document(id=id, title=title, kind=kind, content=content, user_id=user_id)
        async with self._session() as session:
            session.add(document)
            await session.commit()
        return document

    async def get_documents_by_id(self, id: str) -> List[Document]:
        async with self._session() as session:
            result = await session.exec(
                select(Document).where(Document.id == id).order_by(col(Document.created_at).asc())
            )
            return list(result.all())

    async def get_document_by_id(self, id: str) -> Optional[Document]:
        async with self._session() as session:
            result = await session.exec(
                select(Document).where(Document.id == id).order_by(col(Document.created_at).desc())
            )
            return result.first()

    async def delete_documents_after(self, id: str, timestamp: datetime) -> None:
        """
        Verwirft Versionen nach timestamp. Suggestions, die an eine dieser
        Versionen gebunden sind, werden explizit mitgelöscht.
        """
        async with self._session() as session:
            await session.execute(
                delete(Suggestion).where(
                    col(Suggestion.document_id) == id,
                    col(Suggestion.document_created_at) > timestamp,
                )
            )
            await session.execute(
                delete(Document).where(
                    col(Document.id) == id,
                    col(Document.created_at) > timestamp,
                )
            )
            await session.commit()

    # ---------- Suggestions ----------
    async def save_suggestions(self, suggestions: Sequence[Suggestion]) -> None:
        if not suggestions:
            return
        async with self._session() as session:
            session.add_all(list(suggestions))
            await session.commit()

    async def get_suggestions_by_document(self, document_id: str) -> List[Suggestion]:
        async with self._session() as session:
            result = await session.exec(
                select(Suggestion)
                .where(Suggestion.document_id == document_id)
                .order_by(col(Suggestion.created_at).asc())
            )
            return list(result.all())
