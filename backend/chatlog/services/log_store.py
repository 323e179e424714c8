"""Per-thread message log: idempotent upserts, ordered reads and lazy repair."""

import logging
import re
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from chatlog.core.errors import CorruptionError, StorageError
from chatlog.models.summary import Summary, SummaryState
from chatlog.models.thread import Message, Thread
from chatlog.services.sequencer import (
    RepairPlan,
    dedupe_latest,
    find_inconsistencies,
    order_messages,
    plan_repair,
)

logger = logging.getLogger(__name__)

# Messages that drive media fetches; kept for the UI, never shown to the model.
MEDIA_CONTROL_PATTERN = re.compile(
    r"<request img>|<request media>|\[Media ID:\s*[^\]]+\]", re.IGNORECASE
)

_MUTABLE_FIELDS = ("content", "is_delivered", "is_loading", "error", "media_ref")


def is_content_bearing(content: str | None) -> bool:
    if not content or not content.strip():
        return False
    return MEDIA_CONTROL_PATTERN.search(content) is None


class LogStore:
    """Message log backed by SQLModel tables. Safe to share across tasks."""

    def __init__(self, engine):
        self.engine = engine

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    def _rows(self, session: Session, thread_id: str) -> list[Message]:
        return list(
            session.exec(select(Message).where(Message.conversation_id == thread_id)).all()
        )

    # --- writes ---

    def append(self, thread_id: str, message: Message) -> Message:
        """Insert or update by message id. A missing sequence gets last + 1."""
        with self._session() as session:
            existing = session.exec(
                select(Message)
                .where(Message.conversation_id == thread_id)
                .where(Message.id == message.id)
            ).first()

            if existing:
                for name in _MUTABLE_FIELDS:
                    setattr(existing, name, getattr(message, name))
                if message.sequence is not None:
                    existing.sequence = message.sequence
                if message.reply_to:
                    existing.reply_to = message.reply_to
                session.add(existing)
                session.commit()
                return existing

            stored = Message(
                id=message.id,
                conversation_id=thread_id,
                role=message.role,
                content=message.content,
                sequence=message.sequence,
                timestamp=message.timestamp,
                is_delivered=message.is_delivered,
                is_loading=message.is_loading,
                error=message.error,
                media_ref=message.media_ref,
                reply_to=message.reply_to,
            )
            if stored.sequence is None:
                stored.sequence = self._next_sequence(session, thread_id)
            session.add(stored)
            session.commit()

        logger.debug(
            f"Appended {stored.role} message {stored.id} to thread {thread_id} "
            f"(sequence {stored.sequence})"
        )
        return stored

    def update(self, message_id: str, **fields) -> Message | None:
        unknown = set(fields) - set(_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update message fields: {sorted(unknown)}")

        with self._session() as session:
            rows = session.exec(select(Message).where(Message.id == message_id)).all()
            if not rows:
                logger.debug(f"Update: message {message_id} not found")
                return None
            for row in rows:
                for name, value in fields.items():
                    setattr(row, name, value)
                session.add(row)
            session.commit()
            return rows[0]

    def import_messages(self, thread_id: str, messages: Iterable[Message]) -> RepairPlan:
        """Merge messages from another writer, keeping the newest copy of each id."""
        incoming, _ = dedupe_latest(messages)
        with self._session() as session:
            for msg in incoming:
                existing = session.exec(
                    select(Message)
                    .where(Message.conversation_id == thread_id)
                    .where(Message.id == msg.id)
                ).first()
                if existing and existing.timestamp >= msg.timestamp:
                    continue
                if existing:
                    for name in _MUTABLE_FIELDS:
                        setattr(existing, name, getattr(msg, name))
                    existing.timestamp = msg.timestamp
                    existing.role = msg.role
                    existing.reply_to = msg.reply_to
                    session.add(existing)
                else:
                    session.add(
                        Message(
                            id=msg.id,
                            conversation_id=thread_id,
                            role=msg.role,
                            content=msg.content,
                            sequence=msg.sequence,
                            timestamp=msg.timestamp,
                            is_delivered=msg.is_delivered,
                            is_loading=msg.is_loading,
                            error=msg.error,
                            media_ref=msg.media_ref,
                            reply_to=msg.reply_to,
                        )
                    )
            session.commit()
        logger.info(f"Imported {len(incoming)} messages into thread {thread_id}")
        return self.repair(thread_id)

    # --- ordering ---

    def _next_sequence(self, session: Session, thread_id: str) -> int:
        last = session.exec(
            select(func.max(Message.sequence)).where(Message.conversation_id == thread_id)
        ).one()
        return (last or 0) + 1

    def next_sequence(self, thread_id: str) -> int:
        with self._session() as session:
            return self._next_sequence(session, thread_id)

    def repair(self, thread_id: str) -> RepairPlan:
        """Renumber the thread 1..N in total order and drop duplicate ids.

        Rows already holding their target sequence are left untouched, so a
        second call is a no-op.
        """
        with self._session() as session:
            plan = plan_repair(self._rows(session, thread_id))
            if not plan.changed:
                return plan

            for dup in plan.duplicates:
                session.delete(dup)
            for msg, sequence in plan.renumber:
                msg.sequence = sequence
                session.add(msg)
            session.commit()

        logger.info(
            f"Repaired thread {thread_id}: renumbered {len(plan.renumber)}, "
            f"dropped {len(plan.duplicates)} duplicates"
        )
        return plan

    def verify(self, thread_id: str) -> None:
        with self._session() as session:
            problems = find_inconsistencies(self._rows(session, thread_id))
        if problems:
            raise CorruptionError(f"Thread {thread_id}: {', '.join(problems)}")

    def ensure_consistent(self, thread_id: str) -> bool:
        """Repair the thread if its stored order is off. Returns True if it repaired."""
        try:
            self.verify(thread_id)
        except CorruptionError as e:
            logger.info(f"{e}; repairing")
            self.repair(thread_id)
            return True
        return False

    # --- reads ---

    def get(self, message_id: str) -> Message | None:
        with self._session() as session:
            return session.exec(select(Message).where(Message.id == message_id)).first()

    def list_all(self, thread_id: str) -> list[Message]:
        """Full log in total order, regardless of what the stored sequences say."""
        with self._session() as session:
            survivors, _ = dedupe_latest(self._rows(session, thread_id))
        return order_messages(survivors)

    def count(self, thread_id: str) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count(func.distinct(Message.id))).where(
                    Message.conversation_id == thread_id
                )
            ).one()

    def list_content_bearing(self, thread_id: str, delivered_only: bool = True) -> list[Message]:
        return [
            m
            for m in self.list_all(thread_id)
            if is_content_bearing(m.content)
            and not m.is_loading
            and not (delivered_only and m.is_delivered is False)
        ]

    def count_content_bearing(self, thread_id: str) -> int:
        return len(self.list_content_bearing(thread_id))

    def recent_content_bearing(self, thread_id: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        return self.list_content_bearing(thread_id)[-limit:]

    def page_before(self, thread_id: str, before: int | None, limit: int) -> list[Message]:
        """Up to ``limit`` displayable messages with sequence < ``before``, oldest first."""
        query = select(Message).where(Message.conversation_id == thread_id)
        if before is not None:
            query = query.where(Message.sequence < before)
        query = query.order_by(Message.sequence.desc())  # type: ignore

        page: list[Message] = []
        seen: set[str] = set()
        with self._session() as session:
            for msg in session.exec(query):
                if len(page) >= limit:
                    break
                if msg.id in seen or not is_content_bearing(msg.content):
                    continue
                seen.add(msg.id)
                page.append(msg)
        page.reverse()
        return page

    # --- deletion ---

    def delete_thread(self, thread_id: str) -> None:
        """Remove a thread and cascade to its messages, summaries and state.

        The thread row goes first so it disappears from listings even when a
        later cascade step fails; those failures are logged, not raised.
        """
        try:
            with self._session() as session:
                thread = session.get(Thread, thread_id)
                if thread:
                    session.delete(thread)
                    session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete thread {thread_id}: {e}") from e

        cascade = [
            ("messages", select(Message).where(Message.conversation_id == thread_id)),
            ("summaries", select(Summary).where(Summary.thread_id == thread_id)),
            ("summary state", select(SummaryState).where(SummaryState.thread_id == thread_id)),
        ]
        for name, query in cascade:
            try:
                with self._session() as session:
                    for row in session.exec(query).all():
                        session.delete(row)
                    session.commit()
            except SQLAlchemyError:
                logger.exception(f"Cascade delete of {name} failed for thread {thread_id}")

        logger.debug(f"Deleted thread {thread_id}")
