"""Chat turns: ingest, batching, completion and delivery bookkeeping."""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Union

from sqlmodel import Session, select

from chatlog.core.config import settings
from chatlog.core.errors import ThreadNotFoundError, TransientProviderError
from chatlog.models.thread import ASSISTANT, USER, Message, Thread, now_ms
from chatlog.services.batcher import FlushedBatch, MessageBatcher
from chatlog.services.context import ContextAssembler
from chatlog.services.llm.base import CompletionProvider, complete_with_timeout
from chatlog.services.log_store import LogStore
from chatlog.services.pagination import PaginationService
from chatlog.services.scheduler.summaries import SummaryScheduler

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 100
THREAD_FIELDS = ("title", "bot_name", "rules", "user_name", "profile_picture_ref")

Listener = Callable[[str, list[Message]], Union[Awaitable[None], None]]


def make_title(content: str) -> str:
    content = content.strip()
    if len(content) > TITLE_MAX_CHARS:
        return content[:TITLE_MAX_CHARS] + "..."
    return content or "New Conversation"


@dataclass
class TurnResult:
    thread_id: str
    user_message_ids: list[str]
    reply: Message | None = None
    error: str | None = None
    messages: list[Message] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.error is None


class ChatService:
    """Wires the message log, batcher, summaries and completion provider together."""

    def __init__(
        self,
        engine,
        provider: CompletionProvider,
        clock: Callable[[], int] = now_ms,
        batch_window: float | None = None,
        timeout: float | None = None,
    ):
        self.engine = engine
        self.provider = provider
        self.clock = clock
        self.timeout = timeout or settings.completion_timeout

        self.log = LogStore(engine)
        self.summaries = SummaryScheduler(self.log, provider)
        self.context = ContextAssembler(self.log, self.summaries)
        self.pagination = PaginationService(self.log)
        self.batcher = MessageBatcher(on_flush=self._on_batch_flush, window=batch_window)
        self._listeners: list[Listener] = []

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # --- threads ---

    def create_thread(self, title: str | None = None, **config) -> Thread:
        unknown = set(config) - set(THREAD_FIELDS)
        if unknown:
            raise ValueError(f"Unknown thread fields: {sorted(unknown)}")
        thread = Thread(title=title or "New Conversation", **config)
        with self._session() as session:
            session.add(thread)
            session.commit()
        logger.info(f"Created thread {thread.id}")
        return thread

    def get_thread(self, thread_id: str) -> Thread:
        with self._session() as session:
            thread = session.get(Thread, thread_id)
        if not thread:
            raise ThreadNotFoundError(thread_id)
        return thread

    def list_threads(self) -> list[Thread]:
        with self._session() as session:
            return list(
                session.exec(select(Thread).order_by(Thread.updated_at.desc())).all()  # type: ignore
            )

    def update_thread(self, thread_id: str, **fields) -> Thread:
        with self._session() as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise ThreadNotFoundError(thread_id)
            for name, value in fields.items():
                if name not in THREAD_FIELDS:
                    raise ValueError(f"Unknown thread field: {name}")
                setattr(thread, name, value)
            thread.updated_at = datetime.now(timezone.utc)
            session.add(thread)
            session.commit()
            return thread

    def delete_thread(self, thread_id: str) -> None:
        self.batcher.clear(thread_id)
        self.summaries.cancel(thread_id)
        self.log.delete_thread(thread_id)

    def _touch(self, thread_id: str) -> None:
        with self._session() as session:
            thread = session.get(Thread, thread_id)
            if thread:
                thread.updated_at = datetime.now(timezone.utc)
                session.add(thread)
                session.commit()

    def ensure_thread(self, thread_id: str | None, first_message: str) -> Thread:
        """Return the thread, creating one titled after the first message if needed."""
        if thread_id is None:
            return self.create_thread(title=make_title(first_message))
        return self.get_thread(thread_id)

    # --- real-time updates ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def _publish(self, thread_id: str, messages: list[Message]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(thread_id, messages)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Message listener failed for thread {thread_id}")

    # --- ingest ---

    def _append_user_message(self, thread_id: str, content: str, message_id: str | None = None) -> Message:
        message = Message(conversation_id=thread_id, role=USER, content=content, timestamp=self.clock())
        if message_id:
            message.id = message_id
        stored = self.log.append(thread_id, message)
        self.summaries.record_append(thread_id)
        return stored

    async def submit(self, thread_id: str, content: str) -> Message:
        """Store a pending user message and queue it for the thread's next batch."""
        self.get_thread(thread_id)
        message = self._append_user_message(thread_id, content)
        self.batcher.submit(thread_id, content, message_id=message.id)
        await self._publish(thread_id, [message])
        return message

    async def flush(self, thread_id: str) -> FlushedBatch | None:
        return await self.batcher.force_flush(thread_id)

    async def _on_batch_flush(self, batch: FlushedBatch) -> None:
        await self.complete_turn(batch.thread_id, batch.content, batch.message_ids)

    async def send_turn(self, thread_id: str, content: str) -> TurnResult:
        """Append one user message and complete the turn immediately."""
        self.get_thread(thread_id)
        message = self._append_user_message(thread_id, content)
        await self._publish(thread_id, [message])
        return await self.complete_turn(thread_id, content, [message.id])

    # --- completion ---

    def build_prompt(self, thread: Thread, content: str, exclude: list[str]) -> str:
        context = self.context.generate_context(
            thread.id, thread.rules, thread.bot_name, exclude=set(exclude)
        )
        turn = f"{thread.user_name}: {content}"
        return f"{context}\n\n{turn}" if context else turn

    async def complete_turn(self, thread_id: str, content: str, user_message_ids: list[str]) -> TurnResult:
        """Ask the provider for a reply to the given user messages.

        The result is written under ``thread_id`` even if nobody is viewing the
        thread any more. On failure the user messages are marked undelivered and
        the placeholder is closed with no content.
        """
        thread = self.get_thread(thread_id)
        prompt = self.build_prompt(thread, content, user_message_ids)

        placeholder = self.log.append(
            thread_id,
            Message(
                conversation_id=thread_id,
                role=ASSISTANT,
                is_loading=True,
                timestamp=self.clock(),
                reply_to=",".join(user_message_ids),
            ),
        )
        await self._publish(thread_id, [placeholder])

        try:
            reply = await complete_with_timeout(
                self.provider,
                prompt,
                self.timeout,
                instructions=settings.generic_prompt,
                user=thread.user_name,
            )
            if not reply or not reply.strip():
                raise TransientProviderError("Provider returned an empty reply")
        except Exception as e:
            logger.error(f"Turn failed for thread {thread_id}: {e}")
            updated = [
                self.log.update(mid, is_delivered=False, error=True) for mid in user_message_ids
            ]
            closed = self.log.update(placeholder.id, is_loading=False, error=True)
            changed = [m for m in updated + [closed] if m]
            self.summaries.record_append(thread_id)
            await self._publish(thread_id, changed)
            return TurnResult(
                thread_id=thread_id,
                user_message_ids=list(user_message_ids),
                error=str(e) or type(e).__name__,
                messages=changed,
            )

        final = self.log.update(
            placeholder.id, content=reply.strip(), is_loading=False, is_delivered=True
        )
        delivered = [self.log.update(mid, is_delivered=True) for mid in user_message_ids]
        self._touch(thread_id)

        changed = [m for m in delivered + [final] if m]
        self.summaries.record_append(thread_id)
        await self._publish(thread_id, changed)
        self.summaries.schedule(thread_id, thread.rules, thread.bot_name)
        return TurnResult(
            thread_id=thread_id,
            user_message_ids=list(user_message_ids),
            reply=final,
            messages=changed,
        )

    async def shutdown(self) -> None:
        await self.batcher.shutdown()
        await self.summaries.shutdown()
