"""Rolling summary scheduler.

Each thread is either NORMAL or RETRY. In NORMAL a summary is due once
``summary_trigger`` content-bearing messages have accumulated since the last
one; any failure to generate or save flips the thread to RETRY, which makes
every later check due until a save succeeds. Without RETRY a single provider
timeout would leave ``last_summary_message_count`` behind for good.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from chatlog.core.config import settings
from chatlog.core.errors import SummaryGenerationError
from chatlog.models.summary import Summary, SummaryMode, SummaryState
from chatlog.models.thread import USER, Message
from chatlog.services.llm.base import CompletionProvider, complete_with_timeout
from chatlog.services.log_store import LogStore

logger = logging.getLogger(__name__)

GLIMPSE_COUNT = 5
GLIMPSE_MAX_CHARS = 180
PRIOR_SUMMARIES_IN_PROMPT = 2
RECENT_MESSAGES_IN_PROMPT = 10

SUMMARY_INSTRUCTIONS = "Create a concise summary of the conversation provided."

_CLAUSE_END = re.compile(r"[.!?]")


def glimpse_indices(total: int, count: int) -> list[int]:
    """Evenly spaced sample positions so long threads keep distant context."""
    if total <= 0 or count <= 0:
        return []
    return [min(max((i * total) // (count + 1), 0), total - 1) for i in range(1, count + 1)]


def _speaker(message: Message, bot_name: str) -> str:
    return "User" if message.role == USER else bot_name


def build_glimpses(messages: Sequence[Message], bot_name: str, count: int = GLIMPSE_COUNT) -> list[str]:
    glimpses = []
    for idx in glimpse_indices(len(messages), count):
        msg = messages[idx]
        content = msg.content
        if len(content) > GLIMPSE_MAX_CHARS:
            content = content[: GLIMPSE_MAX_CHARS - 3] + "..."
        glimpses.append(f"{_speaker(msg, bot_name)}: {content}")
    return glimpses


def build_summary_prompt(
    rules: str,
    recent_messages: Sequence[Message],
    previous_summaries: Sequence[str],
    bot_name: str,
    glimpses: Sequence[str],
) -> str:
    lines = [
        "Please provide a brief summary of what the user is talking about "
        "in the following conversation.",
        "",
    ]
    if rules and rules.strip():
        lines += [f"Roleplay Rules: {rules}", ""]
    if previous_summaries:
        lines.append(f"Previous Summaries (last {len(previous_summaries)}):")
        lines += [f"- {s}" for s in previous_summaries]
        lines.append("")
    if glimpses:
        lines.append("Context Glimpses (from different parts of the chat):")
        lines += [f"- {g}" for g in glimpses]
        lines.append("")
    lines.append("Recent Messages:")
    lines += [f"{_speaker(m, bot_name)}: {m.content}" for m in recent_messages]
    lines += ["", "Please provide a concise summary of this conversation segment."]
    return "\n".join(lines)


def fallback_summary(messages: Sequence[Message]) -> str:
    """Local digest built from the first clause of each user message."""
    if not messages:
        return "No conversation yet."

    topics = []
    for msg in messages:
        if msg.role != USER:
            continue
        clause = _CLAUSE_END.split(msg.content, maxsplit=1)[0].strip()
        if len(clause) > 10:
            topics.append(clause[:100])

    if topics:
        return f"Discussion about: {'; '.join(topics)}"
    return "Conversation in progress."


@dataclass
class GeneratedSummary:
    text: str
    is_fallback: bool = False
    error: Exception | None = None


class SummaryScheduler:
    def __init__(
        self,
        log: LogStore,
        provider: CompletionProvider,
        trigger: int | None = None,
        retention: int | None = None,
        timeout: float | None = None,
    ):
        self.log = log
        self.engine = log.engine
        self.provider = provider
        self.trigger = trigger or settings.summary_trigger
        self.retention = retention or settings.summary_retention
        self.timeout = timeout or settings.summary_timeout

        self._tasks: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # --- state ---

    def get_state(self, thread_id: str) -> SummaryState:
        with self._session() as session:
            state = session.get(SummaryState, thread_id)
            if not state:
                state = SummaryState(thread_id=thread_id)
                session.add(state)
                session.commit()
            return state

    def record_append(self, thread_id: str) -> SummaryState:
        """Re-derive ``message_count`` from the log."""
        count = self.log.count_content_bearing(thread_id)
        with self._session() as session:
            state = session.get(SummaryState, thread_id) or SummaryState(thread_id=thread_id)
            state.message_count = count
            state.last_summary_message_count = min(state.last_summary_message_count, count)
            state.last_updated = datetime.now(timezone.utc)
            session.add(state)
            session.commit()
            return state

    def should_generate_or_retry(self, thread_id: str) -> bool:
        state = self.record_append(thread_id)
        if state.mode is SummaryMode.RETRY:
            logger.debug(f"Thread {thread_id} in retry mode, summary due")
            return True
        return state.pending_count >= self.trigger

    def _enter_retry(self, thread_id: str, error: Exception | None) -> None:
        with self._session() as session:
            state = session.get(SummaryState, thread_id) or SummaryState(thread_id=thread_id)
            state.enter_retry()
            session.add(state)
            session.commit()
        logger.warning(f"Summary for thread {thread_id} failed, entering retry mode: {error}")

    # --- summaries ---

    def get_summaries(self, thread_id: str) -> list[Summary]:
        with self._session() as session:
            return list(
                session.exec(
                    select(Summary)
                    .where(Summary.thread_id == thread_id)
                    .order_by(Summary.sequence)  # type: ignore
                ).all()
            )

    def get_recent_summaries(self, thread_id: str, count: int) -> list[Summary]:
        if count <= 0:
            return []
        return self.get_summaries(thread_id)[-count:]

    def get_latest_summary(self, thread_id: str) -> Summary | None:
        recent = self.get_recent_summaries(thread_id, 1)
        return recent[0] if recent else None

    def delete_summaries(self, thread_id: str) -> None:
        with self._session() as session:
            for summary in session.exec(select(Summary).where(Summary.thread_id == thread_id)).all():
                session.delete(summary)
            session.commit()
        logger.debug(f"Deleted summaries for thread {thread_id}")

    async def generate_summary_strict(
        self, thread_id: str, rules: str, bot_name: str
    ) -> GeneratedSummary:
        """Ask the provider for a summary; never raises.

        On timeout, provider error or an empty reply the result carries a local
        fallback text and the error, so a summary failure cannot break the turn
        that triggered it.
        """
        recent: list[Message] = []
        try:
            messages = self.log.list_content_bearing(thread_id)
            recent = messages[-RECENT_MESSAGES_IN_PROMPT:]
            previous = [
                s.summary for s in self.get_recent_summaries(thread_id, PRIOR_SUMMARIES_IN_PROMPT)
            ]
            prompt = build_summary_prompt(
                rules, recent, previous, bot_name, build_glimpses(messages, bot_name)
            )
            logger.debug(f"Summary prompt for thread {thread_id}: {len(prompt)} chars")

            text = await complete_with_timeout(
                self.provider,
                prompt,
                self.timeout,
                instructions=SUMMARY_INSTRUCTIONS,
                user="System",
            )
            if not text or not text.strip():
                raise SummaryGenerationError("Provider returned an empty summary")
            return GeneratedSummary(text=text.strip())
        except Exception as e:
            logger.warning(f"Summary generation failed for thread {thread_id}, using fallback: {e}")
            return GeneratedSummary(text=fallback_summary(recent), is_fallback=True, error=e)

    def save_summary(self, thread_id: str, text: str) -> Summary:
        """Store a summary, return the thread to NORMAL and prune old summaries."""
        if not text or not text.strip():
            raise SummaryGenerationError("Empty summary")

        with self._session() as session:
            last = session.exec(
                select(func.max(Summary.sequence)).where(Summary.thread_id == thread_id)
            ).one()
            summary = Summary(thread_id=thread_id, summary=text.strip(), sequence=(last or 0) + 1)
            session.add(summary)

            state = session.get(SummaryState, thread_id) or SummaryState(thread_id=thread_id)
            state.mark_summarized()
            session.add(state)
            session.commit()

        logger.info(f"Saved summary {summary.sequence} for thread {thread_id}")
        self._prune(thread_id)
        return summary

    def _prune(self, thread_id: str) -> None:
        summaries = self.get_summaries(thread_id)
        excess = summaries[: max(len(summaries) - self.retention, 0)]
        if not excess:
            return
        with self._session() as session:
            for summary in excess:
                row = session.get(Summary, summary.id)
                if row:
                    session.delete(row)
            session.commit()
        logger.debug(f"Pruned {len(excess)} old summaries for thread {thread_id}")

    async def run_if_due(self, thread_id: str, rules: str, bot_name: str) -> Summary | None:
        """Generate and save a summary when one is due. Returns the saved summary."""
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        async with lock:
            if not self.should_generate_or_retry(thread_id):
                return None

            result = await self.generate_summary_strict(thread_id, rules, bot_name)
            if result.is_fallback:
                self._enter_retry(thread_id, result.error)
                return None
            try:
                return self.save_summary(thread_id, result.text)
            except (SummaryGenerationError, SQLAlchemyError) as e:
                self._enter_retry(thread_id, e)
                return None

    # --- background timers ---

    def schedule(self, thread_id: str, rules: str, bot_name: str, delay: float = 0.0) -> asyncio.Task:
        """Run ``run_if_due`` in the background, replacing any pending timer for the thread."""
        previous = self._tasks.get(thread_id)
        if previous and not previous.done():
            previous.cancel()

        task = asyncio.create_task(self._run_later(thread_id, rules, bot_name, delay))
        self._tasks[thread_id] = task
        task.add_done_callback(lambda t: self._forget(thread_id, t))
        return task

    def _forget(self, thread_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(thread_id) is task:
            del self._tasks[thread_id]

    async def _run_later(self, thread_id: str, rules: str, bot_name: str, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        # Cancelling a replaced timer must not abandon a generation mid-save
        inner = asyncio.create_task(self._run_guarded(thread_id, rules, bot_name))
        self._running.add(inner)
        inner.add_done_callback(self._running.discard)
        await asyncio.shield(inner)

    async def _run_guarded(self, thread_id: str, rules: str, bot_name: str) -> None:
        try:
            await self.run_if_due(thread_id, rules, bot_name)
        except Exception:
            logger.exception(f"Summary run failed for thread {thread_id}")

    def cancel(self, thread_id: str) -> None:
        """Stop the thread's pending timer and forget its lock (thread deleted)."""
        task = self._tasks.pop(thread_id, None)
        if task:
            task.cancel()
        self._locks.pop(thread_id, None)

    async def drain(self) -> None:
        """Wait for every scheduled and running summary task to finish."""
        while True:
            pending = [t for t in (*self._tasks.values(), *self._running) if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await self.drain()
