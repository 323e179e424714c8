"""Assembles the size-bounded context sent with every outbound turn."""

import logging

from chatlog.core.config import settings
from chatlog.models.thread import USER
from chatlog.services.log_store import LogStore
from chatlog.services.scheduler.summaries import SummaryScheduler

logger = logging.getLogger(__name__)

SUMMARIES_IN_CONTEXT = 3
MESSAGES_IN_CONTEXT = 5
ELLIPSIS = "..."


def truncate_words(text: str, limit: int) -> str:
    """Cap ``text`` at ``limit`` words, marking the cut with a trailing ellipsis."""
    words = text.split()
    if len(words) <= limit:
        return text
    return " ".join(words[:limit]) + f" {ELLIPSIS}"


class ContextAssembler:
    def __init__(self, log: LogStore, summaries: SummaryScheduler, word_limit: int | None = None):
        self.log = log
        self.summaries = summaries
        self.word_limit = word_limit or settings.context_word_limit

    def generate_context(
        self, thread_id: str, rules: str, bot_name: str, exclude: set[str] | None = None
    ) -> str:
        """Rules, recent summaries and the last few messages, capped at the word limit.

        ``exclude`` leaves out messages the caller appends itself (the turn being sent).
        """
        # The word cap applies to the assembled string, not per section.
        sections = []
        if rules and rules.strip():
            sections.append(f"Rules:\n{rules.strip()}")

        summaries = self.summaries.get_recent_summaries(thread_id, SUMMARIES_IN_CONTEXT)
        if summaries:
            sections.append("Summaries:\n" + "\n".join(f"- {s.summary}" for s in summaries))

        messages = [
            m for m in self.log.list_content_bearing(thread_id) if m.id not in (exclude or ())
        ][-MESSAGES_IN_CONTEXT:]
        if messages:
            lines = [
                f"{'User' if m.role == USER else bot_name}: {m.content}" for m in messages
            ]
            sections.append("Recent Messages:\n" + "\n".join(lines))

        context = truncate_words("\n\n".join(sections), self.word_limit)
        logger.debug(f"Context for thread {thread_id}: {len(context.split())} words")
        return context
