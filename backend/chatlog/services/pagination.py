"""Cursor-based pages over a thread's log, and the per-view display window."""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from chatlog.core.config import settings
from chatlog.models.thread import USER, Message
from chatlog.services.log_store import LogStore

logger = logging.getLogger(__name__)


@dataclass
class PaginationCursor:
    thread_id: str
    oldest_loaded_sequence: int | None = None
    has_more: bool = True


@dataclass
class Page:
    messages: list[Message]
    has_more: bool
    cursor: int | None  # lowest sequence in the page


class PaginationService:
    def __init__(self, log: LogStore, page_size: int | None = None):
        self.log = log
        self.page_size = page_size or settings.page_size

    def load_initial(self, thread_id: str, page_size: int | None = None) -> Page:
        """Newest page of displayable messages, oldest first.

        ``has_more`` is optimistic: whether anything older exists is only
        known after asking for it.
        """
        self.log.ensure_consistent(thread_id)
        messages = self.log.page_before(thread_id, None, page_size or self.page_size)
        cursor = messages[0].sequence if messages else None
        logger.debug(f"Initial page for thread {thread_id}: {len(messages)} messages")
        return Page(messages=messages, has_more=bool(messages), cursor=cursor)

    def load_older(self, thread_id: str, cursor: int, page_size: int | None = None) -> Page:
        # A short page is not the end: filtered media-control rows leave gaps.
        # Only reaching sequence 1, or an empty page, ends the history.
        self.log.ensure_consistent(thread_id)
        messages = self.log.page_before(thread_id, cursor, page_size or self.page_size)
        if not messages:
            return Page(messages=[], has_more=False, cursor=cursor)

        oldest = messages[0].sequence
        logger.debug(
            f"Older page for thread {thread_id} before {cursor}: "
            f"{len(messages)} messages, oldest {oldest}"
        )
        return Page(messages=messages, has_more=oldest != 1, cursor=oldest)


def _display_key(message: Message) -> tuple:
    sequence = message.sequence if message.sequence is not None else float("inf")
    return (sequence, 0 if message.role == USER else 1, message.timestamp, message.id)


@dataclass
class ThreadWindow:
    """Messages currently displayed for one thread view."""

    service: PaginationService
    cursor: PaginationCursor | None = None
    messages: list[Message] = field(default_factory=list)

    @property
    def thread_id(self) -> str | None:
        return self.cursor.thread_id if self.cursor else None

    @property
    def has_more(self) -> bool:
        return bool(self.cursor and self.cursor.has_more)

    def reset(self) -> None:
        self.cursor = None
        self.messages = []

    def open(self, thread_id: str, page_size: int | None = None) -> Page:
        page = self.service.load_initial(thread_id, page_size)
        self.messages = list(page.messages)
        self.cursor = PaginationCursor(
            thread_id=thread_id,
            oldest_loaded_sequence=page.cursor,
            has_more=page.has_more,
        )
        return page

    def load_more(self, page_size: int | None = None) -> Page | None:
        if not self.cursor or not self.cursor.has_more:
            return None
        if self.cursor.oldest_loaded_sequence is None:
            self.cursor.has_more = False
            return None

        page = self.service.load_older(
            self.cursor.thread_id, self.cursor.oldest_loaded_sequence, page_size
        )
        if page.messages:
            shown = {m.id for m in self.messages}
            self.messages = [m for m in page.messages if m.id not in shown] + self.messages
            self.messages.sort(key=_display_key)
            self.cursor.oldest_loaded_sequence = page.cursor
        self.cursor.has_more = page.has_more
        return page

    def add_new_messages(self, thread_id: str, messages: Iterable[Message]) -> int:
        """Merge real-time appends into the tail. Returns how many were new.

        Messages for another thread are ignored; known ids are updated in place
        and the head cursor is left alone.
        """
        if thread_id != self.thread_id:
            return 0

        by_id = {m.id: m for m in self.messages}
        max_sequence = max((m.sequence or 0 for m in self.messages), default=0)
        added = 0
        for msg in sorted(messages, key=lambda m: (m.timestamp, 0 if m.role == USER else 1, m.id)):
            if msg.id in by_id:
                if msg.sequence is None:
                    msg.sequence = by_id[msg.id].sequence
                by_id[msg.id] = msg
                continue
            if msg.sequence is None:
                max_sequence += 1
                msg.sequence = max_sequence
            else:
                max_sequence = max(max_sequence, msg.sequence)
            by_id[msg.id] = msg
            added += 1

        # A failed placeholder ends up empty and not loading: no reply bubble.
        self.messages = sorted(
            (m for m in by_id.values() if m.content.strip() or m.is_loading),
            key=_display_key,
        )
        return added
