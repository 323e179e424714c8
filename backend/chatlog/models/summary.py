"""Rolling summaries and per-thread summary scheduling state."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from chatlog.models.thread import new_id


class SummaryMode(str, Enum):
    NORMAL = "normal"
    RETRY = "retry"


class Summary(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    thread_id: str = Field(index=True)
    summary: str
    sequence: int = Field(index=True)  # independent of message sequence
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SummaryState(SQLModel, table=True):
    thread_id: str = Field(primary_key=True)
    message_count: int = Field(default=0)
    last_summary_message_count: int = Field(default=0)
    is_in_retry_mode: bool = Field(default=False)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def mode(self) -> SummaryMode:
        return SummaryMode.RETRY if self.is_in_retry_mode else SummaryMode.NORMAL

    @property
    def pending_count(self) -> int:
        return self.message_count - self.last_summary_message_count

    def enter_retry(self) -> None:
        self.is_in_retry_mode = True
        self.last_updated = datetime.now(timezone.utc)

    def mark_summarized(self) -> None:
        """Successful save: back to NORMAL, caught up with the log."""
        self.is_in_retry_mode = False
        self.last_summary_message_count = self.message_count
        self.last_updated = datetime.now(timezone.utc)
