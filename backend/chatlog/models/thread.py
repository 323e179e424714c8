"""Thread and message models for chat log persistence."""

import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

USER = "user"
ASSISTANT = "assistant"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class Thread(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str = Field(default="New Conversation")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Persona config
    bot_name: str = Field(default="Assistant")
    rules: str = Field(default="")
    user_name: str = Field(default="User")
    profile_picture_ref: Optional[str] = None


class Message(SQLModel, table=True):
    # Surrogate row key; message ids are indexed but not unique at the storage
    # layer so racing upserts can leave duplicates for repair to collapse.
    pk: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(default_factory=new_id, index=True)
    conversation_id: str = Field(index=True)
    role: str  # "user" | "assistant"
    content: str = Field(default="")
    sequence: Optional[int] = Field(default=None, index=True)
    timestamp: int = Field(default_factory=now_ms, index=True)  # epoch ms
    is_delivered: Optional[bool] = None  # None while pending
    is_loading: bool = Field(default=False)
    error: bool = Field(default=False)
    media_ref: Optional[str] = None
    # Assistant rows only: comma-separated ids of the user messages this reply answers
    reply_to: Optional[str] = None

    @property
    def paired_ids(self) -> set[str]:
        return set(self.reply_to.split(",")) if self.reply_to else set()
