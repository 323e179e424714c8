"""REST API for threads, message pages, summaries and context."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from chatlog.api.deps import get_chat_service
from chatlog.core.errors import ThreadNotFoundError
from chatlog.models.summary import Summary
from chatlog.models.thread import Message, Thread
from chatlog.services.chat import ChatService

router = APIRouter()
logger = logging.getLogger(__name__)


class ThreadCreate(BaseModel):
    title: str | None = None
    bot_name: str = "Assistant"
    rules: str = ""
    user_name: str = "User"
    profile_picture_ref: str | None = None


class ThreadUpdate(BaseModel):
    title: str | None = None
    bot_name: str | None = None
    rules: str | None = None
    user_name: str | None = None
    profile_picture_ref: str | None = None


class MessageSubmit(BaseModel):
    content: str


def _thread_dict(t: Thread) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "created_at": t.created_at.isoformat(),
        "updated_at": t.updated_at.isoformat(),
        "config": {
            "bot_name": t.bot_name,
            "rules": t.rules,
            "user_name": t.user_name,
            "profile_picture_ref": t.profile_picture_ref,
        },
    }


def message_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "thread_id": m.conversation_id,
        "role": m.role,
        "content": m.content,
        "sequence": m.sequence,
        "timestamp": m.timestamp,
        "is_delivered": m.is_delivered,
        "is_loading": m.is_loading,
        "error": m.error,
        "media_ref": m.media_ref,
        "reply_to": m.reply_to,
    }


def _summary_dict(s: Summary) -> dict:
    return {
        "id": s.id,
        "sequence": s.sequence,
        "summary": s.summary,
        "created_at": s.created_at.isoformat(),
    }


def _get_thread_or_404(chat: ChatService, thread_id: str) -> Thread:
    try:
        return chat.get_thread(thread_id)
    except ThreadNotFoundError:
        logger.debug(f"Thread {thread_id} not found")
        raise HTTPException(status_code=404, detail="Thread not found")


@router.get("/")
async def list_threads(chat: ChatService = Depends(get_chat_service)):
    return [_thread_dict(t) for t in chat.list_threads()]


@router.post("/")
async def create_thread(body: ThreadCreate, chat: ChatService = Depends(get_chat_service)):
    thread = chat.create_thread(**body.model_dump())
    return _thread_dict(thread)


@router.get("/{thread_id}")
async def get_thread(thread_id: str, chat: ChatService = Depends(get_chat_service)):
    thread = _get_thread_or_404(chat, thread_id)
    state = chat.summaries.get_state(thread_id)
    data = _thread_dict(thread)
    data["message_count"] = chat.log.count(thread_id)
    data["summary_state"] = {
        "mode": state.mode.value,
        "message_count": state.message_count,
        "last_summary_message_count": state.last_summary_message_count,
    }
    return data


@router.patch("/{thread_id}")
async def update_thread(
    thread_id: str, body: ThreadUpdate, chat: ChatService = Depends(get_chat_service)
):
    _get_thread_or_404(chat, thread_id)
    fields = body.model_dump(exclude_none=True)
    thread = chat.update_thread(thread_id, **fields)
    return _thread_dict(thread)


@router.delete("/{thread_id}")
async def delete_thread(thread_id: str, chat: ChatService = Depends(get_chat_service)):
    _get_thread_or_404(chat, thread_id)
    chat.delete_thread(thread_id)
    logger.debug(f"Deleted thread {thread_id}")
    return {"status": "deleted"}


@router.get("/{thread_id}/messages")
async def list_messages(
    thread_id: str,
    page_size: int | None = None,
    before: int | None = None,
    chat: ChatService = Depends(get_chat_service),
):
    _get_thread_or_404(chat, thread_id)
    if before is None:
        page = chat.pagination.load_initial(thread_id, page_size)
    else:
        page = chat.pagination.load_older(thread_id, before, page_size)
    return {
        "messages": [message_dict(m) for m in page.messages],
        "has_more": page.has_more,
        "cursor": page.cursor,
    }


@router.post("/{thread_id}/messages")
async def submit_message(
    thread_id: str, body: MessageSubmit, chat: ChatService = Depends(get_chat_service)
):
    _get_thread_or_404(chat, thread_id)
    if not body.content.strip():
        raise HTTPException(status_code=422, detail="Message content is empty")
    message = await chat.submit(thread_id, body.content)
    return {
        "status": "queued",
        "message": message_dict(message),
        "pending": chat.batcher.pending_count(thread_id),
    }


@router.post("/{thread_id}/flush")
async def flush_messages(thread_id: str, chat: ChatService = Depends(get_chat_service)):
    _get_thread_or_404(chat, thread_id)
    batch = await chat.flush(thread_id)
    if not batch:
        return {"status": "empty", "message_ids": []}
    return {"status": "flushed", "message_ids": batch.message_ids}


@router.post("/{thread_id}/repair")
async def repair_thread(thread_id: str, chat: ChatService = Depends(get_chat_service)):
    _get_thread_or_404(chat, thread_id)
    plan = chat.log.repair(thread_id)
    return {"renumbered": len(plan.renumber), "duplicates_removed": len(plan.duplicates)}


@router.get("/{thread_id}/summaries")
async def list_summaries(thread_id: str, chat: ChatService = Depends(get_chat_service)):
    _get_thread_or_404(chat, thread_id)
    return [_summary_dict(s) for s in chat.summaries.get_summaries(thread_id)]


@router.get("/{thread_id}/context")
async def get_context(thread_id: str, chat: ChatService = Depends(get_chat_service)):
    thread = _get_thread_or_404(chat, thread_id)
    context = chat.context.generate_context(thread_id, thread.rules, thread.bot_name)
    return {"context": context, "words": len(context.split())}
