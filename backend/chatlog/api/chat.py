import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatlog.api.threads import message_dict
from chatlog.core.errors import ThreadNotFoundError
from chatlog.services.chat import ChatService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket):
    await websocket.accept()
    chat: ChatService = websocket.app.state.chat
    thread_id: str | None = None

    try:
        while True:
            raw = await websocket.receive_text()

            # Check if the client is sending JSON with metadata
            try:
                data = json.loads(raw)
                user_text = data.get("content", raw) if isinstance(data, dict) else raw
                if isinstance(data, dict) and data.get("thread_id"):
                    thread_id = data["thread_id"]
            except (json.JSONDecodeError, TypeError):
                user_text = raw

            if not str(user_text).strip():
                continue

            try:
                thread = chat.ensure_thread(thread_id, user_text)
            except ThreadNotFoundError:
                await websocket.send_json({"type": "error", "detail": "Thread not found"})
                thread_id = None
                continue
            thread_id = thread.id

            result = await chat.send_turn(thread_id, user_text)
            if result.delivered and result.reply:
                await websocket.send_json({"type": "message", **message_dict(result.reply)})
            else:
                await websocket.send_json(
                    {
                        "type": "error",
                        "message_ids": result.user_message_ids,
                        "detail": "Message not delivered",
                    }
                )

            # Send end marker with thread_id so frontend knows
            await websocket.send_json({"type": "end", "thread_id": thread_id})

    except WebSocketDisconnect:
        logger.debug(f"Chat socket closed (thread {thread_id})")
