from fastapi import Request

from chatlog.services.chat import ChatService


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat
