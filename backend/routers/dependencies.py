"""FastAPI dependencies shared by the HTTP routers."""

from fastapi import Request

from services.chat_store import ChatStore
from services.identity import UserIdentity, resolve_request_user
from utils.llm import get_chat_store


def get_current_user(request: Request) -> UserIdentity:
    """Authenticated user for an HTTP request (AuthenticationError -> 401)."""
    return resolve_request_user(request.headers)


async def get_store() -> ChatStore:
    return await get_chat_store()
