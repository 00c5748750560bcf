"""
Session History Endpoints.

FOCUS: Inspect or reset one chat session's stored history
"""

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from backend.api.v1.dependencies import ChatHistoryDep

logger = logging.getLogger(__name__)

router = APIRouter()


class HistoryMessage(BaseModel):
    role: str
    content: str
    at: str


class AppendMessageRequest(BaseModel):
    """Message to record; unknown roles are stored as "user"."""
    role: str = Field(default="user", max_length=32)
    content: str = Field(..., max_length=20000)


class HistoryResponse(BaseModel):
    session_id: str
    messages: list[HistoryMessage]


@router.get("/{session_id}/history", response_model=HistoryResponse)
async def get_session_history(session_id: str, chat_history: ChatHistoryDep):
    messages = await chat_history.get_history(session_id)
    return HistoryResponse(session_id=session_id, messages=messages)


@router.post(
    "/{session_id}/history",
    response_model=HistoryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def append_session_message(
    session_id: str,
    request: AppendMessageRequest,
    chat_history: ChatHistoryDep,
):
    await chat_history.append_message(session_id, request.model_dump())
    messages = await chat_history.get_history(session_id)
    return HistoryResponse(session_id=session_id, messages=messages)


@router.delete("/{session_id}/history", status_code=status.HTTP_204_NO_CONTENT)
async def clear_session_history(session_id: str, chat_history: ChatHistoryDep):
    await chat_history.clear(session_id)
    logger.info(f"Cleared history for session={session_id}")
