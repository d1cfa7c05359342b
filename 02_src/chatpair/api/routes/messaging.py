"""Messaging API routes."""

from datetime import datetime

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import InvalidMessage, SendFailure
from ...models import Message, MessageType
from .participants import lookup_controller


class MessageRequest(BaseModel):
    """Request model for sending a message."""

    content: str = ""
    message_type: MessageType = MessageType.TEXT
    media_ref: str | None = None


class MessageResponse(BaseModel):
    """Response model for message."""

    id: str
    session_id: str
    sender_id: str
    sender_name: str
    content: str
    message_type: MessageType
    media_ref: str | None
    created_at: datetime


def message_to_dict(message: Message) -> dict:
    return {
        "id": message.id,
        "session_id": message.session_id,
        "sender_id": message.sender_id,
        "sender_name": message.sender_name,
        "content": message.content,
        "message_type": message.message_type,
        "media_ref": message.media_ref,
        "created_at": message.created_at,
    }


def create_messaging_router(app: Application) -> APIRouter:
    """Create messaging router."""
    router = APIRouter(prefix="/api/participants", tags=["messaging"])

    @router.post(
        "/{participant_id}/messages", response_model=MessageResponse, status_code=201
    )
    async def send_message(participant_id: str, request: MessageRequest) -> dict:
        """Send a message to the current partner."""
        controller = lookup_controller(app, participant_id)
        try:
            message = await controller.send(
                request.content, request.message_type, request.media_ref
            )
        except InvalidMessage as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SendFailure as e:
            raise HTTPException(status_code=503, detail=e.reason)
        except RuntimeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return message_to_dict(message)

    @router.get("/{participant_id}/messages", response_model=list[MessageResponse])
    async def list_messages(participant_id: str) -> list[dict]:
        """Messages of the current session, in order."""
        controller = lookup_controller(app, participant_id)
        return [message_to_dict(m) for m in controller.messages]

    return router
