"""Participant lifecycle API routes."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import TransientStoreError
from ...models import Participant, Session
from ...session import SessionController


class JoinRequest(BaseModel):
    """Request model for joining the pool."""

    display_name: str = Field(min_length=1, max_length=64)
    client_key: str | None = None


class ResumeRequest(BaseModel):
    """Request model for resuming after a reload."""

    client_key: str


class PresenceRequest(BaseModel):
    """Lifecycle signal from the view."""

    signal: Literal["visibility", "focus", "unload"]
    hidden: bool = False
    focused: bool = True
    is_real_exit: bool = False


class ParticipantResponse(BaseModel):
    """Response model for participant."""

    id: str
    display_name: str
    avatar_color: str | None
    status: str
    last_active: datetime
    is_synthetic: bool


class SessionResponse(BaseModel):
    """Response model for session."""

    id: str
    participant_a_id: str
    participant_b_id: str
    created_at: datetime
    last_activity_at: datetime


class StateResponse(BaseModel):
    """What the view renders for one participant."""

    client_key: str
    phase: str
    participant: ParticipantResponse | None
    session: SessionResponse | None
    partner: ParticipantResponse | None
    is_searching: bool
    is_matched: bool
    notice: str | None
    draft: str


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


def participant_to_dict(participant: Participant | None) -> dict | None:
    if participant is None:
        return None
    return {
        "id": participant.id,
        "display_name": participant.display_name,
        "avatar_color": participant.avatar_color,
        "status": participant.status.value,
        "last_active": participant.last_active,
        "is_synthetic": participant.is_synthetic,
    }


def session_to_dict(session: Session | None) -> dict | None:
    if session is None:
        return None
    return {
        "id": session.id,
        "participant_a_id": session.participant_a_id,
        "participant_b_id": session.participant_b_id,
        "created_at": session.created_at,
        "last_activity_at": session.last_activity_at,
    }


def state_to_dict(controller: SessionController) -> dict:
    return {
        "client_key": controller.client_key,
        "phase": controller.phase.value,
        "participant": participant_to_dict(controller.participant),
        "session": session_to_dict(controller.session),
        "partner": participant_to_dict(controller.partner),
        "is_searching": controller.is_searching,
        "is_matched": controller.is_matched,
        "notice": controller.notice,
        "draft": controller.draft,
    }


def lookup_controller(app: Application, participant_id: str) -> SessionController:
    """Controller for participant_id, or 404."""
    try:
        return app.get_controller(participant_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Participant not found")


def create_participants_router(app: Application) -> APIRouter:
    """Create participants router."""
    router = APIRouter(prefix="/api/participants", tags=["participants"])

    @router.post("", response_model=StateResponse, status_code=201)
    async def join(request: JoinRequest) -> dict:
        """Join the pool and start searching."""
        try:
            controller = await app.join(request.display_name, request.client_key)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except TransientStoreError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return state_to_dict(controller)

    @router.post("/resume", response_model=StateResponse)
    async def resume(request: ResumeRequest) -> dict:
        """Resume the participant saved under client_key."""
        try:
            controller = await app.resume(request.client_key)
        except TransientStoreError as e:
            raise HTTPException(status_code=503, detail=str(e))
        if controller is None:
            raise HTTPException(status_code=404, detail="Nothing to resume")
        return state_to_dict(controller)

    @router.get("/{participant_id}", response_model=StateResponse)
    async def get_state(participant_id: str) -> dict:
        """Current state of a participant."""
        return state_to_dict(lookup_controller(app, participant_id))

    @router.post("/{participant_id}/skip", response_model=StateResponse)
    async def skip(participant_id: str) -> dict:
        """Leave the current partner and search again."""
        controller = lookup_controller(app, participant_id)
        if not await controller.skip():
            raise HTTPException(status_code=409, detail="Not in a session")
        return state_to_dict(controller)

    @router.post("/{participant_id}/logout", response_model=StatusResponse)
    async def logout(participant_id: str) -> dict:
        """Leave the pool."""
        lookup_controller(app, participant_id)
        await app.logout(participant_id)
        return {"status": "ok"}

    @router.post("/{participant_id}/presence", response_model=StatusResponse)
    async def presence(participant_id: str, request: PresenceRequest) -> dict:
        """Forward a visibility, focus or unload signal."""
        controller = lookup_controller(app, participant_id)
        if request.signal == "visibility":
            await controller.on_visibility_change(request.hidden)
        elif request.signal == "focus":
            await controller.on_focus_change(request.focused)
        else:
            await controller.on_unload(request.is_real_exit)
        return {"status": "ok"}

    return router
