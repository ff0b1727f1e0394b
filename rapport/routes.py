"""FastAPI endpoints for the conversation control surface, under /api.

One conversation per process. Every endpoint returns the updated state, a
TurnOutcome for turn submissions, or ConversationEnded for /end.
"""

from typing import NoReturn

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from rapport.models import ConversationEnded, ConversationState, Scenario, TurnOutcome
from rapport.services import TurnServiceError
from rapport.session import (
    Conversation,
    ConversationError,
    NoActiveActionError,
    NothingToRetryError,
)

router = APIRouter()


class TurnBody(BaseModel):
    dialogue: str | None = None
    gesture: str | None = None


class PinBody(BaseModel):
    text: str


class EndBody(BaseModel):
    user_initiated: bool = True


def _conversation(request: Request) -> Conversation:
    return request.app.state.conversation


def _raise_for(e: ConversationError) -> NoReturn:
    if isinstance(e, (NothingToRetryError, NoActiveActionError)):
        raise HTTPException(400, str(e))
    raise HTTPException(409, str(e))


@router.post("/conversation")
async def start_conversation(body: Scenario, request: Request) -> ConversationState:
    """Start a new conversation from a scenario."""
    try:
        return await _conversation(request).start(body)
    except ConversationError as e:
        _raise_for(e)
    except TurnServiceError as e:
        raise HTTPException(502, str(e))


@router.get("/conversation")
async def get_conversation(request: Request) -> ConversationState:
    """Current conversation state, including any images patched since the last turn."""
    conversation = _conversation(request)
    if not conversation.started:
        raise HTTPException(404, "No conversation started")
    return conversation.state


@router.post("/conversation/turns")
async def submit_turn(body: TurnBody, request: Request) -> TurnOutcome:
    """Send user dialogue and/or a gesture."""
    if not (body.dialogue or body.gesture):
        raise HTTPException(422, "A turn needs dialogue or a gesture")
    try:
        return await _conversation(request).submit_user_turn(body.dialogue, body.gesture)
    except ConversationError as e:
        _raise_for(e)


@router.post("/conversation/continue")
async def submit_silent_continue(request: Request) -> TurnOutcome:
    """Continue without speaking."""
    try:
        return await _conversation(request).submit_silent_continue()
    except ConversationError as e:
        _raise_for(e)


@router.post("/conversation/fast-forward")
async def submit_fast_forward(request: Request) -> TurnOutcome:
    """Complete the active action."""
    try:
        return await _conversation(request).submit_fast_forward()
    except ConversationError as e:
        _raise_for(e)


@router.post("/conversation/retry")
async def retry_last_failed_turn(request: Request) -> TurnOutcome:
    try:
        return await _conversation(request).retry_last_failed_turn()
    except ConversationError as e:
        _raise_for(e)


@router.post("/conversation/goal/pin")
async def pin_goal(body: PinBody, request: Request) -> ConversationState:
    conversation = _conversation(request)
    if not conversation.started:
        raise HTTPException(409, "Conversation has not been started")
    try:
        return conversation.pin_goal(body.text)
    except ValueError as e:
        raise HTTPException(422, str(e))


@router.delete("/conversation/goal/pin")
async def unpin_goal(request: Request) -> ConversationState:
    conversation = _conversation(request)
    if not conversation.started:
        raise HTTPException(409, "Conversation has not been started")
    return conversation.unpin_goal()


@router.post("/conversation/feedback/ack")
async def acknowledge_feedback(request: Request) -> ConversationState:
    """Attach the displayed feedback to the user turn it scores."""
    return _conversation(request).acknowledge_feedback()


@router.post("/conversation/end")
async def end_conversation(body: EndBody, request: Request) -> ConversationEnded:
    try:
        return await _conversation(request).end_conversation(body.user_initiated)
    except ConversationError as e:
        _raise_for(e)
