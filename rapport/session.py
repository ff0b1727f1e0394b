"""Caller-facing control surface for one conversation.

A Conversation owns the current ConversationState, serializes turn
submissions behind a pending-turn guard, calls the Turn Service, feeds the
response through ``process_turn`` and hands any image job to the
ImageSyncCoordinator. Image patches land on the state whenever they resolve,
independent of the turn that queued them.

Service failures are the only errors surfaced as retryable: the failed user
turn stays in history followed by a system marker record, and
``retry_last_failed_turn`` rolls both back before resubmitting the dialogue.
"""

from __future__ import annotations

import logging

from rapport.config import (
    ENGAGEMENT_DECAY_PER_TURN,
    FAST_FORWARD_NOTE,
    INITIAL_ENGAGEMENT,
    MAX_HISTORY_FOR_PROMPT,
    SILENT_USER_ACTION_TOKEN,
)
from rapport.engine import goals, history
from rapport.engine.engagement import clamp
from rapport.engine.images import ImageSyncCoordinator, PromptBuilder, default_image_prompt
from rapport.engine.orchestrator import consume_pending_feedback, process_turn
from rapport.models import (
    ConversationEnded,
    ConversationState,
    EndReason,
    GoalState,
    Scenario,
    TurnOutcome,
    TurnRecord,
    TurnRequest,
    TurnResponse,
)
from rapport.services import ImageService, TurnService, TurnServiceError

logger = logging.getLogger(__name__)

TURN_ERROR_TEXT = "I'm sorry, I had a problem generating a response."
FAST_FORWARD_ERROR_TEXT = (
    "Sorry, there was an error trying to fast-forward. Please continue normally."
)


class ConversationError(RuntimeError):
    """Base class for control-surface misuse."""


class NotStartedError(ConversationError):
    """Raised when a turn is submitted before start()."""


class TurnInFlightError(ConversationError):
    """Raised when a turn is submitted while another one is outstanding."""


class ConversationOverError(ConversationError):
    """Raised when a turn is submitted after the conversation ended."""


class NothingToRetryError(ConversationError):
    """Raised when history does not end with a retryable failure."""


class NoActiveActionError(ConversationError):
    """Raised when fast-forward is requested with no action to complete."""


class Conversation:
    """One running conversation between the user and the persona.

    Args:
        turn_service:   Backend producing structured turn responses.
        image_service:  Backend turning visual prompts into images.
        decay:          Engagement lost per scored turn.
        prompt_builder: Builds the Image Service prompt from visuals.
    """

    def __init__(
        self,
        turn_service: TurnService,
        image_service: ImageService,
        *,
        decay: int = ENGAGEMENT_DECAY_PER_TURN,
        prompt_builder: PromptBuilder = default_image_prompt,
    ) -> None:
        self._turn_service = turn_service
        self._image_service = image_service
        self._decay = decay
        self._prompt_builder = prompt_builder
        self._images = ImageSyncCoordinator(image_service, self._apply_image, prompt_builder)
        self._state = ConversationState()
        self._started = False
        self._turn_in_flight = False
        self._end_reason: EndReason | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def started(self) -> bool:
        return self._started

    @property
    def turn_in_flight(self) -> bool:
        return self._turn_in_flight

    def _apply_image(self, record_id: str, image: str | None, prompt: str | None) -> None:
        """Patch callback for the image worker."""
        try:
            patched = history.patch_image(self._state.history, record_id, image, prompt)
        except history.HistoryError as e:
            # The conversation was restarted, or the record was already resolved.
            logger.debug("Image patch ignored: %s", e)
            return
        update: dict = {"history": patched}
        if prompt is not None:
            update["current_image"] = image
        self._state = self._state.model_copy(update=update)

    def _check_can_submit(self) -> None:
        if not self._started:
            raise NotStartedError("Conversation has not been started")
        if self._state.ended:
            raise ConversationOverError("Conversation has ended")
        if self._turn_in_flight:
            raise TurnInFlightError("A turn is already being processed")

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, scenario: Scenario) -> ConversationState:
        """Open a new conversation, replacing any previous one.

        The opening image is generated before returning; if that fails the
        conversation starts without an image. Turn Service failures propagate.
        """
        if self._turn_in_flight:
            raise TurnInFlightError("A turn is already being processed")
        self._turn_in_flight = True
        try:
            opening = await self._turn_service.start_conversation(scenario)
        finally:
            self._turn_in_flight = False

        pinned = scenario.pinned_goal.strip() if scenario.pinned_goal else None
        scenario = scenario.model_copy(update={
            "ai_name": opening.ai_name or scenario.ai_name,
            "visuals": opening.established_visuals or scenario.visuals,
            "pinned_goal": pinned,
        })

        image = prompt = None
        if scenario.visuals is not None:
            try:
                prompt = self._prompt_builder(scenario.visuals)
                image = await self._image_service(prompt)
            except Exception as e:
                logger.warning("Opening image failed, starting without one: %s", e)
                image = prompt = None

        records: list[TurnRecord] = []
        backstory = opening.scenario_backstory or opening.contextual_summary
        if backstory:
            records.append(TurnRecord(role="backstory", text=backstory))

        chunks = opening.initial_dialogue_chunks if opening.conversation_starter == "ai" else []
        records.append(TurnRecord(
            role="ai",
            text="\n".join(c.text for c in chunks if c.type == "dialogue"),
            chunks=tuple(chunks),
            body_language=opening.initial_body_language or None,
            thoughts=opening.initial_ai_thoughts,
            momentum=opening.initial_conversation_momentum,
            contextual_summary=opening.contextual_summary,
            image=image,
            image_prompt=prompt,
        ))

        engagement = opening.initial_engagement_score
        if engagement is None:
            engagement = INITIAL_ENGAGEMENT
        self._state = ConversationState(
            history=tuple(records),
            engagement=clamp(engagement),
            goal=GoalState(text=pinned, progress=0, pinned=True) if pinned else None,
            initial_goal=pinned,
            scenario=scenario,
            current_image=image,
        )
        self._started = True
        self._end_reason = None
        logger.info("conversation started ai_name=%s goal=%s", scenario.ai_name, pinned)
        return self._state

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def _request(self, user_input: str, *, fast_forward: bool = False) -> TurnRequest:
        state = self._state
        action = state.active_action
        visuals = state.scenario.visuals
        pose = (
            history.last_ai_pose(state.history)
            or (visuals.current_pose_and_action if visuals else None)
            or ""
        )
        return TurnRequest(
            history=list(state.history[-MAX_HISTORY_FOR_PROMPT:]),
            user_input=user_input,
            current_engagement=state.engagement,
            scenario=state.scenario,
            last_known_pose=pose,
            active_action=action,
            fast_forward=fast_forward,
            action_paused=bool(action and action.paused),
        )

    def _finish(self, outcome: TurnOutcome) -> TurnOutcome:
        self._state = outcome.state
        if outcome.end_reason is not None:
            self._end_reason = outcome.end_reason
        if outcome.image_job is not None:
            self._images.dispatch(outcome.image_job)
        return outcome

    def _fail(self, error: TurnServiceError, marker: TurnRecord) -> TurnOutcome:
        logger.warning("Turn Service call failed: %s", error)
        self._state = self._state.model_copy(
            update={"history": history.append(self._state.history, marker)}
        )
        return TurnOutcome(state=self._state, error=str(error))

    async def submit_user_turn(
        self, dialogue: str | None = None, gesture: str | None = None
    ) -> TurnOutcome:
        """Send the user's dialogue and/or gesture and process the reply.

        The feedback in the reply scores the dialogue record, or the gesture
        record when only a gesture was sent.
        """
        self._check_can_submit()

        new_records: list[TurnRecord] = []
        if gesture and gesture.strip("* \n"):
            new_records.append(TurnRecord(role="user_action", text=gesture.strip().strip("*").strip()))
        if dialogue:
            new_records.append(TurnRecord(role="user", text=dialogue))
        if not new_records:
            raise ValueError("A turn needs dialogue or a gesture")
        scored_id = new_records[-1].id

        self._turn_in_flight = True
        try:
            self._state = self._state.model_copy(update={
                "history": history.append(self._state.history, *new_records),
                "user_action_suggested": False,
            })
            user_input = "\n".join(r.text for r in new_records)
            try:
                response = await self._turn_service.next_turn(self._request(user_input))
            except TurnServiceError as e:
                return self._fail(e, TurnRecord(
                    role="system",
                    text=TURN_ERROR_TEXT,
                    retryable=dialogue is not None,
                    original_text=dialogue,
                ))
            return self._finish(self._process(response, user_record_id=scored_id))
        finally:
            self._turn_in_flight = False

    async def submit_silent_continue(self) -> TurnOutcome:
        """Let the persona carry on while the user stays silent."""
        return await self.submit_user_turn(dialogue=SILENT_USER_ACTION_TOKEN)

    async def submit_fast_forward(self) -> TurnOutcome:
        """Ask the Turn Service to complete the active action."""
        self._check_can_submit()
        if self._state.active_action is None:
            raise NoActiveActionError("No active action to fast-forward")

        self._turn_in_flight = True
        try:
            try:
                response = await self._turn_service.next_turn(
                    self._request(FAST_FORWARD_NOTE, fast_forward=True)
                )
            except TurnServiceError as e:
                return self._fail(e, TurnRecord(role="system", text=FAST_FORWARD_ERROR_TEXT))
            return self._finish(self._process(response, fast_forward=True))
        finally:
            self._turn_in_flight = False

    def _process(
        self,
        response: TurnResponse,
        *,
        user_record_id: str | None = None,
        fast_forward: bool = False,
    ) -> TurnOutcome:
        return process_turn(
            self._state,
            response,
            user_record_id=user_record_id,
            fast_forward=fast_forward,
            decay=self._decay,
        )

    async def retry_last_failed_turn(self) -> TurnOutcome:
        """Roll back the trailing failed turn and resubmit its dialogue once."""
        self._check_can_submit()
        last = self._state.history[-1] if self._state.history else None
        if last is None or not last.retryable or last.original_text is None:
            raise NothingToRetryError("Nothing to retry")

        trimmed, marker = history.rollback_failed_turn(self._state.history)
        self._state = self._state.model_copy(update={"history": trimmed})
        logger.info("retrying failed turn marker=%s", marker.id)
        return await self.submit_user_turn(dialogue=marker.original_text)

    # ------------------------------------------------------------------
    # Goals and feedback
    # ------------------------------------------------------------------

    def pin_goal(self, text: str) -> ConversationState:
        if not text.strip():
            raise ValueError("Goal text is empty")
        self._state = goals.pin_goal(self._state, text)
        return self._state

    def unpin_goal(self) -> ConversationState:
        self._state = goals.unpin_goal(self._state)
        return self._state

    def acknowledge_feedback(self) -> ConversationState:
        """Mark the pending feedback as displayed and attach it to its record."""
        self._state = consume_pending_feedback(self._state)
        return self._state

    # ------------------------------------------------------------------
    # End
    # ------------------------------------------------------------------

    async def end_conversation(self, user_initiated: bool = True) -> ConversationEnded:
        """End the conversation and return the final state for analysis.

        Waits for outstanding image jobs so the final history is complete.
        ``user_initiated=False`` records an end the persona asked for.
        """
        if not self._started:
            raise NotStartedError("Conversation has not been started")
        if self._turn_in_flight:
            raise TurnInFlightError("A turn is already being processed")
        # hold the guard so no turn starts while images drain
        self._turn_in_flight = True
        try:
            await self._images.drain()
        finally:
            self._turn_in_flight = False
        state = consume_pending_feedback(self._state)
        self._state = state.model_copy(update={"ended": True})

        goal = self._state.goal
        final_goal = self._state.scenario.pinned_goal or (goal.text if goal else None)
        reason = self._end_reason or ("user_ended" if user_initiated else "ai_ended")
        self._end_reason = reason
        return ConversationEnded(
            reason=reason,
            user_initiated=user_initiated,
            final_goal=final_goal or self._state.initial_goal,
            state=self._state,
        )

    async def wait_for_images(self) -> None:
        await self._images.drain()

    async def aclose(self) -> None:
        await self._images.aclose()
