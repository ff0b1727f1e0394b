"""Turn orchestrator: one structured turn response in, one new state out.

``process_turn`` is the single mutation entry point for a turn. It never
performs I/O; the image job it may emit is dispatched by the caller.

Processing order (later steps read what earlier steps wrote):
  1. Apply persona / environment / visual deltas to the scenario.
  2. Diff the displayed goal against the emerging goal (unpinned goals only).
  3. Append the AI record (and an inferred user action on fast-forward turns).
  4. Score the user turn: pending feedback + engagement.
  5. Decide the image: queue a job, or carry the previous image forward.
  6. Resolve the action banner, then the goal banner if no action remains.
  7. Evaluate end-of-conversation.
"""

from __future__ import annotations

import logging

from rapport.config import ENGAGEMENT_DECAY_PER_TURN, MAX_ZERO_ENGAGEMENT_STREAK
from rapport.models import (
    ConversationState,
    EndReason,
    ImageJob,
    PendingFeedback,
    Scenario,
    TurnOutcome,
    TurnRecord,
    TurnResponse,
    parse_environment,
)

from . import history
from .actions import resolve_action
from .engagement import EngagementScore, apply_delta, should_end_for_low_engagement
from .goals import diff_goal, resolve_goal

logger = logging.getLogger(__name__)

INFERRED_ACTION_FALLBACK = "You continue the interaction"


def apply_scenario_deltas(scenario: Scenario, response: TurnResponse) -> Scenario:
    """Fold the persona, environment and visual changes of a turn into the scenario."""
    update: dict = {}
    visuals = response.updated_visuals or scenario.visuals

    if response.new_environment:
        label = response.new_environment.strip()
        update["environment"] = parse_environment(label)
        if visuals is not None:
            visuals = visuals.model_copy(update={"environment_description": label})

    if response.updated_persona_details:
        parts = [scenario.custom_context, response.updated_persona_details]
        update["custom_context"] = "\n\n".join(p for p in parts if p)

    update["visuals"] = visuals
    return scenario.model_copy(update=update)


def consume_pending_feedback(state: ConversationState) -> ConversationState:
    """Attach the pending feedback to its user record and clear it."""
    pending = state.pending_feedback
    if pending is None:
        return state
    try:
        updated = history.attach_feedback(state.history, pending.record_id, pending.feedback)
    except history.HistoryError as e:
        logger.warning("Dropping pending feedback: %s", e)
        updated = state.history
    return state.model_copy(update={"history": updated, "pending_feedback": None})


def process_turn(
    state: ConversationState,
    response: TurnResponse,
    *,
    user_record_id: str | None = None,
    fast_forward: bool = False,
    decay: int = ENGAGEMENT_DECAY_PER_TURN,
) -> TurnOutcome:
    """Apply one Turn Service response to the conversation.

    Args:
        state:          Conversation state before the turn.
        response:       The structured turn response.
        user_record_id: The user record the response's feedback scores, if any.
        fast_forward:   True when the turn was a fast-forward of the active action.
        decay:          Engagement lost per scored turn.
    """
    update: dict = {
        "goal_just_changed": False,
        "user_action_suggested": response.is_user_action_suggested,
    }

    # 1. Scenario deltas
    scenario = apply_scenario_deltas(state.scenario, response)

    # 2. Goal change annotation
    previous_goal = state.goal.text if state.goal else None
    goal_change = diff_goal(previous_goal, response.emerging_goal, scenario.pinned_goal)

    # 3. History
    records = state.history
    feedback = response.feedback
    if feedback is not None and user_record_id is None:
        records = history.append(records, TurnRecord(
            role="user_action",
            text=feedback.inferred_user_action or INFERRED_ACTION_FALLBACK,
            feedback=feedback,
            inferred=True,
        ))

    dispatch_image = response.should_generate_new_image and scenario.visuals is not None
    ai_record = TurnRecord(
        role="ai",
        text="\n".join(c.text for c in response.dialogue_chunks if c.type == "dialogue"),
        chunks=tuple(response.dialogue_chunks),
        body_language=response.ai_body_language,
        thoughts=response.ai_thoughts,
        momentum=response.conversation_momentum,
        contextual_summary=response.contextual_summary,
        goal_change=goal_change,
        # 5. Carry-forward is stamped here; a queued job resolves it later.
        image=None if dispatch_image else state.current_image,
        image_pending=dispatch_image,
    )
    records = history.append(records, ai_record)

    # 4. Feedback and engagement
    score = EngagementScore(state.engagement, state.stagnant_streak, state.zero_engagement_streak)
    pending = state.pending_feedback
    if feedback is not None and user_record_id is not None:
        if pending is not None:
            # Older feedback was never displayed; attach it before replacing it.
            flushed = consume_pending_feedback(state.model_copy(update={"history": records}))
            records = flushed.history
        pending = PendingFeedback(record_id=user_record_id, feedback=feedback)
        score = apply_delta(*score, feedback.engagement_delta, decay=decay)
        logger.debug(
            "engagement %d -> %d (delta=%d stagnant=%d zero=%d)",
            state.engagement, score.engagement, feedback.engagement_delta,
            score.stagnant_streak, score.zero_engagement_streak,
        )

    # 5. Image job
    image_job = None
    if dispatch_image:
        visuals = scenario.visuals.model_copy(
            update={"current_pose_and_action": response.ai_body_language}
        )
        image_job = ImageJob(
            record_id=ai_record.id, visuals=visuals, fallback_image=state.current_image
        )

    # 6. Action first; goal only when no action was reported or remains
    action = resolve_action(state.active_action, response.active_action, fast_forward=fast_forward)
    goal = None
    last_completed = state.last_completed_goal
    achieved_goal = None
    show_toast = False
    goal_changed = False
    if response.active_action is None and action is None:
        resolution = resolve_goal(
            pinned_goal=scenario.pinned_goal,
            emerging=response.emerging_goal,
            progress=response.goal_progress,
            achieved=response.achieved,
            last_completed_goal=last_completed,
            initial_goal=state.initial_goal,
            goal_change=goal_change,
        )
        goal = resolution.goal
        last_completed = resolution.last_completed_goal
        achieved_goal = resolution.achieved_goal
        show_toast = resolution.show_toast
        goal_changed = resolution.changed
        if resolution.pinned_goal != scenario.pinned_goal:
            scenario = scenario.model_copy(update={"pinned_goal": resolution.pinned_goal})

    update.update(
        history=records,
        scenario=scenario,
        engagement=score.engagement,
        stagnant_streak=score.stagnant_streak,
        zero_engagement_streak=score.zero_engagement_streak,
        pending_feedback=pending,
        active_action=action,
        goal=goal,
        last_completed_goal=last_completed,
        goal_just_changed=goal_changed,
    )

    # 7. End of conversation
    end_reason = evaluate_end(response, score, achieved_goal, state.initial_goal)
    if end_reason is not None:
        logger.info("conversation ending reason=%s", end_reason)
        update["ended"] = True

    return TurnOutcome(
        state=state.model_copy(update=update),
        image_job=image_job,
        achieved_goal=achieved_goal,
        show_achievement_toast=show_toast,
        goal_changed=goal_changed,
        end_reason=end_reason,
    )


def evaluate_end(
    response: TurnResponse,
    score: EngagementScore,
    achieved_goal: str | None,
    initial_goal: str | None,
) -> EndReason | None:
    if response.is_ending_conversation:
        return "ai_ended"
    if initial_goal and achieved_goal == initial_goal:
        return "goal_achieved"
    if should_end_for_low_engagement(score, MAX_ZERO_ENGAGEMENT_STREAK):
        return "low_engagement"
    return None
