"""Goal tracking.

States: NoGoal -> EmergingGoal -> (PinnedGoal | Achieved) -> NoGoal.

An emerging goal is whatever the Turn Service infers this turn. The user may
pin the displayed goal, which copies it into the scenario so the service can no
longer replace or remove it. Achievement is terminal for that goal text;
a different goal may emerge afterwards.
"""

from __future__ import annotations

from typing import NamedTuple

from rapport.models import ConversationState, GoalChange, GoalState

from .engagement import clamp


class GoalResolution(NamedTuple):
    goal: GoalState | None  # what the banner shows after this turn
    pinned_goal: str | None  # scenario pin after this turn
    last_completed_goal: str | None
    achieved_goal: str | None  # goal text newly achieved this turn
    show_toast: bool
    changed: bool


def _clean(text: str | None) -> str | None:
    if text is None:
        return None
    return text.strip() or None


def diff_goal(
    previous: str | None, emerging: str | None, pinned_goal: str | None
) -> GoalChange | None:
    """Annotate how the goal moved between the displayed and emerging text.

    Pinned goals are fixed by the user and never produce an annotation.
    """
    if pinned_goal:
        return None
    previous = _clean(previous)
    emerging = _clean(emerging)
    if emerging and not previous:
        return GoalChange(kind="established", to_text=emerging)
    if previous and not emerging:
        return GoalChange(kind="removed", from_text=previous)
    if previous and emerging and previous != emerging:
        return GoalChange(kind="changed", from_text=previous, to_text=emerging)
    return None


def resolve_goal(
    *,
    pinned_goal: str | None,
    emerging: str | None,
    progress: int | None,
    achieved: bool,
    last_completed_goal: str | None,
    initial_goal: str | None,
    goal_change: GoalChange | None,
) -> GoalResolution:
    """Evaluate the goal banner for a turn with no active action."""
    text = _clean(pinned_goal) or _clean(emerging)
    if not text:
        return GoalResolution(None, pinned_goal, last_completed_goal, None, False, False)

    progress = clamp(progress or 0)
    if achieved or progress >= 100:
        achieved_goal = None
        show_toast = False
        if text != last_completed_goal:
            achieved_goal = text
            # The preconfigured goal ends the conversation; no toast needed.
            show_toast = text != initial_goal
            last_completed_goal = text
        if pinned_goal and pinned_goal.strip() == text:
            pinned_goal = None
        return GoalResolution(None, pinned_goal, last_completed_goal, achieved_goal, show_toast, False)

    goal = GoalState(text=text, progress=progress, pinned=bool(pinned_goal))
    return GoalResolution(goal, pinned_goal, last_completed_goal, None, False, goal_change is not None)


# ---------------------------------------------------------------------------
# User-initiated transitions
# ---------------------------------------------------------------------------

def pin_goal(state: ConversationState, text: str) -> ConversationState:
    """Fix ``text`` as the permanent goal.

    The displayed goal, if any, takes the pinned text; an action banner keeps
    suppressing the goal display.
    """
    text = text.strip()
    scenario = state.scenario.model_copy(update={"pinned_goal": text})
    goal = state.goal
    if goal is not None:
        goal = goal.model_copy(update={"text": text, "pinned": True})
    return state.model_copy(
        update={"scenario": scenario, "goal": goal, "goal_just_changed": True}
    )


def unpin_goal(state: ConversationState) -> ConversationState:
    """Release the permanent goal.

    The banner keeps its text until the next turn reports an emerging goal.
    """
    scenario = state.scenario.model_copy(update={"pinned_goal": None})
    goal = state.goal
    if goal is not None:
        goal = goal.model_copy(update={"pinned": False})
    return state.model_copy(
        update={"scenario": scenario, "goal": goal, "goal_just_changed": True}
    )
