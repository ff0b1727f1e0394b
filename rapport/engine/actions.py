"""Active action tracking: Absent -> Running -> (Paused | Absent)."""

from __future__ import annotations

from rapport.models import ActionReport, ActionState

from .engagement import clamp


def resolve_action(
    current: ActionState | None,
    reported: ActionReport | None,
    *,
    fast_forward: bool = False,
) -> ActionState | None:
    """Return the action state after one turn.

    A reported action merges with the current one when the descriptions match:
    progress never goes backwards for the same action, and a different
    description starts tracking from scratch. Reaching 100 completes the action.

    When the service stops reporting an action the user let it lapse: it pauses,
    unless a fast-forward was requested or it had already reached 100.
    """
    if reported is not None:
        previous = 0
        if current is not None and current.description == reported.description:
            previous = current.progress
        progress = clamp(max(previous, reported.progress))
        if progress >= 100:
            return None
        return ActionState(description=reported.description, progress=progress, paused=False)

    if current is None:
        return None
    if fast_forward or current.progress >= 100:
        return None
    return current.model_copy(update={"paused": True})
