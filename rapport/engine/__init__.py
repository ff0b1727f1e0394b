"""Turn orchestration engine.

Processes one Turn Service response per turn:
  1. Scenario deltas: persona details, environment variant, visuals.
  2. Goal diff      : established / removed / changed annotation.
  3. History        : append the AI record (history.py).
  4. Engagement     : clamp(engagement + delta - decay - stagnant) (engagement.py).
  5. Image          : queue a detached job or carry the last image forward (images.py).
  6. Banners        : action wins over goal (actions.py, goals.py).
  7. End check      : explicit end, preconfigured goal achieved, or low engagement.

Everything except the image worker is a pure function over frozen
ConversationState values.
"""

from .actions import resolve_action  # noqa: F401
from .engagement import EngagementScore, apply_delta, clamp  # noqa: F401
from .goals import diff_goal, pin_goal, resolve_goal, unpin_goal  # noqa: F401
from .history import HistoryError  # noqa: F401
from .images import ImageSyncCoordinator, default_image_prompt  # noqa: F401
from .orchestrator import (  # noqa: F401
    apply_scenario_deltas,
    consume_pending_feedback,
    process_turn,
)
