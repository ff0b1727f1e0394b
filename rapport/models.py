"""Core domain models.

Every engine stage operates on these types. Values owned by the engine
(records, trackers, the conversation aggregate) are frozen: a mutation always
produces a new value via ``model_copy``. Wire models exchanged with the Turn
Service accept camelCase keys and are validated by Pydantic at the boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rapport.config import INITIAL_ENGAGEMENT

Role = Literal["user", "user_action", "ai", "backstory", "system"]
EndReason = Literal["ai_ended", "goal_achieved", "low_engagement", "user_ended"]


class WireModel(BaseModel):
    """Accepts both camelCase (wire) and snake_case (Python) field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenWireModel(WireModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


# ---------------------------------------------------------------------------
# Environment: Known(id) | Custom(text)
# ---------------------------------------------------------------------------

class SocialEnvironment(str, Enum):
    CASUAL = "Casual Chat"
    DATING = "Dating"
    WORK = "Work Environment"
    SOCIAL_GATHERING = "Social Gathering (e.g., party, networking event)"
    FAMILY = "Family Interaction"
    CUSTOMER_SERVICE = "Customer Service Scenario"
    NEGOTIATION = "Negotiation or Debate"


class KnownEnvironment(FrozenWireModel):
    kind: Literal["known"] = "known"
    id: SocialEnvironment

    @property
    def label(self) -> str:
        return self.id.value


class CustomEnvironment(FrozenWireModel):
    kind: Literal["custom"] = "custom"
    text: str

    @property
    def label(self) -> str:
        return self.text


Environment = Annotated[
    Union[KnownEnvironment, CustomEnvironment], Field(discriminator="kind")
]


def parse_environment(label: str) -> KnownEnvironment | CustomEnvironment:
    """Map a free-text environment label onto the tagged variant.

    Labels matching a known environment exactly become ``KnownEnvironment``;
    anything else is kept verbatim as a custom environment.
    """
    try:
        return KnownEnvironment(id=SocialEnvironment(label))
    except ValueError:
        return CustomEnvironment(text=label)


# ---------------------------------------------------------------------------
# Scenario
# ---------------------------------------------------------------------------

class Visuals(FrozenWireModel):
    """The persona's established look and surroundings.

    Each field is a short prose fragment; the image prompt builder joins them.
    """

    character_description: str | None = None
    clothing_description: str | None = None
    held_objects: str | None = None
    body_position: str | None = None
    gaze_direction: str | None = None
    position_relative_to_user: str | None = None
    environment_description: str | None = None
    current_pose_and_action: str | None = None
    facial_accessories: str | None = None


class Scenario(FrozenWireModel):
    ai_name: str = ""
    ai_gender: str | None = None
    personality_traits: list[str] = Field(default_factory=list)
    culture: str | None = None
    environment: Environment = Field(
        default_factory=lambda: KnownEnvironment(id=SocialEnvironment.CASUAL)
    )
    custom_context: str | None = None
    pinned_goal: str | None = None
    visuals: Visuals | None = None


# ---------------------------------------------------------------------------
# Turn records
# ---------------------------------------------------------------------------

class DialogueChunk(FrozenWireModel):
    text: str
    type: Literal["dialogue", "action"] = "dialogue"
    delay_after: bool = False


class Feedback(FrozenWireModel):
    """The Turn Service's verdict on one user move."""

    engagement_delta: int = 0
    effectiveness_score: int | None = Field(
        default=None, alias="userTurnEffectivenessScore"
    )
    positive_trait: str | None = Field(default=None, alias="positiveTraitContribution")
    negative_trait: str | None = Field(default=None, alias="negativeTraitContribution")
    reasoning: str | None = Field(default=None, alias="badgeReasoning")
    next_step: str | None = Field(default=None, alias="nextStepSuggestion")
    alternative: str | None = Field(default=None, alias="alternativeSuggestion")
    inferred_user_action: str | None = None


class GoalChange(FrozenWireModel):
    kind: Literal["established", "removed", "changed"]
    from_text: str | None = None
    to_text: str | None = None


class TurnRecord(FrozenWireModel):
    """One entry in the append-only conversation history."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    role: Role
    text: str = ""
    chunks: tuple[DialogueChunk, ...] = ()
    body_language: str | None = None
    thoughts: str | None = None
    momentum: int | None = None
    contextual_summary: str | None = None
    image: str | None = None
    image_prompt: str | None = None
    image_pending: bool = False  # an image job targets this record
    feedback: Feedback | None = None
    goal_change: GoalChange | None = None
    inferred: bool = False  # user_action written by the service on the user's behalf
    retryable: bool = False  # system marker for a failed turn
    original_text: str | None = None  # dialogue to resubmit on retry


# ---------------------------------------------------------------------------
# Goal / action state
# ---------------------------------------------------------------------------

class GoalState(FrozenWireModel):
    text: str
    progress: int = Field(default=0, ge=0, le=100)
    pinned: bool = False


class ActionReport(FrozenWireModel):
    """An active action as reported by the Turn Service."""

    description: str
    progress: int = 0


class ActionState(FrozenWireModel):
    description: str
    progress: int = Field(default=0, ge=0, le=100)
    paused: bool = False


class PendingFeedback(FrozenWireModel):
    record_id: str
    feedback: Feedback


# ---------------------------------------------------------------------------
# Turn Service wire format
# ---------------------------------------------------------------------------

class TurnResponse(WireModel):
    """Structured result of one Turn Service call."""

    dialogue_chunks: list[DialogueChunk]
    ai_body_language: str | None = None
    ai_thoughts: str | None = None
    feedback: Feedback | None = Field(default=None, alias="feedbackOnUserTurn")
    conversation_momentum: int | None = None
    contextual_summary: str | None = None
    emerging_goal: str | None = None
    goal_progress: int | None = None
    achieved: bool = False
    active_action: ActionReport | None = None
    is_user_action_suggested: bool = False
    is_ending_conversation: bool = False
    should_generate_new_image: bool = False
    updated_visuals: Visuals | None = Field(
        default=None, alias="updatedEstablishedVisuals"
    )
    updated_persona_details: str | None = None
    new_environment: str | None = None


class OpeningResponse(WireModel):
    """Result of starting a conversation: the persona and its first move."""

    ai_name: str = ""
    scenario_backstory: str | None = None
    contextual_summary: str | None = None
    initial_dialogue_chunks: list[DialogueChunk] = Field(default_factory=list)
    initial_body_language: str = ""
    initial_ai_thoughts: str | None = None
    initial_engagement_score: int | None = None
    initial_conversation_momentum: int | None = None
    conversation_starter: Literal["user", "ai"] = "ai"
    established_visuals: Visuals | None = None


class TurnRequest(WireModel):
    history: list[TurnRecord]
    user_input: str
    current_engagement: int
    scenario: Scenario
    last_known_pose: str = ""
    active_action: ActionState | None = None
    fast_forward: bool = False
    action_paused: bool = False


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

class ConversationState(FrozenWireModel):
    """Everything the engine knows about one conversation."""

    history: tuple[TurnRecord, ...] = ()
    engagement: int = Field(default=INITIAL_ENGAGEMENT, ge=0, le=100)
    stagnant_streak: int = Field(default=0, ge=0)
    zero_engagement_streak: int = Field(default=0, ge=0)
    goal: GoalState | None = None
    initial_goal: str | None = None
    last_completed_goal: str | None = None
    goal_just_changed: bool = False
    active_action: ActionState | None = None
    user_action_suggested: bool = False
    pending_feedback: PendingFeedback | None = None
    scenario: Scenario = Field(default_factory=Scenario)
    current_image: str | None = None
    ended: bool = False


class ImageJob(FrozenWireModel):
    """A queued image regeneration for one AI record."""

    record_id: str
    visuals: Visuals
    fallback_image: str | None = None


class TurnOutcome(FrozenWireModel):
    """What one submitted turn produced, as seen by the caller."""

    state: ConversationState
    image_job: ImageJob | None = None
    achieved_goal: str | None = None
    show_achievement_toast: bool = False
    goal_changed: bool = False
    end_reason: EndReason | None = None
    error: str | None = None


class ConversationEnded(FrozenWireModel):
    """Terminal signal plus the final state for downstream analysis."""

    reason: EndReason
    user_initiated: bool
    final_goal: str | None = None
    state: ConversationState
