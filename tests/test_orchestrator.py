"""Tests for rapport.engine.orchestrator.process_turn."""

from rapport.engine.orchestrator import (
    INFERRED_ACTION_FALLBACK,
    apply_scenario_deltas,
    consume_pending_feedback,
    process_turn,
)
from rapport.models import (
    ActionState,
    ConversationState,
    CustomEnvironment,
    Feedback,
    GoalState,
    KnownEnvironment,
    PendingFeedback,
    Scenario,
    SocialEnvironment,
    TurnRecord,
    TurnResponse,
)


def _turn(**fields) -> TurnResponse:
    fields.setdefault("dialogueChunks", [
        {"text": "Ha!", "type": "dialogue"},
        {"text": "*laughs*", "type": "action"},
        {"text": "You're funny.", "type": "dialogue"},
    ])
    return TurnResponse.model_validate(fields)


def _state(visuals=None, **fields) -> tuple[ConversationState, TurnRecord]:
    user = TurnRecord(role="user", text="Nice umbrella.")
    fields.setdefault("history", (TurnRecord(role="ai", text="Hi."), user))
    fields.setdefault("scenario", Scenario(ai_name="Mara", visuals=visuals))
    return ConversationState(**fields), user


class TestHistoryAndScoring:
    def test_appends_ai_record(self) -> None:
        state, user = _state()
        outcome = process_turn(state, _turn(aiBodyLanguage="grinning"), user_record_id=user.id)
        record = outcome.state.history[-1]
        assert len(outcome.state.history) == 3
        assert record.role == "ai"
        assert record.text == "Ha!\nYou're funny."
        assert len(record.chunks) == 3
        assert record.body_language == "grinning"

    def test_scored_turn_updates_engagement(self) -> None:
        state, user = _state()
        outcome = process_turn(
            state, _turn(feedbackOnUserTurn={"engagementDelta": 6}), user_record_id=user.id
        )
        assert outcome.state.engagement == 34
        assert outcome.state.stagnant_streak == 0
        assert outcome.state.pending_feedback.record_id == user.id
        # feedback is pending until displayed, not yet on the record
        assert outcome.state.history[1].feedback is None

    def test_stagnant_turns_cost_more(self) -> None:
        state, user = _state(stagnant_streak=2)
        outcome = process_turn(
            state, _turn(feedbackOnUserTurn={"engagementDelta": 0}), user_record_id=user.id
        )
        assert outcome.state.engagement == 26
        assert outcome.state.stagnant_streak == 3

    def test_unscored_turn_keeps_engagement(self) -> None:
        state, user = _state(engagement=50)
        outcome = process_turn(state, _turn(), user_record_id=user.id)
        assert outcome.state.engagement == 50
        assert outcome.state.pending_feedback is None

    def test_custom_decay(self) -> None:
        state, user = _state()
        outcome = process_turn(
            state, _turn(feedbackOnUserTurn={"engagementDelta": 5}),
            user_record_id=user.id, decay=0,
        )
        assert outcome.state.engagement == 35

    def test_undisplayed_feedback_flushed_before_replacement(self) -> None:
        old_user = TurnRecord(role="user", text="Hi.")
        user = TurnRecord(role="user", text="Nice umbrella.")
        old_feedback = Feedback(engagement_delta=2)
        state = ConversationState(
            history=(old_user, TurnRecord(role="ai", text="Hey."), user),
            pending_feedback=PendingFeedback(record_id=old_user.id, feedback=old_feedback),
        )
        outcome = process_turn(
            state, _turn(feedbackOnUserTurn={"engagementDelta": 3}), user_record_id=user.id
        )
        assert outcome.state.history[0].feedback == old_feedback
        assert outcome.state.pending_feedback.record_id == user.id

    def test_feedback_without_user_record_infers_action(self) -> None:
        state, _ = _state()
        response = _turn(feedbackOnUserTurn={
            "engagementDelta": 3,
            "inferredUserAction": "You walk with her to the bar",
        })
        outcome = process_turn(state, response, fast_forward=True)
        inferred = outcome.state.history[-2]
        assert inferred.role == "user_action"
        assert inferred.inferred
        assert inferred.text == "You walk with her to the bar"
        assert inferred.feedback.engagement_delta == 3
        assert outcome.state.history[-1].role == "ai"
        assert outcome.state.pending_feedback is None

    def test_inferred_action_fallback_text(self) -> None:
        state, _ = _state()
        outcome = process_turn(state, _turn(feedbackOnUserTurn={}), fast_forward=True)
        assert outcome.state.history[-2].text == INFERRED_ACTION_FALLBACK

    def test_user_action_suggestion_passed_through(self) -> None:
        state, user = _state()
        outcome = process_turn(state, _turn(isUserActionSuggested=True), user_record_id=user.id)
        assert outcome.state.user_action_suggested


class TestImageDecision:
    def test_new_image_queues_job(self, visuals) -> None:
        state, user = _state(visuals=visuals, current_image="old")
        outcome = process_turn(
            state,
            _turn(shouldGenerateNewImage=True, aiBodyLanguage="laughing into her coffee"),
            user_record_id=user.id,
        )
        record = outcome.state.history[-1]
        assert record.image_pending
        assert record.image is None
        job = outcome.image_job
        assert job.record_id == record.id
        assert job.fallback_image == "old"
        assert job.visuals.current_pose_and_action == "laughing into her coffee"
        assert job.visuals.character_description == visuals.character_description

    def test_carries_previous_image_forward(self, visuals) -> None:
        state, user = _state(visuals=visuals, current_image="old")
        outcome = process_turn(state, _turn(), user_record_id=user.id)
        assert outcome.image_job is None
        assert outcome.state.history[-1].image == "old"
        assert not outcome.state.history[-1].image_pending

    def test_no_visuals_no_job(self) -> None:
        state, user = _state()
        outcome = process_turn(state, _turn(shouldGenerateNewImage=True), user_record_id=user.id)
        assert outcome.image_job is None

    def test_updated_visuals_used_for_job(self, visuals) -> None:
        state, user = _state(visuals=visuals)
        outcome = process_turn(
            state,
            _turn(
                shouldGenerateNewImage=True,
                updatedEstablishedVisuals={"characterDescription": "a woman with wet hair"},
            ),
            user_record_id=user.id,
        )
        assert outcome.image_job.visuals.character_description == "a woman with wet hair"
        assert outcome.state.scenario.visuals.character_description == "a woman with wet hair"


class TestScenarioDeltas:
    def test_known_environment(self, visuals) -> None:
        scenario = apply_scenario_deltas(
            Scenario(visuals=visuals), _turn(newEnvironment="Dating")
        )
        assert scenario.environment == KnownEnvironment(id=SocialEnvironment.DATING)
        assert scenario.visuals.environment_description == "Dating"

    def test_custom_environment(self) -> None:
        scenario = apply_scenario_deltas(Scenario(), _turn(newEnvironment="a rooftop bar"))
        assert scenario.environment == CustomEnvironment(text="a rooftop bar")
        assert scenario.visuals is None

    def test_persona_details_appended(self) -> None:
        scenario = apply_scenario_deltas(
            Scenario(custom_context="Works at a bookshop."),
            _turn(updatedPersonaDetails="Has a cat named Pip."),
        )
        assert scenario.custom_context == "Works at a bookshop.\n\nHas a cat named Pip."

    def test_no_deltas(self) -> None:
        scenario = Scenario(ai_name="Mara")
        assert apply_scenario_deltas(scenario, _turn()) == scenario


class TestBanners:
    def test_action_suppresses_goal(self) -> None:
        state, user = _state()
        outcome = process_turn(
            state,
            _turn(
                activeAction={"description": "walking to the bar", "progress": 30},
                emergingGoal="Get her number",
                goalProgress=20,
            ),
            user_record_id=user.id,
        )
        assert outcome.state.active_action == ActionState(
            description="walking to the bar", progress=30
        )
        assert outcome.state.goal is None

    def test_goal_shown_when_no_action(self) -> None:
        state, user = _state()
        outcome = process_turn(
            state, _turn(emergingGoal="Get her number", goalProgress=20), user_record_id=user.id
        )
        assert outcome.state.goal == GoalState(text="Get her number", progress=20)
        assert outcome.goal_changed
        assert outcome.state.goal_just_changed
        assert outcome.state.history[-1].goal_change.kind == "established"

    def test_goal_change_annotated(self) -> None:
        state, user = _state(goal=GoalState(text="Get her number", progress=40))
        outcome = process_turn(
            state, _turn(emergingGoal="Ask about the book"), user_record_id=user.id
        )
        change = outcome.state.history[-1].goal_change
        assert change.kind == "changed"
        assert change.from_text == "Get her number"

    def test_stable_goal_clears_changed_flag(self) -> None:
        state, user = _state(
            goal=GoalState(text="Get her number", progress=40), goal_just_changed=True
        )
        outcome = process_turn(
            state, _turn(emergingGoal="Get her number", goalProgress=50), user_record_id=user.id
        )
        assert not outcome.state.goal_just_changed
        assert outcome.state.goal.progress == 50

    def test_pinned_goal_ignores_emerging(self) -> None:
        state, user = _state(scenario=Scenario(pinned_goal="Get her number"))
        outcome = process_turn(
            state, _turn(emergingGoal="Talk about books", goalProgress=10), user_record_id=user.id
        )
        assert outcome.state.goal == GoalState(text="Get her number", progress=10, pinned=True)
        assert outcome.state.history[-1].goal_change is None

    def test_emerging_goal_achieved(self) -> None:
        state, user = _state(goal=GoalState(text="Make her laugh", progress=80))
        outcome = process_turn(
            state, _turn(emergingGoal="Make her laugh", achieved=True), user_record_id=user.id
        )
        assert outcome.achieved_goal == "Make her laugh"
        assert outcome.show_achievement_toast
        assert outcome.state.goal is None
        assert outcome.state.last_completed_goal == "Make her laugh"
        assert outcome.end_reason is None
        assert not outcome.state.ended

    def test_goal_achieved_once(self) -> None:
        state, user = _state(last_completed_goal="Make her laugh")
        outcome = process_turn(
            state, _turn(emergingGoal="Make her laugh", achieved=True), user_record_id=user.id
        )
        assert outcome.achieved_goal is None
        assert not outcome.show_achievement_toast

    def test_fast_forward_completes_action_then_goal(self) -> None:
        state, _ = _state(active_action=ActionState(description="walking", progress=60))
        outcome = process_turn(
            state, _turn(emergingGoal="Order drinks", goalProgress=10), fast_forward=True
        )
        assert outcome.state.active_action is None
        assert outcome.state.goal.text == "Order drinks"

    def test_lapsed_action_pauses(self) -> None:
        state, user = _state(active_action=ActionState(description="walking", progress=60))
        outcome = process_turn(state, _turn(emergingGoal="x"), user_record_id=user.id)
        assert outcome.state.active_action.paused
        assert outcome.state.goal is None

    def test_completing_action_suppresses_goal_for_the_turn(self) -> None:
        state, user = _state(active_action=ActionState(description="walking", progress=80))
        outcome = process_turn(
            state,
            _turn(
                activeAction={"description": "walking", "progress": 100},
                emergingGoal="Get her number",
                goalProgress=40,
            ),
            user_record_id=user.id,
        )
        assert outcome.state.active_action is None
        assert outcome.state.goal is None
        assert not outcome.goal_changed

    def test_completing_action_does_not_achieve_goal(self) -> None:
        state, user = _state(
            scenario=Scenario(pinned_goal="Get her number"),
            initial_goal="Get her number",
            active_action=ActionState(description="walking", progress=80),
        )
        outcome = process_turn(
            state,
            _turn(activeAction={"description": "walking", "progress": 100}, achieved=True),
            user_record_id=user.id,
        )
        assert outcome.achieved_goal is None
        assert outcome.end_reason is None
        assert outcome.state.scenario.pinned_goal == "Get her number"

    def test_goal_returns_on_the_next_turn(self) -> None:
        state, user = _state(active_action=ActionState(description="walking", progress=80))
        done = process_turn(
            state,
            _turn(activeAction={"description": "walking", "progress": 100}),
            user_record_id=user.id,
        )
        outcome = process_turn(
            done.state, _turn(emergingGoal="Get her number", goalProgress=40)
        )
        assert outcome.state.goal.text == "Get her number"
        assert outcome.state.goal.progress == 40


class TestEnding:
    def test_ai_ends(self) -> None:
        state, user = _state()
        outcome = process_turn(state, _turn(isEndingConversation=True), user_record_id=user.id)
        assert outcome.end_reason == "ai_ended"
        assert outcome.state.ended

    def test_preconfigured_goal_ends(self) -> None:
        state, user = _state(
            scenario=Scenario(pinned_goal="Get her number"),
            goal=GoalState(text="Get her number", progress=80, pinned=True),
            initial_goal="Get her number",
        )
        outcome = process_turn(state, _turn(goalProgress=100), user_record_id=user.id)
        assert outcome.achieved_goal == "Get her number"
        assert not outcome.show_achievement_toast
        assert outcome.end_reason == "goal_achieved"
        assert outcome.state.scenario.pinned_goal is None

    def test_low_engagement_ends_on_third_turn_at_zero(self) -> None:
        state, user = _state(engagement=0, zero_engagement_streak=2)
        outcome = process_turn(
            state, _turn(feedbackOnUserTurn={"engagementDelta": -5}), user_record_id=user.id
        )
        assert outcome.state.zero_engagement_streak == 3
        assert outcome.end_reason == "low_engagement"

    def test_unscored_turn_at_zero_does_not_end(self) -> None:
        state, user = _state(engagement=0, zero_engagement_streak=2)
        outcome = process_turn(state, _turn(), user_record_id=user.id)
        assert outcome.end_reason is None


class TestConsumePendingFeedback:
    def test_attaches_and_clears(self) -> None:
        state, user = _state()
        feedback = Feedback(engagement_delta=1)
        state = state.model_copy(
            update={"pending_feedback": PendingFeedback(record_id=user.id, feedback=feedback)}
        )
        state = consume_pending_feedback(state)
        assert state.pending_feedback is None
        assert state.history[1].feedback == feedback

    def test_missing_record_drops_feedback(self) -> None:
        state, _ = _state()
        state = state.model_copy(update={
            "pending_feedback": PendingFeedback(record_id="gone", feedback=Feedback()),
        })
        state = consume_pending_feedback(state)
        assert state.pending_feedback is None

    def test_nothing_pending(self) -> None:
        state, _ = _state()
        assert consume_pending_feedback(state) is state
