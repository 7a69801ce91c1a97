import json

import pytest

from dietcoach.core import onboarding as steps
from dietcoach.core.errors import OnboardingStepOutOfOrder
from dietcoach.db.models import UserProfile
from dietcoach.services import onboarding


def test_step_sequence_is_linear() -> None:
    assert steps.next_step("welcome") == "name"
    assert steps.next_step("height_age") == "gender"
    assert steps.next_step("display_mode") == "complete"
    assert steps.next_step("complete") == "complete"


def test_advance_rejects_other_steps() -> None:
    with pytest.raises(OnboardingStepOutOfOrder):
        steps.advance("name", "goal", "cut", {})


def test_markers_parse_and_strip() -> None:
    text = "Nice to meet you, Dana! [EXTRACT:name:Dana]\nWhat's your current weight?"
    assert steps.parse_markers(text) == [steps.Extraction(step="name", value="Dana")]
    assert steps.strip_markers(text) == "Nice to meet you, Dana!\nWhat's your current weight?"


def test_weight_and_height_normalisation() -> None:
    assert steps.normalize_answer("current_weight", "180 lbs") == {"weight": 180.0, "unit": "lbs"}
    assert steps.normalize_answer("target_weight", "72.5") == {"weight": 72.5, "unit": "kg"}
    assert steps.normalize_answer("height_age", "180 cm, 30 years") == {"height_cm": 180, "age": 30}
    assert steps.normalize_answer("height_age", "5'10\" and 42") == {"height_cm": 178, "age": 42}
    with pytest.raises(ValueError):
        steps.normalize_answer("current_weight", "heavy")


def test_choice_normalisation() -> None:
    assert steps.normalize_answer("gender", "Female") == "female"
    assert steps.normalize_answer("activity_level", "desk job mostly") == "sedentary"
    assert steps.normalize_answer("goal", "I want to lose fat") == "cut"
    assert steps.normalize_answer("display_mode", "hide the numbers please") == "stealth"


def test_goal_suggestion_from_weights() -> None:
    down = {"current_weight": {"weight": 90, "unit": "kg"}, "target_weight": {"weight": 80, "unit": "kg"}}
    up = {"current_weight": {"weight": 60, "unit": "kg"}, "target_weight": {"weight": 65, "unit": "kg"}}
    close = {"current_weight": {"weight": 70, "unit": "kg"}, "target_weight": {"weight": 69, "unit": "kg"}}
    assert steps.suggest_goal(down) == "cut"
    assert steps.suggest_goal(up) == "gain"
    assert steps.suggest_goal(close) == "maintain"
    assert steps.suggest_goal({}) is None


def test_compute_targets_mifflin_st_jeor() -> None:
    targets = steps.compute_targets(
        {
            "current_weight": {"weight": 80, "unit": "kg"},
            "height_age": {"height_cm": 180, "age": 30},
            "gender": "male",
            "activity_level": "moderate",
            "goal": "cut",
        }
    )
    assert targets == {"calories": 2259, "protein": 128, "carbs": 295, "fat": 63}


def test_out_of_order_marker_keeps_current_step(create_user, db_session) -> None:
    user = create_user(onboarded=False)
    progress = onboarding.begin_turn(db_session, onboarding.get_or_create_progress(db_session, user.id))
    assert progress.current_step == "name"

    update = onboarding.apply_extractions(db_session, user, [steps.Extraction(step="goal", value="cut")])
    assert update.ignored == ["goal"]
    assert progress.current_step == "name"

    update = onboarding.apply_extractions(db_session, user, [steps.Extraction(step="name", value="Dana")])
    assert update.applied == ["name"]
    assert progress.current_step == "current_weight"
    db_session.commit()


def test_full_onboarding_creates_profile(create_user, db_session) -> None:
    user = create_user(onboarded=False)
    onboarding.begin_turn(db_session, onboarding.get_or_create_progress(db_session, user.id))
    answers = [
        ("name", "Dana"),
        ("current_weight", "70 kg"),
        ("target_weight", "64 kg"),
        ("height_age", "165 cm 29 years"),
        ("gender", "female"),
        ("activity_level", "light"),
        ("goal", "cut"),
        ("display_mode", "stealth"),
    ]
    update = onboarding.apply_extractions(
        db_session, user, [steps.Extraction(step=step, value=value) for step, value in answers]
    )
    db_session.commit()

    assert update.completed is True
    assert update.ignored == []
    assert onboarding.get_or_create_progress(db_session, user.id).completed is True
    profile = db_session.query(UserProfile).filter(UserProfile.user_id == user.id).one()
    assert profile.name == "Dana"
    assert profile.display_mode == "stealth"
    assert profile.daily_calorie_target == steps.compute_targets(
        json.loads(onboarding.get_or_create_progress(db_session, user.id).responses_json)
    )["calories"]
    assert user.display_name == "Dana"


def test_record_answer_after_completion_is_out_of_order(create_user, db_session) -> None:
    user = create_user(onboarded=True)
    with pytest.raises(OnboardingStepOutOfOrder):
        onboarding.record_answer(db_session, user, "name", "Someone")
