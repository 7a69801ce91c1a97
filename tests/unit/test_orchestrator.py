import json
import threading
from datetime import datetime

import pytest

from conftest import BANANA_PROPOSAL, FakeEmbeddingClient, FakeLLMClient, FakeScenario, FakeVisionClient
from dietcoach.core import intents as intents_module
from dietcoach.core.errors import (
    CONFIRMATION_FALLBACK_TEXT,
    DUPLICATE_LOG_TEXT,
    GENERIC_RETRY_TEXT,
    LLM_AUTH_TEXT,
    LLM_UNAVAILABLE_TEXT,
    AuthenticationError,
)
from dietcoach.db.models import (
    ChatMessage,
    DailyThread,
    FoodLog,
    OnboardingProgress,
    PendingConfirmation,
    Photo,
    SessionCacheEntry,
    User,
    WeightLog,
)
from dietcoach.db.session import SessionLocal
from dietcoach.services import orchestrator
from dietcoach.services.llm import LLMRequestError, LLMResult, ToolInvocation

NOW = datetime(2026, 3, 2, 8, 30)


@pytest.fixture
def turn(db_session, guard):
    def _turn(user, message, llm, image_ref=None, vision=None, embedding=None):
        return orchestrator.send_turn(
            db_session,
            user,
            message,
            image_ref,
            llm_client=llm,
            vision_client=vision or FakeVisionClient(),
            embedding_client=embedding or FakeEmbeddingClient(),
            guard=guard,
            now=NOW,
        )

    return _turn


def _food_count(db, user_id: int) -> int:
    return db.query(FoodLog).filter(FoodLog.user_id == user_id).count()


def test_banana_then_yes_logs_once(create_user, db_session, turn) -> None:
    user = create_user()
    llm = FakeLLMClient()

    proposed = turn(user, "I had a banana for breakfast", llm)
    assert proposed.failed is False
    assert proposed.text == "Here's what I have for breakfast: banana, about 105 kcal. Should I log it?"
    assert proposed.pending["confirmation_data"]["total_calories"] == 105
    assert _food_count(db_session, user.id) == 0

    logged = turn(user, "yes", llm)
    assert logged.text == "Logged One medium banana (105 kcal)."
    assert logged.pending is None
    assert [call["status"] for call in logged.tool_calls] == ["committed"]
    assert _food_count(db_session, user.id) == 1
    staged = db_session.get(PendingConfirmation, proposed.pending["confirmation_id"])
    db_session.refresh(staged)
    assert staged.status == "confirmed"
    cached_keys = {
        row.cache_key for row in db_session.query(SessionCacheEntry).filter(SessionCacheEntry.user_id == user.id).all()
    }
    assert "today_food_log" not in cached_keys

    confirm_call = llm.first_round_calls[1]
    assert "ACTION REQUIRED" in confirm_call["system_prompt"]
    assert confirm_call["tools"] == ["confirm_food", "log_food"]
    assert confirm_call["history"][0] == {"role": "user", "content": "I had a banana for breakfast"}
    assert proposed.thread_id == logged.thread_id


def test_second_yes_does_not_log_again(create_user, db_session, turn) -> None:
    user = create_user()
    llm = FakeLLMClient()
    turn(user, "I had a banana", llm)
    turn(user, "yes", llm)

    again = turn(user, "yes", llm)

    assert again.failed is False
    assert "log_food" not in llm.first_round_calls[-1]["tools"]
    assert again.text == DUPLICATE_LOG_TEXT
    assert [call["status"] for call in again.tool_calls] == ["duplicate"]
    assert _food_count(db_session, user.id) == 1


def test_second_yes_with_unoffered_log_call_reports_duplicate(create_user, db_session, turn) -> None:
    user = create_user()
    llm = FakeLLMClient()
    turn(user, "I had a banana", llm)
    turn(user, "yes", llm)
    claim = LLMResult(text="Logged it!", tool_calls=[ToolInvocation(id="c9", name="log_food", arguments={})])
    eager = FakeLLMClient(script=[claim])

    again = turn(user, "yes", eager)

    assert again.text == DUPLICATE_LOG_TEXT
    assert [(call["id"], call["status"]) for call in again.tool_calls] == [("c9", "duplicate")]
    assert _food_count(db_session, user.id) == 1


def test_concurrent_yes_turns_commit_once(create_user, db_session, guard) -> None:
    user = create_user()
    orchestrator.send_turn(db_session, user, "I had a banana", llm_client=FakeLLMClient(), guard=guard, now=NOW)
    barrier = threading.Barrier(2)
    results = []

    def say_yes() -> None:
        db = SessionLocal()
        try:
            same_user = db.get(User, user.id)
            barrier.wait(timeout=10)
            results.append(
                orchestrator.send_turn(
                    db,
                    same_user,
                    "yes",
                    llm_client=FakeLLMClient(),
                    embedding_client=FakeEmbeddingClient(),
                    guard=guard,
                    now=NOW,
                )
            )
        finally:
            db.close()

    workers = [threading.Thread(target=say_yes) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert len(results) == 2
    assert all(result.failed is False for result in results)
    statuses = sorted(call["status"] for result in results for call in result.tool_calls)
    assert statuses == ["committed", "duplicate"]
    assert _food_count(db_session, user.id) == 1


def test_second_yes_with_full_tool_set_reports_duplicate(
    create_user, db_session, turn, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(intents_module, "TOOL_SELECTION_ENABLED", False)
    user = create_user()
    llm = FakeLLMClient()
    turn(user, "I had a banana", llm)
    turn(user, "yes", llm)

    again = turn(user, "yes", llm)

    assert again.text == DUPLICATE_LOG_TEXT
    assert [call["status"] for call in again.tool_calls] == ["duplicate"]
    assert _food_count(db_session, user.id) == 1


def test_confirmation_without_log_call_never_claims_success(create_user, db_session, turn) -> None:
    user = create_user()
    llm = FakeLLMClient(FakeScenario.FORGETFUL)
    turn(user, "I had a banana", llm)

    result = turn(user, "yes", llm)

    assert result.text == CONFIRMATION_FALLBACK_TEXT
    assert result.pending is not None
    assert _food_count(db_session, user.id) == 0


def test_eager_log_call_on_proposal_turn_keeps_the_proposal(create_user, db_session, turn) -> None:
    user = create_user()
    eager = LLMResult(
        text="",
        tool_calls=[
            ToolInvocation(id="c1", name="confirm_food", arguments=dict(BANANA_PROPOSAL)),
            ToolInvocation(id="c2", name="log_food", arguments={}),
        ],
    )

    result = turn(user, "I had a banana", FakeLLMClient(script=[eager]))

    assert [call["status"] for call in result.tool_calls] == ["proposed", "failed"]
    assert result.text == "Here's what I have for breakfast: banana, about 105 kcal. Should I log it?"
    assert result.pending is not None
    assert _food_count(db_session, user.id) == 0


def test_failed_log_call_is_not_echoed_as_success(create_user, db_session, turn) -> None:
    user = create_user()
    claim = LLMResult(text="Logged it!", tool_calls=[ToolInvocation(id="c1", name="log_food", arguments={})])

    result = turn(user, "I had a banana", FakeLLMClient(script=[claim]))

    assert result.text == GENERIC_RETRY_TEXT
    assert result.tool_calls[0]["status"] in {"failed", "rejected"}
    assert _food_count(db_session, user.id) == 0


def test_follow_up_text_is_used_when_available(create_user, turn) -> None:
    user = create_user()
    llm = FakeLLMClient()
    llm.follow_up_text = "A banana, nice pick! About 105 kcal. Shall I log it?"

    result = turn(user, "I had a banana", llm)

    assert result.text == llm.follow_up_text
    follow_up = llm.calls[-1]
    assert follow_up["tools"] == []
    assert follow_up["exchange"].results[follow_up["exchange"].calls[0].id]["status"] == "proposed"


def test_follow_up_failure_falls_back_to_deterministic_text(create_user, turn) -> None:
    class FlakyFollowUp(FakeLLMClient):
        def generate(self, db, user_id, *, exchange=None, **kwargs):
            if exchange is not None:
                raise LLMRequestError(provider="openai", model="gpt-4.1-mini", message="timeout", status_code=503)
            return super().generate(db, user_id, exchange=exchange, **kwargs)

    user = create_user()
    result = turn(user, "I had a banana", FlakyFollowUp())

    assert result.failed is False
    assert result.text.startswith("Here's what I have for breakfast")
    assert result.pending is not None


def test_provider_down_returns_friendly_text_and_persists_nothing(create_user, db_session, turn) -> None:
    user = create_user()

    result = turn(user, "I had a banana", FakeLLMClient(FakeScenario.PROVIDER_DOWN))

    assert result.failed is True
    assert result.error_flag == "llm_provider_error"
    assert result.text == LLM_UNAVAILABLE_TEXT
    assert result.thread_id is not None
    assert db_session.query(ChatMessage).filter(ChatMessage.user_id == user.id).count() == 0
    thread = db_session.query(DailyThread).filter(DailyThread.thread_id == result.thread_id).one()
    db_session.refresh(thread)
    assert thread.message_count == 0


def test_rejected_provider_key_is_flagged(create_user, turn) -> None:
    result = turn(create_user(), "hello", FakeLLMClient(FakeScenario.AUTH_ERROR))
    assert result.error_flag == "llm_auth_error"
    assert result.text == LLM_AUTH_TEXT


def test_invalid_tool_arguments_are_rejected_not_executed(create_user, db_session, turn) -> None:
    user = create_user()

    result = turn(user, "I weigh 80 kg", FakeLLMClient(FakeScenario.INVALID_TOOL_ARGS))

    assert result.failed is False
    assert [call["status"] for call in result.tool_calls] == ["rejected"]
    assert result.text == GENERIC_RETRY_TEXT
    assert db_session.query(WeightLog).filter(WeightLog.user_id == user.id).count() == 0


def test_tool_not_offered_this_turn_is_rejected(create_user, db_session, turn) -> None:
    user = create_user()
    rogue = LLMResult(
        text="Logged your weight!",
        tool_calls=[ToolInvocation(id="c1", name="log_weight", arguments={"weight": 80})],
    )

    result = turn(user, "what did I eat today?", FakeLLMClient(script=[rogue]))

    assert [call["status"] for call in result.tool_calls] == ["rejected"]
    assert db_session.query(WeightLog).filter(WeightLog.user_id == user.id).count() == 0


def test_weight_turn_logs_weight(create_user, db_session, turn) -> None:
    user = create_user()
    result = turn(user, "I weighed 81.4 kg this morning", FakeLLMClient())

    assert result.text == "Logged your weight: 81.4 kg."
    assert db_session.query(WeightLog).filter(WeightLog.user_id == user.id).one().weight == 81.4


def test_query_turn_reads_progress(create_user, turn) -> None:
    user = create_user()
    llm = FakeLLMClient()

    result = turn(user, "what did I eat today?", llm)

    assert llm.first_round_calls[0]["tools"] == ["show_progress"]
    assert result.text == "Today so far: 0 kcal of 2200, 0g protein."
    assert "query" in result.intents


def test_stealth_mode_hides_calories_in_fallback_text(create_user, turn) -> None:
    user = create_user(display_mode="stealth")
    result = turn(user, "I had a banana", FakeLLMClient())
    assert "kcal" not in result.text
    assert result.text == "Here's what I have for breakfast: banana. Should I log it?"


def test_denial_rejects_pending_and_accepts_correction(create_user, db_session, turn) -> None:
    user = create_user()
    llm = FakeLLMClient()
    first = turn(user, "I had a banana", llm)

    corrected = turn(user, "no, it was a small banana", llm)

    assert "rejected the last food proposal" in llm.first_round_calls[-1]["system_prompt"]
    old = db_session.get(PendingConfirmation, first.pending["confirmation_id"])
    db_session.refresh(old)
    assert old.status == "rejected"
    assert corrected.pending["confirmation_id"] != first.pending["confirmation_id"]
    assert _food_count(db_session, user.id) == 0


def test_photo_turn_stages_photo_proposal(create_user, db_session, turn) -> None:
    user = create_user()
    photo = Photo(user_id=user.id, content_type="image/jpeg", data=b"\xff\xd8fake")
    db_session.add(photo)
    db_session.commit()
    vision = FakeVisionClient()
    llm = FakeLLMClient()

    result = turn(user, "lunch pic", llm, image_ref=photo.id, vision=vision)

    assert "PHOTO ATTACHED" in llm.first_round_calls[0]["system_prompt"]
    assert result.text == "Here's what I have for breakfast: grilled chicken, rice, about 454 kcal. Should I log it?"
    assert result.pending["confirmation_data"]["source"] == "photo"
    assert vision.calls[0]["content_type"] == "image/jpeg"
    stored = (
        db_session.query(ChatMessage)
        .filter(ChatMessage.user_id == user.id, ChatMessage.role == "user")
        .one()
    )
    assert stored.image_ref == photo.id


def test_photo_without_food_asks_instead(create_user, db_session, turn) -> None:
    user = create_user()
    photo = Photo(user_id=user.id, content_type="image/png", data=b"\x89PNGfake")
    db_session.add(photo)
    db_session.commit()

    result = turn(user, "", FakeLLMClient(), image_ref=photo.id, vision=FakeVisionClient({"no_food": True}))

    assert result.text == orchestrator.NO_FOOD_TEXT
    assert result.pending is None


def test_turn_is_persisted_with_tool_calls(create_user, db_session, turn) -> None:
    user = create_user()
    result = turn(user, "I had a banana", FakeLLMClient())

    rows = (
        db_session.query(ChatMessage)
        .filter(ChatMessage.thread_id == result.thread_id)
        .order_by(ChatMessage.id.asc())
        .all()
    )
    assert [row.role for row in rows] == ["user", "assistant"]
    assert rows[1].content == result.text
    assert json.loads(rows[1].tool_calls_json)[0]["name"] == "confirm_food"
    thread = db_session.query(DailyThread).filter(DailyThread.thread_id == result.thread_id).one()
    assert thread.message_count == 1


def test_onboarding_turn_applies_markers_in_order(create_user, db_session, turn) -> None:
    user = create_user(onboarded=False)
    reply = LLMResult(text="Nice to meet you, Dana! [EXTRACT:name:Dana] [EXTRACT:goal:cut] What's your weight?")
    llm = FakeLLMClient(script=[reply])

    result = turn(user, "hi, I'm Dana", llm)

    assert llm.first_round_calls[0]["tools"] == ["save_onboarding_answer"]
    assert "Onboarding mode" in llm.first_round_calls[0]["system_prompt"]
    assert "[EXTRACT" not in result.text
    progress = db_session.query(OnboardingProgress).filter(OnboardingProgress.user_id == user.id).one()
    db_session.refresh(progress)
    assert progress.current_step == "current_weight"
    assert "goal" not in json.loads(progress.responses_json)


def test_onboarding_turn_does_not_offer_food_tools(create_user, turn) -> None:
    user = create_user(onboarded=False)
    llm = FakeLLMClient()

    turn(user, "I had a banana", llm)

    assert llm.first_round_calls[0]["tools"] == ["save_onboarding_answer"]


def test_missing_user_is_an_authentication_error(db_session) -> None:
    with pytest.raises(AuthenticationError):
        orchestrator.send_turn(db_session, None, "hello", llm_client=FakeLLMClient())
