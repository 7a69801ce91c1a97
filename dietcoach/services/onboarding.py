import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from dietcoach.core import onboarding as steps
from dietcoach.core.errors import OnboardingStepOutOfOrder
from dietcoach.db.models import OnboardingProgress, User, UserProfile, utcnow
from dietcoach.services import context_cache
from dietcoach.services.context_cache import CacheEvent

logger = logging.getLogger("uvicorn.error")


@dataclass
class OnboardingUpdate:
    applied: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)
    completed: bool = False


def responses(progress: OnboardingProgress) -> dict[str, Any]:
    try:
        loaded = json.loads(progress.responses_json or "{}")
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def get_or_create_progress(db: Session, user_id: int) -> OnboardingProgress:
    progress = db.query(OnboardingProgress).filter(OnboardingProgress.user_id == user_id).first()
    if progress:
        return progress
    progress = OnboardingProgress(user_id=user_id, current_step="welcome", responses_json="{}", completed=False)
    db.add(progress)
    db.flush()
    return progress


def begin_turn(db: Session, progress: OnboardingProgress) -> OnboardingProgress:
    if progress.current_step == "welcome":
        progress.current_step = steps.next_step("welcome")
        db.flush()
    return progress


def record_answer(db: Session, user: User, step: str, raw_value: str) -> OnboardingProgress:
    progress = get_or_create_progress(db, user.id)
    if progress.completed:
        raise OnboardingStepOutOfOrder(steps.TERMINAL_STEP, step)
    new_step, updated = steps.advance(progress.current_step, step, raw_value, responses(progress))
    progress.responses_json = json.dumps(updated, ensure_ascii=True)
    progress.current_step = new_step
    if new_step == steps.TERMINAL_STEP:
        _complete(db, user, progress, updated)
    db.flush()
    return progress


def apply_extractions(db: Session, user: User, extractions: list[steps.Extraction]) -> OnboardingUpdate:
    update = OnboardingUpdate()
    for extraction in extractions:
        try:
            progress = record_answer(db, user, extraction.step, extraction.value)
        except OnboardingStepOutOfOrder as exc:
            logger.warning(
                "onboarding_step_out_of_order user_id=%s current=%s attempted=%s",
                user.id,
                exc.current_step,
                exc.attempted_step,
            )
            update.ignored.append(extraction.step)
            continue
        except ValueError as exc:
            logger.warning(
                "onboarding_value_unparsed user_id=%s step=%s detail=%s", user.id, extraction.step, str(exc)
            )
            update.ignored.append(extraction.step)
            continue
        update.applied.append(extraction.step)
        update.completed = progress.completed
    return update


def _complete(db: Session, user: User, progress: OnboardingProgress, answers: dict[str, Any]) -> UserProfile:
    targets = steps.compute_targets(answers)
    profile = db.query(UserProfile).filter(UserProfile.user_id == user.id).first()
    if not profile:
        profile = UserProfile(user_id=user.id)
        db.add(profile)
    height_age = answers.get("height_age") or {}
    current = answers.get("current_weight") or {}
    profile.name = answers.get("name")
    profile.current_weight_kg = steps.weight_in_kg(current)
    profile.target_weight_kg = steps.weight_in_kg(answers.get("target_weight"))
    profile.height_cm = height_age.get("height_cm")
    profile.age = height_age.get("age")
    profile.gender = answers.get("gender")
    profile.activity_level = answers.get("activity_level")
    profile.goal = answers.get("goal")
    profile.display_mode = answers.get("display_mode") or "standard"
    profile.preferred_units = current.get("unit") or "kg"
    profile.daily_calorie_target = targets["calories"]
    profile.protein_target = targets["protein"]
    profile.carbs_target = targets["carbs"]
    profile.fat_target = targets["fat"]

    if answers.get("name"):
        user.display_name = answers["name"]
    progress.completed = True
    progress.completed_at = utcnow()
    db.flush()
    context_cache.invalidate_many(
        db,
        user.id,
        [CacheEvent.profile_updated, CacheEvent.preferences_updated, CacheEvent.goal_changed],
    )
    logger.info("onboarding_completed user_id=%s calories=%s", user.id, targets["calories"])
    return profile


def status(progress: OnboardingProgress) -> dict[str, Any]:
    answers = responses(progress)
    return {
        "completed": progress.completed,
        "current_step": progress.current_step,
        "answered": [step for step in steps.QUESTION_STEPS if step in answers],
        "suggested_goal": steps.suggest_goal(answers),
    }
