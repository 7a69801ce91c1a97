import json
from datetime import date, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from dietcoach.db.models import ChatMessage, DailyThread, FoodLog, User, UserProfile, WeightLog

WEIGHT_TREND_DAYS = 30
THREAD_CONTEXT_MESSAGES = 6


def _round(value: Optional[float], digits: int = 1) -> Optional[float]:
    if value is None:
        return None
    return round(float(value), digits)


def _remaining(target: Optional[int], consumed: float) -> Optional[float]:
    if target is None:
        return None
    return round(target - consumed, 1)


def _profile_row(db: Session, user_id: int) -> Optional[UserProfile]:
    return db.query(UserProfile).filter(UserProfile.user_id == user_id).first()


def _food_logs_for_day(db: Session, user_id: int, day: date) -> list[FoodLog]:
    return (
        db.query(FoodLog)
        .filter(FoodLog.user_id == user_id, FoodLog.log_date == day)
        .order_by(FoodLog.logged_at.asc(), FoodLog.id.asc())
        .all()
    )


def _latest_weight(db: Session, user_id: int) -> Optional[WeightLog]:
    return (
        db.query(WeightLog)
        .filter(WeightLog.user_id == user_id)
        .order_by(WeightLog.log_date.desc(), WeightLog.id.desc())
        .first()
    )


def build_profile_snapshot(db: Session, user_id: int, today: date) -> dict[str, Any]:
    user = db.query(User).filter(User.id == user_id).first()
    profile = _profile_row(db, user_id)
    if not profile:
        return {
            "name": user.display_name if user else None,
            "has_profile": False,
            "targets": None,
        }
    return {
        "name": profile.name or (user.display_name if user else None),
        "has_profile": True,
        "current_weight_kg": _round(profile.current_weight_kg),
        "target_weight_kg": _round(profile.target_weight_kg),
        "height_cm": _round(profile.height_cm, 0),
        "age": profile.age,
        "gender": profile.gender,
        "activity_level": profile.activity_level,
        "goal": profile.goal,
        "preferred_units": profile.preferred_units,
        "timezone": profile.timezone,
        "targets": {
            "calories": profile.daily_calorie_target,
            "protein": profile.protein_target,
            "carbs": profile.carbs_target,
            "fat": profile.fat_target,
        },
    }


def build_preferences_snapshot(db: Session, user_id: int, today: date) -> dict[str, Any]:
    profile = _profile_row(db, user_id)
    dietary: dict[str, Any] = {}
    if profile and profile.dietary_preferences_json:
        loaded = json.loads(profile.dietary_preferences_json)
        if isinstance(loaded, dict):
            dietary = loaded
    return {
        "display_mode": profile.display_mode if profile else "standard",
        "preferred_units": profile.preferred_units if profile else "kg",
        "dietary": dietary,
    }


def build_core_stats(db: Session, user_id: int, today: date) -> dict[str, Any]:
    profile = _profile_row(db, user_id)
    logs = _food_logs_for_day(db, user_id, today)
    calories = sum(row.total_calories for row in logs)
    protein = sum(row.total_protein for row in logs)
    carbs = sum(row.total_carbs for row in logs)
    fat = sum(row.total_fat for row in logs)
    latest = _latest_weight(db, user_id)

    calorie_target = profile.daily_calorie_target if profile else None
    protein_target = profile.protein_target if profile else None
    return {
        "date": today.isoformat(),
        "meals_logged": len(logs),
        "calories_consumed": round(calories, 1),
        "protein_consumed": round(protein, 1),
        "carbs_consumed": round(carbs, 1),
        "fat_consumed": round(fat, 1),
        "calorie_target": calorie_target,
        "protein_target": protein_target,
        "carbs_target": profile.carbs_target if profile else None,
        "fat_target": profile.fat_target if profile else None,
        "calories_remaining": _remaining(calorie_target, calories),
        "protein_remaining": _remaining(protein_target, protein),
        "latest_weight": (
            {"weight": latest.weight, "unit": latest.unit, "date": latest.log_date.isoformat()}
            if latest
            else None
        ),
    }


def build_today_food_log(db: Session, user_id: int, today: date) -> dict[str, Any]:
    logs = _food_logs_for_day(db, user_id, today)
    return {
        "date": today.isoformat(),
        "entries": [
            {
                "id": row.id,
                "meal_type": row.meal_type,
                "description": row.description,
                "calories": round(row.total_calories, 1),
                "protein": round(row.total_protein, 1),
                "carbs": round(row.total_carbs, 1),
                "fat": round(row.total_fat, 1),
                "logged_at": row.logged_at.isoformat(),
            }
            for row in logs
        ],
    }


def build_weight_trend(db: Session, user_id: int, today: date) -> dict[str, Any]:
    since = today - timedelta(days=WEIGHT_TREND_DAYS)
    rows = (
        db.query(WeightLog)
        .filter(WeightLog.user_id == user_id, WeightLog.log_date >= since)
        .order_by(WeightLog.log_date.asc())
        .all()
    )
    entries = [{"date": row.log_date.isoformat(), "weight": row.weight, "unit": row.unit} for row in rows]
    week_ago = today - timedelta(days=7)
    recent = [row for row in rows if row.log_date >= week_ago]
    change_7d = None
    if len(recent) >= 2 and recent[0].unit == recent[-1].unit:
        change_7d = round(recent[-1].weight - recent[0].weight, 2)
    return {
        "entries": entries,
        "latest": entries[-1] if entries else None,
        "change_7d": change_7d,
    }


def build_thread_context(db: Session, user_id: int, today: date) -> dict[str, Any]:
    thread = (
        db.query(DailyThread)
        .filter(DailyThread.user_id == user_id, DailyThread.created_date == today)
        .order_by(DailyThread.created_at.desc(), DailyThread.id.desc())
        .first()
    )
    if not thread:
        return {"thread_id": None, "message_count": 0, "recent": []}
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread.thread_id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(THREAD_CONTEXT_MESSAGES)
        .all()
    )
    return {
        "thread_id": thread.thread_id,
        "message_count": thread.message_count,
        "recent": [{"role": row.role, "content": row.content[:280]} for row in reversed(rows)],
    }
