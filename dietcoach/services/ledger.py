import json
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dietcoach.core.clock import local_today
from dietcoach.core.errors import ToolExecutionError
from dietcoach.db.models import FoodLog, PendingConfirmation, WeightLog
from dietcoach.services import confirmations, context_cache
from dietcoach.services.context_cache import CacheEvent
from dietcoach.services.duplicate_guard import DuplicateGuard
from dietcoach.services.embeddings import EmbeddingClient, meal_embedding_text

logger = logging.getLogger("uvicorn.error")

STATUS_COMMITTED = "committed"
STATUS_DUPLICATE = "duplicate"


@dataclass
class CommitOutcome:
    status: str
    confirmation_id: int
    food_log: Optional[FoodLog] = None
    reason: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.status == STATUS_COMMITTED

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status, "confirmation_id": self.confirmation_id}
        if self.food_log is not None:
            payload.update(
                {
                    "food_log_id": self.food_log.id,
                    "meal_type": self.food_log.meal_type,
                    "description": self.food_log.description,
                    "total_calories": self.food_log.total_calories,
                    "total_protein": self.food_log.total_protein,
                    "total_carbs": self.food_log.total_carbs,
                    "total_fat": self.food_log.total_fat,
                }
            )
        if self.reason:
            payload["reason"] = self.reason
        return payload


def _duplicate(pending: PendingConfirmation, reason: str) -> CommitOutcome:
    return CommitOutcome(status=STATUS_DUPLICATE, confirmation_id=pending.id, reason=reason)


def commit_food_confirmation(
    db: Session,
    user_id: int,
    pending: PendingConfirmation,
    *,
    guard: DuplicateGuard,
    embedding_client: Optional[EmbeddingClient] = None,
    today: Optional[date] = None,
) -> CommitOutcome:
    if pending.status != confirmations.STATUS_PENDING:
        return _duplicate(pending, f"confirmation already {pending.status}")
    if db.query(FoodLog.id).filter(FoodLog.confirmation_id == pending.id).first():
        return _duplicate(pending, "confirmation already logged")

    data = confirmations.payload(pending)
    meal_type = str(data.get("meal_type") or "snack")
    calories = float(data.get("total_calories") or 0)
    if guard.is_duplicate(user_id, meal_type, calories):
        logger.info(
            "duplicate_commit_detected user_id=%s thread_id=%s confirmation_id=%s meal_type=%s calories=%s",
            user_id,
            pending.thread_id,
            pending.id,
            meal_type,
            calories,
        )
        return _duplicate(pending, "same meal logged moments ago")

    day = today or local_today(db, user_id)
    try:
        row = FoodLog(
            user_id=user_id,
            confirmation_id=pending.id,
            log_date=day,
            meal_type=meal_type,
            description=str(data.get("description") or "Meal")[:512],
            items_json=json.dumps(data.get("items") or [], ensure_ascii=True),
            total_calories=calories,
            total_protein=float(data.get("total_protein") or 0),
            total_carbs=float(data.get("total_carbs") or 0),
            total_fat=float(data.get("total_fat") or 0),
            confidence=str(data.get("confidence") or "medium"),
            source=str(data.get("source") or "chat"),
            photo_id=data.get("photo_id"),
        )
        db.add(row)
        db.flush()
        context_cache.invalidate(db, user_id, CacheEvent.food_logged)
        confirmations.confirm(db, pending.id)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("duplicate_commit_rejected_by_store user_id=%s confirmation_id=%s", user_id, pending.id)
        return CommitOutcome(status=STATUS_DUPLICATE, confirmation_id=pending.id, reason="confirmation already logged")
    except Exception as exc:
        db.rollback()
        raise ToolExecutionError("log_food", f"ledger write failed: {exc}") from exc

    guard.register(user_id, meal_type, calories)
    if embedding_client is not None:
        _attach_embedding(db, user_id, row, embedding_client)
    return CommitOutcome(status=STATUS_COMMITTED, confirmation_id=pending.id, food_log=row)


def _attach_embedding(db: Session, user_id: int, row: FoodLog, embedding_client: EmbeddingClient) -> None:
    # The food log is already committed; a missing embedding only weakens similar-meal search.
    try:
        vector = embedding_client.embed(db, user_id, meal_embedding_text(row))
        row.embedding_json = json.dumps(vector)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning("food_log_embedding_failed user_id=%s food_log_id=%s detail=%s", user_id, row.id, str(exc))


def upsert_weight(
    db: Session,
    user_id: int,
    *,
    weight: float,
    unit: str,
    notes: Optional[str] = None,
    today: Optional[date] = None,
) -> tuple[WeightLog, bool]:
    day = today or local_today(db, user_id)
    try:
        row = db.query(WeightLog).filter(WeightLog.user_id == user_id, WeightLog.log_date == day).first()
        created = row is None
        if row is None:
            row = WeightLog(user_id=user_id, log_date=day, weight=weight, unit=unit, notes=notes)
            db.add(row)
        else:
            row.weight = weight
            row.unit = unit
            row.notes = notes
        db.flush()
        context_cache.invalidate(db, user_id, CacheEvent.weight_logged)
        db.commit()
    except Exception as exc:
        db.rollback()
        raise ToolExecutionError("log_weight", f"weight write failed: {exc}") from exc
    return row, created
