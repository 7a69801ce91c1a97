import json
import os
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from dietcoach.db.models import PendingConfirmation, utcnow

PENDING_CONFIRMATION_TTL_SECONDS = int(os.getenv("PENDING_CONFIRMATION_TTL_SECONDS", "600"))

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_REJECTED = "rejected"


def payload(row: PendingConfirmation) -> dict[str, Any]:
    return json.loads(row.confirmation_json)


def serialize(row: PendingConfirmation) -> dict[str, Any]:
    return {
        "confirmation_id": row.id,
        "thread_id": row.thread_id,
        "tool_call_id": row.tool_call_id,
        "status": row.status,
        "confirmation_data": payload(row),
        "created_at": row.created_at.isoformat(),
    }


def _pending_row(db: Session, thread_id: str) -> Optional[PendingConfirmation]:
    return (
        db.query(PendingConfirmation)
        .filter(PendingConfirmation.thread_id == thread_id, PendingConfirmation.status == STATUS_PENDING)
        .order_by(PendingConfirmation.created_at.desc(), PendingConfirmation.id.desc())
        .first()
    )


def save(
    db: Session,
    *,
    thread_id: str,
    user_id: int,
    tool_call_id: str,
    data: dict[str, Any],
) -> PendingConfirmation:
    now = utcnow()
    row = _pending_row(db, thread_id)
    if row is None:
        row = PendingConfirmation(
            thread_id=thread_id,
            user_id=user_id,
            status=STATUS_PENDING,
        )
        db.add(row)
    row.tool_call_id = tool_call_id
    row.confirmation_json = json.dumps(data, ensure_ascii=True)
    row.created_at = now
    db.flush()
    return row


def get_latest_pending(
    db: Session, thread_id: str, *, ttl_seconds: Optional[int] = None
) -> Optional[PendingConfirmation]:
    row = _pending_row(db, thread_id)
    if row is None:
        return None
    ttl = PENDING_CONFIRMATION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    if ttl > 0 and row.created_at < utcnow() - timedelta(seconds=ttl):
        return None
    return row


def get_latest_confirmed(
    db: Session, thread_id: str, *, within_seconds: int
) -> Optional[PendingConfirmation]:
    since = utcnow() - timedelta(seconds=within_seconds)
    return (
        db.query(PendingConfirmation)
        .filter(
            PendingConfirmation.thread_id == thread_id,
            PendingConfirmation.status == STATUS_CONFIRMED,
            PendingConfirmation.resolved_at >= since,
        )
        .order_by(PendingConfirmation.resolved_at.desc(), PendingConfirmation.id.desc())
        .first()
    )


def get_by_id(db: Session, confirmation_id: int, *, user_id: Optional[int] = None) -> Optional[PendingConfirmation]:
    query = db.query(PendingConfirmation).filter(PendingConfirmation.id == confirmation_id)
    if user_id is not None:
        query = query.filter(PendingConfirmation.user_id == user_id)
    return query.first()


def _transition(db: Session, confirmation_id: int, status: str) -> Optional[PendingConfirmation]:
    row = get_by_id(db, confirmation_id)
    if row is None:
        return None
    if row.status != STATUS_PENDING:
        return row
    row.status = status
    row.resolved_at = utcnow()
    db.flush()
    return row


def confirm(db: Session, confirmation_id: int) -> Optional[PendingConfirmation]:
    return _transition(db, confirmation_id, STATUS_CONFIRMED)


def reject(db: Session, confirmation_id: int) -> Optional[PendingConfirmation]:
    return _transition(db, confirmation_id, STATUS_REJECTED)
