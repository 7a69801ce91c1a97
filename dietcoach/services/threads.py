import json
import os
from datetime import date
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from dietcoach.core.clock import local_today
from dietcoach.db.models import ChatMessage, DailyThread, utcnow
from dietcoach.services import context_cache
from dietcoach.services.context_cache import CacheEvent

THREAD_HISTORY_LIMIT = int(os.getenv("THREAD_HISTORY_LIMIT", "10"))


class ThreadPrimitive(Protocol):
    def create_thread(self, db: Session, user_id: int) -> str:
        ...


def _thread_title(day: date, explicit: bool) -> str:
    label = day.strftime("%a %d %b %Y")
    return f"New chat - {label}" if explicit else label


def current_thread(db: Session, user_id: int, day: date) -> Optional[DailyThread]:
    return (
        db.query(DailyThread)
        .filter(DailyThread.user_id == user_id, DailyThread.created_date == day)
        .order_by(DailyThread.created_at.desc(), DailyThread.id.desc())
        .first()
    )


def _create_thread(
    db: Session, user_id: int, llm_client: ThreadPrimitive, day: date, *, explicit: bool
) -> DailyThread:
    now = utcnow()
    thread = DailyThread(
        thread_id=llm_client.create_thread(db, user_id),
        user_id=user_id,
        created_date=day,
        title=_thread_title(day, explicit),
        message_count=0,
        created_at=now,
        last_message_at=now,
    )
    db.add(thread)
    db.flush()
    context_cache.invalidate(db, user_id, CacheEvent.thread_started)
    return thread


def get_or_create_daily_thread(
    db: Session,
    user_id: int,
    llm_client: ThreadPrimitive,
    *,
    today: Optional[date] = None,
    count_turn: bool = True,
) -> tuple[DailyThread, bool]:
    day = today or local_today(db, user_id)
    thread = current_thread(db, user_id, day)
    is_new = thread is None
    if thread is None:
        thread = _create_thread(db, user_id, llm_client, day, explicit=False)
    if count_turn:
        thread.message_count += 1
        thread.last_message_at = utcnow()
    db.flush()
    return thread, is_new


def start_new_thread(
    db: Session, user_id: int, llm_client: ThreadPrimitive, *, today: Optional[date] = None
) -> DailyThread:
    day = today or local_today(db, user_id)
    return _create_thread(db, user_id, llm_client, day, explicit=True)


def get_thread(db: Session, user_id: int, thread_id: str) -> Optional[DailyThread]:
    return (
        db.query(DailyThread)
        .filter(DailyThread.thread_id == thread_id, DailyThread.user_id == user_id)
        .first()
    )


def recent_history(db: Session, thread_id: str, limit: int = THREAD_HISTORY_LIMIT) -> list[dict[str, str]]:
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread_id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit)
        .all()
    )
    history: list[dict[str, str]] = []
    for row in reversed(rows):
        content = (row.content or "").strip()
        if not content:
            continue
        history.append({"role": row.role, "content": content})
    return history


def persist_turn(
    db: Session,
    *,
    user_id: int,
    thread: DailyThread,
    user_text: str,
    assistant_text: str,
    tool_calls: list[dict[str, Any]],
    image_ref: Optional[int] = None,
) -> None:
    now = utcnow()
    db.add(
        ChatMessage(
            thread_id=thread.thread_id,
            user_id=user_id,
            role="user",
            content=user_text[:8000],
            image_ref=image_ref,
            created_at=now,
        )
    )
    db.add(
        ChatMessage(
            thread_id=thread.thread_id,
            user_id=user_id,
            role="assistant",
            content=assistant_text[:20000],
            tool_calls_json=json.dumps(tool_calls, ensure_ascii=True) if tool_calls else None,
            created_at=now,
        )
    )
    thread.message_count += 1
    thread.last_message_at = now
    context_cache.invalidate(db, user_id, CacheEvent.message_sent)
