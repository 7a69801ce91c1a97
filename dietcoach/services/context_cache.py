import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Union

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from dietcoach.core import context_builder
from dietcoach.core.clock import local_today
from dietcoach.core.errors import CacheRebuildError
from dietcoach.db.models import SessionCacheEntry, utcnow

logger = logging.getLogger("uvicorn.error")


class CacheKey(str, Enum):
    core_stats = "core_stats"
    profile = "profile"
    preferences = "preferences"
    weight_trend = "weight_trend"
    today_food_log = "today_food_log"
    thread_context = "thread_context"


class CacheEvent(str, Enum):
    food_logged = "food_logged"
    meal_updated = "meal_updated"
    food_deleted = "food_deleted"
    weight_logged = "weight_logged"
    profile_updated = "profile_updated"
    goal_changed = "goal_changed"
    preferences_updated = "preferences_updated"
    message_sent = "message_sent"
    thread_started = "thread_started"


Rebuilder = Callable[[Session, int, date], dict[str, Any]]


@dataclass(frozen=True)
class CachePolicy:
    ttl: timedelta
    invalidate_on: frozenset[CacheEvent]
    rebuild: Rebuilder
    day_scoped: bool = False


CACHE_STRATEGY: dict[CacheKey, CachePolicy] = {
    CacheKey.core_stats: CachePolicy(
        ttl=timedelta(minutes=5),
        invalidate_on=frozenset(
            {
                CacheEvent.food_logged,
                CacheEvent.meal_updated,
                CacheEvent.food_deleted,
                CacheEvent.weight_logged,
                CacheEvent.profile_updated,
                CacheEvent.goal_changed,
            }
        ),
        rebuild=context_builder.build_core_stats,
        day_scoped=True,
    ),
    CacheKey.profile: CachePolicy(
        ttl=timedelta(days=7),
        invalidate_on=frozenset({CacheEvent.profile_updated, CacheEvent.goal_changed}),
        rebuild=context_builder.build_profile_snapshot,
    ),
    CacheKey.weight_trend: CachePolicy(
        ttl=timedelta(days=1),
        invalidate_on=frozenset({CacheEvent.weight_logged}),
        rebuild=context_builder.build_weight_trend,
        day_scoped=True,
    ),
    CacheKey.preferences: CachePolicy(
        ttl=timedelta(days=30),
        invalidate_on=frozenset({CacheEvent.preferences_updated}),
        rebuild=context_builder.build_preferences_snapshot,
    ),
    CacheKey.today_food_log: CachePolicy(
        ttl=timedelta(minutes=10),
        invalidate_on=frozenset({CacheEvent.food_logged, CacheEvent.meal_updated, CacheEvent.food_deleted}),
        rebuild=context_builder.build_today_food_log,
        day_scoped=True,
    ),
    CacheKey.thread_context: CachePolicy(
        ttl=timedelta(minutes=2),
        invalidate_on=frozenset({CacheEvent.message_sent, CacheEvent.thread_started}),
        rebuild=context_builder.build_thread_context,
        day_scoped=True,
    ),
}


def keys_for_event(event: Union[CacheEvent, str]) -> list[CacheKey]:
    event = CacheEvent(event)
    return [key for key, policy in CACHE_STRATEGY.items() if event in policy.invalidate_on]


def _entry(db: Session, user_id: int, key: CacheKey) -> Optional[SessionCacheEntry]:
    return (
        db.query(SessionCacheEntry)
        .filter(SessionCacheEntry.user_id == user_id, SessionCacheEntry.cache_key == key.value)
        .first()
    )


def _is_fresh(entry: SessionCacheEntry, now: datetime, scope: Optional[str]) -> bool:
    if entry.expires_at <= now:
        return False
    return entry.scope_date == scope


def get(
    db: Session,
    user_id: int,
    key: Union[CacheKey, str],
    *,
    today: Optional[date] = None,
) -> dict[str, Any]:
    key = CacheKey(key)
    policy = CACHE_STRATEGY[key]
    day = today or local_today(db, user_id)
    scope = day.isoformat() if policy.day_scoped else None
    now = utcnow()

    entry = _entry(db, user_id, key)
    if entry is not None and _is_fresh(entry, now, scope):
        return json.loads(entry.data_json)
    if entry is not None:
        db.delete(entry)
        db.flush()

    try:
        data = policy.rebuild(db, user_id, day)
    except Exception as exc:
        raise CacheRebuildError(key.value, str(exc)) from exc

    stmt = sqlite_insert(SessionCacheEntry).values(
        user_id=user_id,
        cache_key=key.value,
        data_json=json.dumps(data, ensure_ascii=True),
        invalidate_on=",".join(sorted(event.value for event in policy.invalidate_on)),
        scope_date=scope,
        expires_at=now + policy.ttl,
        created_at=now,
    )
    # A concurrent reader that rebuilt the same miss first keeps its row.
    result = db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "cache_key"]))
    if result.rowcount == 0:
        logger.info("context_cache_concurrent_rebuild user_id=%s key=%s", user_id, key.value)
    return data


def invalidate(db: Session, user_id: int, event: Union[CacheEvent, str]) -> list[str]:
    event = CacheEvent(event)
    rows = db.query(SessionCacheEntry).filter(SessionCacheEntry.user_id == user_id).all()
    removed: list[str] = []
    for row in rows:
        if event.value in row.invalidate_on.split(","):
            removed.append(row.cache_key)
            db.delete(row)
    db.flush()
    return removed


def invalidate_key(db: Session, user_id: int, key: Union[CacheKey, str]) -> bool:
    key = CacheKey(key)
    deleted = (
        db.query(SessionCacheEntry)
        .filter(SessionCacheEntry.user_id == user_id, SessionCacheEntry.cache_key == key.value)
        .delete(synchronize_session=False)
    )
    return bool(deleted)


def invalidate_many(db: Session, user_id: int, events: list[Union[CacheEvent, str]]) -> list[str]:
    removed: list[str] = []
    for event in events:
        removed.extend(invalidate(db, user_id, event))
    return removed
