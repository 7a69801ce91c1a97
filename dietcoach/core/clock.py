import os
from datetime import date, datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from dietcoach.db.models import UserProfile

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC").strip() or "UTC"


def resolve_timezone(tz_name: Optional[str]) -> tzinfo:
    name = (tz_name or "").strip() or DEFAULT_TIMEZONE
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def user_timezone(db: Session, user_id: int) -> tzinfo:
    tz_name = (
        db.query(UserProfile.timezone).filter(UserProfile.user_id == user_id).scalar()
    )
    return resolve_timezone(tz_name)


def as_utc(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def local_now(db: Session, user_id: int, now: Optional[datetime] = None) -> datetime:
    return as_utc(now).astimezone(user_timezone(db, user_id))


def local_today(db: Session, user_id: int, now: Optional[datetime] = None) -> date:
    return local_now(db, user_id, now).date()


def detect_meal_type(local_dt: datetime) -> str:
    hour = local_dt.hour
    if hour < 11:
        return "breakfast"
    if hour < 15:
        return "lunch"
    if hour < 18:
        return "snack"
    return "dinner"
