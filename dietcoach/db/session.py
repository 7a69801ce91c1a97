import os
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from dietcoach.db.models import Base

DB_PATH = os.getenv("DB_PATH", "/var/data/dietcoach.db")
DB_BUSY_TIMEOUT_SECONDS = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "15"))

connect_args = {"check_same_thread": False, "timeout": DB_BUSY_TIMEOUT_SECONDS}


def _build_engine(db_path: str):
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def _add_missing_column(conn, table: str, column: str, ddl: str) -> None:
    columns = {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})")).fetchall()}
    if column not in columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    # Forward-compatible column upgrades for SQLite without full migrations.
    with engine.begin() as conn:
        _add_missing_column(conn, "user_ai_configs", "ai_vision_model", "VARCHAR(128)")
        _add_missing_column(conn, "user_ai_configs", "ai_embedding_model", "VARCHAR(128)")
        _add_missing_column(conn, "food_logs", "embedding_json", "TEXT")
        _add_missing_column(conn, "user_profiles", "timezone", "VARCHAR(64)")


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
