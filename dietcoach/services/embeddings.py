import json
import math
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from dietcoach.db.models import FoodLog
from dietcoach.services.llm import (
    GEMINI_BASE_URL,
    OPENAI_BASE_URL,
    post_with_retries,
    record_usage,
    resolve_model_config,
)

SIMILARITY_FLOOR = 0.3


class EmbeddingClient(Protocol):
    def embed(self, db: Session, user_id: int, text: str) -> list[float]:
        ...


class RealEmbeddingClient:
    def embed(self, db: Session, user_id: int, text: str) -> list[float]:
        cfg = resolve_model_config(db, user_id)
        if cfg.provider == "openai":
            data = post_with_retries(
                "openai",
                cfg.embedding_model,
                f"{OPENAI_BASE_URL}/embeddings",
                {"model": cfg.embedding_model, "input": text[:4000]},
                headers={"Authorization": f"Bearer {cfg.api_key}"},
            )
            vector = (data.get("data") or [{}])[0].get("embedding") or []
            usage = data.get("usage", {}) or {}
            usage_tokens = {
                "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
                "completion_tokens": 0,
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            }
        elif cfg.provider == "gemini":
            data = post_with_retries(
                "gemini",
                cfg.embedding_model,
                f"{GEMINI_BASE_URL}/models/{cfg.embedding_model}:embedContent",
                {"content": {"parts": [{"text": text[:4000]}]}},
                headers={"x-goog-api-key": cfg.api_key},
            )
            vector = (data.get("embedding") or {}).get("values") or []
            usage_tokens = {}
        else:
            raise ValueError("Unsupported AI provider")
        if not vector:
            raise ValueError("Embedding response contained no vector")
        record_usage(db, user_id, cfg.provider, cfg.embedding_model, usage_tokens)
        return [float(value) for value in vector]


def get_embedding_client() -> EmbeddingClient:
    return RealEmbeddingClient()


def meal_embedding_text(row: FoodLog) -> str:
    items = json.loads(row.items_json or "[]")
    names = ", ".join(str(item.get("name", "")) for item in items if isinstance(item, dict))
    return (
        f"{row.meal_type}: {names} - {row.description} "
        f"({round(row.total_calories)} calories, {round(row.total_protein)}g protein)"
    )


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if norm == 0:
        return 0.0
    return dot / norm


def search_similar(
    db: Session,
    user_id: int,
    vector: list[float],
    limit: int = 3,
    *,
    min_score: Optional[float] = SIMILARITY_FLOOR,
) -> list[dict[str, Any]]:
    rows = (
        db.query(FoodLog)
        .filter(FoodLog.user_id == user_id, FoodLog.embedding_json.isnot(None))
        .order_by(FoodLog.logged_at.desc())
        .limit(500)
        .all()
    )
    scored = []
    for row in rows:
        score = cosine_similarity(vector, json.loads(row.embedding_json))
        if min_score is not None and score < min_score:
            continue
        scored.append((score, row))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [
        {
            "score": round(score, 4),
            "record": {
                "id": row.id,
                "date": row.log_date.isoformat(),
                "meal_type": row.meal_type,
                "description": row.description,
                "items": json.loads(row.items_json or "[]"),
                "calories": row.total_calories,
                "protein": row.total_protein,
                "carbs": row.total_carbs,
                "fat": row.total_fat,
            },
        }
        for score, row in scored[:limit]
    ]
