import base64
import json
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from dietcoach.services.llm import (
    GEMINI_BASE_URL,
    OPENAI_BASE_URL,
    LLM_MAX_TOKENS,
    LLMRequestError,
    parse_llm_json,
    post_with_retries,
    record_usage,
    resolve_model_config,
)

VISION_PROMPT = """
Analyze this photo for food logging.
Return strict JSON only, in one of two shapes.
If the photo shows food or drink:
{"foods": [{"name": str, "quantity": str, "calories": number, "protein": number, "carbs": number, "fat": number}],
 "total_calories": number, "total_protein": number, "total_carbs": number, "total_fat": number,
 "confidence": "low" | "medium" | "high", "description": str}
If there is no food or drink in the photo:
{"no_food": true, "error": "short reason"}
"""


class VisionClient(Protocol):
    def analyze(
        self,
        db: Session,
        user_id: int,
        image_bytes: bytes,
        content_type: str,
        context_hint: Optional[str] = None,
    ) -> dict[str, Any]:
        ...


def _as_float(value: Any) -> float:
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return 0.0


def normalize_analysis(raw: dict[str, Any]) -> dict[str, Any]:
    foods_raw = raw.get("foods") if isinstance(raw.get("foods"), list) else []
    foods = []
    for item in foods_raw:
        if not isinstance(item, dict) or not str(item.get("name") or "").strip():
            continue
        foods.append(
            {
                "name": str(item["name"]).strip()[:120],
                "quantity": str(item.get("quantity") or "1 serving").strip()[:80],
                "calories": _as_float(item.get("calories")),
                "protein": _as_float(item.get("protein")),
                "carbs": _as_float(item.get("carbs")),
                "fat": _as_float(item.get("fat")),
            }
        )
    if raw.get("no_food") or raw.get("noFood") or not foods:
        return {"no_food": True, "error": str(raw.get("error") or "No food detected in the photo.")[:220]}

    def total(name: str) -> float:
        given = raw.get(f"total_{name}")
        if given is not None:
            return _as_float(given)
        return round(sum(item[name] for item in foods), 1)

    confidence = str(raw.get("confidence") or "medium").lower()
    return {
        "foods": foods,
        "total_calories": total("calories"),
        "total_protein": total("protein"),
        "total_carbs": total("carbs"),
        "total_fat": total("fat"),
        "confidence": confidence if confidence in {"low", "medium", "high"} else "medium",
        "description": str(raw.get("description") or ", ".join(item["name"] for item in foods))[:512],
    }


def _prompt(context_hint: Optional[str]) -> str:
    prompt = VISION_PROMPT.strip()
    if context_hint:
        prompt += f"\nUser note about the photo: {context_hint.strip()[:300]}"
    return prompt


class RealVisionClient:
    def analyze(
        self,
        db: Session,
        user_id: int,
        image_bytes: bytes,
        content_type: str,
        context_hint: Optional[str] = None,
    ) -> dict[str, Any]:
        cfg = resolve_model_config(db, user_id)
        encoded = base64.b64encode(image_bytes).decode("ascii")
        if cfg.provider == "openai":
            data = post_with_retries(
                "openai",
                cfg.vision_model,
                f"{OPENAI_BASE_URL}/chat/completions",
                {
                    "model": cfg.vision_model,
                    "response_format": {"type": "json_object"},
                    "max_completion_tokens": LLM_MAX_TOKENS,
                    "messages": [
                        {
                            "role": "user",
                            "content": [
                                {"type": "text", "text": _prompt(context_hint)},
                                {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{encoded}"}},
                            ],
                        }
                    ],
                },
                headers={"Authorization": f"Bearer {cfg.api_key}"},
            )
            raw = str(((data.get("choices") or [{}])[0].get("message") or {}).get("content") or "")
            usage = data.get("usage", {}) or {}
            usage_tokens = {
                "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
                "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
                "total_tokens": int(usage.get("total_tokens", 0) or 0),
            }
        elif cfg.provider == "gemini":
            data = post_with_retries(
                "gemini",
                cfg.vision_model,
                f"{GEMINI_BASE_URL}/models/{cfg.vision_model}:generateContent",
                {
                    "generationConfig": {"responseMimeType": "application/json", "temperature": 0.2},
                    "contents": [
                        {
                            "parts": [
                                {"text": _prompt(context_hint)},
                                {"inline_data": {"mime_type": content_type, "data": encoded}},
                            ]
                        }
                    ],
                },
                headers={"x-goog-api-key": cfg.api_key},
            )
            parts = (((data.get("candidates") or [{}])[0].get("content") or {}).get("parts")) or [{}]
            raw = str(parts[0].get("text") or "")
            usage = data.get("usageMetadata", {}) or {}
            usage_tokens = {
                "prompt_tokens": int(usage.get("promptTokenCount", 0) or 0),
                "completion_tokens": int(usage.get("candidatesTokenCount", 0) or 0),
                "total_tokens": int(usage.get("totalTokenCount", 0) or 0),
            }
        else:
            raise ValueError("Unsupported AI provider")
        record_usage(db, user_id, cfg.provider, cfg.vision_model, usage_tokens)
        db.commit()
        try:
            return normalize_analysis(parse_llm_json(raw))
        except ValueError as exc:
            raise LLMRequestError(
                provider=cfg.provider,
                model=cfg.vision_model,
                message=f"Vision response was not JSON: {json.dumps(raw[:120])}",
            ) from exc


def get_vision_client() -> VisionClient:
    return RealVisionClient()
