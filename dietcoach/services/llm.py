import json
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Tuple

import httpx
from sqlalchemy.orm import Session

from dietcoach.core.security import decrypt_api_key
from dietcoach.db.models import ModelUsageStat, UserAIConfig

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "1"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "900"))

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_MODELS: dict[str, dict[str, str]] = {
    "openai": {"chat": "gpt-4.1-mini", "vision": "gpt-4.1-mini", "embedding": "text-embedding-3-small"},
    "gemini": {"chat": "gemini-2.0-flash", "vision": "gemini-2.0-flash", "embedding": "text-embedding-004"},
}


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


class LLMRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


@dataclass(frozen=True)
class ModelConfig:
    provider: str
    chat_model: str
    vision_model: str
    embedding_model: str
    api_key: str


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class LLMResult:
    text: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    thread_id: Optional[str] = None
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolExchange:
    assistant_text: str
    calls: list[ToolInvocation]
    results: dict[str, dict[str, Any]]


def resolve_model_config(db: Session, user_id: int) -> ModelConfig:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if cfg:
        defaults = DEFAULT_MODELS.get(cfg.ai_provider, DEFAULT_MODELS["openai"])
        return ModelConfig(
            provider=cfg.ai_provider,
            chat_model=cfg.ai_model,
            vision_model=cfg.ai_vision_model or cfg.ai_model,
            embedding_model=cfg.ai_embedding_model or defaults["embedding"],
            api_key=decrypt_api_key(cfg.encrypted_api_key),
        )

    provider = os.getenv("DEFAULT_AI_PROVIDER", "openai").strip().lower()
    defaults = DEFAULT_MODELS.get(provider)
    if provider == "openai":
        key = os.getenv("OPENAI_API_KEY", "")
    elif provider == "gemini":
        key = os.getenv("GEMINI_API_KEY", "")
    else:
        key = ""
    if not defaults or not key:
        raise ValueError("AI config missing")
    chat_model = os.getenv("DEFAULT_CHAT_MODEL", "").strip() or defaults["chat"]
    return ModelConfig(
        provider=provider,
        chat_model=chat_model,
        vision_model=os.getenv("DEFAULT_VISION_MODEL", "").strip() or chat_model,
        embedding_model=os.getenv("DEFAULT_EMBEDDING_MODEL", "").strip() or defaults["embedding"],
        api_key=key,
    )


def post_with_retries(
    provider: str,
    model: str,
    url: str,
    payload: dict[str, Any],
    headers: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    attempts = max(1, LLM_RETRY_COUNT + 1)
    last_error = "unknown error"
    label = provider.capitalize() if provider != "openai" else "OpenAI"
    for idx in range(attempts):
        try:
            response = httpx.post(
                url,
                headers={"Content-Type": "application/json", **(headers or {})},
                json=payload,
                timeout=_http_timeout(),
            )
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("provider returned a non-object body")
            return data
        except httpx.ReadTimeout as exc:
            last_error = "read timeout"
            if idx < attempts - 1:
                time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                continue
            raise LLMRequestError(
                provider=provider,
                model=model,
                message=f"{label} request timed out while waiting for response.",
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else None
            detail = ""
            if exc.response is not None:
                detail = (exc.response.text or "").strip()[:220]
            if status in {429, 500, 502, 503} and idx < attempts - 1:
                time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                continue
            raise LLMRequestError(
                provider=provider,
                model=model,
                status_code=status,
                message=f"{label} request failed (status={status}): {detail or 'no response body'}",
            ) from exc
        except Exception as exc:
            last_error = str(exc)[:220]
            if idx < attempts - 1:
                time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                continue
            raise LLMRequestError(
                provider=provider,
                model=model,
                message=f"{label} request failed: {last_error}",
            ) from exc
    raise LLMRequestError(provider=provider, model=model, message=f"{label} request failed: {last_error}")


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        return parse_llm_json(str(raw))
    except ValueError:
        # Left unparsed so schema validation rejects the call instead of guessing.
        return {"_unparsed": str(raw)[:500]}


def _openai_usage(data: dict[str, Any]) -> dict[str, int]:
    usage = data.get("usage", {}) or {}
    return {
        "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
        "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
        "total_tokens": int(usage.get("total_tokens", 0) or 0),
    }


def _openai_messages(
    system_prompt: str,
    history: list[dict[str, str]],
    user_message: str,
    exchange: Optional[ToolExchange],
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": item["role"], "content": item["content"]} for item in history)
    messages.append({"role": "user", "content": user_message})
    if exchange:
        messages.append(
            {
                "role": "assistant",
                "content": exchange.assistant_text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in exchange.calls
                ],
            }
        )
        for call in exchange.calls:
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(exchange.results.get(call.id, {}), ensure_ascii=True),
                }
            )
    return messages


def _openai_generate(
    model: str,
    api_key: str,
    system_prompt: str,
    history: list[dict[str, str]],
    user_message: str,
    tools: list[dict[str, Any]],
    exchange: Optional[ToolExchange],
) -> Tuple[str, list[ToolInvocation], dict[str, int]]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": _openai_messages(system_prompt, history, user_message, exchange),
        "max_completion_tokens": LLM_MAX_TOKENS,
    }
    if tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["parameters"],
                },
            }
            for tool in tools
        ]
        payload["tool_choice"] = "auto"
    # GPT-5 family may consume all tokens on reasoning unless explicitly lowered.
    if model.startswith("gpt-5"):
        payload["reasoning_effort"] = "low"
    data = post_with_retries(
        "openai",
        model,
        f"{OPENAI_BASE_URL}/chat/completions",
        payload,
        headers={"Authorization": f"Bearer {api_key}"},
    )
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise LLMRequestError(provider="openai", model=model, message="OpenAI response had no choices") from exc
    calls = [
        ToolInvocation(
            id=str(item.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
            name=str((item.get("function") or {}).get("name", "")),
            arguments=_parse_arguments((item.get("function") or {}).get("arguments")),
        )
        for item in message.get("tool_calls") or []
    ]
    return str(message.get("content") or "").strip(), calls, _openai_usage(data)


def gemini_schema(schema: dict[str, Any], defs: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    defs = schema.get("$defs", defs or {})
    if "$ref" in schema:
        return gemini_schema(defs[schema["$ref"].split("/")[-1]], defs)
    if "anyOf" in schema:
        options = [item for item in schema["anyOf"] if item.get("type") != "null"]
        reduced = gemini_schema(options[0], defs) if options else {"type": "string"}
        if len(options) < len(schema["anyOf"]):
            reduced["nullable"] = True
        if "description" in schema:
            reduced["description"] = schema["description"]
        return reduced
    out: dict[str, Any] = {}
    for key in ("type", "description", "enum", "format", "required"):
        if key in schema:
            out[key] = schema[key]
    if "properties" in schema:
        out["properties"] = {name: gemini_schema(value, defs) for name, value in schema["properties"].items()}
    if "items" in schema:
        out["items"] = gemini_schema(schema["items"], defs)
    if "type" not in out:
        out["type"] = "object" if "properties" in out else "string"
    return out


def _gemini_generate(
    model: str,
    api_key: str,
    system_prompt: str,
    history: list[dict[str, str]],
    user_message: str,
    tools: list[dict[str, Any]],
    exchange: Optional[ToolExchange],
) -> Tuple[str, list[ToolInvocation], dict[str, int]]:
    contents: list[dict[str, Any]] = [
        {"role": "model" if item["role"] == "assistant" else "user", "parts": [{"text": item["content"]}]}
        for item in history
    ]
    contents.append({"role": "user", "parts": [{"text": user_message}]})
    if exchange:
        contents.append(
            {
                "role": "model",
                "parts": [{"functionCall": {"name": call.name, "args": call.arguments}} for call in exchange.calls],
            }
        )
        contents.append(
            {
                "role": "user",
                "parts": [
                    {"functionResponse": {"name": call.name, "response": exchange.results.get(call.id, {})}}
                    for call in exchange.calls
                ],
            }
        )
    payload: dict[str, Any] = {
        "systemInstruction": {"parts": [{"text": system_prompt}]},
        "contents": contents,
        "generationConfig": {"temperature": 0.3, "maxOutputTokens": LLM_MAX_TOKENS},
    }
    if tools:
        payload["tools"] = [
            {
                "functionDeclarations": [
                    {
                        "name": tool["name"],
                        "description": tool["description"],
                        "parameters": gemini_schema(tool["parameters"]),
                    }
                    for tool in tools
                ]
            }
        ]
    data = post_with_retries(
        "gemini",
        model,
        f"{GEMINI_BASE_URL}/models/{model}:generateContent",
        payload,
        headers={"x-goog-api-key": api_key},
    )
    parts = (((data.get("candidates") or [{}])[0].get("content") or {}).get("parts")) or []
    texts: list[str] = []
    calls: list[ToolInvocation] = []
    for part in parts:
        if "text" in part:
            texts.append(str(part["text"]))
        call = part.get("functionCall")
        if call:
            calls.append(
                ToolInvocation(
                    id=f"call_{uuid.uuid4().hex[:12]}",
                    name=str(call.get("name", "")),
                    arguments=_parse_arguments(call.get("args")),
                )
            )
    usage = data.get("usageMetadata", {}) or {}
    prompt_tokens = int(usage.get("promptTokenCount", 0) or 0)
    completion_tokens = int(usage.get("candidatesTokenCount", 0) or 0)
    usage_tokens = {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": int(usage.get("totalTokenCount", prompt_tokens + completion_tokens) or 0),
    }
    return "".join(texts).strip(), calls, usage_tokens


def record_usage(
    db: Session, user_id: int, provider: str, model: str, usage_tokens: dict[str, int]
) -> None:
    prompt_tokens = max(0, int(usage_tokens.get("prompt_tokens", 0) or 0))
    completion_tokens = max(0, int(usage_tokens.get("completion_tokens", 0) or 0))
    total_tokens = max(0, int(usage_tokens.get("total_tokens", prompt_tokens + completion_tokens) or 0))
    row = (
        db.query(ModelUsageStat)
        .filter(
            ModelUsageStat.user_id == user_id,
            ModelUsageStat.provider == provider,
            ModelUsageStat.model == model,
        )
        .first()
    )
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    if not row:
        row = ModelUsageStat(
            user_id=user_id,
            provider=provider,
            model=model,
            request_count=0,
            prompt_tokens=0,
            completion_tokens=0,
            total_tokens=0,
            last_used_at=now,
        )
        db.add(row)
    row.request_count += 1
    row.prompt_tokens += prompt_tokens
    row.completion_tokens += completion_tokens
    row.total_tokens += total_tokens
    row.last_used_at = now


class LLMClient(Protocol):
    def create_thread(self, db: Session, user_id: int) -> str:
        ...

    def generate(
        self,
        db: Session,
        user_id: int,
        *,
        thread_id: str,
        system_prompt: str,
        user_message: str,
        tools: list[dict[str, Any]],
        history: Optional[list[dict[str, str]]] = None,
        exchange: Optional[ToolExchange] = None,
    ) -> LLMResult:
        ...


class RealLLMClient:
    def create_thread(self, db: Session, user_id: int) -> str:
        # Chat completions are stateless; the thread is our own id and history is replayed.
        return f"thr_{uuid.uuid4().hex}"

    def generate(
        self,
        db: Session,
        user_id: int,
        *,
        thread_id: str,
        system_prompt: str,
        user_message: str,
        tools: list[dict[str, Any]],
        history: Optional[list[dict[str, str]]] = None,
        exchange: Optional[ToolExchange] = None,
    ) -> LLMResult:
        cfg = resolve_model_config(db, user_id)
        if cfg.provider == "openai":
            text, calls, usage_tokens = _openai_generate(
                cfg.chat_model, cfg.api_key, system_prompt, history or [], user_message, tools, exchange
            )
        elif cfg.provider == "gemini":
            text, calls, usage_tokens = _gemini_generate(
                cfg.chat_model, cfg.api_key, system_prompt, history or [], user_message, tools, exchange
            )
        else:
            raise ValueError("Unsupported AI provider")
        record_usage(db, user_id, cfg.provider, cfg.chat_model, usage_tokens)
        db.commit()
        return LLMResult(text=text, tool_calls=calls, thread_id=thread_id, usage=usage_tokens)


def get_llm_client() -> LLMClient:
    return RealLLMClient()
