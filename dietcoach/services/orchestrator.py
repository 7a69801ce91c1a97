import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.orm import Session

from dietcoach.core import clock
from dietcoach.core import onboarding as steps
from dietcoach.core.errors import (
    CONFIRMATION_FALLBACK_TEXT,
    DUPLICATE_LOG_TEXT,
    GENERIC_RETRY_TEXT,
    LLM_AUTH_TEXT,
    LLM_RATE_LIMITED_TEXT,
    LLM_UNAVAILABLE_TEXT,
    LOG_FAILED_TEXT,
    AuthenticationError,
    ConfirmationWithoutCommitError,
)
from dietcoach.core.instructions import PromptContext, TurnState, build_instructions
from dietcoach.core.intents import Classifier, Intent, ToolSelection, detect_intents, is_denial, select_tools
from dietcoach.db.models import OnboardingProgress, PendingConfirmation, User
from dietcoach.services import confirmations, context_cache, ledger, onboarding, threads
from dietcoach.services.context_cache import CacheKey
from dietcoach.services.duplicate_guard import DuplicateGuard, get_duplicate_guard
from dietcoach.services.embeddings import EmbeddingClient
from dietcoach.services.llm import LLMClient, LLMRequestError, ToolExchange
from dietcoach.services.tools import (
    ToolContext,
    ToolResult,
    already_logged_result,
    build_tool_registry,
    dispatch,
    recently_logged,
)
from dietcoach.services.vision import VisionClient

logger = logging.getLogger("uvicorn.error")

NO_FOOD_TEXT = "I couldn't spot any food in that photo. What did you have?"
ONBOARDING_SAVED_TEXT = "Got it, thanks!"


class TurnStage(str, Enum):
    received = "received"
    thread_resolved = "thread_resolved"
    context_loaded = "context_loaded"
    tools_selected = "tools_selected"
    instructions_built = "instructions_built"
    model_invoked = "model_invoked"
    tools_dispatched = "tools_dispatched"
    response_finalized = "response_finalized"


@dataclass
class TurnResult:
    text: str
    thread_id: Optional[str]
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    pending: Optional[dict[str, Any]] = None
    intents: list[str] = field(default_factory=list)
    stage: TurnStage = TurnStage.received
    failed: bool = False
    error_flag: Optional[str] = None


_locks: dict[int, threading.Lock] = {}
_locks_lock = threading.Lock()


def _user_lock(user_id: int) -> threading.Lock:
    with _locks_lock:
        lock = _locks.get(user_id)
        if lock is None:
            lock = threading.Lock()
            _locks[user_id] = lock
        return lock


def load_prompt_context(
    db: Session,
    user: User,
    progress: OnboardingProgress,
    local_dt: datetime,
) -> PromptContext:
    today = local_dt.date()

    def cached(key: CacheKey) -> dict[str, Any]:
        return context_cache.get(db, user.id, key, today=today)

    profile = cached(CacheKey.profile)
    return PromptContext(
        user_name=profile.get("name") or user.display_name,
        local_time=local_dt.strftime("%A %H:%M"),
        meal_type_hint=clock.detect_meal_type(local_dt),
        onboarding_complete=bool(progress.completed),
        onboarding_step=progress.current_step,
        onboarding_responses=onboarding.responses(progress),
        profile=profile,
        preferences=cached(CacheKey.preferences),
        core_stats=cached(CacheKey.core_stats),
        today_food_log=cached(CacheKey.today_food_log),
        weight_trend=cached(CacheKey.weight_trend),
        thread_context=cached(CacheKey.thread_context),
    )


def _llm_error_flag(exc: LLMRequestError) -> tuple[str, str]:
    if exc.status_code == 401:
        return "llm_auth_error", LLM_AUTH_TEXT
    if exc.status_code == 404:
        return "llm_model_not_found", LLM_UNAVAILABLE_TEXT
    if exc.status_code == 429:
        return "llm_rate_limited", LLM_RATE_LIMITED_TEXT
    if exc.status_code and exc.status_code >= 500:
        return "llm_provider_error", LLM_UNAVAILABLE_TEXT
    return "llm_unavailable", LLM_UNAVAILABLE_TEXT


def _fmt(value: Any) -> str:
    try:
        return f"{float(value):g}"
    except (TypeError, ValueError):
        return "?"


def _describe(result: ToolResult, stealth: bool) -> Optional[str]:
    payload = result.payload
    if result.status == "no_food":
        return NO_FOOD_TEXT
    if result.status == "proposed":
        names = ", ".join(item.get("name", "") for item in payload.get("items") or [])
        amount = "" if stealth else f", about {_fmt(payload.get('total_calories'))} kcal"
        return f"Here's what I have for {payload.get('meal_type')}: {names}{amount}. Should I log it?"
    if result.name == "log_food" and result.status == ledger.STATUS_COMMITTED:
        amount = "" if stealth else f" ({_fmt(payload.get('total_calories'))} kcal)"
        return f"Logged {payload.get('description')}{amount}."
    if result.name == "log_weight" and result.status == ledger.STATUS_COMMITTED:
        return f"Logged your weight: {_fmt(payload.get('weight'))} {payload.get('unit')}."
    if result.name == "show_progress" and result.status == "ok":
        if stealth:
            return f"You've logged {payload.get('meals_logged', 0)} meal(s) today."
        target = payload.get("calorie_target")
        line = f"Today so far: {_fmt(payload.get('calories_consumed'))} kcal"
        if target:
            line += f" of {_fmt(target)}"
        return line + f", {_fmt(payload.get('protein_consumed'))}g protein."
    if result.name == "find_similar_meals" and result.status == "ok":
        matches = payload.get("matches") or []
        if not matches:
            return "I couldn't find any similar meals in your log yet."
        listed = "; ".join(
            f"{match['record']['description']} on {match['record']['date']}" for match in matches
        )
        return f"Similar meals you've had: {listed}."
    if result.name == "save_onboarding_answer" and result.status == "saved":
        return ONBOARDING_SAVED_TEXT
    return None


def deterministic_reply(results: list[ToolResult], stealth: bool = False) -> str:
    parts = [text for text in (_describe(result, stealth) for result in results) if text]
    return " ".join(parts) if parts else GENERIC_RETRY_TEXT


def _safety_override(
    results: list[ToolResult],
    *,
    confirming: bool,
    pending_id: Optional[int],
    thread_id: str,
    user_id: int,
) -> Optional[str]:
    proposed = any(result.status == "proposed" for result in results)
    log_results = [
        result
        for result in results
        if result.name == "log_food" and not (proposed and result.status == "failed")
    ]
    if confirming and not log_results:
        exc = ConfirmationWithoutCommitError(thread_id, pending_id)
        logger.warning("confirmation_without_commit user_id=%s detail=%s", user_id, str(exc))
        return CONFIRMATION_FALLBACK_TEXT
    if any(result.status == ledger.STATUS_DUPLICATE for result in log_results):
        return DUPLICATE_LOG_TEXT
    if confirming and any(result.status in {"failed", "rejected"} for result in log_results):
        return LOG_FAILED_TEXT
    return None


def _mark_repeat_confirmation(results: list[ToolResult], recent: PendingConfirmation) -> list[ToolResult]:
    # The meal behind this "yes" is already in the ledger; any log_food outcome is a duplicate.
    marked = [
        already_logged_result(result.call_id, recent) if result.name == "log_food" else result
        for result in results
    ]
    if not any(result.name == "log_food" for result in marked):
        marked.append(already_logged_result(f"repeat_{recent.id}", recent))
    return marked


def _follow_up(
    db: Session,
    user: User,
    llm_client: LLMClient,
    *,
    thread_id: str,
    system_prompt: str,
    message: str,
    history: list[dict[str, str]],
    first_text: str,
    results: list[ToolResult],
    invocations,
) -> str:
    exchange = ToolExchange(
        assistant_text=first_text,
        calls=list(invocations),
        results={result.call_id: result.model_view() for result in results},
    )
    try:
        reply = llm_client.generate(
            db,
            user.id,
            thread_id=thread_id,
            system_prompt=system_prompt,
            user_message=message,
            tools=[],
            history=history,
            exchange=exchange,
        )
    except Exception as exc:
        db.rollback()
        logger.exception("turn_followup_failed user_id=%s thread_id=%s detail=%s", user.id, thread_id, str(exc))
        return ""
    return steps.strip_markers(reply.text or "")


def send_turn(
    db: Session,
    user: Optional[User],
    message: str,
    image_ref: Optional[int] = None,
    *,
    llm_client: LLMClient,
    vision_client: Optional[VisionClient] = None,
    embedding_client: Optional[EmbeddingClient] = None,
    classifier: Optional[Classifier] = None,
    guard: Optional[DuplicateGuard] = None,
    now: Optional[datetime] = None,
) -> TurnResult:
    if user is None:
        raise AuthenticationError("a signed-in user is required to chat")
    with _user_lock(user.id):
        return _run_turn(
            db,
            user,
            message or "",
            image_ref,
            llm_client=llm_client,
            vision_client=vision_client,
            embedding_client=embedding_client,
            classifier=classifier,
            guard=guard or get_duplicate_guard(),
            now=now,
        )


def _run_turn(
    db: Session,
    user: User,
    message: str,
    image_ref: Optional[int],
    *,
    llm_client: LLMClient,
    vision_client: Optional[VisionClient],
    embedding_client: Optional[EmbeddingClient],
    classifier: Optional[Classifier],
    guard: DuplicateGuard,
    now: Optional[datetime],
) -> TurnResult:
    stage = TurnStage.received
    thread_id: Optional[str] = None
    intents: set[Intent] = set()
    try:
        local_dt = clock.local_now(db, user.id, now)
        thread, _ = threads.get_or_create_daily_thread(
            db, user.id, llm_client, today=local_dt.date(), count_turn=False
        )
        thread_id = thread.thread_id
        stage = TurnStage.thread_resolved

        progress = onboarding.begin_turn(db, onboarding.get_or_create_progress(db, user.id))
        onboarding_done = bool(progress.completed)
        pending = confirmations.get_latest_pending(db, thread_id)
        context = load_prompt_context(db, user, progress, local_dt)
        history = threads.recent_history(db, thread_id)
        db.commit()
        stage = TurnStage.context_loaded

        intents = detect_intents(message, classifier)
        if image_ref is not None:
            intents.add(Intent.photo)
        denied = pending is not None and is_denial(message)
        if denied:
            confirmations.reject(db, pending.id)
            db.commit()
            logger.info("pending_confirmation_rejected user_id=%s thread_id=%s id=%s", user.id, thread_id, pending.id)
            pending = None
        confirming = Intent.confirmation in intents and pending is not None

        if onboarding_done:
            selection = select_tools(intents, pending is not None)
        else:
            selection = ToolSelection(needs_onboarding_tool=True)
        has_image = image_ref is not None and onboarding_done
        registry = build_tool_registry(selection, has_image=has_image)
        stage = TurnStage.tools_selected

        pending_view = confirmations.serialize(pending) if pending is not None else None
        system_prompt = build_instructions(
            context,
            pending_view,
            TurnState(intents=frozenset(intents), has_image=has_image, denied_pending=denied, selection=selection),
        )
        stage = TurnStage.instructions_built

        result = llm_client.generate(
            db,
            user.id,
            thread_id=thread_id,
            system_prompt=system_prompt,
            user_message=message,
            tools=[spec.schema() for spec in registry],
            history=history,
        )
        stage = TurnStage.model_invoked

        ctx = ToolContext(
            db=db,
            user=user,
            thread=thread,
            guard=guard,
            vision_client=vision_client,
            embedding_client=embedding_client,
            image_ref=image_ref,
            local_now=local_dt,
        )
        tool_results = dispatch(ctx, result.tool_calls, allowed={spec.name for spec in registry})
        if (
            Intent.confirmation in intents
            and pending is None
            and not denied
            and onboarding_done
            and not any(item.status == "proposed" for item in tool_results)
        ):
            recent = recently_logged(db, thread_id, guard)
            if recent is not None:
                logger.info(
                    "repeat_confirmation user_id=%s thread_id=%s confirmation_id=%s", user.id, thread_id, recent.id
                )
                tool_results = _mark_repeat_confirmation(tool_results, recent)
        stage = TurnStage.tools_dispatched

        text = result.text or ""
        if not onboarding_done:
            extractions = steps.parse_markers(text)
            if extractions:
                update = onboarding.apply_extractions(db, user, extractions)
                logger.info(
                    "onboarding_markers user_id=%s applied=%s ignored=%s",
                    user.id,
                    ",".join(update.applied),
                    ",".join(update.ignored),
                )
        text = steps.strip_markers(text)
        db.commit()

        override = _safety_override(
            tool_results,
            confirming=confirming,
            pending_id=pending.id if pending is not None else None,
            thread_id=thread_id,
            user_id=user.id,
        )
        stealth = context.preferences.get("display_mode") == "stealth"
        if override:
            text = override
        elif tool_results:
            follow_up = _follow_up(
                db,
                user,
                llm_client,
                thread_id=thread_id,
                system_prompt=system_prompt,
                message=message,
                history=history,
                first_text=text,
                results=tool_results,
                invocations=result.tool_calls,
            )
            log_failed = any(
                item.name == "log_food" and item.status in {"failed", "rejected"} for item in tool_results
            )
            text = follow_up or ("" if log_failed else text) or deterministic_reply(tool_results, stealth)
        if not text:
            text = GENERIC_RETRY_TEXT

        tool_calls = [item.to_dict() for item in tool_results]
        threads.persist_turn(
            db,
            user_id=user.id,
            thread=thread,
            user_text=message,
            assistant_text=text,
            tool_calls=tool_calls,
            image_ref=image_ref,
        )
        db.commit()
        stage = TurnStage.response_finalized

        latest: Optional[PendingConfirmation] = confirmations.get_latest_pending(db, thread_id)
        return TurnResult(
            text=text,
            thread_id=thread_id,
            tool_calls=tool_calls,
            pending=confirmations.serialize(latest) if latest is not None else None,
            intents=sorted(intent.value for intent in intents),
            stage=stage,
        )
    except LLMRequestError as exc:
        db.rollback()
        flag, text = _llm_error_flag(exc)
        logger.exception(
            "turn_llm_request_error stage=%s user_id=%s thread_id=%s intents=%s flag=%s detail=%s",
            stage.value,
            user.id,
            thread_id,
            ",".join(sorted(intent.value for intent in intents)),
            flag,
            str(exc),
        )
        return TurnResult(
            text=text,
            thread_id=thread_id,
            intents=sorted(intent.value for intent in intents),
            stage=stage,
            failed=True,
            error_flag=flag,
        )
    except Exception as exc:
        db.rollback()
        tool_name = getattr(exc, "tool_name", None)
        logger.exception(
            "turn_failed stage=%s user_id=%s thread_id=%s intents=%s tool=%s detail=%s",
            stage.value,
            user.id,
            thread_id,
            ",".join(sorted(intent.value for intent in intents)),
            tool_name,
            str(exc),
        )
        return TurnResult(
            text=GENERIC_RETRY_TEXT,
            thread_id=thread_id,
            intents=sorted(intent.value for intent in intents),
            stage=stage,
            failed=True,
            error_flag="turn_failed",
        )


def get_pending_confirmation(db: Session, user: User, thread_id: str) -> Optional[dict[str, Any]]:
    thread = threads.get_thread(db, user.id, thread_id)
    if thread is None:
        raise LookupError(f"thread {thread_id} not found")
    row = confirmations.get_latest_pending(db, thread.thread_id)
    return confirmations.serialize(row) if row is not None else None


def confirm_pending(
    db: Session,
    user: User,
    confirmation_id: int,
    *,
    guard: Optional[DuplicateGuard] = None,
    embedding_client: Optional[EmbeddingClient] = None,
) -> ledger.CommitOutcome:
    with _user_lock(user.id):
        row = confirmations.get_by_id(db, confirmation_id, user_id=user.id)
        if row is None:
            raise LookupError(f"confirmation {confirmation_id} not found")
        return ledger.commit_food_confirmation(
            db,
            user.id,
            row,
            guard=guard or get_duplicate_guard(),
            embedding_client=embedding_client,
        )


def reject_pending(db: Session, user: User, confirmation_id: int) -> PendingConfirmation:
    with _user_lock(user.id):
        row = confirmations.get_by_id(db, confirmation_id, user_id=user.id)
        if row is None:
            raise LookupError(f"confirmation {confirmation_id} not found")
        row = confirmations.reject(db, row.id)
        db.commit()
        return row
