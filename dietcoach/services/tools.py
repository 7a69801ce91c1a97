import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator
from sqlalchemy.orm import Session

from dietcoach.core.clock import detect_meal_type
from dietcoach.core.errors import OnboardingStepOutOfOrder, ToolExecutionError, ToolValidationError
from dietcoach.core.intents import ToolSelection
from dietcoach.db.models import DailyThread, Photo, PendingConfirmation, User
from dietcoach.services import confirmations, context_cache, embeddings, ledger, onboarding
from dietcoach.services.context_cache import CacheKey
from dietcoach.services.duplicate_guard import DuplicateGuard
from dietcoach.services.embeddings import EmbeddingClient
from dietcoach.services.llm import LLMRequestError, ToolInvocation
from dietcoach.services.vision import VisionClient

logger = logging.getLogger("uvicorn.error")


class MealType(str, Enum):
    breakfast = "breakfast"
    lunch = "lunch"
    dinner = "dinner"
    snack = "snack"


class Confidence(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class FoodItem(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    quantity: str = Field(default="1 serving", max_length=80)
    calories: float = Field(ge=0, le=5000)
    protein: float = Field(default=0, ge=0, le=500)
    carbs: float = Field(default=0, ge=0, le=1000)
    fat: float = Field(default=0, ge=0, le=500)


class FoodProposal(BaseModel):
    description: str = Field(min_length=1, max_length=512, description="Short summary of the meal.")
    items: list[FoodItem] = Field(min_length=1, max_length=30)
    total_calories: Optional[float] = Field(default=None, ge=0, le=20000)
    total_protein: Optional[float] = Field(default=None, ge=0)
    total_carbs: Optional[float] = Field(default=None, ge=0)
    total_fat: Optional[float] = Field(default=None, ge=0)
    meal_type: Optional[MealType] = Field(default=None, description="Omit to use the time of day.")
    confidence: Confidence = Confidence.medium

    @model_validator(mode="after")
    def fill_totals(self):
        if self.total_calories is None:
            self.total_calories = round(sum(item.calories for item in self.items), 1)
        if self.total_protein is None:
            self.total_protein = round(sum(item.protein for item in self.items), 1)
        if self.total_carbs is None:
            self.total_carbs = round(sum(item.carbs for item in self.items), 1)
        if self.total_fat is None:
            self.total_fat = round(sum(item.fat for item in self.items), 1)
        return self


class PhotoAnalysisArgs(BaseModel):
    meal_context: Optional[str] = Field(default=None, max_length=300, description="What the user said about the photo.")


class LogFoodArgs(BaseModel):
    """Accepted for schema completeness; the logged data always comes from the pending proposal."""

    confirmation_id: Optional[int] = None


class WeightEntry(BaseModel):
    weight: float = Field(gt=0, lt=700)
    unit: Literal["kg", "lbs"] = "kg"
    notes: Optional[str] = Field(default=None, max_length=512)


class ProgressArgs(BaseModel):
    pass


class SimilarMealsArgs(BaseModel):
    search_text: str = Field(min_length=1, max_length=300)
    limit: int = Field(default=3, ge=1, le=10)


class OnboardingAnswer(BaseModel):
    step: str = Field(min_length=1, max_length=32)
    value: str = Field(min_length=1, max_length=300)


class ConfirmFoodCall(BaseModel):
    id: str
    name: Literal["confirm_food"]
    args: FoodProposal


class AnalyzePhotoCall(BaseModel):
    id: str
    name: Literal["analyze_and_confirm_photo"]
    args: PhotoAnalysisArgs


class LogFoodCall(BaseModel):
    id: str
    name: Literal["log_food"]
    args: LogFoodArgs


class LogWeightCall(BaseModel):
    id: str
    name: Literal["log_weight"]
    args: WeightEntry


class ShowProgressCall(BaseModel):
    id: str
    name: Literal["show_progress"]
    args: ProgressArgs


class FindSimilarMealsCall(BaseModel):
    id: str
    name: Literal["find_similar_meals"]
    args: SimilarMealsArgs


class SaveOnboardingAnswerCall(BaseModel):
    id: str
    name: Literal["save_onboarding_answer"]
    args: OnboardingAnswer


ToolCall = Annotated[
    Union[
        ConfirmFoodCall,
        AnalyzePhotoCall,
        LogFoodCall,
        LogWeightCall,
        ShowProgressCall,
        FindSimilarMealsCall,
        SaveOnboardingAnswerCall,
    ],
    Field(discriminator="name"),
]
_TOOL_CALL_ADAPTER = TypeAdapter(ToolCall)


class ToolKind(str, Enum):
    proposal = "proposal"
    commit = "commit"
    read = "read"
    onboarding = "onboarding"


@dataclass
class ToolContext:
    db: Session
    user: User
    thread: DailyThread
    guard: DuplicateGuard
    vision_client: Optional[VisionClient] = None
    embedding_client: Optional[EmbeddingClient] = None
    image_ref: Optional[int] = None
    local_now: Optional[datetime] = None
    proposed_this_turn: set[int] = field(default_factory=set)


@dataclass
class ToolResult:
    call_id: str
    name: str
    kind: Optional[ToolKind]
    status: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.call_id,
            "name": self.name,
            "kind": self.kind.value if self.kind else None,
            "status": self.status,
            "result": self.payload,
        }
        if self.error:
            out["error"] = self.error
        return out

    def model_view(self) -> dict[str, Any]:
        if self.error:
            return {"status": self.status, "error": self.error}
        return {"status": self.status, **self.payload}


Handler = Callable[[Any, ToolContext], ToolResult]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    kind: ToolKind
    args_model: type[BaseModel]
    handler: Handler

    def schema(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.args_model.model_json_schema(),
        }


def _meal_type(ctx: ToolContext, proposal: FoodProposal) -> str:
    if proposal.meal_type is not None:
        return proposal.meal_type.value
    return detect_meal_type(ctx.local_now or datetime.now())


def _stage_proposal(
    ctx: ToolContext, call_id: str, name: str, proposal: FoodProposal, extra: Optional[dict[str, Any]] = None
) -> ToolResult:
    data = proposal.model_dump(mode="json")
    data["meal_type"] = _meal_type(ctx, proposal)
    data.update(extra or {})
    try:
        row = confirmations.save(
            ctx.db,
            thread_id=ctx.thread.thread_id,
            user_id=ctx.user.id,
            tool_call_id=call_id,
            data=data,
        )
        ctx.db.commit()
    except Exception as exc:
        ctx.db.rollback()
        raise ToolExecutionError(name, f"could not stage proposal: {exc}") from exc
    ctx.proposed_this_turn.add(row.id)
    return ToolResult(
        call_id=call_id,
        name=name,
        kind=ToolKind.proposal,
        status="proposed",
        payload={"confirmation_id": row.id, **data},
    )


def _confirm_food(call: ConfirmFoodCall, ctx: ToolContext) -> ToolResult:
    return _stage_proposal(ctx, call.id, call.name, call.args)


def _analyze_and_confirm_photo(call: AnalyzePhotoCall, ctx: ToolContext) -> ToolResult:
    if ctx.image_ref is None:
        raise ToolExecutionError(call.name, "no photo attached to this message")
    if ctx.vision_client is None:
        raise ToolExecutionError(call.name, "vision is not available")
    photo = (
        ctx.db.query(Photo)
        .filter(Photo.id == ctx.image_ref, Photo.user_id == ctx.user.id)
        .first()
    )
    if not photo:
        raise ToolExecutionError(call.name, f"photo {ctx.image_ref} not found")

    analysis = ctx.vision_client.analyze(
        ctx.db, ctx.user.id, photo.data, photo.content_type, call.args.meal_context
    )
    photo.analysis_json = json.dumps(analysis, ensure_ascii=True)
    if analysis.get("no_food"):
        ctx.db.commit()
        return ToolResult(
            call_id=call.id,
            name=call.name,
            kind=ToolKind.proposal,
            status="no_food",
            payload={"no_food_detected": True},
        )
    try:
        proposal = FoodProposal(
            description=call.args.meal_context or analysis.get("description") or "Meal from photo",
            items=analysis["foods"],
            total_calories=analysis.get("total_calories"),
            total_protein=analysis.get("total_protein"),
            total_carbs=analysis.get("total_carbs"),
            total_fat=analysis.get("total_fat"),
            confidence=analysis.get("confidence") or "medium",
        )
    except (KeyError, ValidationError) as exc:
        raise ToolExecutionError(call.name, f"vision result unusable: {exc}") from exc
    return _stage_proposal(ctx, call.id, call.name, proposal, {"source": "photo", "photo_id": photo.id})


def recently_logged(db: Session, thread_id: str, guard: DuplicateGuard) -> Optional[PendingConfirmation]:
    return confirmations.get_latest_confirmed(db, thread_id, within_seconds=max(60, int(guard.window_seconds)))


def already_logged_result(call_id: str, confirmation: PendingConfirmation) -> ToolResult:
    return ToolResult(
        call_id=call_id,
        name="log_food",
        kind=ToolKind.commit,
        status=ledger.STATUS_DUPLICATE,
        payload={"confirmation_id": confirmation.id, "reason": "already logged"},
    )


def _log_food(call: LogFoodCall, ctx: ToolContext) -> ToolResult:
    pending = confirmations.get_latest_pending(ctx.db, ctx.thread.thread_id)
    if pending is None:
        recent = recently_logged(ctx.db, ctx.thread.thread_id, ctx.guard)
        if recent is not None:
            return already_logged_result(call.id, recent)
        raise ToolExecutionError(call.name, "no pending food proposal to log; call confirm_food first")
    if pending.id in ctx.proposed_this_turn:
        raise ToolExecutionError(call.name, "the proposal was just created; wait for the user to confirm it")

    outcome = ledger.commit_food_confirmation(
        ctx.db,
        ctx.user.id,
        pending,
        guard=ctx.guard,
        embedding_client=ctx.embedding_client,
        today=ctx.local_now.date() if ctx.local_now else None,
    )
    return ToolResult(
        call_id=call.id,
        name=call.name,
        kind=ToolKind.commit,
        status=outcome.status,
        payload=outcome.to_payload(),
    )


def _log_weight(call: LogWeightCall, ctx: ToolContext) -> ToolResult:
    row, created = ledger.upsert_weight(
        ctx.db,
        ctx.user.id,
        weight=call.args.weight,
        unit=call.args.unit,
        notes=call.args.notes,
        today=ctx.local_now.date() if ctx.local_now else None,
    )
    return ToolResult(
        call_id=call.id,
        name=call.name,
        kind=ToolKind.commit,
        status=ledger.STATUS_COMMITTED,
        payload={
            "weight_log_id": row.id,
            "weight": row.weight,
            "unit": row.unit,
            "date": row.log_date.isoformat(),
            "replaced_existing": not created,
        },
    )


def _show_progress(call: ShowProgressCall, ctx: ToolContext) -> ToolResult:
    today = ctx.local_now.date() if ctx.local_now else None
    stats = context_cache.get(ctx.db, ctx.user.id, CacheKey.core_stats, today=today)
    return ToolResult(call_id=call.id, name=call.name, kind=ToolKind.read, status="ok", payload=stats)


def _find_similar_meals(call: FindSimilarMealsCall, ctx: ToolContext) -> ToolResult:
    if ctx.embedding_client is None:
        raise ToolExecutionError(call.name, "meal search is not available")
    try:
        vector = ctx.embedding_client.embed(ctx.db, ctx.user.id, call.args.search_text)
    except ValueError as exc:
        raise ToolExecutionError(call.name, f"could not embed search text: {exc}") from exc
    matches = embeddings.search_similar(ctx.db, ctx.user.id, vector, call.args.limit)
    return ToolResult(
        call_id=call.id,
        name=call.name,
        kind=ToolKind.read,
        status="ok",
        payload={"matches": matches, "count": len(matches)},
    )


def _save_onboarding_answer(call: SaveOnboardingAnswerCall, ctx: ToolContext) -> ToolResult:
    try:
        progress = onboarding.record_answer(ctx.db, ctx.user, call.args.step, call.args.value)
    except OnboardingStepOutOfOrder as exc:
        logger.warning(
            "onboarding_step_out_of_order user_id=%s current=%s attempted=%s",
            ctx.user.id,
            exc.current_step,
            exc.attempted_step,
        )
        return ToolResult(
            call_id=call.id,
            name=call.name,
            kind=ToolKind.onboarding,
            status="ignored",
            payload={"current_step": exc.current_step},
        )
    except ValueError as exc:
        raise ToolExecutionError(call.name, str(exc)) from exc
    ctx.db.commit()
    return ToolResult(
        call_id=call.id,
        name=call.name,
        kind=ToolKind.onboarding,
        status="saved",
        payload=onboarding.status(progress),
    )


TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="confirm_food",
            description=(
                "Propose a food log for the user to confirm. Use whenever the user says what they ate. "
                "Does not log anything."
            ),
            kind=ToolKind.proposal,
            args_model=FoodProposal,
            handler=_confirm_food,
        ),
        ToolSpec(
            name="analyze_and_confirm_photo",
            description=(
                "Analyze the attached meal photo and stage the result as a food proposal in one step. "
                "Returns no_food_detected when the photo has no food."
            ),
            kind=ToolKind.proposal,
            args_model=PhotoAnalysisArgs,
            handler=_analyze_and_confirm_photo,
        ),
        ToolSpec(
            name="log_food",
            description=(
                "Log the pending food proposal after the user confirmed it. "
                "The stored proposal is logged exactly as shown to the user."
            ),
            kind=ToolKind.commit,
            args_model=LogFoodArgs,
            handler=_log_food,
        ),
        ToolSpec(
            name="log_weight",
            description="Record the user's weight for today. Re-logging the same day replaces the value.",
            kind=ToolKind.commit,
            args_model=WeightEntry,
            handler=_log_weight,
        ),
        ToolSpec(
            name="show_progress",
            description="Get today's calories and macros consumed versus targets.",
            kind=ToolKind.read,
            args_model=ProgressArgs,
            handler=_show_progress,
        ),
        ToolSpec(
            name="find_similar_meals",
            description="Search the user's past meals that resemble a description.",
            kind=ToolKind.read,
            args_model=SimilarMealsArgs,
            handler=_find_similar_meals,
        ),
        ToolSpec(
            name="save_onboarding_answer",
            description="Save the user's answer for the current onboarding step.",
            kind=ToolKind.onboarding,
            args_model=OnboardingAnswer,
            handler=_save_onboarding_answer,
        ),
    )
}

FOOD_TOOLS = ("confirm_food", "log_food")


def build_tool_registry(selection: ToolSelection, *, has_image: bool = False) -> list[ToolSpec]:
    names: list[str] = []
    if selection.needs_food_tools or has_image:
        names.extend(FOOD_TOOLS)
    if has_image:
        names.append("analyze_and_confirm_photo")
    if selection.needs_weight_tool:
        names.append("log_weight")
    if selection.needs_progress_tool:
        names.append("show_progress")
    if selection.needs_search_tool:
        names.append("find_similar_meals")
    if selection.needs_onboarding_tool:
        names.append("save_onboarding_answer")
    return [TOOLS[name] for name in names]


def parse_tool_call(invocation: ToolInvocation, allowed: Optional[set[str]] = None):
    if invocation.name not in TOOLS:
        raise ToolValidationError(invocation.name, f"unknown tool {invocation.name!r}")
    if allowed is not None and invocation.name not in allowed:
        raise ToolValidationError(invocation.name, f"tool {invocation.name!r} was not offered this turn")
    try:
        return _TOOL_CALL_ADAPTER.validate_python(
            {"id": invocation.id, "name": invocation.name, "args": invocation.arguments}
        )
    except ValidationError as exc:
        raise ToolValidationError(invocation.name, f"invalid arguments: {exc.error_count()} error(s)") from exc


def dispatch(
    ctx: ToolContext,
    invocations: list[ToolInvocation],
    *,
    allowed: Optional[set[str]] = None,
) -> list[ToolResult]:
    results: list[ToolResult] = []
    for invocation in invocations:
        spec = TOOLS.get(invocation.name)
        kind = spec.kind if spec else None
        try:
            call = parse_tool_call(invocation, allowed)
        except ToolValidationError as exc:
            logger.warning(
                "tool_call_rejected user_id=%s thread_id=%s tool=%s detail=%s",
                ctx.user.id,
                ctx.thread.thread_id,
                invocation.name,
                str(exc),
            )
            results.append(
                ToolResult(call_id=invocation.id, name=invocation.name, kind=kind, status="rejected", error=str(exc))
            )
            continue
        try:
            results.append(spec.handler(call, ctx))
        except (ToolExecutionError, LLMRequestError) as exc:
            logger.exception(
                "tool_execution_failed user_id=%s thread_id=%s tool=%s detail=%s",
                ctx.user.id,
                ctx.thread.thread_id,
                invocation.name,
                str(exc),
            )
            results.append(
                ToolResult(
                    call_id=invocation.id,
                    name=invocation.name,
                    kind=kind,
                    status="failed",
                    error="tool failed" if isinstance(exc, LLMRequestError) else str(exc),
                )
            )
    return results
