import json
import logging
import os
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from dietcoach.api.auth import get_current_user
from dietcoach.core.errors import ToolExecutionError
from dietcoach.core.intents import Classifier, get_classifier
from dietcoach.db.models import ChatMessage, DailyThread, Photo, User
from dietcoach.db.session import get_db
from dietcoach.services import context_cache, orchestrator, threads
from dietcoach.services.context_cache import CacheEvent, CacheKey
from dietcoach.services.duplicate_guard import DuplicateGuard, get_duplicate_guard
from dietcoach.services.embeddings import EmbeddingClient, get_embedding_client
from dietcoach.services.llm import LLMClient, get_llm_client
from dietcoach.services.vision import VisionClient, get_vision_client

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/chat", tags=["chat"])

CHAT_IMAGE_MAX_BYTES = int(os.getenv("CHAT_IMAGE_MAX_BYTES", str(8 * 1024 * 1024)))


class TurnRequest(BaseModel):
    message: str = Field(default="", max_length=4000)
    image_ref: Optional[int] = None


class TurnResponse(BaseModel):
    text: str
    thread_id: Optional[str] = None
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    pending_confirmation: Optional[dict[str, Any]] = None
    intents: list[str] = Field(default_factory=list)
    failed: bool = False
    error_flag: Optional[str] = None


class PhotoResponse(BaseModel):
    image_ref: int
    content_type: str
    size_bytes: int


class ThreadItem(BaseModel):
    thread_id: str
    title: str
    created_date: str
    message_count: int
    last_message_at: str


class ThreadListResponse(BaseModel):
    items: list[ThreadItem]


class MessageItem(BaseModel):
    id: int
    role: str
    content: str
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    image_ref: Optional[int] = None
    created_at: str


class ThreadMessagesResponse(BaseModel):
    thread_id: str
    title: str
    messages: list[MessageItem]


class PendingResponse(BaseModel):
    pending_confirmation: Optional[dict[str, Any]] = None


class ConfirmResponse(BaseModel):
    status: str
    confirmation_id: int
    food_log_id: Optional[int] = None
    total_calories: Optional[float] = None
    reason: Optional[str] = None


class RejectResponse(BaseModel):
    confirmation_id: int
    status: str


class InvalidateRequest(BaseModel):
    event: Optional[CacheEvent] = None
    key: Optional[CacheKey] = None

    @model_validator(mode="after")
    def validate_target(self):
        if self.event is None and self.key is None:
            raise ValueError("Provide event or key")
        return self


class InvalidateResponse(BaseModel):
    invalidated: list[str]


def _thread_item(thread: DailyThread) -> ThreadItem:
    return ThreadItem(
        thread_id=thread.thread_id,
        title=thread.title,
        created_date=thread.created_date.isoformat(),
        message_count=thread.message_count,
        last_message_at=thread.last_message_at.isoformat(),
    )


def _require_thread(db: Session, user: User, thread_id: str) -> DailyThread:
    thread = threads.get_thread(db, user.id, thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="Chat thread not found")
    return thread


@router.post("/turn", response_model=TurnResponse)
def send_turn(
    payload: TurnRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
    vision_client: VisionClient = Depends(get_vision_client),
    embedding_client: EmbeddingClient = Depends(get_embedding_client),
    guard: DuplicateGuard = Depends(get_duplicate_guard),
    classifier: Classifier = Depends(get_classifier),
) -> TurnResponse:
    if not payload.message.strip() and payload.image_ref is None:
        raise HTTPException(status_code=400, detail="Send a message or a photo.")
    if payload.image_ref is not None:
        owned = db.query(Photo.id).filter(Photo.id == payload.image_ref, Photo.user_id == user.id).first()
        if not owned:
            raise HTTPException(status_code=404, detail="Photo not found")

    result = orchestrator.send_turn(
        db,
        user,
        payload.message.strip(),
        payload.image_ref,
        llm_client=llm_client,
        vision_client=vision_client,
        embedding_client=embedding_client,
        classifier=classifier,
        guard=guard,
    )
    return TurnResponse(
        text=result.text,
        thread_id=result.thread_id,
        tool_calls=result.tool_calls,
        pending_confirmation=result.pending,
        intents=result.intents,
        failed=result.failed,
        error_flag=result.error_flag,
    )


@router.post("/photos", response_model=PhotoResponse, status_code=status.HTTP_201_CREATED)
def upload_photo(
    image: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> PhotoResponse:
    if not image.content_type or not image.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image uploads are supported.")
    image_bytes = image.file.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Uploaded image is empty.")
    if len(image_bytes) > CHAT_IMAGE_MAX_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"Image too large. Max size is {CHAT_IMAGE_MAX_BYTES // (1024 * 1024)}MB.",
        )
    photo = Photo(user_id=user.id, content_type=image.content_type, data=image_bytes)
    db.add(photo)
    db.commit()
    db.refresh(photo)
    return PhotoResponse(image_ref=photo.id, content_type=photo.content_type, size_bytes=len(image_bytes))


@router.post("/threads", response_model=ThreadItem, status_code=status.HTTP_201_CREATED)
def create_thread(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
) -> ThreadItem:
    thread = threads.start_new_thread(db, user.id, llm_client)
    db.commit()
    db.refresh(thread)
    return _thread_item(thread)


@router.get("/threads", response_model=ThreadListResponse)
def list_threads(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ThreadListResponse:
    rows = (
        db.query(DailyThread)
        .filter(DailyThread.user_id == user.id)
        .order_by(DailyThread.last_message_at.desc(), DailyThread.id.desc())
        .all()
    )
    return ThreadListResponse(items=[_thread_item(row) for row in rows])


@router.get("/threads/{thread_id}/messages", response_model=ThreadMessagesResponse)
def get_thread_messages(
    thread_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ThreadMessagesResponse:
    thread = _require_thread(db, user, thread_id)
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread.thread_id, ChatMessage.user_id == user.id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .all()
    )
    messages = [
        MessageItem(
            id=row.id,
            role=row.role,
            content=row.content,
            tool_calls=json.loads(row.tool_calls_json) if row.tool_calls_json else [],
            image_ref=row.image_ref,
            created_at=row.created_at.isoformat(),
        )
        for row in rows
    ]
    return ThreadMessagesResponse(thread_id=thread.thread_id, title=thread.title, messages=messages)


@router.get("/threads/{thread_id}/pending", response_model=PendingResponse)
def get_pending(
    thread_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> PendingResponse:
    try:
        pending = orchestrator.get_pending_confirmation(db, user, thread_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Chat thread not found")
    return PendingResponse(pending_confirmation=pending)


@router.post("/confirmations/{confirmation_id}/confirm", response_model=ConfirmResponse)
def confirm_pending(
    confirmation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    guard: DuplicateGuard = Depends(get_duplicate_guard),
    embedding_client: EmbeddingClient = Depends(get_embedding_client),
) -> ConfirmResponse:
    try:
        outcome = orchestrator.confirm_pending(
            db, user, confirmation_id, guard=guard, embedding_client=embedding_client
        )
    except LookupError:
        raise HTTPException(status_code=404, detail="Confirmation not found")
    except ToolExecutionError as exc:
        logger.exception("confirmation_commit_failed user_id=%s confirmation_id=%s", user.id, confirmation_id)
        raise HTTPException(status_code=503, detail="Could not log the meal right now. Please retry.") from exc
    return ConfirmResponse(
        status=outcome.status,
        confirmation_id=outcome.confirmation_id,
        food_log_id=outcome.food_log.id if outcome.food_log is not None else None,
        total_calories=outcome.food_log.total_calories if outcome.food_log is not None else None,
        reason=outcome.reason,
    )


@router.post("/confirmations/{confirmation_id}/reject", response_model=RejectResponse)
def reject_pending(
    confirmation_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> RejectResponse:
    try:
        row = orchestrator.reject_pending(db, user, confirmation_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Confirmation not found")
    return RejectResponse(confirmation_id=row.id, status=row.status)


@router.post("/context/invalidate", response_model=InvalidateResponse)
def invalidate_context(
    payload: InvalidateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> InvalidateResponse:
    invalidated: list[str] = []
    if payload.event is not None:
        invalidated.extend(context_cache.invalidate(db, user.id, payload.event))
    if payload.key is not None and context_cache.invalidate_key(db, user.id, payload.key):
        invalidated.append(payload.key.value)
    db.commit()
    return InvalidateResponse(invalidated=sorted(set(invalidated)))
