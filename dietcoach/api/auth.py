import logging
from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from dietcoach.core.security import (
    create_access_token,
    decode_access_token,
    encrypt_api_key,
    get_password_hash,
    mask_api_key,
    verify_password,
)
from dietcoach.db.models import User, UserAIConfig
from dietcoach.db.session import get_db
from dietcoach.services.llm import DEFAULT_MODELS

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class AIProvider(str, Enum):
    openai = "openai"
    gemini = "gemini"


class AIConfigInput(BaseModel):
    ai_provider: AIProvider
    ai_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_vision_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_embedding_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_api_key: str = Field(min_length=8, max_length=512)


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    ai_config: Optional[AIConfigInput] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AIConfigResponse(BaseModel):
    ai_provider: AIProvider
    ai_model: str
    ai_vision_model: str
    ai_embedding_model: str
    api_key_masked: str
    configured: bool = True


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _upsert_ai_config(db: Session, user_id: int, ai: AIConfigInput) -> UserAIConfig:
    defaults = DEFAULT_MODELS[ai.ai_provider.value]
    chat_model = (ai.ai_model or defaults["chat"]).strip()
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if cfg is None:
        cfg = UserAIConfig(user_id=user_id)
        db.add(cfg)
    cfg.ai_provider = ai.ai_provider.value
    cfg.ai_model = chat_model
    cfg.ai_vision_model = (ai.ai_vision_model or chat_model).strip()
    cfg.ai_embedding_model = (ai.ai_embedding_model or defaults["embedding"]).strip()
    cfg.encrypted_api_key = encrypt_api_key(ai.ai_api_key)
    return cfg


def _config_response(cfg: UserAIConfig, masked: str) -> AIConfigResponse:
    defaults = DEFAULT_MODELS.get(cfg.ai_provider, DEFAULT_MODELS["openai"])
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        ai_vision_model=cfg.ai_vision_model or cfg.ai_model,
        ai_embedding_model=cfg.ai_embedding_model or defaults["embedding"],
        api_key_masked=masked,
    )


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> User:
    try:
        user_id = decode_access_token(token)
    except JWTError:
        raise _bad_credentials()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise _bad_credentials()
    return user


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)) -> TokenResponse:
    existing = db.query(User).filter(User.email == payload.email.lower()).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        email=payload.email.lower(),
        password_hash=get_password_hash(payload.password),
        display_name=payload.display_name,
    )
    db.add(user)
    db.flush()

    if payload.ai_config:
        _upsert_ai_config(db, user.id, payload.ai_config)

    db.commit()
    logger.info("user_signed_up user_id=%s ai_config=%s", user.id, bool(payload.ai_config))

    token = create_access_token(user.id)
    return TokenResponse(access_token=token)


@router.post("/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username.lower()).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise _bad_credentials()

    token = create_access_token(user.id)
    return TokenResponse(access_token=token)


@router.put("/ai-config", response_model=AIConfigResponse)
def set_ai_config(
    payload: AIConfigInput,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AIConfigResponse:
    cfg = _upsert_ai_config(db, user.id, payload)
    db.commit()
    return _config_response(cfg, mask_api_key(payload.ai_api_key))


@router.get("/ai-config", response_model=AIConfigResponse)
def get_ai_config(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> AIConfigResponse:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    # The stored key is never echoed back, not even partially.
    return _config_response(cfg, "****...****" if cfg.encrypted_api_key else "configured")


@router.delete("/ai-config", status_code=status.HTTP_204_NO_CONTENT)
def revoke_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> None:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    db.delete(cfg)
    db.commit()
