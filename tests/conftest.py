import re
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from dietcoach.core.security import create_access_token, encrypt_api_key, get_password_hash
from dietcoach.db.models import OnboardingProgress, User, UserAIConfig, UserProfile, utcnow
from dietcoach.db.session import SessionLocal, configure_database, create_tables
from dietcoach.services.duplicate_guard import DuplicateGuard, get_duplicate_guard
from dietcoach.services.embeddings import get_embedding_client
from dietcoach.services.llm import LLMRequestError, LLMResult, ToolExchange, ToolInvocation, get_llm_client
from dietcoach.services.vision import get_vision_client, normalize_analysis

BANANA_PROPOSAL = {
    "description": "One medium banana",
    "items": [{"name": "banana", "quantity": "1 medium", "calories": 105, "protein": 1.3, "carbs": 27, "fat": 0.4}],
    "confidence": "high",
}


class FakeScenario(str, Enum):
    COACH = "COACH"
    FORGETFUL = "FORGETFUL"
    PROVIDER_DOWN = "PROVIDER_DOWN"
    AUTH_ERROR = "AUTH_ERROR"
    INVALID_TOOL_ARGS = "INVALID_TOOL_ARGS"


def _call(name: str, arguments: Optional[dict[str, Any]] = None) -> ToolInvocation:
    return ToolInvocation(id=f"call_{uuid4().hex[:10]}", name=name, arguments=arguments or {})


class FakeLLMClient:
    # Calls only tools offered for the turn. Follow-up rounds return follow_up_text.
    def __init__(self, scenario: FakeScenario = FakeScenario.COACH, script: Optional[list[LLMResult]] = None) -> None:
        self.scenario = scenario
        self.script = list(script or [])
        self.follow_up_text = ""
        self.calls: list[dict[str, Any]] = []

    def create_thread(self, db: Session, user_id: int) -> str:
        return f"thr_test_{uuid4().hex[:16]}"

    @property
    def first_round_calls(self) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["exchange"] is None]

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
        self.calls.append(
            {
                "thread_id": thread_id,
                "system_prompt": system_prompt,
                "user_message": user_message,
                "tools": [tool["name"] for tool in tools],
                "history": list(history or []),
                "exchange": exchange,
            }
        )
        if exchange is not None:
            return LLMResult(text=self.follow_up_text, thread_id=thread_id)
        if self.script:
            return self.script.pop(0)
        if self.scenario == FakeScenario.PROVIDER_DOWN:
            raise LLMRequestError(provider="openai", model="gpt-4.1-mini", message="upstream down", status_code=503)
        if self.scenario == FakeScenario.AUTH_ERROR:
            raise LLMRequestError(provider="openai", model="gpt-4.1-mini", message="bad key", status_code=401)
        return self._respond(thread_id, user_message, {tool["name"] for tool in tools})

    def _respond(self, thread_id: str, message: str, offered: set[str]) -> LLMResult:
        text = message.lower().strip()
        calls: list[ToolInvocation] = []
        if "analyze_and_confirm_photo" in offered:
            calls.append(_call("analyze_and_confirm_photo", {"meal_context": message or None}))
        elif text.startswith(("yes", "yep", "log it")):
            if self.scenario == FakeScenario.FORGETFUL:
                return LLMResult(text="Done, logged it for you!", thread_id=thread_id)
            if "log_food" in offered:
                calls.append(_call("log_food"))
        elif "banana" in text and "confirm_food" in offered:
            calls.append(_call("confirm_food", dict(BANANA_PROPOSAL)))
        elif "weigh" in text and "log_weight" in offered:
            if self.scenario == FakeScenario.INVALID_TOOL_ARGS:
                calls.append(_call("log_weight", {"weight": -5}))
            else:
                match = re.search(r"(\d+(?:\.\d+)?)", text)
                calls.append(_call("log_weight", {"weight": float(match.group(1)) if match else 80, "unit": "kg"}))
        elif "show_progress" in offered and ("what did i eat" in text or "how am i doing" in text):
            calls.append(_call("show_progress"))
        elif "find_similar_meals" in offered and "before" in text:
            calls.append(_call("find_similar_meals", {"search_text": message}))
        if calls:
            return LLMResult(text="", tool_calls=calls, thread_id=thread_id)
        return LLMResult(text="Happy to help with that.", thread_id=thread_id)


class FakeVisionClient:
    def __init__(self, raw: Optional[dict[str, Any]] = None) -> None:
        self.raw = raw if raw is not None else {
            "foods": [
                {"name": "grilled chicken", "quantity": "150 g", "calories": 248, "protein": 46, "carbs": 0, "fat": 5},
                {"name": "rice", "quantity": "1 cup", "calories": 206, "protein": 4, "carbs": 45, "fat": 0.4},
            ],
            "confidence": "medium",
            "description": "Chicken and rice",
        }
        self.calls: list[dict[str, Any]] = []

    def analyze(
        self,
        db: Session,
        user_id: int,
        image_bytes: bytes,
        content_type: str,
        context_hint: Optional[str] = None,
    ) -> dict[str, Any]:
        self.calls.append({"size": len(image_bytes), "content_type": content_type, "hint": context_hint})
        return normalize_analysis(self.raw)


class FakeEmbeddingClient:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    def embed(self, db: Session, user_id: int, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise LLMRequestError(provider="openai", model="text-embedding-3-small", message="embedding down")
        vector = [0.0] * 26
        for char in text.lower():
            if "a" <= char <= "z":
                vector[ord(char) - ord("a")] += 1.0
        return vector


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "dietcoach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from dietcoach.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(
        with_ai_config: bool = True,
        onboarded: bool = True,
        display_mode: str = "standard",
        timezone: Optional[str] = None,
    ) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=get_password_hash("StrongPass123"), display_name="Sam")
        db_session.add(user)
        db_session.flush()
        if with_ai_config:
            db_session.add(
                UserAIConfig(
                    user_id=user.id,
                    ai_provider="openai",
                    ai_model="gpt-4.1-mini",
                    encrypted_api_key=encrypt_api_key("sk-test-12345678"),
                )
            )
        if onboarded:
            db_session.add(
                UserProfile(
                    user_id=user.id,
                    name="Sam",
                    current_weight_kg=82.0,
                    target_weight_kg=75.0,
                    height_cm=178,
                    age=35,
                    gender="male",
                    activity_level="moderate",
                    goal="cut",
                    display_mode=display_mode,
                    timezone=timezone,
                    daily_calorie_target=2200,
                    protein_target=131,
                    carbs_target=250,
                    fat_target=61,
                )
            )
            db_session.add(
                OnboardingProgress(
                    user_id=user.id,
                    current_step="complete",
                    responses_json="{}",
                    completed=True,
                    completed_at=utcnow(),
                )
            )
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _headers


@pytest.fixture
def auth_token(client: TestClient) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    signup = client.post(
        "/auth/signup",
        json={
            "email": email,
            "password": password,
            "ai_config": {
                "ai_provider": "openai",
                "ai_model": "gpt-4.1-mini",
                "ai_api_key": "sk-test-12345678",
            },
        },
    )
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def guard() -> DuplicateGuard:
    return DuplicateGuard(window_seconds=30, rounding=10)


@pytest.fixture
def fake_llm_factory() -> Callable[..., FakeLLMClient]:
    def _factory(scenario: FakeScenario = FakeScenario.COACH, script: Optional[list[LLMResult]] = None) -> FakeLLMClient:
        return FakeLLMClient(scenario=scenario, script=script)

    return _factory


@pytest.fixture
def override_clients(app, fake_llm_factory, guard):
    def _override(
        scenario: FakeScenario = FakeScenario.COACH,
        vision: Optional[FakeVisionClient] = None,
        embedding: Optional[FakeEmbeddingClient] = None,
    ) -> dict[str, Any]:
        fakes = {
            "llm": fake_llm_factory(scenario),
            "vision": vision or FakeVisionClient(),
            "embedding": embedding or FakeEmbeddingClient(),
            "guard": guard,
        }
        app.dependency_overrides[get_llm_client] = lambda: fakes["llm"]
        app.dependency_overrides[get_vision_client] = lambda: fakes["vision"]
        app.dependency_overrides[get_embedding_client] = lambda: fakes["embedding"]
        app.dependency_overrides[get_duplicate_guard] = lambda: fakes["guard"]
        return fakes

    return _override
