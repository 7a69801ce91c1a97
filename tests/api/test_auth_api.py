from uuid import uuid4

from jose import jwt

from dietcoach.core.security import ALGORITHM, SECRET_KEY, TOKEN_AUDIENCE, create_access_token, decode_access_token


def test_signup_login_and_duplicate_email(client) -> None:
    email = f"dana_{uuid4().hex[:8]}@test.com"
    password = "StrongPass123"

    signup = client.post("/auth/signup", json={"email": email, "password": password, "display_name": "Dana"})
    assert signup.status_code == 201
    assert signup.json()["token_type"] == "bearer"

    again = client.post("/auth/signup", json={"email": email.upper(), "password": password})
    assert again.status_code == 409

    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    assert login.json()["access_token"]


def test_login_with_wrong_password_is_rejected(client) -> None:
    email = f"wrong_{uuid4().hex[:8]}@test.com"
    client.post("/auth/signup", json={"email": email, "password": "StrongPass123"})
    login = client.post("/auth/login", data={"username": email, "password": "not-the-password"})
    assert login.status_code == 401


def test_ai_config_roundtrip_never_returns_key(client, auth_token) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}

    put = client.put(
        "/auth/ai-config",
        headers=headers,
        json={"ai_provider": "gemini", "ai_api_key": "gm-test-abcdefgh1234"},
    )
    assert put.status_code == 200
    body = put.json()
    assert body["ai_provider"] == "gemini"
    assert body["ai_model"] == "gemini-2.0-flash"
    assert body["ai_embedding_model"] == "text-embedding-004"
    assert body["api_key_masked"] == "gm-t...1234"

    current = client.get("/auth/ai-config", headers=headers)
    assert current.status_code == 200
    assert "1234" not in current.json()["api_key_masked"]

    revoke = client.delete("/auth/ai-config", headers=headers)
    assert revoke.status_code == 204
    assert client.get("/auth/ai-config", headers=headers).status_code == 404


def test_unknown_provider_is_rejected(client, auth_token) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}
    response = client.put(
        "/auth/ai-config", headers=headers, json={"ai_provider": "acme", "ai_api_key": "sk-test-12345678"}
    )
    assert response.status_code == 422


def test_chat_requires_valid_token(client) -> None:
    assert client.post("/chat/turn", json={"message": "hi"}).status_code == 401
    bad = client.post("/chat/turn", headers={"Authorization": "Bearer not-a-jwt"}, json={"message": "hi"})
    assert bad.status_code == 401


def test_token_for_another_audience_is_rejected(client, create_user) -> None:
    user = create_user()
    foreign = jwt.encode({"sub": str(user.id), "aud": "billing"}, SECRET_KEY, algorithm=ALGORITHM)
    response = client.get("/auth/ai-config", headers={"Authorization": f"Bearer {foreign}"})
    assert response.status_code == 401


def test_token_subject_must_be_a_user_id(client) -> None:
    token = jwt.encode({"sub": "sam@example.com", "aud": TOKEN_AUDIENCE}, SECRET_KEY, algorithm=ALGORITHM)
    response = client.get("/auth/ai-config", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_issued_token_resolves_to_user(create_user) -> None:
    user = create_user()
    assert decode_access_token(create_access_token(user.id)) == user.id
