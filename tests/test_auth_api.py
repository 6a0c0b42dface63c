from __future__ import annotations

import inspect
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesforce_pro.auth.models import User
from salesforce_pro.core.auth import ROLE_DIRETOR, get_current_user
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.database import Base, get_db
from salesforce_pro.core.rbac import require_roles
from salesforce_pro.core.security import hash_password
from salesforce_pro.main import app
from salesforce_pro.middleware.rate_limit import reset_rate_limiter

PASSWORD = "123456"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    password_hash = hash_password(PASSWORD)
    accounts = {
        "diretor": User(name="Diretor Comercial", email="diretor@empresa.com", role="diretor", region="Nacional"),
        "gerente": User(name="Gerente Regional", email="gerente@empresa.com", role="gerente", region="Sudeste"),
        "vendedor": User(name="Vendedor 1", email="vendedor1@empresa.com", role="vendedor", region="Centro-Oeste"),
        "inativo": User(
            name="Vendedor Inativo",
            email="inativo@empresa.com",
            role="vendedor",
            region="Sul",
            is_active=False,
        ),
    }
    for account in accounts.values():
        account.password_hash = password_hash
    db_session.add_all(accounts.values())
    db_session.commit()
    for account in accounts.values():
        db_session.refresh(account)
    return accounts


@pytest.fixture()
def client(db_session: Session, users: dict[str, User]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _login(client: TestClient, email: str, password: str = PASSWORD) -> dict[str, str]:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}


def test_login_returns_token_profile_and_refresh_cookie(client: TestClient) -> None:
    response = client.post("/api/auth/login", json={"email": "Vendedor1@Empresa.com", "password": PASSWORD})

    assert response.status_code == 200
    body = response.json()
    assert body["accessToken"]
    assert body["user"]["email"] == "vendedor1@empresa.com"
    assert body["user"]["role"] == "vendedor"
    assert body["user"]["region"] == "Centro-Oeste"
    assert "passwordHash" not in body["user"]

    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith("refreshToken=")
    assert "HttpOnly" in set_cookie
    assert "samesite=lax" in set_cookie.lower()


def test_login_failures(client: TestClient) -> None:
    wrong_password = client.post("/api/auth/login", json={"email": "diretor@empresa.com", "password": "errada"})
    assert wrong_password.status_code == 401
    assert wrong_password.json()["code"] == "auth_login_failed"
    assert wrong_password.json()["message"] == "Invalid credentials"

    unknown = client.post("/api/auth/login", json={"email": "ninguem@empresa.com", "password": PASSWORD})
    assert unknown.status_code == 401
    assert unknown.json()["message"] == "Invalid credentials"

    inactive = client.post("/api/auth/login", json={"email": "inativo@empresa.com", "password": PASSWORD})
    assert inactive.status_code == 403

    malformed = client.post("/api/auth/login", json={"email": "not-an-email", "password": PASSWORD})
    assert malformed.status_code == 400
    assert malformed.json()["code"] == "validation_error"


def test_refresh_uses_the_cookie_and_logout_clears_it(client: TestClient) -> None:
    _login(client, "gerente@empresa.com")

    refreshed = client.post("/api/auth/refresh")
    assert refreshed.status_code == 200
    token = refreshed.json()["accessToken"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["role"] == "gerente"

    logout = client.post("/api/auth/logout")
    assert logout.status_code == 200
    assert logout.json() == {"message": "Logged out"}

    client.cookies.clear()
    missing = client.post("/api/auth/refresh")
    assert missing.status_code == 401
    assert missing.json()["code"] == "auth_refresh_failed"


def test_refresh_rejects_access_tokens_and_deactivated_users(
    client: TestClient,
    users: dict[str, User],
    db_session: Session,
) -> None:
    headers = _login(client, "vendedor1@empresa.com")
    access_token = headers["Authorization"].removeprefix("Bearer ")

    client.cookies.clear()
    forged = client.post("/api/auth/refresh", headers={"Cookie": f"refreshToken={access_token}"})
    assert forged.status_code == 401
    assert forged.json()["message"] == "Invalid refresh token"

    _login(client, "vendedor1@empresa.com")
    users["vendedor"].is_active = False
    db_session.commit()

    assert client.post("/api/auth/refresh").status_code == 401
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_protected_routes_reject_bad_tokens(client: TestClient) -> None:
    missing = client.get("/api/auth/me")
    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"

    garbage = client.get("/api/clients", headers={"Authorization": "Bearer not-a-jwt"})
    assert garbage.status_code == 401
    assert garbage.json()["message"] == "Invalid token"


def test_director_manages_users(client: TestClient, users: dict[str, User]) -> None:
    headers = _login(client, "diretor@empresa.com")

    created = client.post(
        "/api/users",
        headers=headers,
        json={"name": "Vendedora Nova", "email": "Nova@Empresa.com", "password": "segredo1", "region": "Norte"},
    )
    assert created.status_code == 201
    new_user = created.json()
    assert new_user["email"] == "nova@empresa.com"
    assert new_user["role"] == "vendedor"

    duplicate = client.post(
        "/api/users",
        headers=headers,
        json={"name": "Outra", "email": "nova@empresa.com", "password": "segredo1"},
    )
    assert duplicate.status_code == 409

    promoted = client.patch(f"/api/users/{new_user['id']}/role", headers=headers, json={"role": "gerente"})
    assert promoted.status_code == 200
    assert promoted.json()["role"] == "gerente"

    reset = client.post(f"/api/users/{new_user['id']}/reset-password", headers=headers)
    assert reset.status_code == 200
    temporary = reset.json()["temporaryPassword"]
    _login(client, "nova@empresa.com", temporary)

    sellers = client.get("/api/users", headers=headers, params={"role": "vendedor", "active": "true"}).json()
    assert [item["email"] for item in sellers] == ["vendedor1@empresa.com"]


def test_user_administration_is_role_restricted(client: TestClient, users: dict[str, User]) -> None:
    seller_headers = _login(client, "vendedor1@empresa.com")
    forbidden = client.post(
        "/api/users",
        headers=seller_headers,
        json={"name": "Intruso", "email": "intruso@empresa.com", "password": "segredo1"},
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "user_create_failed"

    own = client.get("/api/users", headers=seller_headers).json()
    assert [item["email"] for item in own] == ["vendedor1@empresa.com"]

    manager_headers = _login(client, "gerente@empresa.com")
    deactivated = client.patch(
        f"/api/users/{users['vendedor'].id}/activation",
        headers=manager_headers,
        json={"isActive": False},
    )
    assert deactivated.status_code == 200
    assert deactivated.json()["isActive"] is False

    self_lock = client.patch(
        f"/api/users/{users['gerente'].id}/activation",
        headers=manager_headers,
        json={"isActive": False},
    )
    assert self_lock.status_code == 400

    manager_role_change = client.patch(
        f"/api/users/{users['vendedor'].id}/role",
        headers=manager_headers,
        json={"role": "diretor"},
    )
    assert manager_role_change.status_code == 403


def test_auth_dependencies_are_sync() -> None:
    # they query the database, so FastAPI must run them in its threadpool
    assert not inspect.iscoroutinefunction(get_current_user)
    assert not inspect.iscoroutinefunction(require_roles(ROLE_DIRETOR))
