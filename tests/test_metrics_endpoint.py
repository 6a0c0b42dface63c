from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesforce_pro.auth.models import User
from salesforce_pro.core.auth import AuthUser, get_current_user
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.database import Base, get_db
from salesforce_pro.main import app
from salesforce_pro.middleware.rate_limit import reset_rate_limiter


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    users = {
        "diretor": User(name="Diretor", email="diretor@empresa.com", role="diretor", region="Nacional"),
        "vendedor": User(name="Vendedor", email="vendedor1@empresa.com", role="vendedor", region="Sul"),
    }
    for user in users.values():
        user.password_hash = "not-used"
    db_session.add_all(users.values())
    db_session.commit()
    actors = {
        key: AuthUser(id=user.id, email=user.email, role=user.role, region=user.region)
        for key, user in users.items()
    }
    state = {"current": "diretor"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as test_client:
        yield test_client, set_actor

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_domain_metrics(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    health = test_client.get("/api/health")
    assert health.status_code == 200

    created = test_client.post("/api/clients", json={"name": "Fazenda Métrica", "city": "Sorriso", "state": "MT"})
    assert created.status_code == 201
    assert test_client.get(f"/api/clients/{created.json()['id']}").status_code == 200

    opportunity = test_client.post(
        "/api/opportunities",
        json={
            "title": "Milho métrica",
            "value": 500,
            "clientId": created.json()["id"],
            "proposalDate": "2026-07-01",
            "followUpDate": "2026-07-02",
            "expectedCloseDate": "2026-07-31",
        },
    )
    assert opportunity.status_code == 201

    metrics = test_client.get("/api/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "timeline_events_recorded_total" in body
    assert "timeline_write_failures_total" in body

    assert 'path="/api/health"' in body
    assert 'path="/api/clients/{id}"' in body
    assert 'event_type="criacao_oportunidade"' in body


def test_metrics_require_director(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("vendedor")

    response = test_client.get("/api/metrics")
    assert response.status_code == 403


def test_metrics_hidden_when_disabled(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert test_client.get("/api/metrics").status_code == 404
