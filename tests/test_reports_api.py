from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def actors(db_session: Session) -> dict[str, AuthUser]:
    users = {
        "diretor": User(name="Diretor Comercial", email="diretor@empresa.com", role="diretor", region="Nacional"),
        "vendedor1": User(name="Vendedor 1", email="vendedor1@empresa.com", role="vendedor", region="Centro-Oeste"),
        "vendedor2": User(name="Vendedor 2", email="vendedor2@empresa.com", role="vendedor", region="Sul"),
    }
    for user in users.values():
        user.password_hash = "not-used"
    db_session.add_all(users.values())
    db_session.commit()
    return {
        key: AuthUser(id=user.id, email=user.email, role=user.role, region=user.region)
        for key, user in users.items()
    }


@pytest.fixture()
def client(
    db_session: Session,
    actors: dict[str, AuthUser],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "vendedor1"}

    def override_get_current_user() -> AuthUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _day(offset: int) -> str:
    return (datetime.now(timezone.utc).date() + timedelta(days=offset)).isoformat()


@pytest.fixture()
def portfolio(client: tuple[TestClient, Callable[[str], None]]) -> dict[str, str]:
    test_client, _ = client
    large = test_client.post(
        "/api/clients",
        json={"name": "Fazenda Grande", "city": "Sorriso", "state": "MT", "potentialHa": 1000, "farmSizeHa": 2000},
    ).json()
    small = test_client.post(
        "/api/clients",
        json={"name": "Sítio Pequeno", "city": "Sinop", "state": "MT", "potentialHa": 500},
    ).json()

    base = {"proposalDate": _day(-30), "followUpDate": _day(2)}
    opportunities = [
        {
            "title": "Soja precoce",
            "value": 10000,
            "probability": 50,
            "clientId": large["id"],
            "crop": "Soja",
            "season": "2026/27",
            "plantingForecastDate": "2026-10-15",
            "expectedCloseDate": _day(-5),
        },
        {
            "title": "Milho safrinha",
            "value": 4000,
            "probability": 25,
            "stage": "negociacao",
            "clientId": large["id"],
            "crop": "Milho",
            "season": "2026/27",
            "plantingForecastDate": "2026-11-02",
            "expectedCloseDate": _day(20),
        },
        {
            "title": "Soja fechada",
            "value": 2000,
            "probability": 100,
            "stage": "ganho",
            "clientId": small["id"],
            "crop": "Soja",
            "expectedCloseDate": _day(-5),
        },
    ]
    for payload in opportunities:
        response = test_client.post("/api/opportunities", json={**base, **payload})
        assert response.status_code == 201, response.text
    return {"large": large["id"], "small": small["id"]}


def test_agro_report_aggregates_visible_opportunities(
    client: tuple[TestClient, Callable[[str], None]],
    portfolio: dict[str, str],
    actors: dict[str, AuthUser],
) -> None:
    test_client, _ = client

    response = test_client.get("/api/reports/agro-crm")
    assert response.status_code == 200
    kpis = response.json()["kpis"]
    tables = response.json()["tables"]

    assert kpis["pipelineByCrop"] == [
        {"key": "Soja", "value": 12000, "weighted": 7000, "count": 2},
        {"key": "Milho", "value": 4000, "weighted": 1000, "count": 1},
    ]
    assert kpis["pipelineBySeason"] == [
        {"key": "2026/27", "value": 14000, "weighted": 6000, "count": 2},
        {"key": "não informado", "value": 2000, "weighted": 2000, "count": 1},
    ]
    assert [row["clientId"] for row in kpis["topClientsByWeightedValue"]] == [portfolio["large"], portfolio["small"]]
    assert kpis["topClientsByWeightedValue"][0]["opportunities"] == 2

    assert kpis["overdueBySeller"] == [
        {
            "sellerId": str(actors["vendedor1"].id),
            "sellerName": "Vendedor 1",
            "overdueCount": 1,
            "overdueValue": 10000,
        }
    ]
    conversion = {(row["fromStage"], row["toStage"]): row for row in kpis["stageConversion"]}
    assert conversion[("prospeccao", "negociacao")]["conversionRate"] == 100
    assert conversion[("negociacao", "proposta")]["conversionRate"] == 0
    assert conversion[("proposta", "ganho")]["baseCount"] == 0
    assert conversion[("proposta", "ganho")]["conversionRate"] == 0

    portfolio_rows = tables["portfolioByPotentialHa"]
    assert [row["clientName"] for row in portfolio_rows] == ["Fazenda Grande", "Sítio Pequeno"]
    assert portfolio_rows[0]["potentialCoveragePercent"] == 50
    assert portfolio_rows[1]["potentialCoveragePercent"] == 0

    assert tables["opportunitiesByPlantingWindow"] == [
        {"month": "2026-10", "opportunities": 1, "weightedValue": 5000, "pipelineValue": 10000},
        {"month": "2026-11", "opportunities": 1, "weightedValue": 1000, "pipelineValue": 4000},
    ]


def test_agro_report_respects_seller_scope(
    client: tuple[TestClient, Callable[[str], None]],
    portfolio: dict[str, str],
    actors: dict[str, AuthUser],
) -> None:
    test_client, set_actor = client

    set_actor("vendedor2")
    report = test_client.get("/api/reports/agro-crm").json()
    assert report["kpis"]["pipelineByCrop"] == []
    assert report["tables"]["portfolioByPotentialHa"] == []
    assert [row["baseCount"] for row in report["kpis"]["stageConversion"]] == [0, 0, 0]

    set_actor("diretor")
    filtered = test_client.get(
        "/api/reports/agro-crm",
        params={"ownerSellerId": str(actors["vendedor2"].id)},
    ).json()
    assert filtered["kpis"]["topClientsByWeightedValue"] == []

    everything = test_client.get("/api/reports/agro-crm").json()
    assert len(everything["kpis"]["topClientsByWeightedValue"]) == 2
