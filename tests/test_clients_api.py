from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesforce_pro.auth.models import User
from salesforce_pro.core.auth import AuthUser, get_current_user
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.database import Base, get_db
from salesforce_pro.crm.models import Client, Contact, TimelineEvent
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
        "gerente": User(name="Gerente Regional", email="gerente@empresa.com", role="gerente", region="Sudeste"),
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


def _create_client(test_client: TestClient, **overrides: object) -> dict:
    payload = {"name": "Fazenda Boa Vista", "city": "Sorriso", "state": "MT", **overrides}
    response = test_client.post("/api/clients", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_seller_create_normalizes_state_type_and_owner(
    client: tuple[TestClient, Callable[[str], None]],
    actors: dict[str, AuthUser],
) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/clients",
        json={"name": "Fazenda X", "city": "Sorriso", "state": "mt", "clientType": "pj"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["state"] == "MT"
    assert body["clientType"] == "PJ"
    assert body["ownerSellerId"] == str(actors["vendedor1"].id)
    assert body["region"] == "Centro-Oeste"
    assert body["ownerSeller"]["name"] == "Vendedor 1"


def test_seller_cannot_assign_another_owner(
    client: tuple[TestClient, Callable[[str], None]],
    actors: dict[str, AuthUser],
) -> None:
    test_client, _ = client

    body = _create_client(test_client, ownerSellerId=str(actors["vendedor2"].id))
    assert body["ownerSellerId"] == str(actors["vendedor1"].id)


def test_director_assigns_owner_and_rejects_unknown_user(
    client: tuple[TestClient, Callable[[str], None]],
    actors: dict[str, AuthUser],
) -> None:
    test_client, set_actor = client
    set_actor("diretor")

    body = _create_client(test_client, ownerSellerId=str(actors["vendedor2"].id))
    assert body["ownerSellerId"] == str(actors["vendedor2"].id)

    missing = test_client.post(
        "/api/clients",
        json={"name": "Fazenda Sem Dono", "city": "Rio Verde", "state": "GO", "ownerSellerId": str(uuid.uuid4())},
    )
    assert missing.status_code == 400
    assert missing.json()["message"] == "ownerSellerId does not reference an active user"


def test_duplicate_client_by_cnpj_and_identity_is_conflict(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    _create_client(test_client, name="Agro Alfa", cnpj="12.345.678/0001-90")
    by_document = test_client.post(
        "/api/clients",
        json={"name": "Outro Nome", "city": "Outra", "state": "GO", "cnpj": "12345678000190"},
    )
    assert by_document.status_code == 409
    assert by_document.json()["code"] == "client_create_failed"
    assert by_document.json()["message"] == "Client already registered"

    _create_client(test_client, name="Sítio Beta", city="Lucas do Rio Verde")
    by_identity = test_client.post(
        "/api/clients",
        json={"name": "  sítio   beta ", "city": "LUCAS DO RIO VERDE", "state": "mt"},
    )
    assert by_identity.status_code == 409


def test_invalid_state_is_validation_error(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/clients", json={"name": "Fazenda", "city": "Sorriso", "state": "Mato Grosso"})
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"][0]["field"] == "state"
    assert "2-letter" in body["message"]


def test_seller_reads_are_confined_to_own_clients(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    own = _create_client(test_client, name="Fazenda do Vendedor 1")
    set_actor("vendedor2")
    foreign = _create_client(test_client, name="Fazenda do Vendedor 2", city="Cascavel", state="PR")

    listed = test_client.get("/api/clients")
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [foreign["id"]]

    forbidden = test_client.get(f"/api/clients/{own['id']}")
    assert forbidden.status_code == 403

    update = test_client.put(f"/api/clients/{own['id']}", json={"name": "Tomada"})
    assert update.status_code == 403

    missing = test_client.get(f"/api/clients/{uuid.uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["message"] == "client not found"


def test_manager_filters_clients_by_owner(
    client: tuple[TestClient, Callable[[str], None]],
    actors: dict[str, AuthUser],
) -> None:
    test_client, set_actor = client

    _create_client(test_client, name="Fazenda Um")
    set_actor("vendedor2")
    _create_client(test_client, name="Fazenda Dois", city="Londrina", state="PR")

    set_actor("gerente")
    assert len(test_client.get("/api/clients").json()) == 2

    filtered = test_client.get("/api/clients", params={"ownerSellerId": str(actors["vendedor2"].id)})
    assert [item["name"] for item in filtered.json()] == ["Fazenda Dois"]

    legacy = test_client.get("/api/clients", params={"sellerId": str(actors["vendedor1"].id)})
    assert [item["name"] for item in legacy.json()] == ["Fazenda Um"]


def test_list_filters_search_and_type(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    _create_client(test_client, name="Fazenda Soja Forte", segment="Grãos")
    _create_client(test_client, name="João Produtor", city="Dourados", state="MS", clientType="PF")

    by_state = test_client.get("/api/clients", params={"state": "ms"})
    assert [item["name"] for item in by_state.json()] == ["João Produtor"]

    by_type = test_client.get("/api/clients", params={"clientType": "pj"})
    assert [item["name"] for item in by_type.json()] == ["Fazenda Soja Forte"]

    by_text = test_client.get("/api/clients", params={"q": "soja"})
    assert [item["name"] for item in by_text.json()] == ["Fazenda Soja Forte"]


def test_pagination_and_sort(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    for name in ("Carlos Agro", "Alfa Fazendas", "Bravo Grãos"):
        _create_client(test_client, name=name)

    first_page = test_client.get("/api/clients", params={"page": 1, "pageSize": 2, "sort": "name asc"})
    assert first_page.status_code == 200
    body = first_page.json()
    assert body["total"] == 3
    assert body["page"] == 1
    assert body["pageSize"] == 2
    assert [item["name"] for item in body["items"]] == ["Alfa Fazendas", "Bravo Grãos"]

    second_page = test_client.get("/api/clients", params={"page": 2, "pageSize": 2, "sort": "name:asc"})
    assert [item["name"] for item in second_page.json()["items"]] == ["Carlos Agro"]

    descending = test_client.get("/api/clients", params={"sort": "name desc"})
    assert [item["name"] for item in descending.json()["items"]] == ["Carlos Agro", "Bravo Grãos", "Alfa Fazendas"]

    invalid = test_client.get("/api/clients", params={"sort": "password asc"})
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "client_list_failed"

    for separators in (":", ",", " : "):
        fallback = test_client.get("/api/clients", params={"sort": separators})
        assert fallback.status_code == 200
        assert fallback.json()["total"] == 3


def test_update_keeps_shadow_fields_in_sync(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client

    created = _create_client(test_client)
    response = test_client.put(
        f"/api/clients/{created['id']}",
        json={"name": "  Fazenda   NOVA ", "cnpj": "98.765.432/0001-10", "state": "go"},
    )
    assert response.status_code == 200
    assert response.json()["state"] == "GO"

    stored = db_session.get(Client, uuid.UUID(created["id"]))
    db_session.refresh(stored)
    assert stored.name_normalized == "fazenda nova"
    assert stored.cnpj_normalized == "98765432000110"


def test_delete_client_removes_contacts_and_opportunities_but_keeps_events(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client

    created = _create_client(test_client)
    contact = test_client.post(f"/api/clients/{created['id']}/contacts", json={"name": "Maria Souza"})
    assert contact.status_code == 201
    opportunity = test_client.post(
        "/api/opportunities",
        json={
            "title": "Sementes de soja",
            "value": 50000,
            "clientId": created["id"],
            "proposalDate": "2026-01-10",
            "followUpDate": "2026-01-20",
            "expectedCloseDate": "2026-02-10",
            "notes": "Primeira visita",
        },
    )
    assert opportunity.status_code == 201

    deleted = test_client.delete(f"/api/clients/{created['id']}")
    assert deleted.status_code == 204

    assert test_client.get("/api/opportunities").json() == []
    assert db_session.scalars(select(Contact)).all() == []
    events = db_session.scalars(select(TimelineEvent)).all()
    assert sorted(event.type for event in events) == ["comentario", "criacao_oportunidade"]
    assert all(event.client_id is None and event.opportunity_id is None for event in events)


def test_optional_fields_accept_blank_values(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = _create_client(test_client, potentialHa="", farmSizeHa=None)
    assert created["potentialHa"] is None
    assert created["farmSizeHa"] is None

    contact = test_client.post(f"/api/clients/{created['id']}/contacts", json={"name": "Joao Pereira", "phone": ""})
    assert contact.status_code == 201
    assert contact.json()["phone"] is None

    short_phone = test_client.post(f"/api/clients/{created['id']}/contacts", json={"name": "Joao", "phone": "123"})
    assert short_phone.status_code == 400
    negative = test_client.post(
        "/api/clients",
        json={"name": "Fazenda Negativa", "city": "Sinop", "state": "MT", "potentialHa": -1},
    )
    assert negative.status_code == 400


def test_client_contacts_keep_a_single_primary(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = _create_client(test_client)
    first = test_client.post(
        f"/api/clients/{created['id']}/contacts",
        json={"name": "Ana Lima", "isPrimary": True, "phone": "65999990000"},
    )
    assert first.status_code == 201
    second = test_client.post(
        f"/api/clients/{created['id']}/contacts",
        json={"name": "Bruno Melo", "isPrimary": True, "email": "bruno@fazenda.com"},
    )
    assert second.status_code == 201

    contacts = test_client.get(f"/api/clients/{created['id']}/contacts").json()
    assert [(item["name"], item["isPrimary"]) for item in contacts] == [("Bruno Melo", True), ("Ana Lima", False)]

    updated = test_client.put(
        f"/api/clients/{created['id']}/contacts/{first.json()['id']}",
        json={"isPrimary": True},
    )
    assert updated.status_code == 200
    primaries = [item["name"] for item in test_client.get("/api/contacts").json() if item["isPrimary"]]
    assert primaries == ["Ana Lima"]

    wrong_client = _create_client(test_client, name="Outra Fazenda")
    mismatch = test_client.delete(f"/api/clients/{wrong_client['id']}/contacts/{first.json()['id']}")
    assert mismatch.status_code == 404

    removed = test_client.delete(f"/api/clients/{created['id']}/contacts/{first.json()['id']}")
    assert removed.status_code == 204


def test_contact_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = _create_client(test_client)
    short_phone = test_client.post(f"/api/clients/{created['id']}/contacts", json={"name": "Ana", "phone": "123"})
    assert short_phone.status_code == 400

    bad_email = test_client.post(
        "/api/contacts",
        json={"name": "Ana Lima", "email": "not-an-email", "clientId": created["id"]},
    )
    assert bad_email.status_code == 400
    assert bad_email.json()["details"][0]["field"] == "email"


def test_companies_are_legal_entity_clients(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    company = test_client.post("/api/companies", json={"name": "Cooperativa Sul", "segment": "Cooperativa"})
    assert company.status_code == 201
    company_id = company.json()["id"]

    _create_client(test_client, name="Produtor Pessoa Física", clientType="PF")

    companies = test_client.get("/api/companies").json()
    assert [item["name"] for item in companies] == ["Cooperativa Sul"]

    detail = test_client.get(f"/api/clients/{company_id}").json()
    assert detail["city"] == "Não informado"
    assert detail["state"] == "NI"
    assert detail["clientType"] == "PJ"

    renamed = test_client.put(f"/api/companies/{company_id}", json={"segment": "Cooperativa agrícola"})
    assert renamed.status_code == 200
    assert renamed.json()["segment"] == "Cooperativa agrícola"

    assert test_client.delete(f"/api/companies/{company_id}").status_code == 204
    assert test_client.get("/api/companies").json() == []


def test_unauthenticated_request_gets_error_envelope(db_session: Session) -> None:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            response = test_client.get("/api/clients")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "http_error"
    assert body["message"] == "Not authenticated"
    assert body["correlation_id"] == response.headers["x-correlation-id"]
