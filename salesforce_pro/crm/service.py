from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from salesforce_pro.auth.models import User
from salesforce_pro.core.access import ensure_owner, resolve_owner_id, seller_where
from salesforce_pro.core.auth import AuthUser
from salesforce_pro.core.config import get_settings
from salesforce_pro.core.normalize import normalize_cnpj, normalize_state, normalize_text
from salesforce_pro.crm.dates import as_utc, utc_today_start
from salesforce_pro.crm.filters import (
    CLOSED_STAGES,
    OpportunityFilters,
    apply_scope,
    build_opportunity_query,
    build_timeline_event_where,
    timeline_scope,
)
from salesforce_pro.crm.models import Activity, Client, Contact, Goal, Opportunity, TimelineEvent
from salesforce_pro.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    ClientContactCreate,
    ClientCreate,
    ClientPage,
    ClientRead,
    ClientUpdate,
    CommentCreate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    GoalCreate,
    GoalRead,
    GoalUpdate,
    OpportunityCreate,
    OpportunityRead,
    OpportunitySummary,
    OpportunityUpdate,
    TimelineEventPage,
    TimelineEventRead,
)
from salesforce_pro.crm.timeline import OpportunitySnapshot, comment_entry, timeline_recorder


logger = logging.getLogger("salesforce_pro.crm")

DUPLICATE_CLIENT_MESSAGE = "Client already registered"
COMPANY_DEFAULT_CITY = "Não informado"
COMPANY_DEFAULT_STATE = "NI"
CLIENT_SORT_FIELDS = {
    "name": Client.name,
    "city": Client.city,
    "state": Client.state,
    "region": Client.region,
    "segment": Client.segment,
    "clientType": Client.client_type,
    "createdAt": Client.created_at,
}
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_TIMELINE_TAKE = 100


def _ensure_active_user(session: Session, user_id: uuid.UUID, *, field: str) -> User:
    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} does not reference an active user")
    return user


def _resolve_owner(session: Session, actor: AuthUser, requested: uuid.UUID | None) -> uuid.UUID:
    owner_id = resolve_owner_id(actor, requested)
    if owner_id != actor.id:
        _ensure_active_user(session, owner_id, field="ownerSellerId")
    return owner_id


def apply_client_normalized_fields(client: Client) -> None:
    client.state = normalize_state(client.state)
    client.name_normalized = normalize_text(client.name)
    client.city_normalized = normalize_text(client.city)
    client.cnpj_normalized = normalize_cnpj(client.cnpj)


def parse_client_sort(raw: str | None) -> tuple[Any, ...]:
    parts = [part for part in re.split(r"[\s:,]+", raw or "") if part]
    if not parts:
        return (Client.created_at.desc(),)
    column = CLIENT_SORT_FIELDS.get(parts[0])
    if column is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"invalid sort field: {parts[0]}")
    direction = parts[1].lower() if len(parts) > 1 else "asc"
    if direction not in {"asc", "desc"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"invalid sort direction: {parts[1]}")
    ordered = column.desc() if direction == "desc" else column.asc()
    return (ordered, Client.id.asc())


class ClientService:
    entity_type = "crm.client"

    def ensure_not_duplicate(
        self,
        session: Session,
        scope: dict[str, Any],
        *,
        name: str,
        city: str,
        state: str,
        cnpj: str | None,
        ignore_client_id: uuid.UUID | None = None,
    ) -> None:
        existing_id = self.find_duplicate(
            session,
            scope,
            name=name,
            city=city,
            state=state,
            cnpj=cnpj,
            ignore_client_id=ignore_client_id,
        )
        if existing_id is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=DUPLICATE_CLIENT_MESSAGE)

    def find_duplicate(
        self,
        session: Session,
        scope: dict[str, Any],
        *,
        name: str,
        city: str,
        state: str,
        cnpj: str | None,
        ignore_client_id: uuid.UUID | None = None,
    ) -> uuid.UUID | None:
        stmt = apply_scope(select(Client.id), Client, scope)
        cnpj_normalized = normalize_cnpj(cnpj)
        if cnpj_normalized:
            stmt = stmt.where(Client.cnpj_normalized == cnpj_normalized)
        else:
            stmt = stmt.where(
                and_(
                    Client.name_normalized == normalize_text(name),
                    Client.city_normalized == normalize_text(city),
                    Client.state == normalize_state(state),
                )
            )
        if ignore_client_id is not None:
            stmt = stmt.where(Client.id != ignore_client_id)
        return session.scalar(stmt.limit(1))

    def list_clients(
        self,
        session: Session,
        actor_user: AuthUser,
        filters: dict[str, Any],
        *,
        paginate: bool,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort: str | None = None,
    ) -> list[ClientRead] | ClientPage:
        stmt: Select[tuple[Client]] = apply_scope(
            select(Client),
            Client,
            seller_where(actor_user, filters.get("owner_seller_id")),
        )
        if filters.get("state"):
            stmt = stmt.where(func.upper(Client.state) == filters["state"].strip().upper())
        if filters.get("region"):
            stmt = stmt.where(func.lower(Client.region) == filters["region"].strip().lower())
        client_type = (filters.get("client_type") or "").strip().upper()
        if client_type in {"PJ", "PF"}:
            stmt = stmt.where(Client.client_type == client_type)
        search = (filters.get("q") or "").strip()
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(
                    Client.name.ilike(pattern),
                    Client.city.ilike(pattern),
                    Client.state.ilike(pattern),
                    Client.region.ilike(pattern),
                    Client.segment.ilike(pattern),
                )
            )

        ordered = stmt.options(selectinload(Client.owner_seller)).order_by(*parse_client_sort(sort))
        if not paginate:
            return [self._to_read(client) for client in session.scalars(ordered).all()]

        page = max(1, page)
        page_size = min(max(1, page_size), MAX_PAGE_SIZE)
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        clients = session.scalars(ordered.offset((page - 1) * page_size).limit(page_size)).all()
        return ClientPage.model_validate(
            {
                "items": [self._to_read(client) for client in clients],
                "total": total,
                "page": page,
                "page_size": page_size,
            }
        )

    def get_client(self, session: Session, actor_user: AuthUser, client_id: uuid.UUID) -> ClientRead:
        return self._to_read(self.get_owned_client(session, actor_user, client_id))

    def get_owned_client(self, session: Session, actor_user: AuthUser, client_id: uuid.UUID) -> Client:
        client = session.get(Client, client_id)
        if client is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")
        ensure_owner(actor_user, client.owner_seller_id, entity="client")
        return client

    def create_client(self, session: Session, actor_user: AuthUser, dto: ClientCreate) -> ClientRead:
        client = self.build_client(session, actor_user, dto)
        self.ensure_not_duplicate(
            session,
            seller_where(actor_user),
            name=client.name,
            city=client.city,
            state=client.state,
            cnpj=client.cnpj,
        )
        session.add(client)
        self._commit_client(session)
        session.refresh(client)
        logger.info("client.created", extra={"client_id": str(client.id), "user_id": str(actor_user.id)})
        return self._to_read(client)

    def build_client(self, session: Session, actor_user: AuthUser, dto: ClientCreate) -> Client:
        settings = get_settings()
        client = Client(
            name=dto.name,
            city=dto.city,
            state=dto.state,
            region=dto.region or actor_user.region or settings.default_region,
            client_type=dto.client_type,
            potential_ha=dto.potential_ha,
            farm_size_ha=dto.farm_size_ha,
            cnpj=dto.cnpj,
            segment=dto.segment,
            owner_seller_id=_resolve_owner(session, actor_user, dto.owner_seller_id),
        )
        apply_client_normalized_fields(client)
        return client

    def update_client(
        self,
        session: Session,
        actor_user: AuthUser,
        client_id: uuid.UUID,
        dto: ClientUpdate,
    ) -> ClientRead:
        client = self.get_owned_client(session, actor_user, client_id)
        self.apply_update(session, actor_user, client, dto.model_dump(exclude_unset=True))
        self._commit_client(session)
        session.refresh(client)
        return self._to_read(client)

    def apply_update(self, session: Session, actor_user: AuthUser, client: Client, payload: dict[str, Any]) -> None:
        for required in ("name", "city", "state", "client_type", "region", "owner_seller_id"):
            if payload.get(required, "") is None:
                payload.pop(required)
        if "owner_seller_id" in payload:
            payload["owner_seller_id"] = _resolve_owner(session, actor_user, payload["owner_seller_id"])

        self.ensure_not_duplicate(
            session,
            seller_where(actor_user),
            name=payload.get("name", client.name),
            city=payload.get("city", client.city),
            state=payload.get("state", client.state),
            cnpj=payload["cnpj"] if "cnpj" in payload else client.cnpj,
            ignore_client_id=client.id,
        )
        for key, value in payload.items():
            setattr(client, key, value)
        apply_client_normalized_fields(client)

    def delete_client(self, session: Session, actor_user: AuthUser, client_id: uuid.UUID) -> None:
        client = self.get_owned_client(session, actor_user, client_id)
        opportunity_ids = select(Opportunity.id).where(Opportunity.client_id == client.id)
        session.execute(update(Activity).where(Activity.opportunity_id.in_(opportunity_ids)).values(opportunity_id=None))
        session.execute(
            update(TimelineEvent)
            .where(or_(TimelineEvent.client_id == client.id, TimelineEvent.opportunity_id.in_(opportunity_ids)))
            .values(client_id=None, opportunity_id=None)
        )
        session.delete(client)
        session.commit()
        logger.info("client.deleted", extra={"client_id": str(client_id), "user_id": str(actor_user.id)})

    def list_companies(
        self,
        session: Session,
        actor_user: AuthUser,
        owner_seller_id: uuid.UUID | None = None,
    ) -> list[CompanyRead]:
        stmt = apply_scope(select(Client), Client, seller_where(actor_user, owner_seller_id))
        clients = session.scalars(stmt.where(Client.client_type == "PJ").order_by(Client.name.asc())).all()
        return [self._to_company_read(client) for client in clients]

    def create_company(self, session: Session, actor_user: AuthUser, dto: CompanyCreate) -> CompanyRead:
        client_dto = ClientCreate(
            name=dto.name,
            city=COMPANY_DEFAULT_CITY,
            state=COMPANY_DEFAULT_STATE,
            client_type="PJ",
            cnpj=dto.cnpj,
            segment=dto.segment,
            owner_seller_id=dto.owner_seller_id,
        )
        created = self.create_client(session, actor_user, client_dto)
        client = session.get(Client, created.id)
        return self._to_company_read(client)  # type: ignore[arg-type]

    def update_company(
        self,
        session: Session,
        actor_user: AuthUser,
        company_id: uuid.UUID,
        dto: CompanyUpdate,
    ) -> CompanyRead:
        client = self._get_owned_company(session, actor_user, company_id)
        self.apply_update(session, actor_user, client, dto.model_dump(exclude_unset=True))
        self._commit_client(session)
        session.refresh(client)
        return self._to_company_read(client)

    def delete_company(self, session: Session, actor_user: AuthUser, company_id: uuid.UUID) -> None:
        self._get_owned_company(session, actor_user, company_id)
        self.delete_client(session, actor_user, company_id)

    def _get_owned_company(self, session: Session, actor_user: AuthUser, company_id: uuid.UUID) -> Client:
        client = session.get(Client, company_id)
        if client is None or client.client_type != "PJ":
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="company not found")
        ensure_owner(actor_user, client.owner_seller_id, entity="company")
        return client

    def _commit_client(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=DUPLICATE_CLIENT_MESSAGE) from None

    def _to_read(self, client: Client) -> ClientRead:
        owner = client.owner_seller
        return ClientRead.model_validate(
            {
                "id": client.id,
                "name": client.name,
                "city": client.city,
                "state": client.state,
                "region": client.region,
                "client_type": client.client_type,
                "potential_ha": client.potential_ha,
                "farm_size_ha": client.farm_size_ha,
                "cnpj": client.cnpj,
                "segment": client.segment,
                "owner_seller_id": client.owner_seller_id,
                "owner_seller": {"id": owner.id, "name": owner.name} if owner is not None else None,
                "created_at": client.created_at,
                "updated_at": client.updated_at,
            }
        )

    def _to_company_read(self, client: Client) -> CompanyRead:
        return CompanyRead.model_validate(
            {
                "id": client.id,
                "name": client.name,
                "cnpj": client.cnpj,
                "segment": client.segment,
                "owner_seller_id": client.owner_seller_id,
                "created_at": client.created_at,
            }
        )


class ContactService:
    entity_type = "crm.contact"

    def __init__(self, client_service: ClientService) -> None:
        self.client_service = client_service

    def list_contacts(
        self,
        session: Session,
        actor_user: AuthUser,
        owner_seller_id: uuid.UUID | None = None,
    ) -> list[ContactRead]:
        stmt = apply_scope(select(Contact), Contact, seller_where(actor_user, owner_seller_id))
        contacts = session.scalars(
            stmt.options(selectinload(Contact.client)).order_by(Contact.created_at.desc())
        ).all()
        return [self._to_read(contact) for contact in contacts]

    def list_for_client(self, session: Session, actor_user: AuthUser, client_id: uuid.UUID) -> list[ContactRead]:
        client = self.client_service.get_owned_client(session, actor_user, client_id)
        contacts = session.scalars(
            select(Contact)
            .where(Contact.client_id == client.id)
            .options(selectinload(Contact.client))
            .order_by(Contact.is_primary.desc(), Contact.created_at.desc())
        ).all()
        return [self._to_read(contact) for contact in contacts]

    def create_for_client(
        self,
        session: Session,
        actor_user: AuthUser,
        client_id: uuid.UUID,
        dto: ClientContactCreate,
    ) -> ContactRead:
        return self.create_contact(
            session,
            actor_user,
            ContactCreate(**dto.model_dump(), client_id=client_id),
        )

    def create_contact(self, session: Session, actor_user: AuthUser, dto: ContactCreate) -> ContactRead:
        client = self.client_service.get_owned_client(session, actor_user, dto.client_id)
        contact = Contact(
            name=dto.name,
            phone=dto.phone,
            email=dto.email,
            role=dto.role,
            is_primary=dto.is_primary,
            client_id=client.id,
            owner_seller_id=_resolve_owner(session, actor_user, dto.owner_seller_id),
        )
        if contact.is_primary:
            self._clear_primary(session, client.id)
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return self._to_read(contact)

    def update_contact(
        self,
        session: Session,
        actor_user: AuthUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
        *,
        client_id: uuid.UUID | None = None,
    ) -> ContactRead:
        contact = self._get_owned(session, actor_user, contact_id, client_id=client_id)
        payload = dto.model_dump(exclude_unset=True)
        for required in ("name", "is_primary", "client_id", "owner_seller_id"):
            if required in payload and payload[required] is None:
                payload.pop(required)
        if "client_id" in payload:
            self.client_service.get_owned_client(session, actor_user, payload["client_id"])
        if "owner_seller_id" in payload:
            payload["owner_seller_id"] = _resolve_owner(session, actor_user, payload["owner_seller_id"])
        if payload.get("is_primary"):
            self._clear_primary(session, payload.get("client_id", contact.client_id), exclude_id=contact.id)

        for key, value in payload.items():
            setattr(contact, key, value)
        session.commit()
        session.refresh(contact)
        return self._to_read(contact)

    def delete_contact(
        self,
        session: Session,
        actor_user: AuthUser,
        contact_id: uuid.UUID,
        *,
        client_id: uuid.UUID | None = None,
    ) -> None:
        contact = self._get_owned(session, actor_user, contact_id, client_id=client_id)
        session.delete(contact)
        session.commit()

    def _get_owned(
        self,
        session: Session,
        actor_user: AuthUser,
        contact_id: uuid.UUID,
        *,
        client_id: uuid.UUID | None,
    ) -> Contact:
        contact = session.get(Contact, contact_id)
        if contact is None or (client_id is not None and contact.client_id != client_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        ensure_owner(actor_user, contact.owner_seller_id, entity="contact")
        return contact

    def _clear_primary(self, session: Session, client_id: uuid.UUID, exclude_id: uuid.UUID | None = None) -> None:
        stmt = update(Contact).where(and_(Contact.client_id == client_id, Contact.is_primary.is_(True)))
        if exclude_id is not None:
            stmt = stmt.where(Contact.id != exclude_id)
        session.execute(stmt.values(is_primary=False))

    def _to_read(self, contact: Contact) -> ContactRead:
        client = contact.client
        return ContactRead.model_validate(
            {
                "id": contact.id,
                "name": contact.name,
                "phone": contact.phone,
                "email": contact.email,
                "role": contact.role,
                "is_primary": contact.is_primary,
                "client_id": contact.client_id,
                "owner_seller_id": contact.owner_seller_id,
                "client": {"id": client.id, "name": client.name} if client is not None else None,
                "created_at": contact.created_at,
            }
        )


_OPPORTUNITY_NULLABLE_FIELDS = {
    "probability",
    "last_contact_at",
    "notes",
    "crop",
    "season",
    "area_ha",
    "product_offered",
    "planting_forecast_date",
    "expected_ticket_per_ha",
}


def weighted_value(value: float, probability: int | None) -> float:
    return round(value * (probability or 0) / 100, 2)


class OpportunityService:
    entity_type = "crm.opportunity"

    def __init__(self, client_service: ClientService) -> None:
        self.client_service = client_service
        self.timeline = timeline_recorder

    def list_opportunities(
        self,
        session: Session,
        actor_user: AuthUser,
        filters: OpportunityFilters,
    ) -> list[OpportunityRead]:
        today_start = utc_today_start()
        stmt = build_opportunity_query(actor_user, filters, today_start=today_start)
        return [self._to_read(opportunity, today_start) for opportunity in session.scalars(stmt).all()]

    def summarize(
        self,
        session: Session,
        actor_user: AuthUser,
        owner_seller_id: uuid.UUID | None = None,
    ) -> OpportunitySummary:
        today_start = utc_today_start()
        stmt = apply_scope(select(Opportunity), Opportunity, seller_where(actor_user, owner_seller_id))
        open_opportunities = session.scalars(stmt.where(Opportunity.stage.not_in(CLOSED_STAGES))).all()

        total_value = 0.0
        total_weighted = 0.0
        overdue_count = 0
        overdue_value = 0.0
        for opportunity in open_opportunities:
            total_value += opportunity.value
            total_weighted += weighted_value(opportunity.value, opportunity.probability)
            if as_utc(opportunity.follow_up_date) < today_start:  # type: ignore[operator]
                overdue_count += 1
                overdue_value += opportunity.value

        return OpportunitySummary(
            total_pipeline_value=round(total_value, 2),
            total_weighted_value=round(total_weighted, 2),
            overdue_count=overdue_count,
            overdue_value=round(overdue_value, 2),
        )

    def get_opportunity(self, session: Session, actor_user: AuthUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        return self._to_read(self.get_owned_opportunity(session, actor_user, opportunity_id), utc_today_start())

    def get_owned_opportunity(self, session: Session, actor_user: AuthUser, opportunity_id: uuid.UUID) -> Opportunity:
        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="opportunity not found")
        ensure_owner(actor_user, opportunity.owner_seller_id, entity="opportunity")
        return opportunity

    def create_opportunity(self, session: Session, actor_user: AuthUser, dto: OpportunityCreate) -> OpportunityRead:
        client = self.client_service.get_owned_client(session, actor_user, dto.client_id)
        payload = dto.model_dump(exclude={"owner_seller_id", "client_id"})
        if payload.get("notes") is not None:
            payload["notes"] = payload["notes"].strip() or None

        opportunity = Opportunity(
            **payload,
            client_id=client.id,
            owner_seller_id=_resolve_owner(session, actor_user, dto.owner_seller_id),
        )
        session.add(opportunity)
        session.commit()
        session.refresh(opportunity)
        logger.info(
            "opportunity.created",
            extra={"opportunity_id": str(opportunity.id), "user_id": str(actor_user.id)},
        )

        self.timeline.record_created(session, opportunity, actor_user.id)
        session.refresh(opportunity)
        return self._to_read(opportunity, utc_today_start())

    def update_opportunity(
        self,
        session: Session,
        actor_user: AuthUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = self.get_owned_opportunity(session, actor_user, opportunity_id)
        payload = dto.model_dump(exclude_unset=True)
        for key in list(payload):
            if payload[key] is None and key not in _OPPORTUNITY_NULLABLE_FIELDS:
                payload.pop(key)

        if "client_id" in payload:
            self.client_service.get_owned_client(session, actor_user, payload["client_id"])
        if "owner_seller_id" in payload:
            payload["owner_seller_id"] = _resolve_owner(session, actor_user, payload["owner_seller_id"])
        if "notes" in payload and payload["notes"] is not None:
            payload["notes"] = payload["notes"].strip() or None

        proposal_date = payload.get("proposal_date", as_utc(opportunity.proposal_date))
        expected_close_date = payload.get("expected_close_date", as_utc(opportunity.expected_close_date))
        if expected_close_date < proposal_date:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="expectedCloseDate must be on or after proposalDate",
            )

        before = OpportunitySnapshot.of(opportunity)
        for key, value in payload.items():
            setattr(opportunity, key, value)
        session.commit()
        session.refresh(opportunity)

        self.timeline.record_changes(
            session,
            before,
            opportunity,
            actor_user.id,
            notes_provided="notes" in payload,
        )
        session.refresh(opportunity)
        return self._to_read(opportunity, utc_today_start())

    def delete_opportunity(self, session: Session, actor_user: AuthUser, opportunity_id: uuid.UUID) -> None:
        opportunity = self.get_owned_opportunity(session, actor_user, opportunity_id)
        session.execute(
            update(TimelineEvent).where(TimelineEvent.opportunity_id == opportunity.id).values(opportunity_id=None)
        )
        session.execute(update(Activity).where(Activity.opportunity_id == opportunity.id).values(opportunity_id=None))
        session.delete(opportunity)
        session.commit()

    def _to_read(self, opportunity: Opportunity, today_start: Any) -> OpportunityRead:
        expected_close = as_utc(opportunity.expected_close_date)
        days_overdue: int | None = None
        if opportunity.stage not in CLOSED_STAGES and expected_close is not None and expected_close < today_start:
            days_overdue = (today_start.date() - expected_close.date()).days

        client = opportunity.client
        owner = opportunity.owner_seller
        return OpportunityRead.model_validate(
            {
                "id": opportunity.id,
                "title": opportunity.title,
                "value": opportunity.value,
                "stage": opportunity.stage,
                "probability": opportunity.probability,
                "client_id": opportunity.client_id,
                "owner_seller_id": opportunity.owner_seller_id,
                "proposal_date": as_utc(opportunity.proposal_date),
                "follow_up_date": as_utc(opportunity.follow_up_date),
                "expected_close_date": expected_close,
                "last_contact_at": as_utc(opportunity.last_contact_at),
                "notes": opportunity.notes,
                "crop": opportunity.crop,
                "season": opportunity.season,
                "area_ha": opportunity.area_ha,
                "product_offered": opportunity.product_offered,
                "planting_forecast_date": as_utc(opportunity.planting_forecast_date),
                "expected_ticket_per_ha": opportunity.expected_ticket_per_ha,
                "client": client.name,
                "client_city": client.city,
                "client_state": client.state,
                "owner": owner.name,
                "weighted_value": weighted_value(opportunity.value, opportunity.probability),
                "days_overdue": days_overdue,
                "created_at": opportunity.created_at,
                "updated_at": opportunity.updated_at,
            }
        )


class ActivityService:
    entity_type = "crm.activity"

    def __init__(self, opportunity_service: OpportunityService) -> None:
        self.opportunity_service = opportunity_service

    def list_activities(self, session: Session, actor_user: AuthUser, filters: dict[str, Any]) -> list[ActivityRead]:
        stmt = apply_scope(select(Activity), Activity, seller_where(actor_user, filters.get("owner_seller_id")))
        if filters.get("done") is not None:
            stmt = stmt.where(Activity.done == filters["done"])
        if filters.get("opportunity_id"):
            stmt = stmt.where(Activity.opportunity_id == filters["opportunity_id"])
        activities = session.scalars(
            stmt.options(
                selectinload(Activity.opportunity).selectinload(Opportunity.client),
                selectinload(Activity.owner_seller),
            ).order_by(Activity.due_date.asc())
        ).all()
        return [self._to_read(activity) for activity in activities]

    def create_activity(self, session: Session, actor_user: AuthUser, dto: ActivityCreate) -> ActivityRead:
        if dto.opportunity_id is not None:
            self.opportunity_service.get_owned_opportunity(session, actor_user, dto.opportunity_id)
        activity = Activity(
            type=dto.type,
            notes=dto.notes,
            due_date=dto.due_date,
            done=dto.done,
            opportunity_id=dto.opportunity_id,
            owner_seller_id=_resolve_owner(session, actor_user, dto.owner_seller_id),
        )
        session.add(activity)
        session.commit()
        session.refresh(activity)
        return self._to_read(activity)

    def update_activity(
        self,
        session: Session,
        actor_user: AuthUser,
        activity_id: uuid.UUID,
        dto: ActivityUpdate,
    ) -> ActivityRead:
        activity = self._get_owned(session, actor_user, activity_id)
        payload = dto.model_dump(exclude_unset=True)
        for key in list(payload):
            if payload[key] is None and key != "opportunity_id":
                payload.pop(key)
        if payload.get("opportunity_id") is not None:
            self.opportunity_service.get_owned_opportunity(session, actor_user, payload["opportunity_id"])
        if "owner_seller_id" in payload:
            payload["owner_seller_id"] = _resolve_owner(session, actor_user, payload["owner_seller_id"])
        for key, value in payload.items():
            setattr(activity, key, value)
        session.commit()
        session.refresh(activity)
        return self._to_read(activity)

    def delete_activity(self, session: Session, actor_user: AuthUser, activity_id: uuid.UUID) -> None:
        activity = self._get_owned(session, actor_user, activity_id)
        session.delete(activity)
        session.commit()

    def _get_owned(self, session: Session, actor_user: AuthUser, activity_id: uuid.UUID) -> Activity:
        activity = session.get(Activity, activity_id)
        if activity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="activity not found")
        ensure_owner(actor_user, activity.owner_seller_id, entity="activity")
        return activity

    def _to_read(self, activity: Activity) -> ActivityRead:
        opportunity = activity.opportunity
        return ActivityRead.model_validate(
            {
                "id": activity.id,
                "type": activity.type,
                "notes": activity.notes,
                "due_date": as_utc(activity.due_date),
                "done": activity.done,
                "opportunity_id": activity.opportunity_id,
                "opportunity_title": opportunity.title if opportunity is not None else None,
                "client_name": opportunity.client.name if opportunity is not None else None,
                "owner_seller_id": activity.owner_seller_id,
                "owner": activity.owner_seller.name if activity.owner_seller is not None else None,
                "created_at": activity.created_at,
            }
        )


class GoalService:
    entity_type = "crm.goal"

    def list_goals(
        self,
        session: Session,
        actor_user: AuthUser,
        *,
        month: str | None = None,
        seller_id: uuid.UUID | None = None,
    ) -> list[GoalRead]:
        stmt = select(Goal).options(selectinload(Goal.seller))
        scope = seller_where(actor_user, seller_id)
        if "owner_seller_id" in scope:
            stmt = stmt.where(Goal.seller_id == scope["owner_seller_id"])
        if month:
            stmt = stmt.where(Goal.month == month)
        goals = session.scalars(stmt.order_by(Goal.month.desc(), Goal.created_at.asc())).all()
        return [self._to_read(goal) for goal in goals]

    def create_goal(self, session: Session, actor_user: AuthUser, dto: GoalCreate) -> GoalRead:
        _ensure_active_user(session, dto.seller_id, field="sellerId")
        goal = Goal(month=dto.month, target_value=dto.target_value, seller_id=dto.seller_id)
        session.add(goal)
        self._commit(session)
        session.refresh(goal)
        return self._to_read(goal)

    def update_goal(self, session: Session, actor_user: AuthUser, goal_id: uuid.UUID, dto: GoalUpdate) -> GoalRead:
        goal = session.get(Goal, goal_id)
        if goal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="goal not found")
        for key, value in dto.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(goal, key, value)
        self._commit(session)
        session.refresh(goal)
        return self._to_read(goal)

    def delete_goal(self, session: Session, actor_user: AuthUser, goal_id: uuid.UUID) -> None:
        goal = session.get(Goal, goal_id)
        if goal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="goal not found")
        session.delete(goal)
        session.commit()

    def _commit(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="goal already exists for this seller and month",
            ) from None

    def _to_read(self, goal: Goal) -> GoalRead:
        return GoalRead.model_validate(
            {
                "id": goal.id,
                "month": goal.month,
                "target_value": goal.target_value,
                "seller_id": goal.seller_id,
                "seller_name": goal.seller.name if goal.seller is not None else None,
                "created_at": goal.created_at,
                "updated_at": goal.updated_at,
            }
        )


class TimelineService:
    entity_type = "crm.timeline_event"

    def __init__(self, opportunity_service: OpportunityService) -> None:
        self.opportunity_service = opportunity_service

    def list_events(
        self,
        session: Session,
        actor_user: AuthUser,
        *,
        opportunity_id: uuid.UUID | None = None,
        client_id: uuid.UUID | None = None,
        take: int = 50,
        cursor: uuid.UUID | None = None,
    ) -> TimelineEventPage:
        take = min(max(1, take), MAX_TIMELINE_TAKE)
        conditions = [
            *timeline_scope(actor_user),
            *build_timeline_event_where(opportunity_id=opportunity_id, client_id=client_id),
        ]
        if cursor is not None:
            anchor = session.get(TimelineEvent, cursor)
            if anchor is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid cursor")
            conditions.append(
                or_(
                    TimelineEvent.created_at < anchor.created_at,
                    and_(TimelineEvent.created_at == anchor.created_at, TimelineEvent.id < anchor.id),
                )
            )

        stmt = select(TimelineEvent).options(selectinload(TimelineEvent.user))
        if conditions:
            stmt = stmt.where(*conditions)
        events = session.scalars(
            stmt.order_by(TimelineEvent.created_at.desc(), TimelineEvent.id.desc()).limit(take + 1)
        ).all()

        next_cursor = events[take - 1].id if len(events) > take else None
        return TimelineEventPage.model_validate(
            {"items": [self._to_read(event) for event in events[:take]], "next_cursor": next_cursor}
        )

    def create_comment(self, session: Session, actor_user: AuthUser, dto: CommentCreate) -> TimelineEventRead:
        opportunity = self.opportunity_service.get_owned_opportunity(session, actor_user, dto.opportunity_id)
        events = timeline_recorder.write(session, opportunity, actor_user.id, [comment_entry(dto.message)])
        session.refresh(events[0])
        return self._to_read(events[0])

    def _to_read(self, event: TimelineEvent) -> TimelineEventRead:
        return TimelineEventRead.model_validate(
            {
                "id": event.id,
                "type": event.type,
                "title": event.title,
                "message": event.message,
                "client_id": event.client_id,
                "opportunity_id": event.opportunity_id,
                "user_id": event.user_id,
                "user_name": event.user.name if event.user is not None else None,
                "meta": event.meta,
                "created_at": event.created_at,
            }
        )
