from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import ColumnElement, Select, and_, or_, select
from sqlalchemy.orm import selectinload

from salesforce_pro.core.access import seller_where
from salesforce_pro.core.auth import AuthUser
from salesforce_pro.crm.dates import as_utc, parse_date_value, utc_today_start
from salesforce_pro.crm.models import Client, Opportunity, TimelineEvent
from salesforce_pro.crm.schemas import normalize_stage

STAGES = ("prospeccao", "negociacao", "proposta", "ganho", "perdido")
CLOSED_STAGES = ("ganho", "perdido")
OPPORTUNITY_STATUSES = ("open", "closed", "all")
DUE_SOON_DAYS = 3


@dataclass
class OpportunityFilters:
    stage: str | None = None
    owner_seller_id: uuid.UUID | None = None
    client_id: uuid.UUID | None = None
    crop: str | None = None
    season: str | None = None
    search: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    status: str | None = None
    overdue: bool = False
    due_soon: bool = False


def apply_scope(stmt: Select[Any], model: Any, scope: dict[str, Any]) -> Select[Any]:
    for column, value in scope.items():
        stmt = stmt.where(getattr(model, column) == value)
    return stmt


def _parse_bound(raw: str | None, *, end_of_day: bool, name: str) -> datetime | None:
    if raw is None or not raw.strip():
        return None
    try:
        parsed = parse_date_value(raw, end_of_day=end_of_day)
        if isinstance(parsed, str):
            parsed = as_utc(datetime.fromisoformat(parsed.replace("Z", "+00:00")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} is not a valid date") from None
    return parsed


def build_opportunity_query(
    user: AuthUser,
    filters: OpportunityFilters,
    *,
    today_start: datetime | None = None,
) -> Select[tuple[Opportunity]]:
    today = today_start or utc_today_start()
    stmt = (
        select(Opportunity)
        .join(Client, Client.id == Opportunity.client_id)
        .options(selectinload(Opportunity.client), selectinload(Opportunity.owner_seller))
    )
    stmt = apply_scope(stmt, Opportunity, seller_where(user, filters.owner_seller_id))

    if filters.stage:
        stage = normalize_stage(filters.stage)
        if stage not in STAGES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"invalid stage: {filters.stage}")
        stmt = stmt.where(Opportunity.stage == stage)
    if filters.client_id:
        stmt = stmt.where(Opportunity.client_id == filters.client_id)
    if filters.crop:
        stmt = stmt.where(Opportunity.crop.ilike(filters.crop.strip()))
    if filters.season:
        stmt = stmt.where(Opportunity.season.ilike(filters.season.strip()))
    if filters.search and filters.search.strip():
        pattern = f"%{filters.search.strip()}%"
        stmt = stmt.where(or_(Opportunity.title.ilike(pattern), Client.name.ilike(pattern)))

    date_from = _parse_bound(filters.date_from, end_of_day=False, name="dateFrom")
    date_to = _parse_bound(filters.date_to, end_of_day=True, name="dateTo")
    if date_from is not None:
        stmt = stmt.where(Opportunity.follow_up_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(Opportunity.follow_up_date <= date_to)

    if filters.status:
        if filters.status not in OPPORTUNITY_STATUSES:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"invalid status: {filters.status}")
        if filters.status == "open":
            stmt = stmt.where(Opportunity.stage.not_in(CLOSED_STAGES))
        elif filters.status == "closed":
            stmt = stmt.where(Opportunity.stage.in_(CLOSED_STAGES))

    attention: list[ColumnElement[bool]] = []
    if filters.overdue:
        attention.append(Opportunity.follow_up_date < today)
    if filters.due_soon:
        attention.append(
            and_(
                Opportunity.follow_up_date >= today,
                Opportunity.follow_up_date < today + timedelta(days=DUE_SOON_DAYS + 1),
            )
        )
    if attention:
        # closed stages never count as overdue or due soon, whatever stage was requested
        stmt = stmt.where(Opportunity.stage.not_in(CLOSED_STAGES), or_(*attention))

    return stmt.order_by(Opportunity.follow_up_date.asc(), Opportunity.value.desc())


def build_timeline_event_where(
    *,
    opportunity_id: uuid.UUID | None = None,
    client_id: uuid.UUID | None = None,
) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = []
    if opportunity_id is not None:
        conditions.append(TimelineEvent.opportunity_id == opportunity_id)
    if client_id is not None:
        conditions.append(
            or_(
                TimelineEvent.client_id == client_id,
                and_(
                    TimelineEvent.client_id.is_(None),
                    TimelineEvent.opportunity_id.in_(select(Opportunity.id).where(Opportunity.client_id == client_id)),
                ),
            )
        )
    return conditions


def timeline_scope(user: AuthUser) -> list[ColumnElement[bool]]:
    if not user.is_seller:
        return []
    return [
        or_(
            TimelineEvent.user_id == user.id,
            TimelineEvent.client_id.in_(select(Client.id).where(Client.owner_seller_id == user.id)),
            TimelineEvent.opportunity_id.in_(select(Opportunity.id).where(Opportunity.owner_seller_id == user.id)),
        )
    ]
