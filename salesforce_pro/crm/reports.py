from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from salesforce_pro.core.access import seller_where
from salesforce_pro.core.auth import AuthUser
from salesforce_pro.crm.dates import as_utc, utc_today_start
from salesforce_pro.crm.filters import CLOSED_STAGES, apply_scope
from salesforce_pro.crm.models import Opportunity
from salesforce_pro.crm.schemas import AgroCrmReport
from salesforce_pro.crm.service import weighted_value

UNSPECIFIED = "não informado"
CONVERSION_STAGES = ("prospeccao", "negociacao", "proposta", "ganho")
TOP_CLIENTS_LIMIT = 10


@dataclass
class _Bucket:
    value: float = 0.0
    weighted: float = 0.0
    count: int = 0

    def add(self, value: float, weighted: float) -> None:
        self.value += value
        self.weighted += weighted
        self.count += 1


@dataclass
class _ClientTotals:
    client_id: uuid.UUID
    client_name: str
    potential_ha: float
    farm_size_ha: float
    value: float = 0.0
    weighted_value: float = 0.0
    opportunities: int = 0


@dataclass
class _SellerOverdue:
    seller_id: uuid.UUID
    seller_name: str
    overdue_count: int = 0
    overdue_value: float = 0.0


@dataclass
class _PlantingMonth:
    month: str
    opportunities: int = 0
    weighted_value: float = 0.0
    pipeline_value: float = 0.0


@dataclass
class _Aggregation:
    by_crop: dict[str, _Bucket] = field(default_factory=lambda: defaultdict(_Bucket))
    by_season: dict[str, _Bucket] = field(default_factory=lambda: defaultdict(_Bucket))
    by_stage: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_client: dict[uuid.UUID, _ClientTotals] = field(default_factory=dict)
    overdue_by_seller: dict[uuid.UUID, _SellerOverdue] = field(default_factory=dict)
    planting: dict[str, _PlantingMonth] = field(default_factory=dict)


def _buckets(groups: dict[str, _Bucket]) -> list[dict]:
    rows = [
        {"key": key, "value": round(b.value, 2), "weighted": round(b.weighted, 2), "count": b.count}
        for key, b in groups.items()
    ]
    return sorted(rows, key=lambda row: row["weighted"], reverse=True)


def _stage_conversion(by_stage: dict[str, int]) -> list[dict]:
    rows = []
    for current, following in zip(CONVERSION_STAGES, CONVERSION_STAGES[1:]):
        base = by_stage.get(current, 0)
        progressed = by_stage.get(following, 0)
        rows.append(
            {
                "from_stage": current,
                "to_stage": following,
                "base_count": base,
                "progressed_count": progressed,
                "conversion_rate": round(progressed / base * 100, 2) if base > 0 else 0.0,
            }
        )
    return rows


def aggregate(opportunities: list[Opportunity], today_start: datetime) -> _Aggregation:
    agg = _Aggregation()
    for opportunity in opportunities:
        weighted = weighted_value(opportunity.value, opportunity.probability)
        agg.by_crop[opportunity.crop or UNSPECIFIED].add(opportunity.value, weighted)
        agg.by_season[opportunity.season or UNSPECIFIED].add(opportunity.value, weighted)
        agg.by_stage[opportunity.stage] += 1

        client = opportunity.client
        totals = agg.by_client.get(client.id)
        if totals is None:
            totals = agg.by_client[client.id] = _ClientTotals(
                client_id=client.id,
                client_name=client.name,
                potential_ha=float(client.potential_ha or 0),
                farm_size_ha=float(client.farm_size_ha or 0),
            )
        totals.value += opportunity.value
        totals.weighted_value += weighted
        totals.opportunities += 1

        planting_date = as_utc(opportunity.planting_forecast_date)
        if planting_date is not None:
            month = planting_date.strftime("%Y-%m")
            window = agg.planting.setdefault(month, _PlantingMonth(month=month))
            window.opportunities += 1
            window.weighted_value += weighted
            window.pipeline_value += opportunity.value

        expected_close = as_utc(opportunity.expected_close_date)
        if opportunity.stage not in CLOSED_STAGES and expected_close < today_start:  # type: ignore[operator]
            seller = opportunity.owner_seller
            overdue = agg.overdue_by_seller.setdefault(
                seller.id,
                _SellerOverdue(seller_id=seller.id, seller_name=seller.name),
            )
            overdue.overdue_count += 1
            overdue.overdue_value += opportunity.value
    return agg


def build_agro_crm_report(
    session: Session,
    actor_user: AuthUser,
    owner_seller_id: uuid.UUID | None = None,
    *,
    today_start: datetime | None = None,
) -> AgroCrmReport:
    """Aggregates every visible opportunity, open or closed, into the agro commercial report."""
    stmt = apply_scope(select(Opportunity), Opportunity, seller_where(actor_user, owner_seller_id))
    opportunities = session.scalars(
        stmt.options(selectinload(Opportunity.client), selectinload(Opportunity.owner_seller))
    ).all()
    agg = aggregate(list(opportunities), today_start or utc_today_start())

    top_clients = sorted(agg.by_client.values(), key=lambda row: row.weighted_value, reverse=True)
    portfolio = sorted(agg.by_client.values(), key=lambda row: row.potential_ha, reverse=True)
    overdue = sorted(agg.overdue_by_seller.values(), key=lambda row: row.overdue_count, reverse=True)

    return AgroCrmReport.model_validate(
        {
            "kpis": {
                "pipeline_by_crop": _buckets(agg.by_crop),
                "pipeline_by_season": _buckets(agg.by_season),
                "top_clients_by_weighted_value": [
                    {
                        "client_id": row.client_id,
                        "client_name": row.client_name,
                        "weighted_value": round(row.weighted_value, 2),
                        "value": round(row.value, 2),
                        "opportunities": row.opportunities,
                    }
                    for row in top_clients[:TOP_CLIENTS_LIMIT]
                ],
                "overdue_by_seller": [
                    {
                        "seller_id": row.seller_id,
                        "seller_name": row.seller_name,
                        "overdue_count": row.overdue_count,
                        "overdue_value": round(row.overdue_value, 2),
                    }
                    for row in overdue
                ],
                "stage_conversion": _stage_conversion(agg.by_stage),
            },
            "tables": {
                "portfolio_by_potential_ha": [
                    {
                        "client_id": row.client_id,
                        "client_name": row.client_name,
                        "potential_ha": row.potential_ha,
                        "farm_size_ha": row.farm_size_ha,
                        "opportunities": row.opportunities,
                        "weighted_value": round(row.weighted_value, 2),
                        "potential_coverage_percent": (
                            round(row.potential_ha / row.farm_size_ha * 100, 2) if row.farm_size_ha > 0 else 0.0
                        ),
                    }
                    for row in portfolio
                ],
                "opportunities_by_planting_window": [
                    {
                        "month": window.month,
                        "opportunities": window.opportunities,
                        "weighted_value": round(window.weighted_value, 2),
                        "pipeline_value": round(window.pipeline_value, 2),
                    }
                    for window in sorted(agg.planting.values(), key=lambda row: row.month)
                ],
            },
        }
    )
