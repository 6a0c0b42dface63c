from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    model_validator,
)
from pydantic.alias_generators import to_camel

from salesforce_pro.core.normalize import normalize_state
from salesforce_pro.crm.dates import as_utc, parse_date_value


Stage = Literal["prospeccao", "negociacao", "proposta", "ganho", "perdido"]
ActivityType = Literal["ligacao", "whatsapp", "visita", "reuniao"]
ClientTypeCode = Literal["PJ", "PF"]
ImportAction = Literal["update", "skip", "import_anyway"]

STAGE_ALIASES = {"WON": "ganho", "won": "ganho", "LOST": "perdido", "lost": "perdido"}


def normalize_stage(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return STAGE_ALIASES.get(stripped, stripped.lower())
    return value


def _strip(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _state_code(value: Any) -> Any:
    if isinstance(value, str):
        code = normalize_state(value)
        if len(code) != 2 or not code.isalpha():
            raise ValueError("state must be a 2-letter UF code")
        return code
    return value


def _client_type(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


def _date_value(value: Any) -> Any:
    return parse_date_value(value)


Name = Annotated[str, BeforeValidator(_strip), Field(min_length=2)]
OptionalName = Annotated[Annotated[str, Field(min_length=2)] | None, BeforeValidator(_blank_to_none)]
OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]
StateCode = Annotated[str, BeforeValidator(_state_code)]
ClientType = Annotated[ClientTypeCode, BeforeValidator(_client_type)]
StageValue = Annotated[Stage, BeforeValidator(normalize_stage)]
UtcDateTime = Annotated[datetime, BeforeValidator(_date_value), AfterValidator(as_utc)]
OptionalEmail = Annotated[EmailStr | None, BeforeValidator(_blank_to_none)]
Phone = Annotated[Annotated[str, Field(min_length=8)] | None, BeforeValidator(_blank_to_none)]
OptionalUuid = Annotated[UUID | None, BeforeValidator(_blank_to_none)]
Hectares = Annotated[Annotated[float, Field(ge=0)] | None, BeforeValidator(_blank_to_none)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class UserRef(CamelModel):
    id: UUID
    name: str


class ClientRef(CamelModel):
    id: UUID
    name: str


class ClientCreate(CamelModel):
    name: Name
    city: Name
    state: StateCode
    region: OptionalText = None
    client_type: ClientType = "PJ"
    potential_ha: Hectares = None
    farm_size_ha: Hectares = None
    cnpj: OptionalText = None
    segment: OptionalText = None
    owner_seller_id: OptionalUuid = None


class ClientUpdate(CamelModel):
    name: Name | None = None
    city: Name | None = None
    state: StateCode | None = None
    region: OptionalText = None
    client_type: ClientType | None = None
    potential_ha: Hectares = None
    farm_size_ha: Hectares = None
    cnpj: OptionalText = None
    segment: OptionalText = None
    owner_seller_id: OptionalUuid = None


class ClientRead(CamelModel):
    id: UUID
    name: str
    city: str
    state: str
    region: str
    client_type: ClientTypeCode
    potential_ha: float | None
    farm_size_ha: float | None
    cnpj: str | None
    segment: str | None
    owner_seller_id: UUID
    owner_seller: UserRef | None = None
    created_at: datetime
    updated_at: datetime


class ClientPage(CamelModel):
    items: list[ClientRead]
    total: int
    page: int
    page_size: int


class CompanyCreate(CamelModel):
    name: Name
    cnpj: OptionalText = None
    segment: Name
    owner_seller_id: UUID | None = None


class CompanyUpdate(CamelModel):
    name: Name | None = None
    cnpj: OptionalText = None
    segment: Name | None = None
    owner_seller_id: UUID | None = None


class CompanyRead(CamelModel):
    id: UUID
    name: str
    cnpj: str | None
    segment: str | None
    owner_seller_id: UUID
    created_at: datetime


class ClientContactCreate(CamelModel):
    name: Name
    phone: Phone = None
    email: OptionalEmail = None
    role: OptionalText = None
    is_primary: bool = False
    owner_seller_id: UUID | None = None


class ContactCreate(ClientContactCreate):
    client_id: UUID


class ContactUpdate(CamelModel):
    name: Name | None = None
    phone: Phone = None
    email: OptionalEmail = None
    role: OptionalText = None
    is_primary: bool | None = None
    client_id: UUID | None = None
    owner_seller_id: UUID | None = None


class ContactRead(CamelModel):
    id: UUID
    name: str
    phone: str | None
    email: str | None
    role: str | None
    is_primary: bool
    client_id: UUID
    owner_seller_id: UUID
    client: ClientRef | None = None
    created_at: datetime


def _apply_legacy_date_aliases(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    payload = dict(data)
    if "proposalDate" not in payload and "proposal_date" not in payload and "proposalEntryDate" in payload:
        payload["proposalDate"] = payload.pop("proposalEntryDate")
    if (
        "expectedCloseDate" not in payload
        and "expected_close_date" not in payload
        and "expectedReturnDate" in payload
    ):
        payload["expectedCloseDate"] = payload.pop("expectedReturnDate")
    payload.pop("proposalEntryDate", None)
    payload.pop("expectedReturnDate", None)
    return payload


class OpportunityCreate(CamelModel):
    title: Name
    value: float = Field(ge=0)
    stage: StageValue = "prospeccao"
    probability: int | None = Field(default=None, ge=0, le=100)
    client_id: UUID
    owner_seller_id: UUID | None = None
    proposal_date: UtcDateTime
    follow_up_date: UtcDateTime
    expected_close_date: UtcDateTime
    last_contact_at: UtcDateTime | None = None
    notes: str | None = Field(default=None, max_length=2000)
    crop: OptionalName = None
    season: OptionalName = None
    area_ha: float | None = Field(default=None, ge=0)
    product_offered: OptionalText = None
    planting_forecast_date: UtcDateTime | None = None
    expected_ticket_per_ha: float | None = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _legacy_aliases(cls, data: Any) -> Any:
        return _apply_legacy_date_aliases(data)

    @model_validator(mode="after")
    def _check_date_order(self) -> OpportunityCreate:
        if self.expected_close_date < self.proposal_date:
            raise ValueError("expectedCloseDate must be on or after proposalDate")
        return self


class OpportunityUpdate(CamelModel):
    title: Name | None = None
    value: float | None = Field(default=None, ge=0)
    stage: StageValue | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    client_id: UUID | None = None
    owner_seller_id: UUID | None = None
    proposal_date: UtcDateTime | None = None
    follow_up_date: UtcDateTime | None = None
    expected_close_date: UtcDateTime | None = None
    last_contact_at: UtcDateTime | None = None
    notes: str | None = Field(default=None, max_length=2000)
    crop: OptionalName = None
    season: OptionalName = None
    area_ha: float | None = Field(default=None, ge=0)
    product_offered: OptionalText = None
    planting_forecast_date: UtcDateTime | None = None
    expected_ticket_per_ha: float | None = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _legacy_aliases(cls, data: Any) -> Any:
        return _apply_legacy_date_aliases(data)


class OpportunityRead(CamelModel):
    id: UUID
    title: str
    value: float
    stage: Stage
    probability: int | None
    client_id: UUID
    owner_seller_id: UUID
    proposal_date: datetime
    follow_up_date: datetime
    expected_close_date: datetime
    last_contact_at: datetime | None
    notes: str | None
    crop: str | None
    season: str | None
    area_ha: float | None
    product_offered: str | None
    planting_forecast_date: datetime | None
    expected_ticket_per_ha: float | None
    client: str
    client_city: str
    client_state: str
    owner: str
    weighted_value: float
    days_overdue: int | None
    created_at: datetime
    updated_at: datetime


class OpportunitySummary(CamelModel):
    total_pipeline_value: float
    total_weighted_value: float
    overdue_count: int
    overdue_value: float


class ActivityCreate(CamelModel):
    type: ActivityType
    notes: Name
    due_date: UtcDateTime
    done: bool = False
    opportunity_id: UUID | None = None
    owner_seller_id: UUID | None = None


class ActivityUpdate(CamelModel):
    type: ActivityType | None = None
    notes: Name | None = None
    due_date: UtcDateTime | None = None
    done: bool | None = None
    opportunity_id: UUID | None = None
    owner_seller_id: UUID | None = None


class ActivityRead(CamelModel):
    id: UUID
    type: ActivityType
    notes: str
    due_date: datetime
    done: bool
    opportunity_id: UUID | None
    opportunity_title: str | None = None
    client_name: str | None = None
    owner_seller_id: UUID
    owner: str | None = None
    created_at: datetime


class GoalCreate(CamelModel):
    month: str = Field(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    target_value: float = Field(gt=0)
    seller_id: UUID


class GoalUpdate(CamelModel):
    month: str | None = Field(default=None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    target_value: float | None = Field(default=None, gt=0)


class GoalRead(CamelModel):
    id: UUID
    month: str
    target_value: float
    seller_id: UUID
    seller_name: str | None = None
    created_at: datetime
    updated_at: datetime


TimelineEventType = Literal["criacao_oportunidade", "comentario", "mudanca_estagio", "mudanca_followup"]


class TimelineEventRead(CamelModel):
    id: UUID
    type: TimelineEventType
    title: str
    message: str
    client_id: UUID | None
    opportunity_id: UUID | None
    user_id: UUID
    user_name: str | None = None
    meta: dict[str, Any] | None
    created_at: datetime


class TimelineEventPage(CamelModel):
    items: list[TimelineEventRead]
    next_cursor: UUID | None = None


class CommentCreate(CamelModel):
    type: Literal["comentario"] = "comentario"
    message: Name
    opportunity_id: UUID

    @model_validator(mode="before")
    @classmethod
    def _description_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "message" not in data and "description" in data:
            payload = dict(data)
            payload["message"] = payload.pop("description")
            return payload
        return data


class ClientImportRow(ClientCreate):
    source_row_number: int | None = None
    existing_client_id: UUID | None = None
    action: ImportAction | None = None


class ClientImportRequest(CamelModel):
    rows: list[dict[str, Any]] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _clients_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "rows" not in data and "clients" in data:
            return {"rows": data["clients"]}
        return data


class ImportPreviewItem(CamelModel):
    row_number: int
    row: dict[str, Any]
    existing_client_id: UUID | None = None
    reason: str | None = None
    error: str | None = None


class ImportPreviewResponse(CamelModel):
    new_rows: list[ImportPreviewItem]
    duplicates: list[ImportPreviewItem]
    errors: list[ImportPreviewItem]


class ImportSummaryCounts(CamelModel):
    total: int
    new_count: int
    duplicate_count: int
    error_count: int


class ImportSimulationResponse(CamelModel):
    simulated: bool = True
    summary: ImportSummaryCounts


class ImportRowError(CamelModel):
    row_number: int
    client_name: str
    message: str


class ImportResult(CamelModel):
    imported: int
    updated: int
    ignored: int
    error_count: int
    errors: list[ImportRowError]


class PipelineBucket(CamelModel):
    key: str
    value: float
    weighted: float
    count: int


class TopClient(CamelModel):
    client_id: UUID
    client_name: str
    weighted_value: float
    value: float
    opportunities: int


class SellerOverdue(CamelModel):
    seller_id: UUID
    seller_name: str
    overdue_count: int
    overdue_value: float


class StageConversion(CamelModel):
    from_stage: Stage
    to_stage: Stage
    base_count: int
    progressed_count: int
    conversion_rate: float


class PortfolioRow(CamelModel):
    client_id: UUID
    client_name: str
    potential_ha: float
    farm_size_ha: float
    opportunities: int
    weighted_value: float
    potential_coverage_percent: float


class PlantingWindow(CamelModel):
    month: str
    opportunities: int
    weighted_value: float
    pipeline_value: float


class AgroCrmKpis(CamelModel):
    pipeline_by_crop: list[PipelineBucket]
    pipeline_by_season: list[PipelineBucket]
    top_clients_by_weighted_value: list[TopClient]
    overdue_by_seller: list[SellerOverdue]
    stage_conversion: list[StageConversion]


class AgroCrmTables(CamelModel):
    portfolio_by_potential_ha: list[PortfolioRow]
    opportunities_by_planting_window: list[PlantingWindow]


class AgroCrmReport(CamelModel):
    kpis: AgroCrmKpis
    tables: AgroCrmTables
