from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from salesforce_pro.core.auth import ROLE_DIRETOR, ROLE_GERENTE, AuthUser, get_current_user
from salesforce_pro.core.database import get_db
from salesforce_pro.core.errors import error_response, first_error_message
from salesforce_pro.core.rbac import ensure_role
from salesforce_pro.crm.filters import OpportunityFilters
from salesforce_pro.crm.import_export import XLSX_MEDIA_TYPE, ClientImportService
from salesforce_pro.crm.reports import build_agro_crm_report
from salesforce_pro.crm.schemas import (
    ActivityCreate,
    ActivityRead,
    ActivityUpdate,
    AgroCrmReport,
    ClientContactCreate,
    ClientCreate,
    ClientImportRequest,
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
    ImportPreviewResponse,
    ImportResult,
    ImportSimulationResponse,
    OpportunityCreate,
    OpportunityRead,
    OpportunitySummary,
    OpportunityUpdate,
    TimelineEventPage,
    TimelineEventRead,
)
from salesforce_pro.crm.service import (
    ActivityService,
    ClientService,
    ContactService,
    GoalService,
    OpportunityService,
    TimelineService,
)

clients_router = APIRouter(prefix="/clients", tags=["crm.clients"])
companies_router = APIRouter(prefix="/companies", tags=["crm.companies"])
contacts_router = APIRouter(prefix="/contacts", tags=["crm.contacts"])
opportunities_router = APIRouter(prefix="/opportunities", tags=["crm.opportunities"])
activities_router = APIRouter(prefix="/activities", tags=["crm.activities"])
goals_router = APIRouter(prefix="/goals", tags=["crm.goals"])
events_router = APIRouter(prefix="/events", tags=["crm.events"])
reports_router = APIRouter(prefix="/reports", tags=["crm.reports"])

client_service = ClientService()
contact_service = ContactService(client_service)
opportunity_service = OpportunityService(client_service)
activity_service = ActivityService(opportunity_service)
goal_service = GoalService()
timeline_service = TimelineService(opportunity_service)
client_import_service = ClientImportService(client_service)

_MANAGEMENT_ROLES = (ROLE_DIRETOR, ROLE_GERENTE)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def _no_content() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _owner_filter(owner_seller_id: uuid.UUID | None, seller_id: uuid.UUID | None) -> uuid.UUID | None:
    return owner_seller_id or seller_id


def _parse_import_request(payload: Any) -> ClientImportRequest:
    try:
        return ClientImportRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=first_error_message(exc.errors(), "Invalid import payload"),
        ) from None


# Clients


@clients_router.get("", response_model=list[ClientRead] | ClientPage)
def list_clients(
    request: Request,
    q: str | None = Query(default=None),
    state: str | None = Query(default=None),
    region: str | None = Query(default=None),
    client_type: str | None = Query(default=None, alias="clientType"),
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    seller_id: uuid.UUID | None = Query(default=None, alias="sellerId"),
    page: int | None = Query(default=None),
    page_size: int | None = Query(default=None, alias="pageSize"),
    sort: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ClientRead] | ClientPage | JSONResponse:
    try:
        return client_service.list_clients(
            db,
            user,
            filters={
                "q": q,
                "state": state,
                "region": region,
                "client_type": client_type,
                "owner_seller_id": _owner_filter(owner_seller_id, seller_id),
            },
            paginate=page is not None or page_size is not None or sort is not None,
            page=page or 1,
            page_size=page_size or 20,
            sort=sort,
        )
    except HTTPException as exc:
        return _failed(request, exc, "client_list_failed")


@clients_router.post("", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "client_create_failed")


@clients_router.post("/import/preview", response_model=ImportPreviewResponse)
def preview_client_import(
    request: Request,
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ImportPreviewResponse | JSONResponse:
    try:
        return client_import_service.preview(db, user, _parse_import_request(payload).rows)
    except HTTPException as exc:
        return _failed(request, exc, "client_import_preview_failed")


@clients_router.post("/import/simulate", response_model=ImportSimulationResponse)
def simulate_client_import(
    request: Request,
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ImportSimulationResponse | JSONResponse:
    try:
        return client_import_service.simulate(db, user, _parse_import_request(payload).rows)
    except HTTPException as exc:
        return _failed(request, exc, "client_import_simulate_failed")


@clients_router.post("/import", response_model=ImportResult)
def import_clients(
    request: Request,
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ImportResult | JSONResponse:
    try:
        return client_import_service.import_rows(db, user, _parse_import_request(payload).rows)
    except HTTPException as exc:
        return _failed(request, exc, "client_import_failed")


@clients_router.get("/import/template", response_model=None)
def download_client_import_template(user: AuthUser = Depends(get_current_user)) -> Response:
    return Response(
        content=client_import_service.build_template(),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="clients-template.xlsx"'},
    )


@clients_router.get("/export", response_model=None)
def export_clients(db: Session = Depends(get_db), user: AuthUser = Depends(get_current_user)) -> Response:
    return Response(
        content=client_import_service.export_clients(db, user),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="clients.xlsx"'},
    )


@clients_router.get("/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, user, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "client_get_failed")


@clients_router.put("/{client_id}", response_model=ClientRead)
def update_client(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.update_client(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "client_update_failed")


@clients_router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        client_service.delete_client(db, user, client_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "client_delete_failed")


@clients_router.get("/{client_id}/contacts", response_model=list[ContactRead])
def list_client_contacts(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        return contact_service.list_for_client(db, user, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "client_contact_list_failed")


@clients_router.post("/{client_id}/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_client_contact(
    request: Request,
    client_id: uuid.UUID,
    dto: ClientContactCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.create_for_client(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "client_contact_create_failed")


@clients_router.put("/{client_id}/contacts/{contact_id}", response_model=ContactRead)
def update_client_contact(
    request: Request,
    client_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.update_contact(db, user, contact_id, dto, client_id=client_id)
    except HTTPException as exc:
        return _failed(request, exc, "client_contact_update_failed")


@clients_router.delete(
    "/{client_id}/contacts/{contact_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_model=None,
)
def delete_client_contact(
    request: Request,
    client_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        contact_service.delete_contact(db, user, contact_id, client_id=client_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "client_contact_delete_failed")


# Companies


@companies_router.get("", response_model=list[CompanyRead])
def list_companies(
    request: Request,
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[CompanyRead] | JSONResponse:
    try:
        return client_service.list_companies(db, user, owner_seller_id)
    except HTTPException as exc:
        return _failed(request, exc, "company_list_failed")


@companies_router.post("", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return client_service.create_company(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "company_create_failed")


@companies_router.put("/{company_id}", response_model=CompanyRead)
def update_company(
    request: Request,
    company_id: uuid.UUID,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        return client_service.update_company(db, user, company_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "company_update_failed")


@companies_router.delete("/{company_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_company(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        client_service.delete_company(db, user, company_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "company_delete_failed")


# Contacts


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        return contact_service.list_contacts(db, user, owner_seller_id)
    except HTTPException as exc:
        return _failed(request, exc, "contact_list_failed")


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "contact_create_failed")


@contacts_router.put("/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "contact_update_failed")


@contacts_router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        contact_service.delete_contact(db, user, contact_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "contact_delete_failed")


# Opportunities


@opportunities_router.get("", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    stage: str | None = Query(default=None),
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    client_id: uuid.UUID | None = Query(default=None, alias="clientId"),
    crop: str | None = Query(default=None),
    season: str | None = Query(default=None),
    search: str | None = Query(default=None),
    date_from: str | None = Query(default=None, alias="dateFrom"),
    date_to: str | None = Query(default=None, alias="dateTo"),
    status_filter: str | None = Query(default=None, alias="status"),
    overdue: bool = Query(default=False),
    due_soon: bool = Query(default=False, alias="dueSoon"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        filters = OpportunityFilters(
            stage=stage,
            owner_seller_id=owner_seller_id,
            client_id=client_id,
            crop=crop,
            season=season,
            search=search,
            date_from=date_from,
            date_to=date_to,
            status=status_filter,
            overdue=overdue,
            due_soon=due_soon,
        )
        return opportunity_service.list_opportunities(db, user, filters)
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_list_failed")


@opportunities_router.get("/summary", response_model=OpportunitySummary)
def summarize_opportunities(
    request: Request,
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OpportunitySummary | JSONResponse:
    try:
        return opportunity_service.summarize(db, user, owner_seller_id)
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_summary_failed")


@opportunities_router.get("/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, user, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_get_failed")


@opportunities_router.post("", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create_opportunity(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_create_failed")


@opportunities_router.put("/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_update_failed")


@opportunities_router.delete("/{opportunity_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        opportunity_service.delete_opportunity(db, user, opportunity_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "opportunity_delete_failed")


# Activities


@activities_router.get("", response_model=list[ActivityRead])
def list_activities(
    request: Request,
    done: bool | None = Query(default=None),
    opportunity_id: uuid.UUID | None = Query(default=None, alias="opportunityId"),
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        return activity_service.list_activities(
            db,
            user,
            {"done": done, "opportunity_id": opportunity_id, "owner_seller_id": owner_seller_id},
        )
    except HTTPException as exc:
        return _failed(request, exc, "activity_list_failed")


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.create_activity(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "activity_create_failed")


@activities_router.put("/{activity_id}", response_model=ActivityRead)
def update_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        return activity_service.update_activity(db, user, activity_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "activity_update_failed")


@activities_router.delete("/{activity_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        activity_service.delete_activity(db, user, activity_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "activity_delete_failed")


# Goals


@goals_router.get("", response_model=list[GoalRead])
def list_goals(
    request: Request,
    month: str | None = Query(default=None),
    seller_id: uuid.UUID | None = Query(default=None, alias="sellerId"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[GoalRead] | JSONResponse:
    try:
        return goal_service.list_goals(db, user, month=month, seller_id=seller_id)
    except HTTPException as exc:
        return _failed(request, exc, "goal_list_failed")


@goals_router.post("", response_model=GoalRead, status_code=status.HTTP_201_CREATED)
def create_goal(
    request: Request,
    dto: GoalCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> GoalRead | JSONResponse:
    try:
        ensure_role(user, *_MANAGEMENT_ROLES)
        return goal_service.create_goal(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "goal_create_failed")


@goals_router.put("/{goal_id}", response_model=GoalRead)
def update_goal(
    request: Request,
    goal_id: uuid.UUID,
    dto: GoalUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> GoalRead | JSONResponse:
    try:
        ensure_role(user, *_MANAGEMENT_ROLES)
        return goal_service.update_goal(db, user, goal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "goal_update_failed")


@goals_router.delete("/{goal_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_goal(
    request: Request,
    goal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> Response:
    try:
        ensure_role(user, *_MANAGEMENT_ROLES)
        goal_service.delete_goal(db, user, goal_id)
        return _no_content()
    except HTTPException as exc:
        return _failed(request, exc, "goal_delete_failed")


# Timeline


@events_router.get("", response_model=TimelineEventPage)
def list_events(
    request: Request,
    opportunity_id: uuid.UUID | None = Query(default=None, alias="opportunityId"),
    client_id: uuid.UUID | None = Query(default=None, alias="clientId"),
    take: int = Query(default=50, ge=1),
    cursor: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> TimelineEventPage | JSONResponse:
    try:
        return timeline_service.list_events(
            db,
            user,
            opportunity_id=opportunity_id,
            client_id=client_id,
            take=take,
            cursor=cursor,
        )
    except HTTPException as exc:
        return _failed(request, exc, "event_list_failed")


@events_router.post("", response_model=TimelineEventRead, status_code=status.HTTP_201_CREATED)
def create_comment(
    request: Request,
    dto: CommentCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> TimelineEventRead | JSONResponse:
    try:
        return timeline_service.create_comment(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "event_create_failed")


# Reports


@reports_router.get("/agro-crm", response_model=AgroCrmReport)
def agro_crm_report(
    request: Request,
    owner_seller_id: uuid.UUID | None = Query(default=None, alias="ownerSellerId"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AgroCrmReport | JSONResponse:
    try:
        return build_agro_crm_report(db, user, owner_seller_id)
    except HTTPException as exc:
        return _failed(request, exc, "report_agro_crm_failed")


routers = [
    clients_router,
    companies_router,
    contacts_router,
    opportunities_router,
    activities_router,
    goals_router,
    events_router,
    reports_router,
]
