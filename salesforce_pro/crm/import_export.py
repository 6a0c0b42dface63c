from __future__ import annotations

import io
import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any, cast

from fastapi import HTTPException
from openpyxl import Workbook
from opentelemetry import trace
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salesforce_pro.core.access import seller_where
from salesforce_pro.core.auth import AuthUser
from salesforce_pro.core.errors import first_error_message
from salesforce_pro.core.normalize import normalize_cnpj, normalize_state, normalize_text
from salesforce_pro.crm.filters import apply_scope
from salesforce_pro.crm.models import Client
from salesforce_pro.crm.schemas import (
    ClientCreate,
    ClientImportRow,
    ClientUpdate,
    ImportPreviewItem,
    ImportPreviewResponse,
    ImportResult,
    ImportSimulationResponse,
)
from salesforce_pro.crm.service import ClientService
from salesforce_pro.metrics import observe_import_duration, observe_import_rows


logger = logging.getLogger("salesforce_pro.clients.import")
tracer = trace.get_tracer("salesforce_pro.clients.import")

CLIENT_SHEET_HEADERS = [
    "name",
    "city",
    "state",
    "region",
    "potentialHa",
    "farmSizeHa",
    "clientType",
    "cnpj",
    "segment",
    "ownerSellerId",
]
TEMPLATE_SAMPLE_ROW = {
    "name": "Fazenda Santa Luzia",
    "city": "Sorriso",
    "state": "MT",
    "region": "Centro-Oeste",
    "potentialHa": 1200,
    "farmSizeHa": 1500,
    "clientType": "PJ",
    "cnpj": "12.345.678/0001-90",
    "segment": "Soja e milho",
    "ownerSellerId": "",
}
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

REASON_IN_FILE = "Duplicated inside the file"
REASON_DOCUMENT = "Client already exists (document)"
REASON_IDENTITY = "Client already exists (name/city/state)"
MESSAGE_NO_ACTION = "Duplicated client without an action"
MESSAGE_UPDATE_IN_FILE = "Cannot update: duplicated inside the file with no existing client linked"
MESSAGE_UPDATE_FAILED = "Could not update the existing client"
MESSAGE_IMPORT_FAILED = "Could not import the client"

_IMPORT_ONLY_FIELDS = {"source_row_number", "existing_client_id", "action"}


def duplicate_fingerprint(*, cnpj: str | None, name: str | None, city: str | None, state: str | None) -> str:
    document = normalize_cnpj(cnpj)
    if document:
        return f"doc:{document}"
    return f"n:{normalize_text(name)}|c:{normalize_text(city)}|s:{normalize_state(state)}"


def _row_number(raw: dict[str, Any], index: int) -> int:
    value = raw.get("sourceRowNumber", raw.get("source_row_number"))
    try:
        number = int(value)
    except (TypeError, ValueError):
        return index + 2
    return number if number > 0 else index + 2


@dataclass
class PreviewEntry:
    row_number: int
    row: dict[str, Any]
    status: str
    payload: ClientImportRow | None = None
    existing_client_id: uuid.UUID | None = None
    reason: str | None = None
    error: str | None = None

    @property
    def client_name(self) -> str:
        return str(self.row.get("name") or "")


class ClientImportService:
    entity_type = "crm.client_import"

    def __init__(self, client_service: ClientService) -> None:
        self.client_service = client_service

    def build_preview(self, session: Session, actor_user: AuthUser, rows: list[dict[str, Any]]) -> list[PreviewEntry]:
        by_document: dict[str, uuid.UUID] = {}
        by_identity: dict[str, uuid.UUID] = {}
        existing = session.scalars(apply_scope(select(Client), Client, seller_where(actor_user))).all()
        for client in existing:
            document = client.cnpj_normalized or normalize_cnpj(client.cnpj)
            if document:
                by_document[document] = client.id
            by_identity[duplicate_fingerprint(cnpj=None, name=client.name, city=client.city, state=client.state)] = client.id

        entries: list[PreviewEntry] = []
        fingerprints: dict[int, str] = {}
        for index, raw in enumerate(rows):
            row_number = _row_number(raw, index)
            try:
                payload = ClientImportRow.model_validate(raw)
            except ValidationError as exc:
                entries.append(
                    PreviewEntry(row_number=row_number, row=raw, status="error", error=first_error_message(exc.errors()))
                )
                continue
            fingerprints[len(entries)] = duplicate_fingerprint(
                cnpj=payload.cnpj,
                name=payload.name,
                city=payload.city,
                state=payload.state,
            )
            entries.append(PreviewEntry(row_number=row_number, row=raw, status="new", payload=payload))

        counts = Counter(fingerprints.values())
        for position, fingerprint in fingerprints.items():
            entry = entries[position]
            payload = cast(ClientImportRow, entry.payload)
            if counts[fingerprint] > 1:
                entry.status, entry.reason = "duplicate", REASON_IN_FILE
                continue
            document = normalize_cnpj(payload.cnpj)
            if document:
                existing_id = by_document.get(document)
                reason = REASON_DOCUMENT
            else:
                existing_id = by_identity.get(fingerprint)
                reason = REASON_IDENTITY
            if existing_id is not None:
                entry.status, entry.reason, entry.existing_client_id = "duplicate", reason, existing_id
        return entries

    def preview(self, session: Session, actor_user: AuthUser, rows: list[dict[str, Any]]) -> ImportPreviewResponse:
        entries = self.build_preview(session, actor_user, rows)
        return ImportPreviewResponse(
            new_rows=[
                ImportPreviewItem(row_number=entry.row_number, row=entry.row)
                for entry in entries
                if entry.status == "new"
            ],
            duplicates=[
                ImportPreviewItem(
                    row_number=entry.row_number,
                    row=entry.row,
                    existing_client_id=entry.existing_client_id,
                    reason=entry.reason,
                )
                for entry in entries
                if entry.status == "duplicate"
            ],
            errors=[
                ImportPreviewItem(row_number=entry.row_number, row=entry.row, error=entry.error)
                for entry in entries
                if entry.status == "error"
            ],
        )

    def simulate(self, session: Session, actor_user: AuthUser, rows: list[dict[str, Any]]) -> ImportSimulationResponse:
        entries = self.build_preview(session, actor_user, rows)
        statuses = Counter(entry.status for entry in entries)
        return ImportSimulationResponse.model_validate(
            {
                "simulated": True,
                "summary": {
                    "total": len(entries),
                    "new_count": statuses["new"],
                    "duplicate_count": statuses["duplicate"],
                    "error_count": statuses["error"],
                },
            }
        )

    def import_rows(self, session: Session, actor_user: AuthUser, rows: list[dict[str, Any]]) -> ImportResult:
        started = time.perf_counter()
        imported = updated = ignored = 0
        errors: list[dict[str, Any]] = []

        def fail(entry: PreviewEntry, message: str) -> None:
            errors.append({"row_number": entry.row_number, "client_name": entry.client_name, "message": message})

        with tracer.start_as_current_span("crm.clients.import") as span:
            span.set_attribute("total_rows", len(rows))
            entries = self.build_preview(session, actor_user, rows)
            for entry in entries:
                if entry.status == "error":
                    fail(entry, entry.error or MESSAGE_IMPORT_FAILED)
                    continue
                payload = cast(ClientImportRow, entry.payload)
                action = payload.action

                if action == "skip":
                    ignored += 1
                    continue
                if entry.status == "duplicate" and action is None:
                    fail(entry, MESSAGE_NO_ACTION)
                    continue
                if entry.status == "duplicate" and action == "update":
                    if entry.existing_client_id is None:
                        fail(entry, MESSAGE_UPDATE_IN_FILE)
                        continue
                    message = self._update_existing(session, actor_user, entry.existing_client_id, payload)
                    if message is None:
                        updated += 1
                    else:
                        fail(entry, message)
                    continue

                message = self._create(session, actor_user, payload)
                if message is None:
                    imported += 1
                else:
                    fail(entry, message)

            span.set_attribute("imported", imported)
            span.set_attribute("error_count", len(errors))

        duration = time.perf_counter() - started
        observe_import_rows("imported", imported)
        observe_import_rows("updated", updated)
        observe_import_rows("ignored", ignored)
        observe_import_rows("error", len(errors))
        observe_import_duration("bulk", duration)
        logger.info(
            "clients.import.finished",
            extra={
                "user_id": str(actor_user.id),
                "total_rows": len(rows),
                "imported": imported,
                "updated": updated,
                "ignored": ignored,
                "error_count": len(errors),
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return ImportResult.model_validate(
            {
                "imported": imported,
                "updated": updated,
                "ignored": ignored,
                "error_count": len(errors),
                "errors": errors,
            }
        )

    def _create(self, session: Session, actor_user: AuthUser, payload: ClientImportRow) -> str | None:
        try:
            self.client_service.create_client(
                session,
                actor_user,
                ClientCreate.model_validate(payload.model_dump(exclude=_IMPORT_ONLY_FIELDS)),
            )
        except HTTPException as exc:
            return str(exc.detail)
        except SQLAlchemyError:
            session.rollback()
            logger.exception("clients.import.row_failed", extra={"user_id": str(actor_user.id)})
            return MESSAGE_IMPORT_FAILED
        return None

    def _update_existing(
        self,
        session: Session,
        actor_user: AuthUser,
        client_id: uuid.UUID,
        payload: ClientImportRow,
    ) -> str | None:
        changes = payload.model_dump(exclude_unset=True, exclude=_IMPORT_ONLY_FIELDS)
        try:
            self.client_service.update_client(session, actor_user, client_id, ClientUpdate.model_validate(changes))
        except HTTPException as exc:
            if exc.status_code == 409:
                return str(exc.detail)
            return f"{MESSAGE_UPDATE_FAILED}: {exc.detail}"
        except SQLAlchemyError:
            session.rollback()
            logger.exception("clients.import.row_failed", extra={"client_id": str(client_id)})
            return MESSAGE_UPDATE_FAILED
        return None

    def build_template(self) -> bytes:
        return _workbook_bytes([TEMPLATE_SAMPLE_ROW])

    def export_clients(self, session: Session, actor_user: AuthUser) -> bytes:
        stmt = apply_scope(select(Client), Client, seller_where(actor_user))
        clients = session.scalars(stmt.order_by(Client.name.asc())).all()
        return _workbook_bytes(
            [
                {
                    "name": client.name,
                    "city": client.city,
                    "state": client.state,
                    "region": client.region,
                    "potentialHa": client.potential_ha,
                    "farmSizeHa": client.farm_size_ha,
                    "clientType": client.client_type,
                    "cnpj": client.cnpj or "",
                    "segment": client.segment or "",
                    "ownerSellerId": str(client.owner_seller_id),
                }
                for client in clients
            ]
        )


def _workbook_bytes(rows: list[dict[str, Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "clients"
    sheet.append(CLIENT_SHEET_HEADERS)
    for row in rows:
        sheet.append([row.get(header) for header in CLIENT_SHEET_HEADERS])
    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()
