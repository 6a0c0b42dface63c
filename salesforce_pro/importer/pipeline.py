from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from salesforce_pro.importer.client import ApiError, CrmApiClient
from salesforce_pro.importer.mapping import apply_mapping, missing_required, suggest_mapping, visible_fields
from salesforce_pro.importer.parsing import ParsedRow, parse_client_row
from salesforce_pro.importer.spreadsheet import SheetData

logger = logging.getLogger("salesforce_pro.importer")

CHUNK_SIZE = 10
FALLBACK_STATUSES = {404, 405, 501}
DUPLICATE_ACTIONS = ("update", "skip", "import_anyway")
_IMPORT_ONLY_KEYS = ("sourceRowNumber", "existingClientId", "action")


class Step(str, Enum):
    MAPPING = "mapping"
    PREVIEW = "preview"
    DONE = "done"


class PipelineStateError(RuntimeError):
    """Raised when a step is requested before the previous one completed."""


@dataclass
class DuplicateRow:
    row_number: int
    payload: dict[str, Any]
    existing_client_id: str | None
    reason: str | None
    action: str | None = None


@dataclass
class ImportSummary:
    imported: int = 0
    updated: int = 0
    ignored: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def add_error(self, row_number: int, client_name: str, message: str) -> None:
        self.errors.append({"rowNumber": row_number, "clientName": client_name, "message": message})

    def merge(self, other: ImportSummary) -> None:
        self.imported += other.imported
        self.updated += other.updated
        self.ignored += other.ignored
        self.errors.extend(other.errors)


def _strip_import_keys(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in _IMPORT_ONLY_KEYS}


class ClientImportPipeline:
    """Mapping -> preview -> import flow over one spreadsheet.

    Rows failing local validation never reach the API; they are reported in the preview
    and counted as errors in the final summary.
    """

    def __init__(
        self,
        api: CrmApiClient,
        sheet: SheetData,
        *,
        can_map_owner: bool = True,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.api = api
        self.sheet = sheet
        self.can_map_owner = can_map_owner
        self.chunk_size = chunk_size
        self.step = Step.MAPPING
        self.mapping = suggest_mapping(sheet.headers, can_map_owner=can_map_owner)
        self.new_rows: list[dict[str, Any]] = []
        self.duplicates: dict[int, DuplicateRow] = {}
        self.local_errors: list[ParsedRow] = []
        self.server_errors: list[dict[str, Any]] = []

    def set_mapping(self, mapping: dict[str, str]) -> None:
        allowed = {f.key for f in visible_fields(can_map_owner=self.can_map_owner)}
        unknown_fields = sorted(set(mapping) - allowed)
        if unknown_fields:
            raise ValueError(f"unknown fields in mapping: {', '.join(unknown_fields)}")
        unknown_headers = sorted({h for h in mapping.values() if h and h not in self.sheet.headers})
        if unknown_headers:
            raise ValueError(f"columns not found in spreadsheet: {', '.join(unknown_headers)}")
        self.mapping = {key: header for key, header in mapping.items() if header}
        self.step = Step.MAPPING

    def override_mapping(self, overrides: dict[str, str]) -> None:
        self.set_mapping({**self.mapping, **overrides})

    def parse_rows(self) -> list[ParsedRow]:
        return [
            parse_client_row(row.row_number, apply_mapping(row, self.mapping), can_map_owner=self.can_map_owner)
            for row in self.sheet.rows
        ]

    def preview(self) -> dict[str, int]:
        missing = missing_required(self.mapping)
        if missing:
            raise PipelineStateError(f"required fields are not mapped: {', '.join(missing)}")

        parsed = self.parse_rows()
        valid = [row for row in parsed if row.is_valid]
        self.local_errors = [row for row in parsed if not row.is_valid]
        self.new_rows, self.duplicates, self.server_errors = [], {}, []

        if valid:
            by_number = {row.row_number: row.payload for row in valid}
            result = self.api.preview_import([row.payload for row in valid])
            for item in result.get("newRows", []):
                self.new_rows.append(by_number.get(item["rowNumber"], item["row"]))
            for item in result.get("duplicates", []):
                self.duplicates[item["rowNumber"]] = DuplicateRow(
                    row_number=item["rowNumber"],
                    payload=by_number.get(item["rowNumber"], item["row"]),
                    existing_client_id=item.get("existingClientId"),
                    reason=item.get("reason"),
                )
            self.server_errors = list(result.get("errors", []))

        self.step = Step.PREVIEW
        counts = {
            "total": len(parsed),
            "new": len(self.new_rows),
            "duplicates": len(self.duplicates),
            "errors": len(self.local_errors) + len(self.server_errors),
        }
        logger.info("importer.preview", extra=counts)
        return counts

    def decide(self, row_number: int, action: str) -> None:
        if action not in DUPLICATE_ACTIONS:
            raise ValueError(f"unknown duplicate action: {action}")
        try:
            self.duplicates[row_number].action = action
        except KeyError:
            raise ValueError(f"row {row_number} is not a duplicate") from None

    def decide_all(self, action: str) -> None:
        for row_number in self.duplicates:
            self.decide(row_number, action)

    def pending_decisions(self) -> list[DuplicateRow]:
        return [row for row in self.duplicates.values() if row.action is None]

    def build_import_rows(self) -> list[dict[str, Any]]:
        rows = [dict(payload) for payload in self.new_rows]
        for duplicate in self.duplicates.values():
            row = dict(duplicate.payload)
            if duplicate.action is not None:
                row["action"] = duplicate.action
            if duplicate.existing_client_id:
                row["existingClientId"] = duplicate.existing_client_id
            rows.append(row)
        return sorted(rows, key=lambda row: row.get("sourceRowNumber") or 0)

    def _rejected_summary(self) -> ImportSummary:
        summary = ImportSummary()
        for row in self.local_errors:
            summary.add_error(row.row_number, str(row.payload.get("name") or ""), "; ".join(row.errors))
        for item in self.server_errors:
            summary.add_error(item["rowNumber"], str((item.get("row") or {}).get("name") or ""), item.get("error") or "")
        return summary

    def run_import(self) -> ImportSummary:
        if self.step is not Step.PREVIEW:
            raise PipelineStateError("run the preview before importing")

        started = time.perf_counter()
        rows = self.build_import_rows()
        summary = self._rejected_summary()
        mode = "bulk"
        if rows:
            try:
                result = self.api.import_clients(rows)
            except ApiError as exc:
                if exc.status_code not in FALLBACK_STATUSES:
                    raise
                mode = "chunked"
                logger.warning("importer.bulk_unavailable", extra={"status_code": exc.status_code})
                summary.merge(self._import_in_chunks(rows))
            else:
                summary.merge(
                    ImportSummary(
                        imported=result.get("imported", 0),
                        updated=result.get("updated", 0),
                        ignored=result.get("ignored", 0),
                        errors=list(result.get("errors", [])),
                    )
                )

        self.step = Step.DONE
        logger.info(
            "importer.finished",
            extra={
                "mode": mode,
                "imported": summary.imported,
                "updated": summary.updated,
                "ignored": summary.ignored,
                "error_count": summary.error_count,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return summary

    def _import_in_chunks(self, rows: list[dict[str, Any]]) -> ImportSummary:
        summary = ImportSummary()
        with ThreadPoolExecutor(max_workers=self.chunk_size) as executor:
            for start in range(0, len(rows), self.chunk_size):
                chunk = rows[start : start + self.chunk_size]
                for outcome in executor.map(self._import_one, chunk):
                    summary.merge(outcome)
        return summary

    def _import_one(self, row: dict[str, Any]) -> ImportSummary:
        outcome = ImportSummary()
        row_number = row.get("sourceRowNumber") or 0
        client_name = str(row.get("name") or "")
        action = row.get("action")
        existing_id = row.get("existingClientId")

        if action == "skip":
            outcome.ignored = 1
            return outcome
        if row_number in self.duplicates and action is None:
            outcome.add_error(row_number, client_name, "Duplicated client without an action")
            return outcome

        try:
            if action == "update":
                if not existing_id:
                    outcome.add_error(row_number, client_name, "Cannot update: no existing client linked")
                    return outcome
                self.api.update_client(existing_id, _strip_import_keys(row))
                outcome.updated = 1
            else:
                self.api.create_client(_strip_import_keys(row))
                outcome.imported = 1
        except ApiError as exc:
            outcome.add_error(row_number, client_name, exc.message)
        return outcome
