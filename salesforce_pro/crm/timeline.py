"""Commercial timeline of an opportunity.

Events are derived from opportunity mutations and written after the mutation has been
committed. A failed write is logged and counted; it never undoes or fails the mutation that
triggered it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from salesforce_pro.crm.dates import as_utc
from salesforce_pro.crm.models import Opportunity, TimelineEvent
from salesforce_pro.metrics import observe_timeline_event, observe_timeline_write_failure


logger = logging.getLogger("salesforce_pro.timeline")
tracer = trace.get_tracer("salesforce_pro.timeline")

EVENT_OPPORTUNITY_CREATED = "criacao_oportunidade"
EVENT_COMMENT = "comentario"
EVENT_STAGE_CHANGED = "mudanca_estagio"
EVENT_FOLLOW_UP_CHANGED = "mudanca_followup"

STAGE_LABELS = {
    "prospeccao": "Prospecção",
    "negociacao": "Negociação",
    "proposta": "Proposta",
    "ganho": "Ganho",
    "perdido": "Perdido",
}


@dataclass(frozen=True)
class TimelineEntry:
    type: str
    title: str
    message: str
    meta: dict[str, Any] | None = field(default=None)


@dataclass(frozen=True)
class OpportunitySnapshot:
    stage: str
    follow_up_date: datetime | None
    notes: str | None

    @classmethod
    def of(cls, opportunity: Opportunity) -> OpportunitySnapshot:
        return cls(
            stage=opportunity.stage,
            follow_up_date=as_utc(opportunity.follow_up_date),
            notes=opportunity.notes,
        )


def _format_day(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%d/%m/%Y")


def comment_entry(message: str) -> TimelineEntry:
    return TimelineEntry(type=EVENT_COMMENT, title="Comentário", message=message)


def creation_entries(opportunity: Opportunity) -> list[TimelineEntry]:
    entries = [
        TimelineEntry(
            type=EVENT_OPPORTUNITY_CREATED,
            title="Oportunidade criada",
            message=f"Oportunidade \"{opportunity.title}\" criada em {STAGE_LABELS.get(opportunity.stage, opportunity.stage)}",
            meta={"stage": opportunity.stage, "value": opportunity.value},
        )
    ]
    notes = (opportunity.notes or "").strip()
    if notes:
        entries.append(comment_entry(notes))
    return entries


def change_entries(before: OpportunitySnapshot, after: Opportunity, *, notes_provided: bool) -> list[TimelineEntry]:
    entries: list[TimelineEntry] = []

    if after.stage != before.stage:
        entries.append(
            TimelineEntry(
                type=EVENT_STAGE_CHANGED,
                title="Mudança de etapa",
                message=(
                    f"Etapa alterada de {STAGE_LABELS.get(before.stage, before.stage)} "
                    f"para {STAGE_LABELS.get(after.stage, after.stage)}"
                ),
                meta={"from": before.stage, "to": after.stage},
            )
        )

    follow_up = as_utc(after.follow_up_date)
    if follow_up != before.follow_up_date:
        entries.append(
            TimelineEntry(
                type=EVENT_FOLLOW_UP_CHANGED,
                title="Follow-up alterado",
                message=f"Follow-up alterado de {_format_day(before.follow_up_date)} para {_format_day(follow_up)}",
                meta={
                    "from": before.follow_up_date.isoformat() if before.follow_up_date else None,
                    "to": follow_up.isoformat() if follow_up else None,
                },
            )
        )

    new_notes = (after.notes or "").strip()
    if notes_provided and new_notes and new_notes != (before.notes or "").strip():
        entries.append(comment_entry(new_notes))

    return entries


def _event_for(opportunity: Opportunity, actor_id: uuid.UUID, entry: TimelineEntry) -> TimelineEvent:
    return TimelineEvent(
        type=entry.type,
        title=entry.title,
        message=entry.message,
        client_id=opportunity.client_id,
        opportunity_id=opportunity.id,
        user_id=actor_id,
        meta=entry.meta,
    )


class TimelineRecorder:
    def write(
        self,
        session: Session,
        opportunity: Opportunity,
        actor_id: uuid.UUID,
        entries: list[TimelineEntry],
    ) -> list[TimelineEvent]:
        """Writes entries in their own transaction and raises on failure."""
        events = [_event_for(opportunity, actor_id, entry) for entry in entries]
        if not events:
            return []
        session.add_all(events)
        session.commit()
        for event in events:
            observe_timeline_event(event.type)
        return events

    def record(
        self,
        session: Session,
        opportunity: Opportunity,
        actor_id: uuid.UUID,
        entries: list[TimelineEntry],
    ) -> list[TimelineEvent]:
        if not entries:
            return []
        opportunity_id = opportunity.id
        with tracer.start_as_current_span("crm.timeline.record") as span:
            span.set_attribute("opportunity_id", str(opportunity_id))
            span.set_attribute("event_types", [entry.type for entry in entries])
            try:
                events = self.write(session, opportunity, actor_id, entries)
            except Exception as exc:
                session.rollback()
                observe_timeline_write_failure()
                span.set_status(Status(StatusCode.ERROR, "timeline write failed"))
                logger.exception(
                    "timeline.write_failed",
                    extra={"opportunity_id": str(opportunity_id), "error": str(exc)[:500]},
                )
                return []

        for event in events:
            logger.info(
                "timeline.recorded",
                extra={
                    "opportunity_id": str(opportunity_id),
                    "event_type": event.type,
                    "user_id": str(actor_id),
                },
            )
        return events

    def record_created(self, session: Session, opportunity: Opportunity, actor_id: uuid.UUID) -> list[TimelineEvent]:
        return self.record(session, opportunity, actor_id, creation_entries(opportunity))

    def record_changes(
        self,
        session: Session,
        before: OpportunitySnapshot,
        opportunity: Opportunity,
        actor_id: uuid.UUID,
        *,
        notes_provided: bool,
    ) -> list[TimelineEvent]:
        return self.record(
            session,
            opportunity,
            actor_id,
            change_entries(before, opportunity, notes_provided=notes_provided),
        )


timeline_recorder = TimelineRecorder()
