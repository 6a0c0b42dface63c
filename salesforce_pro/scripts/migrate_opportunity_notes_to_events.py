from __future__ import annotations

import argparse
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesforce_pro.core.database import SessionLocal
from salesforce_pro.crm.models import Opportunity, TimelineEvent
from salesforce_pro.crm.timeline import EVENT_COMMENT, comment_entry, timeline_recorder
from salesforce_pro.logging import configure_logging

logger = logging.getLogger("salesforce_pro.scripts")


def migrate_opportunity_notes(session: Session) -> int:
    """Turns legacy opportunity notes into comment events, skipping notes already present."""
    opportunities = session.scalars(
        select(Opportunity).where(Opportunity.notes.is_not(None)).order_by(Opportunity.created_at.asc())
    ).all()

    migrated = 0
    for opportunity in opportunities:
        notes = (opportunity.notes or "").strip()
        if not notes:
            continue
        exists = session.scalar(
            select(TimelineEvent.id).where(
                TimelineEvent.opportunity_id == opportunity.id,
                TimelineEvent.type == EVENT_COMMENT,
                TimelineEvent.message == notes,
            )
        )
        if exists is not None:
            continue
        timeline_recorder.write(session, opportunity, opportunity.owner_seller_id, [comment_entry(notes)])
        migrated += 1

    logger.info("scripts.notes_migrated", extra={"imported": migrated, "total_rows": len(opportunities)})
    return migrated


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Convert opportunity notes into timeline comments")
    parser.parse_args(argv)
    configure_logging()

    with SessionLocal() as session:
        try:
            migrated = migrate_opportunity_notes(session)
        except Exception:
            session.rollback()
            logger.exception("scripts.notes_migration_failed")
            return 1
    print(f"Migration finished. {migrated} opportunities had notes converted into events.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
