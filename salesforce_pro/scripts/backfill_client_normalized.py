"""Recompute the normalized shadow columns used by client duplicate detection."""

from __future__ import annotations

import argparse
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesforce_pro.core.database import SessionLocal
from salesforce_pro.crm.models import Client
from salesforce_pro.crm.service import apply_client_normalized_fields
from salesforce_pro.logging import configure_logging

logger = logging.getLogger("salesforce_pro.scripts")

BATCH_SIZE = 500


def _shadow(client: Client) -> tuple[str, str, str, str]:
    return (client.state, client.name_normalized, client.city_normalized, client.cnpj_normalized)


def backfill_client_normalized(session: Session, *, batch_size: int = BATCH_SIZE) -> dict[str, int]:
    processed = updated = 0
    last_id: uuid.UUID | None = None
    while True:
        stmt = select(Client).order_by(Client.id.asc()).limit(batch_size)
        if last_id is not None:
            stmt = stmt.where(Client.id > last_id)
        batch = session.scalars(stmt).all()
        if not batch:
            break

        for client in batch:
            before = _shadow(client)
            apply_client_normalized_fields(client)
            if _shadow(client) != before:
                updated += 1
        processed += len(batch)
        last_id = batch[-1].id
        session.commit()
        logger.info("scripts.backfill.batch", extra={"batch": len(batch), "total_rows": processed, "updated": updated})

    return {"processed": processed, "updated": updated}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Backfill normalized client fields")
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE)
    args = parser.parse_args(argv)
    configure_logging()

    with SessionLocal() as session:
        try:
            result = backfill_client_normalized(session, batch_size=args.batch_size)
        except Exception:
            session.rollback()
            logger.exception("scripts.backfill.failed")
            return 1
    print(f"Processed: {result['processed']} | Updated: {result['updated']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
