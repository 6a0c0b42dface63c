from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from salesforce_pro.auth.models import User
from salesforce_pro.core.auth import ROLE_DIRETOR, ROLE_GERENTE, ROLE_VENDEDOR
from salesforce_pro.core.database import SessionLocal
from salesforce_pro.core.security import hash_password
from salesforce_pro.logging import configure_logging

logger = logging.getLogger("salesforce_pro.scripts")

DEFAULT_PASSWORD = "123456"


@dataclass(frozen=True)
class SeedUser:
    name: str
    email: str
    role: str
    region: str


DEFAULT_USERS = (
    SeedUser("Diretor Comercial", "diretor@empresa.com", ROLE_DIRETOR, "Nacional"),
    SeedUser("Gerente Regional", "gerente@empresa.com", ROLE_GERENTE, "Sudeste"),
    SeedUser("Vendedor 1", "vendedor1@empresa.com", ROLE_VENDEDOR, "Sudeste"),
    SeedUser("Vendedor 2", "vendedor2@empresa.com", ROLE_VENDEDOR, "Sul"),
    SeedUser("Vendedor 3", "vendedor3@empresa.com", ROLE_VENDEDOR, "Nordeste"),
    SeedUser("Vendedor 4", "vendedor4@empresa.com", ROLE_VENDEDOR, "Centro-Oeste"),
)


def seed_users(session: Session, *, password: str = DEFAULT_PASSWORD) -> list[User]:
    """Creates the default accounts that do not exist yet; existing ones are left untouched."""
    created: list[User] = []
    for spec in DEFAULT_USERS:
        existing = session.scalar(select(User).where(func.lower(User.email) == spec.email))
        if existing is not None:
            continue
        user = User(
            name=spec.name,
            email=spec.email,
            role=spec.role,
            region=spec.region,
            password_hash=hash_password(password),
            is_active=True,
        )
        session.add(user)
        created.append(user)
    session.commit()
    for user in created:
        logger.info("scripts.seed.user_created", extra={"email": user.email, "user_id": str(user.id)})
    return created


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create the default SalesforcePro users")
    parser.add_argument("--password", default=DEFAULT_PASSWORD, help="Password given to newly created users")
    args = parser.parse_args(argv)
    configure_logging()

    with SessionLocal() as session:
        created = seed_users(session, password=args.password)
    print(f"Seeded {len(created)} user(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
