from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from salesforce_pro.auth.models import User
from salesforce_pro.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Client(Base):
    __tablename__ = "crm_client"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    city: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(8), nullable=False)
    region: Mapped[str] = mapped_column(String(64), nullable=False)
    client_type: Mapped[str] = mapped_column(String(2), nullable=False, default="PJ", server_default="PJ")
    potential_ha: Mapped[float | None] = mapped_column(Float, nullable=True)
    farm_size_ha: Mapped[float | None] = mapped_column(Float, nullable=True)
    cnpj: Mapped[str | None] = mapped_column(String(32), nullable=True)
    segment: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("user_account.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    name_normalized: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    city_normalized: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    cnpj_normalized: Mapped[str] = mapped_column(String(32), nullable=False, default="", server_default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    owner_seller: Mapped[User] = relationship(User)
    contacts: Mapped[list[Contact]] = relationship(
        "Contact",
        back_populates="client",
        cascade="all, delete-orphan",
    )
    opportunities: Mapped[list[Opportunity]] = relationship(
        "Opportunity",
        back_populates="client",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(
            "uq_crm_client_cnpj_normalized",
            "cnpj_normalized",
            unique=True,
            postgresql_where=text("cnpj_normalized <> ''"),
            sqlite_where=text("cnpj_normalized <> ''"),
        ),
        Index(
            "uq_crm_client_name_city_state_without_cnpj",
            "name_normalized",
            "city_normalized",
            "state",
            unique=True,
            postgresql_where=text("cnpj_normalized = ''"),
            sqlite_where=text("cnpj_normalized = ''"),
        ),
    )


class Contact(Base):
    __tablename__ = "crm_contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("user_account.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    client: Mapped[Client] = relationship("Client", back_populates="contacts")


class Opportunity(Base):
    __tablename__ = "crm_opportunity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="prospeccao", index=True)
    probability: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("user_account.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    proposal_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    follow_up_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    expected_close_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_contact_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    crop: Mapped[str | None] = mapped_column(Text, nullable=True)
    season: Mapped[str | None] = mapped_column(Text, nullable=True)
    area_ha: Mapped[float | None] = mapped_column(Float, nullable=True)
    product_offered: Mapped[str | None] = mapped_column(Text, nullable=True)
    planting_forecast_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expected_ticket_per_ha: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    client: Mapped[Client] = relationship("Client", back_populates="opportunities")
    owner_seller: Mapped[User] = relationship(User)


class Activity(Base):
    __tablename__ = "crm_activity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    opportunity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_opportunity.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    owner_seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("user_account.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    opportunity: Mapped[Opportunity | None] = relationship("Opportunity")
    owner_seller: Mapped[User] = relationship(User)


class Goal(Base):
    __tablename__ = "crm_goal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    target_value: Mapped[float] = mapped_column(Float, nullable=False)
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("user_account.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    seller: Mapped[User] = relationship(User)

    __table_args__ = (UniqueConstraint("seller_id", "month", name="uq_crm_goal_seller_month"),)


class TimelineEvent(Base):
    __tablename__ = "crm_timeline_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_client.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    opportunity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_opportunity.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("user_account.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    opportunity: Mapped[Opportunity | None] = relationship("Opportunity")
    user: Mapped[User] = relationship(User)
