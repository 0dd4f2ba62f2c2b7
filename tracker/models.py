from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tracker.db import Base
from tracker.normalize import utcnow


class ShowRecord(Base):
    __tablename__ = "shows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    date: Mapped[str] = mapped_column(String(32), nullable=False, default="", index=True)
    time: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    label: Mapped[str] = mapped_column(Text, nullable=False, default="")
    crew: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    lead_pilot: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    monkey_lead: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    entries = relationship(
        "EntryRecord",
        back_populates="show",
        cascade="all",
        passive_deletes=True,
        order_by=lambda: [EntryRecord.ts, EntryRecord.position],
    )


class EntryRecord(Base):
    __tablename__ = "entries"
    __table_args__ = (
        CheckConstraint("status IN ('Completed', 'No-launch', 'Abort', '')", name="ck_entries_status"),
        CheckConstraint("delay_sec IS NULL OR delay_sec >= 0", name="ck_entries_delay"),
    )

    show_id: Mapped[str] = mapped_column(ForeignKey("shows.id", ondelete="CASCADE"), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    planned: Mapped[str] = mapped_column(Text, nullable=False, default="")
    launched: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    primary_issue: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sub_issue: Mapped[str] = mapped_column(Text, nullable=False, default="")
    other_detail: Mapped[str] = mapped_column(Text, nullable=False, default="")
    severity: Mapped[str] = mapped_column(String(60), nullable=False, default="")
    root_cause: Mapped[str] = mapped_column(Text, nullable=False, default="")
    actions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    operator: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    battery_id: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    delay_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    command_rx: Mapped[str] = mapped_column(Text, nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    show = relationship("ShowRecord", back_populates="entries")


class StaffRecord(Base):
    __tablename__ = "staff"
    __table_args__ = (
        CheckConstraint("role IN ('crew', 'pilot', 'monkeyLead')", name="ck_staff_role"),
        Index("ix_staff_role_name", "role", "name"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ArchivedShowRecord(Base):
    __tablename__ = "show_archive"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    show_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class UserRecord(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('admin', 'manager', 'pilot', 'viewer')", name="ck_users_role"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="viewer")
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
