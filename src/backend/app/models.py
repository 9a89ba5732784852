from typing import Any, Dict, Optional
from datetime import date
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    JSON,
    ForeignKey,
    Text,
    Date,
    Index,
    CheckConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base
import time
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> int:
    return int(time.time())


SESSION_STATUSES = ("new", "started", "in_progress", "awaiting_client", "completed", "failed")
TERMINAL_STATUSES = frozenset({"completed", "failed"})
MESSAGE_DIRECTIONS = ("inbound", "outbound", "system")
REMINDER_STATUSES = ("dry_run", "sent", "failed")


class Client(Base):
    __tablename__ = "clients"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[Optional[str]] = mapped_column(String(180), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(180), nullable=True)
    whatsapp_phone: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    onboarding_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    onboarding_status_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    drive_folder_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    drive_folder_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    drive_folder_created_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now, onupdate=_now)


class OnboardingSession(Base):
    __tablename__ = "onboarding_sessions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    tracking_token: Mapped[str] = mapped_column(String(36), unique=True, index=True, default=_uuid)
    phone_e164: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    client_id: Mapped[Optional[str]] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True)
    current_status: Mapped[str] = mapped_column(String(32), default="new")
    status_updated_at: Mapped[int] = mapped_column(Integer, default=_now)
    last_message_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_provider_message_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now, onupdate=_now)

    __table_args__ = (
        CheckConstraint(
            "current_status IN ('new','started','in_progress','awaiting_client','completed','failed')",
            name="ck_onboarding_sessions_status",
        ),
        Index("ix_onboarding_sessions_status_updated", "status_updated_at"),
    )


class OnboardingMessage(Base):
    __tablename__ = "onboarding_messages"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("onboarding_sessions.id", ondelete="CASCADE"), index=True)
    # Unique: this constraint is the dedup mechanism for provider deliveries
    provider_message_id: Mapped[str] = mapped_column(String(200), unique=True)
    direction: Mapped[str] = mapped_column(String(16))
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    event_timestamp: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)

    __table_args__ = (
        CheckConstraint("direction IN ('inbound','outbound','system')", name="ck_onboarding_messages_direction"),
    )


class StatusHistory(Base):
    __tablename__ = "onboarding_status_history"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("onboarding_sessions.id", ondelete="CASCADE"), index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32))
    reason: Mapped[Optional[str]] = mapped_column(String(240), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    changed_at: Mapped[int] = mapped_column(Integer, default=_now)


class OperationalItem(Base):
    __tablename__ = "operational_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(120), unique=True, nullable=True)
    type: Mapped[str] = mapped_column(String(16))  # task|briefing|follow_up
    title: Mapped[str] = mapped_column(String(220))
    description: Mapped[str] = mapped_column(Text, default="")
    client_id: Mapped[Optional[str]] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True)
    owner: Mapped[str] = mapped_column(String(180), default="")
    priority: Mapped[str] = mapped_column(String(16), default="medium")  # low|medium|high|urgent
    status: Mapped[str] = mapped_column(String(16), default="open")  # open|in_progress|done|blocked
    due_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    trello_card_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    trello_card_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    trello_list_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now, onupdate=_now)


class RelevoDate(Base):
    __tablename__ = "relevo_dates"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[Optional[str]] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=True, index=True)
    phone_e164: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    relevo_date: Mapped[date] = mapped_column(Date, index=True)
    reminder_type: Mapped[str] = mapped_column(String(80), default="relevo")
    timezone: Mapped[str] = mapped_column(String(120), default="America/Belem")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)


class ReminderLog(Base):
    __tablename__ = "reminder_logs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    client_id: Mapped[Optional[str]] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)
    phone_e164: Mapped[str] = mapped_column(String(32))
    relevo_date: Mapped[date] = mapped_column(Date)
    reminder_type: Mapped[str] = mapped_column(String(80))
    status: Mapped[str] = mapped_column(String(16))  # dry_run|sent|failed
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(220), nullable=True)
    sent_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_summary: Mapped[Optional[str]] = mapped_column(String(240), nullable=True)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)

    __table_args__ = (
        CheckConstraint("status IN ('dry_run','sent','failed')", name="ck_reminder_logs_status"),
        # Reservation: at most one claimed (sent|dry_run) row per phone/date/type
        Index(
            "uq_reminder_logs_claim",
            "phone_e164",
            "relevo_date",
            "reminder_type",
            unique=True,
            postgresql_where=text("status IN ('sent', 'dry_run')"),
            sqlite_where=text("status IN ('sent', 'dry_run')"),
        ),
    )


class EventLedger(Base):
    __tablename__ = "events_ledger"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    ts: Mapped[int] = mapped_column(Integer, default=_now, index=True)
    name: Mapped[str] = mapped_column(String(64))
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
