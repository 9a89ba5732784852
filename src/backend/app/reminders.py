import logging
import os
import uuid
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import TransactionFailure
from .events import emit_event
from .integrations.whatsapp_meta import send_whatsapp_text
from .metrics_counters import REMINDERS
from .models import RelevoDate, ReminderLog
from .utils import clean_text, env_bool, normalize_phone, now_epoch, to_bool

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Belem"
VALID_MODES = ("today", "tomorrow")
_CLAIM_COLUMNS = ["phone_e164", "relevo_date", "reminder_type"]
_CLAIM_WHERE = text("status IN ('sent', 'dry_run')")


@dataclass
class ReminderRunResult:
    ok: bool
    mode: str
    dry_run: bool
    target_date: str
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_reminder_mode(mode: Any) -> str:
    m = clean_text(mode, 20).lower()
    return m if m in VALID_MODES else "today"


def resolve_target_date(mode: str, now: Optional[datetime] = None) -> date:
    tz = ZoneInfo(os.getenv("REMINDERS_TIMEZONE", DEFAULT_TIMEZONE) or DEFAULT_TIMEZONE)
    current = now.astimezone(tz) if now else datetime.now(tz)
    return current.date() + timedelta(days=1 if mode == "tomorrow" else 0)


def build_reminder_message(relevo_date: date, reminder_type: Any) -> str:
    kind = clean_text(reminder_type, 80) or "relevo"
    return (
        f"Lembrete da Agencia Purpura: hoje ({relevo_date.strftime('%d/%m/%Y')}) e dia de {kind}. "
        "Responda esta mensagem para continuidade do onboarding."
    )


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"reminder reservations unsupported on dialect {dialect}")


def reserve(db: Session, row: RelevoDate, phone: str, status: str, payload: Dict[str, Any]) -> Optional[str]:
    """Claim the (phone, date, type) slot; None when it is already claimed."""
    insert = _insert_for(db)
    stmt = (
        insert(ReminderLog)
        .values(
            id=str(uuid.uuid4()),
            client_id=row.client_id,
            phone_e164=phone,
            relevo_date=row.relevo_date,
            reminder_type=clean_text(row.reminder_type, 80) or "relevo",
            status=status,
            sent_at=now_epoch() if status == "sent" else None,
            payload=payload,
            created_at=now_epoch(),
        )
        .on_conflict_do_nothing(index_elements=_CLAIM_COLUMNS, index_where=_CLAIM_WHERE)
        .returning(ReminderLog.id)
    )
    log_id = db.execute(stmt).scalar_one_or_none()
    db.commit()
    return log_id


def _mark(db: Session, log_id: str, **values: Any) -> None:
    db.execute(update(ReminderLog).where(ReminderLog.id == log_id).values(**values))
    db.commit()


def mark_sent(db: Session, log_id: str, provider_message_id: str, payload: Dict[str, Any]) -> None:
    _mark(
        db,
        log_id,
        status="sent",
        provider_message_id=clean_text(provider_message_id, 220) or None,
        sent_at=now_epoch(),
        error_summary=None,
        payload=payload,
    )


def mark_failed(db: Session, log_id: str, error_summary: str, payload: Dict[str, Any]) -> None:
    _mark(
        db,
        log_id,
        status="failed",
        provider_message_id=None,
        sent_at=None,
        error_summary=clean_text(error_summary, 240) or "unknown_error",
        payload=payload,
    )


def run_reminders(
    db: Session,
    *,
    mode: Any = "today",
    dry_run: Any = True,
    sender: Optional[Callable[[str, str], str]] = None,
    now: Optional[datetime] = None,
) -> ReminderRunResult:
    """Dispatch reminders for relevo dates falling on the target day.

    Each (phone, date, type) is reserved before sending; a reservation that
    loses to an existing sent/dry_run row is counted as skipped. Failed
    sends keep their log row and are not retried in the same run.
    """
    mode = normalize_reminder_mode(mode)
    dry = to_bool(dry_run, True)
    sender_enabled = env_bool("WHATSAPP_SENDER_ENABLED")
    send = sender or send_whatsapp_text
    target = resolve_target_date(mode, now)
    result = ReminderRunResult(ok=True, mode=mode, dry_run=dry, target_date=target.isoformat())

    try:
        rows = list(
            db.execute(
                select(RelevoDate)
                .where(RelevoDate.active.is_(True), RelevoDate.relevo_date == target)
                .order_by(RelevoDate.created_at.asc())
            ).scalars()
        )
        logger.info(
            "reminder_run_started",
            extra={"mode": mode, "dry_run": dry, "target_date": result.target_date, "eligible": len(rows)},
        )

        for row in rows:
            phone = normalize_phone(row.phone_e164 or "")
            kind = clean_text(row.reminder_type, 80) or "relevo"
            ctx = {"phone": phone, "relevo_date": row.relevo_date.isoformat() if row.relevo_date else None, "reminder_type": kind}
            if not phone or not row.relevo_date:
                result.failed += 1
                REMINDERS.labels(result="invalid").inc()
                continue

            base_payload = {"source": "run_reminders", "mode": mode, "dry_run": dry}
            log_id = reserve(db, row, phone, "dry_run" if dry else "sent", base_payload)
            if not log_id:
                result.skipped += 1
                REMINDERS.labels(result="skipped").inc()
                logger.info("reminder_skipped_duplicate", extra=ctx)
                continue

            result.processed += 1
            if dry:
                REMINDERS.labels(result="dry_run").inc()
                continue

            if not sender_enabled:
                result.failed += 1
                mark_failed(db, log_id, "sender disabled", base_payload)
                REMINDERS.labels(result="failed").inc()
                logger.info("reminder_failed", extra={**ctx, "error": "sender disabled"})
                emit_event("ReminderFailed", {**ctx, "error": "sender disabled"})
                continue

            try:
                provider_id = send(phone, build_reminder_message(row.relevo_date, kind))
            except Exception as e:
                summary = clean_text(str(e), 240) or "unknown_error"
                mark_failed(db, log_id, summary, {"source": "run_reminders", "error_summary": summary})
                result.failed += 1
                REMINDERS.labels(result="failed").inc()
                logger.warning("reminder_failed", extra={**ctx, "error": summary})
                emit_event("ReminderFailed", {**ctx, "error": summary})
                continue

            mark_sent(db, log_id, provider_id, {"source": "run_reminders", "provider_message_id": provider_id})
            result.sent += 1
            REMINDERS.labels(result="sent").inc()
            logger.info("reminder_sent", extra={**ctx, "provider_message_id": provider_id})
            emit_event("ReminderSent", {**ctx, "provider_message_id": provider_id})
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("reminder_run_failed", extra={"mode": mode, "target_date": result.target_date})
        raise TransactionFailure(f"reminder run failed: {e.__class__.__name__}") from e

    return result
