import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, case, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import InvalidEvent, InvalidStatus, MalformedPayload, NotFound, TransactionFailure
from .events import emit_event
from .integrations.google_drive import FolderResult, ensure_client_folder
from .metrics_counters import EVENTS_APPLIED
from .models import (
    Client,
    OnboardingMessage,
    OnboardingSession,
    StatusHistory,
    MESSAGE_DIRECTIONS,
    SESSION_STATUSES,
    TERMINAL_STATUSES,
)
from .utils import clean_text, normalize_phone, now_epoch, parse_epoch

logger = logging.getLogger(__name__)

WEBHOOK_REASON = "webhook_event"
MANUAL_REASON = "dashboard_manual_transition"
ACTIVE_STATUSES = ("started", "in_progress", "awaiting_client")


@dataclass
class ApplyResult:
    session_id: str
    client_id: Optional[str]
    tracking_token: str
    status: str
    status_updated_at: Optional[int]
    duplicate: bool = False


@dataclass
class TransitionResult:
    session_id: str
    tracking_token: str
    client_id: Optional[str]
    status: str
    from_status: str
    status_updated_at: int
    last_message_at: Optional[int]
    changed: bool


@dataclass
class IntakeResult:
    session_id: str
    client_id: Optional[str]
    tracking_token: str
    status: str
    status_updated_at: Optional[int]
    duplicate: bool
    folder: FolderResult = field(default_factory=lambda: FolderResult(status="skipped_no_client_id"))


def _snapshot(session: OnboardingSession, duplicate: bool) -> ApplyResult:
    return ApplyResult(
        session_id=session.id,
        client_id=session.client_id,
        tracking_token=session.tracking_token,
        status=session.current_status,
        status_updated_at=session.status_updated_at,
        duplicate=duplicate,
    )


def _find_duplicate(db: Session, provider_message_id: str) -> Optional[ApplyResult]:
    row = db.execute(
        select(OnboardingSession)
        .join(OnboardingMessage, OnboardingMessage.session_id == OnboardingSession.id)
        .where(OnboardingMessage.provider_message_id == provider_message_id)
    ).scalar_one_or_none()
    if row is None:
        return None
    return _snapshot(row, duplicate=True)


def _upsert_client(db: Session, phone: str, hints: Dict[str, Any], ts: int) -> Client:
    name = clean_text(hints.get("name"), 180)
    email = clean_text(hints.get("email"), 180)
    client = db.execute(
        select(Client).where(Client.whatsapp_phone == phone).with_for_update()
    ).scalar_one_or_none()
    if client is None:
        try:
            with db.begin_nested():
                client = Client(
                    whatsapp_phone=phone,
                    name=name or None,
                    email=email or None,
                    created_at=ts,
                    updated_at=ts,
                )
                db.add(client)
                db.flush()
            return client
        except IntegrityError:
            # a concurrent writer created the row first
            client = db.execute(
                select(Client).where(Client.whatsapp_phone == phone).with_for_update()
            ).scalar_one()
    # hints only fill gaps
    if name and not client.name:
        client.name = name
    if email and not client.email:
        client.email = email
    return client


def _lock_or_create_session(
    db: Session, phone: str, client_id: Optional[str], status: Optional[str], ts: int
) -> tuple:
    """Returns (session, created)."""
    session = db.execute(
        select(OnboardingSession).where(OnboardingSession.phone_e164 == phone).with_for_update()
    ).scalar_one_or_none()
    if session is not None:
        return session, False
    try:
        with db.begin_nested():
            session = OnboardingSession(
                phone_e164=phone,
                client_id=client_id,
                current_status=status or "started",
                status_updated_at=ts,
                created_at=now_epoch(),
            )
            db.add(session)
            db.flush()
        return session, True
    except IntegrityError:
        session = db.execute(
            select(OnboardingSession).where(OnboardingSession.phone_e164 == phone).with_for_update()
        ).scalar_one()
        return session, False


def _mirror_status(db: Session, client_id: Optional[str], status: str, ts: int) -> None:
    if not client_id:
        return
    client = db.get(Client, client_id)
    if client is None:
        return
    client.onboarding_status = status
    client.onboarding_status_at = ts


def _validate_event(phone: Any, provider_message_id: Any, direction: Any, status: Any) -> tuple:
    normalized_phone = normalize_phone(phone)
    pmid = clean_text(provider_message_id, 200)
    direction = clean_text(direction, 20)
    status = clean_text(status, 40) or None
    if not normalized_phone:
        raise InvalidEvent("Invalid phone")
    if not pmid:
        raise InvalidEvent("provider_message_id is required")
    if direction not in MESSAGE_DIRECTIONS:
        raise InvalidEvent("Invalid direction")
    if status is not None and status not in SESSION_STATUSES:
        raise InvalidEvent("Invalid status")
    return normalized_phone, pmid, direction, status


def apply_event(
    db: Session,
    *,
    phone: str,
    provider_message_id: str,
    direction: str,
    payload: Optional[Dict[str, Any]] = None,
    event_timestamp: Any = None,
    status: Optional[str] = None,
    client_hints: Optional[Dict[str, Any]] = None,
) -> ApplyResult:
    """Apply one provider event at most once.

    The message row's unique provider id is the dedup mechanism; a repeated
    delivery returns the current session snapshot with duplicate=True and
    writes nothing. Any other database error rolls back and raises
    TransactionFailure so the caller can retry.
    """
    phone, pmid, direction, status = _validate_event(phone, provider_message_id, direction, status)
    ts = parse_epoch(event_timestamp)
    if ts is None:
        ts = now_epoch()
    payload = payload if isinstance(payload, dict) else {}
    hints = client_hints if isinstance(client_hints, dict) else {}

    try:
        existing = db.execute(
            select(OnboardingSession).where(OnboardingSession.phone_e164 == phone).with_for_update()
        ).scalar_one_or_none()

        dup = _find_duplicate(db, pmid)
        if dup is not None:
            db.rollback()
            EVENTS_APPLIED.labels(result="duplicate").inc()
            emit_event("OnboardingEventDuplicate", {"provider_message_id": pmid, "session_id": dup.session_id})
            return dup

        client = _upsert_client(db, phone, hints, ts)
        if existing is not None:
            session, created = existing, False
        else:
            session, created = _lock_or_create_session(db, phone, client.id, status, ts)
        if not session.client_id:
            session.client_id = client.id

        previous_status = None if created else session.current_status
        changed = created
        stale = False
        if not created:
            stale = session.last_message_at is not None and ts < session.last_message_at
            if not stale:
                session.last_message_at = ts
                session.last_provider_message_id = pmid
                if status and status != session.current_status and session.current_status not in TERMINAL_STATUSES:
                    session.current_status = status
                    session.status_updated_at = ts
                    changed = True
        else:
            session.last_message_at = ts
            session.last_provider_message_id = pmid

        try:
            with db.begin_nested():
                db.add(
                    OnboardingMessage(
                        session_id=session.id,
                        provider_message_id=pmid,
                        direction=direction,
                        payload=payload,
                        event_timestamp=ts,
                    )
                )
                db.flush()
        except IntegrityError:
            # lost the race to a concurrent delivery of the same message
            db.rollback()
            dup = _find_duplicate(db, pmid)
            EVENTS_APPLIED.labels(result="duplicate").inc()
            if dup is None:
                raise TransactionFailure("duplicate message without session")
            return dup

        if changed:
            db.add(
                StatusHistory(
                    session_id=session.id,
                    from_status=previous_status,
                    to_status=session.current_status,
                    reason=WEBHOOK_REASON,
                    provider_message_id=pmid,
                    changed_at=ts,
                )
            )
            _mirror_status(db, session.client_id, session.current_status, ts)

        db.commit()
    except (InvalidEvent, TransactionFailure):
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("onboarding_apply_failed", extra={"provider_message_id": pmid})
        raise TransactionFailure(f"failed to apply event: {e.__class__.__name__}") from e

    result = _snapshot(session, duplicate=False)
    EVENTS_APPLIED.labels(result="stale" if stale else "applied").inc()
    emit_event(
        "OnboardingEventApplied",
        {
            "session_id": result.session_id,
            "provider_message_id": pmid,
            "direction": direction,
            "status": result.status,
            "stale": stale,
        },
    )
    if changed:
        emit_event(
            "OnboardingStatusChanged",
            {"session_id": result.session_id, "from_status": previous_status, "to_status": result.status},
        )
    return result


def _folder_for_session(db: Session, client_id: Optional[str], fallback_name: str = "") -> FolderResult:
    try:
        return ensure_client_folder(db, client_id, fallback_name=fallback_name)
    except Exception as e:
        # core state is already committed
        logger.exception("drive_folder_orchestration_failed", extra={"client_id": client_id})
        return FolderResult(status="failed", error=str(e)[:240])


def _valid_uuid(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return ""


def transition(
    db: Session,
    *,
    session_id: Optional[str] = None,
    tracking_token: Optional[str] = None,
    next_status: Optional[str] = None,
    reason: Optional[str] = None,
) -> TransitionResult:
    # a malformed id is treated as absent so the token can still match
    session_id = _valid_uuid(clean_text(session_id, 80))
    tracking_token = clean_text(tracking_token, 80)
    next_status = clean_text(next_status, 40)
    reason = clean_text(reason, 240) or MANUAL_REASON
    if not session_id and not tracking_token:
        raise MalformedPayload("session_id or tracking_token is required")
    if next_status not in SESSION_STATUSES:
        raise InvalidStatus("status is invalid")

    keys = []
    if session_id:
        keys.append(OnboardingSession.id == session_id)
    if tracking_token:
        keys.append(OnboardingSession.tracking_token == tracking_token)
    stmt = select(OnboardingSession).where(or_(*keys))
    try:
        session = db.execute(stmt.limit(1).with_for_update()).scalar_one_or_none()
        if session is None:
            db.rollback()
            raise NotFound("Session not found")

        previous = session.current_status or ""
        ts = now_epoch()
        pmid = f"dashboard-{uuid.uuid4()}"
        session.current_status = next_status
        session.status_updated_at = ts
        session.last_message_at = ts
        session.last_provider_message_id = pmid
        _mirror_status(db, session.client_id, next_status, ts)
        db.add(
            OnboardingMessage(
                session_id=session.id,
                provider_message_id=pmid,
                direction="system",
                payload={
                    "source": "dashboard_transition",
                    "reason": reason,
                    "from_status": previous,
                    "to_status": next_status,
                },
                event_timestamp=ts,
            )
        )
        changed = previous != next_status
        if changed:
            db.add(
                StatusHistory(
                    session_id=session.id,
                    from_status=previous or None,
                    to_status=next_status,
                    reason=reason,
                    provider_message_id=pmid,
                    changed_at=ts,
                )
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("onboarding_transition_failed", extra={"session_id": session_id, "tracking_token": tracking_token})
        raise TransactionFailure(f"failed to transition session: {e.__class__.__name__}") from e

    emit_event(
        "OnboardingTransitioned",
        {"session_id": session.id, "from_status": previous, "to_status": next_status, "reason": reason},
    )
    return TransitionResult(
        session_id=session.id,
        tracking_token=session.tracking_token,
        client_id=session.client_id,
        status=session.current_status,
        from_status=previous,
        status_updated_at=session.status_updated_at,
        last_message_at=session.last_message_at,
        changed=changed,
    )


def transition_with_folder(db: Session, **kwargs: Any) -> tuple:
    """Manual transition followed by folder provisioning for linked clients."""
    result = transition(db, **kwargs)
    if result.client_id:
        folder = _folder_for_session(db, result.client_id)
    else:
        folder = FolderResult(status="skipped_no_client_id")
    return result, folder


def _clean_list(value: Any, max_length: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in (clean_text(str(x), max_length) for x in value) if v]


def validate_intake(form: Any) -> Dict[str, Any]:
    if not isinstance(form, dict):
        raise MalformedPayload("Invalid payload")
    service_name = clean_text(form.get("service_name") or form.get("servico"), 120)
    name = clean_text(form.get("name") or form.get("nome"), 180)
    whatsapp = normalize_phone(clean_text(form.get("whatsapp"), 40))
    accept_terms = form.get("accept_terms", form.get("aceiteTermos")) is True
    if len(service_name) < 2:
        raise MalformedPayload("service_name is required")
    if len(name) < 2:
        raise MalformedPayload("name is required")
    if len(whatsapp) < 10:
        raise MalformedPayload("whatsapp is required")
    if not accept_terms:
        raise MalformedPayload("accept_terms must be true")
    return {
        "service_name": service_name,
        "name": name,
        "email": clean_text(form.get("email"), 180),
        "whatsapp": whatsapp,
        "company": clean_text(form.get("company") or form.get("empresa"), 180),
        "role": clean_text(form.get("role") or form.get("cargo"), 160),
        "site": clean_text(form.get("site"), 240),
        "segment": clean_text(form.get("segment") or form.get("segmento"), 120),
        "size": clean_text(form.get("size") or form.get("porte"), 80),
        "channels": _clean_list(form.get("channels", form.get("canais")), 80),
        "region": clean_text(form.get("region") or form.get("regiao"), 120),
        "goals": _clean_list(form.get("goals", form.get("objetivos")), 180),
        "notes": clean_text(form.get("notes") or form.get("observacoes"), 2000),
        "accept_terms": accept_terms,
    }


def intake(db: Session, form: Any) -> IntakeResult:
    data = validate_intake(form)
    applied = apply_event(
        db,
        phone=data["whatsapp"],
        provider_message_id=f"frontend-{uuid.uuid4()}",
        direction="outbound",
        payload={"source": "frontend_intake", "service_name": data["service_name"], "form": data},
        event_timestamp=now_epoch(),
        status="started",
        client_hints={"name": data["name"], "email": data["email"], "phone": data["whatsapp"]},
    )
    folder = _folder_for_session(db, applied.client_id, fallback_name=data["name"])
    return IntakeResult(
        session_id=applied.session_id,
        client_id=applied.client_id,
        tracking_token=applied.tracking_token,
        status=applied.status,
        status_updated_at=applied.status_updated_at,
        duplicate=applied.duplicate,
        folder=folder,
    )


def session_status(db: Session, tracking_token: Any) -> Dict[str, Any]:
    token = clean_text(tracking_token, 80)
    if not token:
        raise MalformedPayload("tracking_token is required")
    session = db.execute(
        select(OnboardingSession).where(OnboardingSession.tracking_token == token).limit(1)
    ).scalar_one_or_none()
    if session is None:
        raise NotFound("Session not found")
    return {
        "session_id": session.id,
        "status": session.current_status,
        "status_updated_at": session.status_updated_at,
        "last_message_at": session.last_message_at,
        "created_at": session.created_at,
    }


def _bounded_limit(value: Any, default: int = 20, low: int = 1, high: int = 100) -> int:
    try:
        n = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, n))


def dashboard(db: Session, limit: Any = 20) -> Dict[str, Any]:
    limit = _bounded_limit(limit)
    S = OnboardingSession
    stats = db.execute(
        select(
            func.count(S.id),
            func.sum(case((S.current_status == "completed", 1), else_=0)),
            func.sum(case((S.current_status.in_(ACTIVE_STATUSES), 1), else_=0)),
            func.sum(case((S.current_status == "failed", 1), else_=0)),
            func.avg(case((S.current_status == "completed", S.status_updated_at - S.created_at), else_=None)),
        )
    ).one()
    total = int(stats[0] or 0)
    completed = int(stats[1] or 0)
    active = int(stats[2] or 0)
    failed = int(stats[3] or 0)
    avg_seconds = float(stats[4] or 0)
    folders = db.execute(select(func.count(Client.id)).where(Client.drive_folder_id.is_not(None))).scalar_one()

    message_count = (
        select(func.count(OnboardingMessage.id))
        .where(OnboardingMessage.session_id == S.id)
        .correlate(S)
        .scalar_subquery()
    )
    rows = db.execute(
        select(S, Client, message_count)
        .outerjoin(Client, Client.id == S.client_id)
        .order_by(S.status_updated_at.desc(), S.updated_at.desc())
        .limit(limit)
    ).all()
    recent = []
    for session, client, n_messages in rows:
        recent.append(
            {
                "id": session.id,
                "tracking_token": session.tracking_token,
                "phone_e164": session.phone_e164,
                "current_status": session.current_status,
                "status_updated_at": session.status_updated_at,
                "created_at": session.created_at,
                "last_message_at": session.last_message_at,
                "last_provider_message_id": session.last_provider_message_id,
                "cliente_id": session.client_id,
                "cliente_nome": client.name if client else None,
                "drive_folder_id": client.drive_folder_id if client else None,
                "drive_folder_url": client.drive_folder_url if client else None,
                "cliente_onboarding_status": client.onboarding_status if client else None,
                "total_messages": int(n_messages or 0),
            }
        )
    return {
        "stats": {
            "total_sessions": total,
            "completed_sessions": completed,
            "active_sessions": active,
            "failed_sessions": failed,
            "completion_rate_pct": round(completed / total * 100) if total else 0,
            "avg_completion_seconds": avg_seconds,
            "avg_completion_days": round(avg_seconds / 86400, 2),
            "drive_folders_created": int(folders or 0),
        },
        "recent_sessions": recent,
    }
