import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from src.backend.app import onboarding
from src.backend.app.errors import InvalidEvent, InvalidStatus, MalformedPayload, NotFound, TransactionFailure
from src.backend.app.models import Client, OnboardingMessage, OnboardingSession, StatusHistory

PHONE = "5511999998888"


def _count(db, model, *where):
    stmt = select(func.count()).select_from(model)
    for clause in where:
        stmt = stmt.where(clause)
    return db.execute(stmt).scalar_one()


def _apply(db, pmid, ts, status=None, direction="inbound", phone=PHONE, hints=None):
    return onboarding.apply_event(
        db,
        phone=phone,
        provider_message_id=pmid,
        direction=direction,
        payload={"n": pmid},
        event_timestamp=ts,
        status=status,
        client_hints=hints or {},
    )


def test_first_event_creates_client_session_message_and_history(db):
    res = _apply(db, "wamid.A", 1000, status="in_progress", hints={"name": "Joao"})
    assert res.duplicate is False
    assert res.status == "in_progress"
    assert res.client_id
    assert _count(db, Client) == 1
    assert _count(db, OnboardingSession) == 1
    assert _count(db, OnboardingMessage) == 1
    history = db.execute(select(StatusHistory)).scalars().all()
    assert len(history) == 1
    assert history[0].from_status is None
    assert history[0].to_status == "in_progress"
    client = db.get(Client, res.client_id)
    assert client.name == "Joao"
    assert client.whatsapp_phone == "+5511999998888"
    assert client.onboarding_status == "in_progress"


def test_new_session_without_status_starts(db):
    res = _apply(db, "wamid.plain", 1000)
    assert res.status == "started"


def test_redelivery_is_duplicate_and_writes_nothing(db):
    first = _apply(db, "wamid.A", 1000, status="in_progress")
    second = _apply(db, "wamid.A", 1000, status="in_progress")
    assert second.duplicate is True
    assert second.session_id == first.session_id
    assert second.tracking_token == first.tracking_token
    assert _count(db, OnboardingMessage, OnboardingMessage.provider_message_id == "wamid.A") == 1
    assert _count(db, StatusHistory) == 1


def test_scenario_message_then_read_receipt(db):
    first = _apply(db, "wamid.A", 1000, status="in_progress")
    assert first.status == "in_progress"
    assert _apply(db, "wamid.A", 1000, status="in_progress").duplicate is True
    third = _apply(db, "wamid.B", 1010, status="awaiting_client", direction="system")
    assert third.status == "awaiting_client"
    assert _count(db, OnboardingSession) == 1
    assert _count(db, OnboardingMessage) == 2
    rows = db.execute(select(StatusHistory).order_by(StatusHistory.id)).scalars().all()
    assert [(r.from_status, r.to_status) for r in rows] == [(None, "in_progress"), ("in_progress", "awaiting_client")]


def test_history_counts_distinct_consecutive_statuses(db):
    sequence = ["in_progress", "in_progress", "awaiting_client", "awaiting_client", "in_progress", "in_progress"]
    for i, status in enumerate(sequence):
        _apply(db, f"wamid.{i}", 1000 + i, status=status)
    assert _count(db, StatusHistory) == 3
    assert _count(db, OnboardingMessage) == len(sequence)


def test_invalid_direction_writes_no_rows(db):
    with pytest.raises(InvalidEvent):
        _apply(db, "wamid.bad", 1000, status="in_progress", direction="sideways")
    assert _count(db, Client) == 0
    assert _count(db, OnboardingSession) == 0
    assert _count(db, OnboardingMessage) == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"phone": "", "provider_message_id": "x", "direction": "inbound"},
        {"phone": PHONE, "provider_message_id": "  ", "direction": "inbound"},
        {"phone": PHONE, "provider_message_id": "x", "direction": "inbound", "status": "archived"},
    ],
)
def test_invalid_events_are_rejected_before_writing(db, kwargs):
    with pytest.raises(InvalidEvent):
        onboarding.apply_event(db, payload={}, event_timestamp=1000, **kwargs)
    assert _count(db, OnboardingSession) == 0


def test_stale_event_is_recorded_but_does_not_move_state(db):
    _apply(db, "wamid.new", 2000, status="awaiting_client")
    res = _apply(db, "wamid.old", 1500, status="failed")
    assert res.duplicate is False
    assert res.status == "awaiting_client"
    session = db.execute(select(OnboardingSession)).scalar_one()
    assert session.last_message_at == 2000
    assert session.last_provider_message_id == "wamid.new"
    assert _count(db, OnboardingMessage) == 2
    assert _count(db, StatusHistory) == 1


def test_equal_timestamps_apply(db):
    _apply(db, "wamid.1", 2000, status="in_progress")
    res = _apply(db, "wamid.2", 2000, status="awaiting_client")
    assert res.status == "awaiting_client"


def test_terminal_status_blocks_automatic_changes(db):
    _apply(db, "wamid.1", 1000, status="failed")
    res = _apply(db, "wamid.2", 1001, status="in_progress")
    assert res.status == "failed"
    session = db.execute(select(OnboardingSession)).scalar_one()
    assert session.last_provider_message_id == "wamid.2"


def test_hints_fill_gaps_but_never_blank_fields(db):
    res = _apply(db, "wamid.1", 1000, hints={"name": "Maria"})
    _apply(db, "wamid.2", 1001, hints={"name": "", "email": "maria@example.com"})
    _apply(db, "wamid.3", 1002, hints={"name": "Outra"})
    client = db.get(Client, res.client_id)
    db.refresh(client)
    assert client.name == "Maria"
    assert client.email == "maria@example.com"


def test_transition_to_completed_mirrors_client(db):
    applied = _apply(db, "wamid.A", 1000, status="in_progress")
    result = onboarding.transition(db, session_id=applied.session_id, next_status="completed")
    assert result.status == "completed"
    assert result.from_status == "in_progress"
    rows = db.execute(select(StatusHistory).order_by(StatusHistory.id)).scalars().all()
    assert (rows[-1].from_status, rows[-1].to_status) == ("in_progress", "completed")
    assert rows[-1].reason == "dashboard_manual_transition"
    client = db.get(Client, applied.client_id)
    db.refresh(client)
    assert client.onboarding_status == "completed"
    system_msgs = db.execute(
        select(OnboardingMessage).where(OnboardingMessage.direction == "system")
    ).scalars().all()
    assert len(system_msgs) == 1
    assert system_msgs[0].provider_message_id.startswith("dashboard-")
    assert system_msgs[0].payload["source"] == "dashboard_transition"
    assert system_msgs[0].payload["to_status"] == "completed"


def test_transition_by_token_to_same_status_records_message_only(db):
    applied = _apply(db, "wamid.A", 1000, status="in_progress")
    result = onboarding.transition(db, tracking_token=applied.tracking_token, next_status="in_progress", reason="checked")
    assert result.changed is False
    assert _count(db, StatusHistory) == 1
    assert _count(db, OnboardingMessage) == 2


def test_manual_transition_can_leave_terminal_state(db):
    applied = _apply(db, "wamid.A", 1000, status="failed")
    result = onboarding.transition(db, session_id=applied.session_id, next_status="in_progress")
    assert result.status == "in_progress"


def test_transition_errors(db):
    with pytest.raises(MalformedPayload):
        onboarding.transition(db, next_status="completed")
    with pytest.raises(InvalidStatus):
        onboarding.transition(db, tracking_token="abc", next_status="archived")
    with pytest.raises(NotFound):
        onboarding.transition(db, tracking_token="missing", next_status="completed")


def test_intake_creates_started_session(db):
    result = onboarding.intake(
        db,
        {"service_name": "Social", "name": "Ana Lima", "whatsapp": "(11) 98888-7777", "accept_terms": True, "email": "ana@example.com"},
    )
    assert result.status == "started"
    assert result.duplicate is False
    assert result.folder.status == "skipped_not_configured"
    msg = db.execute(select(OnboardingMessage)).scalar_one()
    assert msg.direction == "outbound"
    assert msg.provider_message_id.startswith("frontend-")
    assert msg.payload["source"] == "frontend_intake"


@pytest.mark.parametrize(
    "form,error",
    [
        ({"service_name": "S", "name": "Ana", "whatsapp": "11988887777", "accept_terms": True}, "service_name"),
        ({"service_name": "Social", "name": "A", "whatsapp": "11988887777", "accept_terms": True}, "name"),
        ({"service_name": "Social", "name": "Ana", "whatsapp": "123", "accept_terms": True}, "whatsapp"),
        ({"service_name": "Social", "name": "Ana", "whatsapp": "11988887777", "accept_terms": "yes"}, "accept_terms"),
    ],
)
def test_intake_validation(db, form, error):
    with pytest.raises(MalformedPayload, match=error):
        onboarding.intake(db, form)
    assert _count(db, OnboardingSession) == 0


def test_session_status_lookup(db):
    applied = _apply(db, "wamid.A", 1000, status="in_progress")
    row = onboarding.session_status(db, applied.tracking_token)
    assert row["session_id"] == applied.session_id
    assert row["status"] == "in_progress"
    with pytest.raises(NotFound):
        onboarding.session_status(db, "nope")
    with pytest.raises(MalformedPayload):
        onboarding.session_status(db, "")


def test_dashboard_stats_and_recent_sessions(db):
    a = _apply(db, "wamid.a", 1000, status="in_progress", phone="5511900000001")
    _apply(db, "wamid.b", 1000, status="failed", phone="5511900000002")
    _apply(db, "wamid.a2", 1001, status="awaiting_client", phone="5511900000001")
    onboarding.transition(db, session_id=a.session_id, next_status="completed")
    data = onboarding.dashboard(db, limit=500)
    stats = data["stats"]
    assert stats["total_sessions"] == 2
    assert stats["completed_sessions"] == 1
    assert stats["failed_sessions"] == 1
    assert stats["active_sessions"] == 0
    assert stats["completion_rate_pct"] == 50
    assert stats["drive_folders_created"] == 0
    recent = {s["id"]: s for s in data["recent_sessions"]}
    assert recent[a.session_id]["total_messages"] == 3
    assert onboarding.dashboard(db, limit=1)["recent_sessions"].__len__() == 1


def test_transition_with_malformed_session_id_uses_token(db):
    applied = _apply(db, "wamid.A", 1000, status="in_progress")
    result = onboarding.transition(
        db, session_id="not-a-uuid", tracking_token=applied.tracking_token, next_status="completed"
    )
    assert result.session_id == applied.session_id
    assert result.status == "completed"


def test_transition_matches_token_when_session_id_is_unknown(db):
    applied = _apply(db, "wamid.A", 1000, status="in_progress")
    result = onboarding.transition(
        db, session_id=str(uuid.uuid4()), tracking_token=applied.tracking_token, next_status="failed"
    )
    assert result.session_id == applied.session_id


def _fail_message_flush(monkeypatch):
    original = Session.flush

    def flush(self, *args, **kwargs):
        if any(isinstance(obj, OnboardingMessage) for obj in self.new):
            raise OperationalError("INSERT INTO onboarding_messages", {}, Exception("disk I/O error"))
        return original(self, *args, **kwargs)

    monkeypatch.setattr(Session, "flush", flush)
    return original


def test_database_failure_rolls_back_whole_event(db, monkeypatch):
    original = _fail_message_flush(monkeypatch)
    with pytest.raises(TransactionFailure):
        _apply(db, "wamid.A", 1000, status="in_progress", hints={"name": "Joao"})
    assert _count(db, Client) == 0
    assert _count(db, OnboardingSession) == 0
    assert _count(db, OnboardingMessage) == 0
    assert _count(db, StatusHistory) == 0

    monkeypatch.setattr(Session, "flush", original)
    res = _apply(db, "wamid.A", 1000, status="in_progress")
    assert res.duplicate is False
    assert _count(db, OnboardingMessage) == 1
