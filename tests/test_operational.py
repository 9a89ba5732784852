from unittest import mock

import pytest
from sqlalchemy import func, select

from src.backend.app import operational
from src.backend.app.errors import DownstreamOrchestrationFailure, MalformedPayload, NotFound, TrelloNotConfigured
from src.backend.app.integrations.trello import TrelloError
from src.backend.app.models import Client, OperationalItem


def _trello_env(monkeypatch):
    monkeypatch.setenv("TRELLO_API_KEY", "k")
    monkeypatch.setenv("TRELLO_TOKEN", "t")
    monkeypatch.setenv("TRELLO_DEFAULT_LIST_ID", "list-default")


def test_create_without_trello_config_is_skipped(db):
    out = operational.upsert_item(db, {"type": "task", "title": "Revisar briefing", "priority": "high"})
    assert out["duplicate"] is False
    assert out["trello"]["status"] == "skipped_not_configured"
    item = out["item"]
    assert item["type"] == "task"
    assert item["priority"] == "high"
    assert item["status"] == "open"
    assert item["created_at"].endswith("Z")


def test_sync_can_be_disabled(db):
    out = operational.upsert_item(db, {"type": "task", "title": "Sem sync", "sync_trello": False})
    assert out["trello"]["status"] == "not_requested"


def test_idempotency_key_returns_existing_item(db):
    first = operational.upsert_item(db, {"type": "briefing", "title": "Briefing inicial", "idempotency_key": "k-1"})
    second = operational.upsert_item(db, {"type": "briefing", "title": "Outro titulo", "idempotency_key": "k-1"})
    assert second["duplicate"] is True
    assert second["item"]["id"] == first["item"]["id"]
    assert db.execute(select(func.count()).select_from(OperationalItem)).scalar_one() == 1


def test_update_by_id_changes_only_given_fields(db):
    created = operational.upsert_item(db, {"type": "task", "title": "Primeiro", "owner": "ana"})
    updated = operational.upsert_item(
        db, {"id": created["item"]["id"], "status": "done", "due_at": "2026-03-09T12:00:00Z"}
    )
    item = updated["item"]
    assert item["status"] == "done"
    assert item["owner"] == "ana"
    assert item["title"] == "Primeiro"
    assert item["due_at"] == "2026-03-09T12:00:00Z"


def test_update_unknown_id_is_not_found(db):
    with pytest.raises(NotFound):
        operational.upsert_item(db, {"id": "missing", "status": "done"})


@pytest.mark.parametrize(
    "raw,message",
    [
        ({"type": "task", "title": "Ok", "color": "red"}, "Unknown fields: color"),
        ({"type": "epic", "title": "Ok"}, "type is invalid"),
        ({"title": "Ok"}, "type is required"),
        ({"type": "task", "title": "x"}, "title is required"),
        ({"type": "task", "title": "Ok", "priority": "asap"}, "priority is invalid"),
        ({"type": "task", "title": "Ok", "due_at": "not a date"}, "due_at must be a valid datetime or null"),
        ("not-a-dict", "Invalid payload"),
    ],
)
def test_upsert_validation(db, raw, message):
    with pytest.raises(MalformedPayload) as exc:
        operational.upsert_item(db, raw)
    assert exc.value.message == message


def test_list_filters_search_and_client_name(db):
    client = Client(whatsapp_phone="+5511999998888", name="Loja Azul")
    db.add(client)
    db.commit()
    operational.upsert_item(db, {"type": "task", "title": "Postar reels", "cliente_id": client.id})
    operational.upsert_item(db, {"type": "briefing", "title": "Briefing campanha", "description": "verao"})
    operational.upsert_item(db, {"type": "follow_up", "title": "Ligar cliente", "status": "blocked"})

    assert len(operational.list_items(db, {})) == 3
    tasks = operational.list_items(db, {"type": "task"})
    assert [r["title"] for r in tasks] == ["Postar reels"]
    assert tasks[0]["cliente_nome"] == "Loja Azul"
    assert [r["title"] for r in operational.list_items(db, {"search": "VERAO"})] == ["Briefing campanha"]
    assert [r["title"] for r in operational.list_items(db, {"status": "blocked"})] == ["Ligar cliente"]
    assert len(operational.list_items(db, {"cliente_id": client.id})) == 1
    assert len(operational.list_items(db, {"limit": 2})) == 2
    with pytest.raises(MalformedPayload, match="Unknown fields"):
        operational.list_items(db, {"owner": "x"})
    with pytest.raises(MalformedPayload, match="status is invalid"):
        operational.list_items(db, {"status": "archived"})


def test_delete(db):
    created = operational.upsert_item(db, {"type": "task", "title": "Apagar"})
    item_id = created["item"]["id"]
    assert operational.delete_item(db, {"id": item_id}) == item_id
    assert db.get(OperationalItem, item_id) is None
    with pytest.raises(NotFound):
        operational.delete_item(db, {"id": item_id})
    with pytest.raises(MalformedPayload, match="id is required"):
        operational.delete_item(db, {})


def test_trello_create_then_update_persists_card(db, monkeypatch):
    _trello_env(monkeypatch)
    trello = mock.MagicMock()
    trello.create_card.return_value = {"id": "card-1", "url": "https://trello.com/c/card-1", "list_id": "list-default"}
    created = operational.upsert_item(db, {"type": "task", "title": "Com card"}, trello=trello)
    assert created["trello"]["status"] == "created"
    assert created["item"]["trello_card_id"] == "card-1"
    row = db.get(OperationalItem, created["item"]["id"])
    assert row.trello_list_id == "list-default"

    trello.update_card.return_value = {"id": "card-1", "url": "https://trello.com/c/card-1", "list_id": "list-default"}
    updated = operational.upsert_item(db, {"id": row.id, "status": "done"}, trello=trello)
    assert updated["trello"]["status"] == "updated"
    sent = trello.update_card.call_args.args[0]
    assert sent["trello_card_id"] == "card-1"
    assert sent["status"] == "done"


def test_trello_auth_failure_is_downstream_error(db, monkeypatch):
    _trello_env(monkeypatch)
    trello = mock.MagicMock()
    trello.create_card.side_effect = TrelloError("Trello request failed (401): invalid token", 401)
    with pytest.raises(DownstreamOrchestrationFailure):
        operational.upsert_item(db, {"type": "task", "title": "Auth"}, trello=trello)
    # the item itself is already committed
    assert db.execute(select(func.count()).select_from(OperationalItem)).scalar_one() == 1


def test_trello_other_failure_is_reported(db, monkeypatch):
    _trello_env(monkeypatch)
    trello = mock.MagicMock()
    trello.create_card.side_effect = TrelloError("Trello request timeout")
    out = operational.upsert_item(db, {"type": "task", "title": "Timeout"}, trello=trello)
    assert out["trello"]["status"] == "failed"
    assert out["trello"]["error"] == "Trello request timeout"
    assert out["item"]["trello_card_id"] is None


def test_trello_not_configured_in_production(db, monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    with pytest.raises(TrelloNotConfigured):
        operational.upsert_item(db, {"type": "task", "title": "Prod"})
