from unittest import mock

import httpx
import pytest

from src.backend.app.integrations import trello
from src.backend.app.integrations.trello import TrelloClient, TrelloError


def _response(status_code, payload=None, text=""):
    r = mock.MagicMock()
    r.status_code = status_code
    r.json.return_value = payload or {}
    r.content = b"{}" if payload is not None else b""
    r.text = text
    return r


def test_readiness_reports_missing_keys(monkeypatch):
    state = trello.readiness()
    assert state["ready"] is False
    assert "TRELLO_API_KEY" in state["missing"]
    assert state["allow_skip_not_configured"] is True
    monkeypatch.setenv("TRELLO_API_KEY", "k")
    monkeypatch.setenv("TRELLO_TOKEN", "t")
    monkeypatch.setenv("TRELLO_TASK_LIST_ID", "l")
    state = trello.readiness()
    assert state["ready"] is True
    assert state["status_by_key"]["TRELLO_TOKEN"] == "PRESENT"
    assert state["status_by_key"]["TRELLO_BRIEFING_LIST_ID"] == "EMPTY"


def test_list_resolution_prefers_type_specific(monkeypatch):
    monkeypatch.setenv("TRELLO_DEFAULT_LIST_ID", "default")
    monkeypatch.setenv("TRELLO_BRIEFING_LIST_ID", "briefings")
    assert trello.resolve_list_id("briefing") == "briefings"
    assert trello.resolve_list_id("task") == "default"
    monkeypatch.delenv("TRELLO_DEFAULT_LIST_ID")
    with pytest.raises(TrelloError, match="No Trello list configured"):
        trello.resolve_list_id("task")


def test_card_description_uses_labels():
    desc = trello.build_card_description(
        {
            "id": "item-1",
            "type": "follow_up",
            "status": "in_progress",
            "priority": "urgent",
            "owner": "ana",
            "client_name": "Loja Azul",
            "due_at": 1773057600,
            "details": {"canal": "instagram"},
        }
    )
    lines = desc.splitlines()
    assert lines[0] == "Tipo: Acompanhamento"
    assert lines[1] == "Status: Em andamento"
    assert lines[2] == "Prioridade: Urgente"
    assert "Cliente: Loja Azul" in lines
    assert "Prazo: 2026-03-09T12:00:00Z" in lines
    assert "(Sem descricao)" in lines
    assert '"canal": "instagram"' in desc


def test_create_card_sends_query_params(monkeypatch):
    monkeypatch.setenv("TRELLO_DEFAULT_LIST_ID", "list-1")
    http = mock.MagicMock()
    http.request.return_value = _response(200, {"id": "c1", "url": "https://trello.com/c/c1", "idList": "list-1"})
    client = TrelloClient(api_key="k", token="t", base_url="https://trello.test/1", http=http)
    card = client.create_card({"id": "i", "type": "task", "title": "Nova tarefa"})
    assert card == {"id": "c1", "url": "https://trello.com/c/c1", "list_id": "list-1"}
    method, url = http.request.call_args.args
    params = http.request.call_args.kwargs["params"]
    assert (method, url) == ("POST", "https://trello.test/1/cards")
    assert params["key"] == "k" and params["token"] == "t"
    assert params["name"] == "Nova tarefa"
    assert params["pos"] == "bottom"
    assert "due" not in params


def test_update_card_requires_card_id(monkeypatch):
    monkeypatch.setenv("TRELLO_DEFAULT_LIST_ID", "list-1")
    client = TrelloClient(api_key="k", token="t", http=mock.MagicMock())
    with pytest.raises(TrelloError, match="trello_card_id is required"):
        client.update_card({"type": "task", "title": "Sem card"})


def test_http_errors_are_redacted():
    http = mock.MagicMock()
    http.request.return_value = _response(401, text="invalid token=abc123 access_token=xyz")
    client = TrelloClient(api_key="k", token="t", http=http)
    with pytest.raises(TrelloError) as exc:
        client.request("GET", "members/me")
    assert exc.value.is_auth_error
    assert "abc123" not in str(exc.value)
    assert "xyz" not in str(exc.value)


def test_timeouts_are_wrapped():
    http = mock.MagicMock()
    http.request.side_effect = httpx.ConnectTimeout("slow")
    client = TrelloClient(api_key="k", token="t", http=http)
    with pytest.raises(TrelloError, match="timeout"):
        client.request("GET", "members/me")


def test_missing_credentials():
    client = TrelloClient(api_key="", token="", http=mock.MagicMock())
    with pytest.raises(TrelloError, match="not configured"):
        client.request("GET", "members/me")


def _configure(monkeypatch):
    monkeypatch.setenv("TRELLO_API_KEY", "k")
    monkeypatch.setenv("TRELLO_TOKEN", "t")
    monkeypatch.setenv("TRELLO_DEFAULT_LIST_ID", "list-1")


def test_sync_item_closes_the_client_it_created(monkeypatch):
    _configure(monkeypatch)
    with mock.patch.object(trello.httpx, "Client") as factory:
        http = factory.return_value
        http.request.return_value = _response(200, {"id": "c1", "url": "https://trello.com/c/c1", "idList": "list-1"})
        result = trello.sync_item({"id": "i", "type": "task", "title": "Nova tarefa"})
    assert result["status"] == "created"
    http.close.assert_called_once()


def test_sync_item_closes_its_client_on_failure(monkeypatch):
    _configure(monkeypatch)
    with mock.patch.object(trello.httpx, "Client") as factory:
        http = factory.return_value
        http.request.return_value = _response(500, text="boom")
        with pytest.raises(TrelloError):
            trello.sync_item({"id": "i", "type": "task", "title": "Nova tarefa"})
    http.close.assert_called_once()


def test_caller_supplied_http_client_is_left_open(monkeypatch):
    _configure(monkeypatch)
    http = mock.MagicMock()
    http.request.return_value = _response(200, {"id": "c1", "url": "u", "idList": "list-1"})
    with TrelloClient(http=http) as client:
        trello.sync_item({"id": "i", "type": "task", "title": "Nova tarefa"}, client=client)
    http.close.assert_not_called()


def test_context_manager_closes_owned_client():
    with TrelloClient(api_key="k", token="t") as client:
        assert client.http.is_closed is False
    assert client.http.is_closed is True
