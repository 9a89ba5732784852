import json
import os
import logging
from typing import Any, Dict, Optional
import httpx

from ..errors import TrelloNotConfigured
from ..metrics_counters import DOWNSTREAM_SYNC
from ..utils import clean_text, epoch_to_iso, is_production, outbound_timeout_seconds, parse_epoch, redact_secrets

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.trello.com/1"

TYPE_LABEL = {"task": "Tarefa", "briefing": "Briefing", "follow_up": "Acompanhamento"}
STATUS_LABEL = {"open": "Aberto", "in_progress": "Em andamento", "done": "Concluido", "blocked": "Bloqueado"}
PRIORITY_LABEL = {"low": "Baixa", "medium": "Media", "high": "Alta", "urgent": "Urgente"}
LIST_ENV_BY_TYPE = {
    "task": "TRELLO_TASK_LIST_ID",
    "briefing": "TRELLO_BRIEFING_LIST_ID",
    "follow_up": "TRELLO_FOLLOW_UP_LIST_ID",
}
_LIST_ENVS = ("TRELLO_DEFAULT_LIST_ID",) + tuple(LIST_ENV_BY_TYPE.values())


class TrelloError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


def readiness() -> Dict[str, Any]:
    missing = [k for k in ("TRELLO_API_KEY", "TRELLO_TOKEN") if not os.getenv(k, "").strip()]
    if not any(os.getenv(k, "").strip() for k in _LIST_ENVS):
        missing.append("|".join(_LIST_ENVS))
    return {
        "ready": not missing,
        "missing": missing,
        "allow_skip_not_configured": not is_production(),
        "status_by_key": {
            k: ("PRESENT" if os.getenv(k, "").strip() else "EMPTY") for k in ("TRELLO_API_KEY", "TRELLO_TOKEN") + _LIST_ENVS
        },
    }


def resolve_list_id(item_type: Any) -> str:
    env_key = LIST_ENV_BY_TYPE.get(clean_text(item_type, 40))
    specific = os.getenv(env_key, "").strip()[:120] if env_key else ""
    if specific:
        return specific
    default = os.getenv("TRELLO_DEFAULT_LIST_ID", "").strip()[:120]
    if default:
        return default
    raise TrelloError(f"No Trello list configured for type={clean_text(item_type, 40)}")


def _compact_json(value: Any, max_length: int = 5000) -> str:
    if not isinstance(value, dict):
        return ""
    entries = [(k, v) for k, v in value.items() if isinstance(k, str) and k.strip()][:50]
    if not entries:
        return ""
    return json.dumps(dict(entries), indent=2, ensure_ascii=False, default=str)[:max_length]


def _iso(value: Any) -> Optional[str]:
    return epoch_to_iso(parse_epoch(value))


def build_card_description(item: Dict[str, Any]) -> str:
    t = clean_text(item.get("type"), 40)
    s = clean_text(item.get("status"), 40)
    p = clean_text(item.get("priority"), 40)
    description = clean_text(item.get("description"), 8000)
    details = _compact_json(item.get("details"))
    lines = [
        f"Tipo: {TYPE_LABEL.get(t) or t or '-'}",
        f"Status: {STATUS_LABEL.get(s) or s or '-'}",
        f"Prioridade: {PRIORITY_LABEL.get(p) or p or '-'}",
        f"Responsavel: {clean_text(item.get('owner'), 180) or '-'}",
        f"Cliente: {clean_text(item.get('client_name'), 180) or '-'}",
        f"Item ID: {clean_text(item.get('id'), 80) or '-'}",
        f"Prazo: {_iso(item.get('due_at')) or '-'}",
        f"Atualizado: {_iso(item.get('updated_at')) or '-'}",
        "",
        description or "(Sem descricao)",
    ]
    if details:
        lines += ["", "Detalhes JSON:", "```json", details, "```"]
    return "\n".join(lines)[:15000]


def map_item_to_card(item: Dict[str, Any]) -> Dict[str, Any]:
    name = clean_text(item.get("title"), 16384)
    if len(name) < 2:
        raise TrelloError("title is required")
    return {
        "idList": resolve_list_id(item.get("type")),
        "name": name,
        "desc": build_card_description(item),
        "due": _iso(item.get("due_at")),
    }


class TrelloClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.api_key = (api_key or os.getenv("TRELLO_API_KEY", "")).strip()
        self.token = (token or os.getenv("TRELLO_TOKEN", "")).strip()
        self.base_url = (base_url or os.getenv("TRELLO_API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip("/")
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=outbound_timeout_seconds())

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "TrelloClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def request(self, method: str, path: str, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not (self.api_key and self.token):
            raise TrelloError("Trello API credentials are not configured")
        params = {"key": self.api_key, "token": self.token}
        for k, v in (query or {}).items():
            if v is None or v == "":
                continue
            params[k] = str(v)
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            r = self.http.request(method, url, params=params, headers={"Accept": "application/json"})
        except httpx.TimeoutException as e:
            raise TrelloError("Trello request timeout") from e
        except httpx.HTTPError as e:
            raise TrelloError(f"Trello request failed (network): {redact_secrets(e) or 'network error'}") from e
        if r.status_code >= 400:
            detail = redact_secrets(r.text[:500]) or "request failed"
            raise TrelloError(f"Trello request failed ({r.status_code}): {detail}", r.status_code)
        try:
            return r.json() if r.content else {}
        except ValueError:
            return {}

    def create_card(self, item: Dict[str, Any]) -> Dict[str, Optional[str]]:
        card = map_item_to_card(item)
        j = self.request(
            "POST",
            "cards",
            {"idList": card["idList"], "name": card["name"], "desc": card["desc"], "due": card["due"], "pos": "bottom"},
        )
        return {
            "id": clean_text(j.get("id"), 120),
            "url": clean_text(j.get("url"), 1000),
            "list_id": clean_text(j.get("idList"), 120) or card["idList"],
        }

    def update_card(self, item: Dict[str, Any]) -> Dict[str, Optional[str]]:
        card_id = clean_text(item.get("trello_card_id"), 120)
        if not card_id:
            raise TrelloError("trello_card_id is required to update card")
        card = map_item_to_card(item)
        j = self.request(
            "PUT",
            f"cards/{card_id}",
            {"idList": card["idList"], "name": card["name"], "desc": card["desc"], "due": card["due"]},
        )
        return {
            "id": clean_text(j.get("id"), 120) or card_id,
            "url": clean_text(j.get("url"), 1000) or clean_text(item.get("trello_card_url"), 1000),
            "list_id": clean_text(j.get("idList"), 120) or card["idList"],
        }


def sync_item(item: Dict[str, Any], client: Optional[TrelloClient] = None) -> Dict[str, Any]:
    """Create or update the card mirroring an operational item.

    Without configuration the sync is skipped, except in production where
    TrelloNotConfigured is raised.
    """
    ready = readiness()
    if not ready["ready"]:
        if not ready["allow_skip_not_configured"]:
            DOWNSTREAM_SYNC.labels(target="trello", status="not_configured").inc()
            raise TrelloNotConfigured("Trello not configured")
        return {
            "status": "skipped_not_configured",
            "card_id": clean_text(item.get("trello_card_id"), 120) or None,
            "card_url": clean_text(item.get("trello_card_url"), 1000) or None,
            "list_id": None,
        }
    has_card = bool(clean_text(item.get("trello_card_id"), 120))
    owned = client is None
    client = client or TrelloClient()
    try:
        card = client.update_card(item) if has_card else client.create_card(item)
    except TrelloError:
        DOWNSTREAM_SYNC.labels(target="trello", status="failed").inc()
        raise
    finally:
        if owned:
            client.close()
    status = "updated" if has_card else "created"
    DOWNSTREAM_SYNC.labels(target="trello", status=status).inc()
    logger.info("trello_card_synced", extra={"item_id": item.get("id"), "card_id": card["id"], "status": status})
    return {
        "status": status,
        "card_id": card["id"] or None,
        "card_url": card["url"] or None,
        "list_id": card["list_id"] or None,
    }
