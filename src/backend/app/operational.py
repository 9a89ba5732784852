import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import DownstreamOrchestrationFailure, MalformedPayload, NotFound, TransactionFailure
from .events import emit_event
from .integrations.trello import TrelloClient, TrelloError, sync_item
from .models import Client, OperationalItem
from .utils import clean_text, epoch_to_iso, now_epoch, parse_epoch, redact_secrets, to_bool

logger = logging.getLogger(__name__)

ITEM_TYPES = ("task", "briefing", "follow_up")
ITEM_STATUSES = ("open", "in_progress", "done", "blocked")
ITEM_PRIORITIES = ("low", "medium", "high", "urgent")


class UpsertPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    idempotency_key: Optional[str] = None
    type: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    cliente_id: Optional[str] = None
    owner: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    due_at: Optional[Any] = None
    details: Optional[Dict[str, Any]] = None
    sync_trello: Optional[Any] = None


class ListPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[str] = None
    status: Optional[str] = None
    cliente_id: Optional[str] = None
    limit: Optional[Any] = None
    search: Optional[str] = None


class DeletePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None


def _parse(model: type, raw: Any) -> BaseModel:
    if not isinstance(raw, dict):
        raise MalformedPayload("Invalid payload")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        unknown = [str(err["loc"][0]) for err in e.errors() if err.get("type") == "extra_forbidden"]
        if unknown:
            raise MalformedPayload(f"Unknown fields: {', '.join(unknown)}") from e
        first = e.errors()[0]
        raise MalformedPayload(f"{'.'.join(str(p) for p in first['loc'])} is invalid") from e


def _choice(value: Any, allowed: tuple) -> str:
    v = clean_text(value, 30).lower()
    return v if v in allowed else ""


def _sanitize_details(value: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in list((value or {}).items())[:80]:
        key = clean_text(k, 120)
        if key:
            out[key] = v
    return out


def to_public_row(item: OperationalItem, client_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": item.id,
        "idempotency_key": item.idempotency_key,
        "type": item.type,
        "title": item.title,
        "description": item.description,
        "cliente_id": item.client_id,
        "cliente_nome": client_name,
        "owner": item.owner,
        "priority": item.priority,
        "status": item.status,
        "due_at": epoch_to_iso(item.due_at),
        "details": item.details or {},
        "trello_card_id": item.trello_card_id,
        "trello_card_url": item.trello_card_url,
        "trello_list_id": item.trello_list_id,
        "created_at": epoch_to_iso(item.created_at),
        "updated_at": epoch_to_iso(item.updated_at),
    }


def _client_name(db: Session, client_id: Optional[str]) -> Optional[str]:
    if not client_id:
        return None
    client = db.get(Client, client_id)
    return client.name if client else None


def _validated_changes(p: UpsertPayload) -> Dict[str, Any]:
    """Maps the explicitly supplied fields onto model attributes."""
    given = p.model_fields_set
    changes: Dict[str, Any] = {}
    if "type" in given:
        t = _choice(p.type, ITEM_TYPES)
        if not t:
            raise MalformedPayload("type is invalid")
        changes["type"] = t
    if "title" in given:
        changes["title"] = clean_text(p.title, 220)
    if "description" in given:
        changes["description"] = clean_text(p.description, 8000)
    if "cliente_id" in given:
        changes["client_id"] = clean_text(p.cliente_id, 80) or None
    if "owner" in given:
        changes["owner"] = clean_text(p.owner, 180)
    if "priority" in given:
        pr = _choice(p.priority, ITEM_PRIORITIES)
        if not pr:
            raise MalformedPayload("priority is invalid")
        changes["priority"] = pr
    if "status" in given:
        st = _choice(p.status, ITEM_STATUSES)
        if not st:
            raise MalformedPayload("status is invalid")
        changes["status"] = st
    if "due_at" in given:
        if p.due_at is None:
            changes["due_at"] = None
        else:
            due = parse_epoch(p.due_at)
            if due is None:
                raise MalformedPayload("due_at must be a valid datetime or null")
            changes["due_at"] = due
    if "details" in given:
        changes["details"] = _sanitize_details(p.details)
    key = clean_text(p.idempotency_key, 120)
    if key:
        changes["idempotency_key"] = key
    return changes


def _sync_payload(item: OperationalItem, client_name: Optional[str]) -> Dict[str, Any]:
    return {
        "id": item.id,
        "type": item.type,
        "title": item.title,
        "description": item.description,
        "owner": item.owner,
        "priority": item.priority,
        "status": item.status,
        "due_at": item.due_at,
        "updated_at": item.updated_at,
        "details": item.details or {},
        "client_name": client_name,
        "trello_card_id": item.trello_card_id,
        "trello_card_url": item.trello_card_url,
    }


def upsert_item(db: Session, raw: Any, trello: Optional[TrelloClient] = None) -> Dict[str, Any]:
    p = _parse(UpsertPayload, raw)
    changes = _validated_changes(p)
    item_id = clean_text(p.id, 80)
    sync = to_bool(p.sync_trello, True)
    duplicate = False

    if not item_id:
        if not changes.get("type"):
            raise MalformedPayload("type is required")
        if len(changes.get("title") or "") < 2:
            raise MalformedPayload("title is required")

    try:
        if item_id:
            item = db.execute(
                select(OperationalItem).where(OperationalItem.id == item_id).with_for_update()
            ).scalar_one_or_none()
            if item is None:
                db.rollback()
                raise NotFound("Operational item not found")
            for attr, value in changes.items():
                setattr(item, attr, value)
            item.updated_at = now_epoch()
        else:
            item = None
            key = changes.get("idempotency_key")
            if key:
                item = db.execute(
                    select(OperationalItem).where(OperationalItem.idempotency_key == key).with_for_update()
                ).scalar_one_or_none()
                duplicate = item is not None
            if item is None:
                try:
                    with db.begin_nested():
                        item = OperationalItem(
                            idempotency_key=key,
                            type=changes["type"],
                            title=changes["title"],
                            description=changes.get("description", ""),
                            client_id=changes.get("client_id"),
                            owner=changes.get("owner", ""),
                            priority=changes.get("priority", "medium"),
                            status=changes.get("status", "open"),
                            due_at=changes.get("due_at"),
                            details=changes.get("details", {}),
                        )
                        db.add(item)
                        db.flush()
                except IntegrityError:
                    if not key:
                        raise
                    item = db.execute(
                        select(OperationalItem).where(OperationalItem.idempotency_key == key)
                    ).scalar_one()
                    duplicate = True
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("operational_upsert_failed", extra={"item_id": item_id})
        raise TransactionFailure(f"failed to upsert item: {e.__class__.__name__}") from e

    client_name = _client_name(db, item.client_id)
    result: Dict[str, Any] = {
        "status": "not_requested",
        "card_id": item.trello_card_id,
        "card_url": item.trello_card_url,
        "list_id": item.trello_list_id,
    }
    if sync:
        try:
            result = sync_item(_sync_payload(item, client_name), client=trello)
        except TrelloError as e:
            message = redact_secrets(str(e)) or "Trello sync failed"
            if e.is_auth_error:
                logger.error("trello_sync_auth_error", extra={"item_id": item.id, "error": message})
                raise DownstreamOrchestrationFailure(f"Trello authentication failed: {message}") from e
            logger.warning("trello_sync_failed", extra={"item_id": item.id, "error": message})
            result = {
                "status": "failed",
                "card_id": item.trello_card_id,
                "card_url": item.trello_card_url,
                "list_id": item.trello_list_id,
                "error": message,
            }
        if result.get("card_id") and result["status"] in ("created", "updated"):
            try:
                item = db.get(OperationalItem, item.id)
                item.trello_card_id = result["card_id"]
                item.trello_card_url = result.get("card_url")
                item.trello_list_id = result.get("list_id")
                item.updated_at = now_epoch()
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("operational_trello_persist_failed", extra={"item_id": item.id})
                raise TransactionFailure("failed to persist Trello card reference") from e

    emit_event("OperationalItemUpserted", {"item_id": item.id, "duplicate": duplicate, "trello": result["status"]})
    return {"duplicate": duplicate, "item": to_public_row(item, client_name), "trello": result}


def list_items(db: Session, raw: Any = None) -> List[Dict[str, Any]]:
    if not isinstance(raw, dict):
        raw = {}
    p = _parse(ListPayload, raw)
    stmt = select(OperationalItem, Client.name).outerjoin(Client, Client.id == OperationalItem.client_id)
    if p.type is not None:
        t = _choice(p.type, ITEM_TYPES)
        if not t:
            raise MalformedPayload("type is invalid")
        stmt = stmt.where(OperationalItem.type == t)
    if p.status is not None:
        st = _choice(p.status, ITEM_STATUSES)
        if not st:
            raise MalformedPayload("status is invalid")
        stmt = stmt.where(OperationalItem.status == st)
    if p.cliente_id is not None:
        cid = clean_text(p.cliente_id, 80)
        if not cid:
            raise MalformedPayload("cliente_id is invalid")
        stmt = stmt.where(OperationalItem.client_id == cid)
    search = clean_text(p.search, 180)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(OperationalItem.title.ilike(pattern), OperationalItem.description.ilike(pattern)))
    try:
        limit = max(1, min(100, int(float(p.limit)))) if p.limit is not None else 30
    except (TypeError, ValueError):
        limit = 30
    rows = db.execute(stmt.order_by(OperationalItem.updated_at.desc()).limit(limit)).all()
    return [to_public_row(item, name) for item, name in rows]


def delete_item(db: Session, raw: Any) -> str:
    p = _parse(DeletePayload, raw)
    item_id = clean_text(p.id, 80)
    if not item_id:
        raise MalformedPayload("id is required")
    item = db.get(OperationalItem, item_id)
    if item is None:
        raise NotFound("Operational item not found")
    try:
        db.delete(item)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise TransactionFailure("failed to delete item") from e
    emit_event("OperationalItemDeleted", {"item_id": item_id})
    return item_id
