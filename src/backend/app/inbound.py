from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .utils import normalize_phone, now_epoch, parse_epoch


class InboundEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    phone: str
    provider_message_id: str
    direction: str  # inbound | outbound | system
    status: Optional[str] = None
    event_timestamp: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    client_hints: Dict[str, Any] = Field(default_factory=dict)


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def map_delivery_status(status: Any) -> str:
    s = str(status or "").strip().lower()
    if s in ("failed", "undelivered"):
        return "failed"
    if s in ("read", "delivered", "sent"):
        return "awaiting_client"
    return "in_progress"


def _event_ts(raw: Any) -> int:
    # provider sends unix seconds as a string
    ts = parse_epoch(raw)
    return ts if ts is not None else now_epoch()


def extract_events(payload: Any) -> List[InboundEvent]:
    """Flatten a Cloud API webhook body into InboundEvents in payload order.

    Only `messages` changes are considered. Items without a phone or a
    provider message id are dropped.
    """
    events: List[InboundEvent] = []
    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            change = _as_dict(change)
            if change.get("field") != "messages":
                continue
            value = _as_dict(change.get("value"))
            contacts = _as_list(value.get("contacts"))
            contact = _as_dict(contacts[0]) if contacts else {}
            contact_phone = contact.get("wa_id")
            contact_name = _as_dict(contact.get("profile")).get("name")

            for message in _as_list(value.get("messages")):
                message = _as_dict(message)
                phone = normalize_phone(message.get("from")) or normalize_phone(contact_phone)
                provider_id = str(message.get("id") or "").strip()
                if not phone or not provider_id:
                    continue
                events.append(
                    InboundEvent(
                        phone=phone,
                        provider_message_id=provider_id,
                        direction="inbound",
                        status="in_progress",
                        event_timestamp=_event_ts(message.get("timestamp")),
                        payload={"source": "meta_webhook", "type": "message", "message": message},
                        client_hints={"name": contact_name, "phone": phone},
                    )
                )

            for status in _as_list(value.get("statuses")):
                status = _as_dict(status)
                phone = normalize_phone(status.get("recipient_id")) or normalize_phone(contact_phone)
                provider_id = str(status.get("id") or "").strip()
                if not phone or not provider_id:
                    continue
                events.append(
                    InboundEvent(
                        phone=phone,
                        provider_message_id=provider_id,
                        direction="system",
                        status=map_delivery_status(status.get("status")),
                        event_timestamp=_event_ts(status.get("timestamp")),
                        payload={"source": "meta_webhook", "type": "status", "status": status},
                        client_hints={"phone": phone},
                    )
                )
    return events
