from fastapi import FastAPI, Body, Depends, Request, Response, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from typing import Any, Dict, Optional
import json
import logging
import os
import uuid

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from .auth import ApiCaller, require_api_key
from .db import get_db
from .errors import ReconciliationError, InvalidSignature, MalformedPayload
from .events import emit_event
from .inbound import extract_events
from .integrations.whatsapp_meta import verify_signature, verify_webhook_challenge
from .metrics_counters import WEBHOOK_EVENTS
from . import onboarding, operational, reminders
from .utils import epoch_to_iso

logger = logging.getLogger(__name__)

app = FastAPI(title="Onboarding Reconciliation Backend", version="0.1.0")


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        rid = (request.headers.get("X-Request-Id") or "").strip()[:120] or str(uuid.uuid4())
        request.state.request_id = rid
        response = await call_next(request)
        response.headers["X-Request-Id"] = rid
        return response


app.add_middleware(RequestIdMiddleware)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "") or ""


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.http_status >= 500:
        logger.error("request_failed", extra={"request_id": _request_id(request), "error": exc.message})
    return JSONResponse({"ok": False, "error": exc.message}, status_code=exc.http_status)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse({"ok": False, "error": str(exc.detail)}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    loc = ".".join(str(p) for p in (errors[0].get("loc") or [])[1:]) if errors else ""
    return JSONResponse({"ok": False, "error": f"{loc or 'payload'} is invalid"}, status_code=400)


@app.get("/health", tags=["Health"])
def health() -> Dict[str, bool]:
    return {"ok": True}


@app.get("/metrics", tags=["Health"])
def metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------- WhatsApp Cloud API webhook ----------

def _max_events() -> int:
    try:
        return max(1, int(os.getenv("WEBHOOK_MAX_EVENTS", "50")))
    except ValueError:
        return 50


def _apply_batch(db: Session, events: list) -> int:
    duplicates = 0
    for ev in events:
        result = onboarding.apply_event(
            db,
            phone=ev.phone,
            provider_message_id=ev.provider_message_id,
            direction=ev.direction,
            payload=ev.payload,
            event_timestamp=ev.event_timestamp,
            status=ev.status,
            client_hints=ev.client_hints,
        )
        if result.duplicate:
            duplicates += 1
    return duplicates


@app.get("/webhooks/whatsapp", tags=["Webhooks"])
@app.get("/whatsapp-webhook", tags=["Webhooks"], include_in_schema=False)
def whatsapp_verify(request: Request):
    q = request.query_params
    challenge = verify_webhook_challenge(
        q.get("hub.mode"),
        q.get("hub.verify_token"),
        q.get("hub.challenge"),
        os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
    )
    if challenge is None:
        return PlainTextResponse("forbidden", status_code=403)
    return PlainTextResponse(challenge, status_code=200)


@app.post("/webhooks/whatsapp", tags=["Webhooks"])
@app.post("/whatsapp-webhook", tags=["Webhooks"], include_in_schema=False)
async def whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    rid = _request_id(request)
    secret = os.getenv("WHATSAPP_APP_SECRET", "")
    if not secret:
        logger.error("whatsapp_app_secret_missing", extra={"request_id": rid})
        return JSONResponse({"ok": False, "error": "WHATSAPP_APP_SECRET is not configured"}, status_code=500)
    raw = await request.body()
    if not verify_signature(raw, request.headers.get("X-Hub-Signature-256"), secret):
        WEBHOOK_EVENTS.labels(provider="whatsapp", status="unauthorized").inc()
        raise InvalidSignature("Unauthorized")
    if not raw:
        raise MalformedPayload("Empty body")
    try:
        payload = json.loads(raw)
    except ValueError:
        raise MalformedPayload("Invalid JSON")

    events = extract_events(payload)[: _max_events()]
    if events:
        try:
            duplicates = await run_in_threadpool(_apply_batch, db, events)
        except ReconciliationError:
            WEBHOOK_EVENTS.labels(provider="whatsapp", status="error").inc()
            logger.exception("whatsapp_webhook_error", extra={"request_id": rid})
            raise
    else:
        duplicates = 0
    WEBHOOK_EVENTS.labels(provider="whatsapp", status="ok").inc()
    logger.info(
        "whatsapp_webhook_processed",
        extra={"request_id": rid, "processed": len(events), "duplicates": duplicates},
    )
    return {"ok": True, "processed": len(events), "duplicates": duplicates, "request_id": rid}


# ---------- Onboarding ----------

class TransitionRequest(BaseModel):
    session_id: Optional[str] = None
    tracking_token: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None


class StatusRequest(BaseModel):
    tracking_token: Optional[str] = None


class DashboardRequest(BaseModel):
    limit: Optional[Any] = None


class RemindersRequest(BaseModel):
    mode: Optional[str] = "today"
    dry_run: Optional[Any] = None


@app.post("/onboarding/transition", tags=["Onboarding"])
def onboarding_transition(
    req: TransitionRequest,
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    result, folder = onboarding.transition_with_folder(
        db,
        session_id=req.session_id,
        tracking_token=req.tracking_token,
        next_status=req.status,
        reason=req.reason,
    )
    return {
        "ok": True,
        "session_id": result.session_id,
        "tracking_token": result.tracking_token,
        "cliente_id": result.client_id,
        "status": result.status,
        "status_updated_at": epoch_to_iso(result.status_updated_at),
        "last_message_at": epoch_to_iso(result.last_message_at),
        "drive_folder_status": folder.status,
    }


@app.post("/onboarding/intake", tags=["Onboarding"])
def onboarding_intake(
    form: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    result = onboarding.intake(db, form)
    return {
        "ok": True,
        "session_id": result.session_id,
        "cliente_id": result.client_id,
        "tracking_token": result.tracking_token,
        "status": result.status,
        "status_updated_at": epoch_to_iso(result.status_updated_at),
        "duplicate": result.duplicate,
        "drive_folder_status": result.folder.status,
        "drive_folder_id": result.folder.folder_id,
        "drive_folder_url": result.folder.folder_url,
    }


@app.post("/onboarding/status", tags=["Onboarding"])
def onboarding_status(
    req: StatusRequest,
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    row = onboarding.session_status(db, req.tracking_token)
    for k in ("status_updated_at", "last_message_at", "created_at"):
        row[k] = epoch_to_iso(row[k])
    return {"ok": True, **row}


@app.post("/onboarding/dashboard", tags=["Onboarding"])
def onboarding_dashboard(
    req: Optional[DashboardRequest] = None,
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    req = req or DashboardRequest()
    data = onboarding.dashboard(db, req.limit if req.limit is not None else 20)
    for s in data["recent_sessions"]:
        for k in ("status_updated_at", "created_at", "last_message_at"):
            s[k] = epoch_to_iso(s[k])
    return {"ok": True, **data}


# ---------- Operational items ----------

@app.post("/operational/upsert", tags=["Operational"])
def operational_upsert(
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    return {"ok": True, **operational.upsert_item(db, payload)}


@app.post("/operational/list", tags=["Operational"])
def operational_list(
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    items = operational.list_items(db, payload)
    return {"ok": True, "items": items, "count": len(items)}


@app.post("/operational/delete", tags=["Operational"])
def operational_delete(
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    return {"ok": True, "deleted_id": operational.delete_item(db, payload)}


# ---------- Reminders ----------

@app.post("/reminders/run", tags=["Reminders"])
def reminders_run(
    req: Optional[RemindersRequest] = None,
    db: Session = Depends(get_db),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    req = req or RemindersRequest()
    result = reminders.run_reminders(
        db,
        mode=req.mode,
        dry_run=req.dry_run if req.dry_run is not None else True,
    )
    emit_event("ReminderRunCompleted", result.as_dict())
    return result.as_dict()
