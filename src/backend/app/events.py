from datetime import datetime, timezone
from typing import Dict, Any
import logging
import os
import json
import time
import redis
from sqlalchemy import text as _sa_text

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "onboarding.events"

_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    try:
        _redis_client = redis.Redis.from_url(url, decode_responses=True)
        # ping once
        _redis_client.ping()
    except redis.RedisError:
        logger.warning("events_redis_unavailable")
        _redis_client = None
    return _redis_client


def emit_event(name: str, payload: Dict[str, Any]) -> None:
    """Fan a domain event out to the log, Redis and the events ledger.

    Every sink is best-effort: callers emit after their transaction has
    committed and must never see a failure from here.
    """
    event = {
        "name": name,
        "ts": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    logger.info("event %s", name, extra={"event_name": name, "event_payload": payload})
    # optional Redis publish
    client = _get_redis()
    if client is not None:
        try:
            client.publish(EVENTS_CHANNEL, json.dumps(event, default=str))
        except redis.RedisError:
            logger.warning("events_publish_failed", extra={"event_name": name})
    # optional DB write to events_ledger if available
    try:
        from .db import engine  # local import to avoid circulars at startup

        with engine.begin() as conn:
            conn.execute(
                _sa_text("INSERT INTO events_ledger (ts, name, payload) VALUES (:ts, :name, :payload)"),
                {
                    "ts": int(time.time()),
                    "name": name,
                    "payload": json.dumps(payload, default=str),
                },
            )
    except Exception:
        logger.debug("events_ledger_write_skipped", exc_info=True, extra={"event_name": name})
