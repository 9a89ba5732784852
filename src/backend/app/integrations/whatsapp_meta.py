import os
import hmac
import hashlib
import logging
from typing import Optional
import httpx

from ..utils import outbound_timeout_seconds, redact_secrets

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
DEFAULT_GRAPH_API_BASE_URL = "https://graph.facebook.com/v19.0"


class WhatsAppSendError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def compute_signature(raw_body: bytes, app_secret: str) -> str:
    mac = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + mac


def verify_signature(raw_body: bytes, signature_header: Optional[str], app_secret: Optional[str]) -> bool:
    """Validate X-Hub-Signature-256 against the raw request bytes.

    Fails closed on a missing secret, a missing header, a header without the
    sha256= prefix or a digest of the wrong length.
    """
    if not app_secret or not signature_header:
        return False
    received = signature_header.strip()
    if not received.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(raw_body or b"", app_secret)
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


def verify_webhook_challenge(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    expected_token: Optional[str],
) -> Optional[str]:
    if mode != "subscribe" or not expected_token or not token or not challenge:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge


def send_whatsapp_text(
    to_e164: str,
    body: str,
    phone_number_id: Optional[str] = None,
    access_token: Optional[str] = None,
    base_url: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> str:
    """Send a plain text message through the WhatsApp Cloud API; returns the provider message id."""
    phone_number_id = phone_number_id or os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
    access_token = access_token or os.getenv("WHATSAPP_ACCESS_TOKEN", "")
    base_url = (base_url or os.getenv("WHATSAPP_GRAPH_API_BASE_URL") or DEFAULT_GRAPH_API_BASE_URL).rstrip("/")
    if not (phone_number_id and access_token):
        raise WhatsAppSendError("whatsapp sender not configured")
    to = "".join(ch for ch in str(to_e164 or "") if ch.isdigit())
    if not to:
        raise WhatsAppSendError("invalid recipient phone")
    url = f"{base_url}/{phone_number_id}/messages"
    data = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": body},
    }
    headers = {"Authorization": f"Bearer {access_token}"}
    owns_client = client is None
    http = client or httpx.Client(timeout=outbound_timeout_seconds())
    try:
        r = http.post(url, json=data, headers=headers)
    except httpx.TimeoutException as e:
        raise WhatsAppSendError("whatsapp request timed out") from e
    except httpx.HTTPError as e:
        raise WhatsAppSendError(f"whatsapp request failed: {redact_secrets(e)}") from e
    finally:
        if owns_client:
            http.close()
    if r.status_code in (401, 403):
        raise WhatsAppSendError("whatsapp auth failed", r.status_code)
    if r.status_code == 429:
        raise WhatsAppSendError("whatsapp rate limited", r.status_code)
    if r.status_code >= 500:
        raise WhatsAppSendError("whatsapp provider error", r.status_code)
    if r.status_code >= 400:
        raise WhatsAppSendError(
            f"whatsapp request failed ({r.status_code}): {redact_secrets(r.text, 300)}",
            r.status_code,
        )
    try:
        j = r.json()
    except ValueError:
        j = {}
    messages = j.get("messages") if isinstance(j, dict) else None
    provider_id = ""
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        provider_id = str(messages[0].get("id") or "")
    if not provider_id:
        raise WhatsAppSendError("whatsapp response missing message id", r.status_code)
    logger.info("whatsapp_text_sent", extra={"provider_message_id": provider_id})
    return provider_id
