import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Optional

_NON_DIGITS = re.compile(r"\D")


class PhoneNormalizer:
    """Best-effort E.164-like normalization.

    Local numbers (10 or 11 digits) get the default country code; anything
    else keeps its digits behind a '+'. This is a locale heuristic, not full
    E.164 validation: swap in another strategy for other markets.
    """

    def __init__(self, country_code: str = "55", local_lengths: tuple = (10, 11)):
        self.country_code = _NON_DIGITS.sub("", country_code) or "55"
        self.local_lengths = tuple(local_lengths)

    def __call__(self, phone: Any) -> str:
        if not isinstance(phone, str):
            return ""
        digits = _NON_DIGITS.sub("", phone.strip()[:40])
        if not digits:
            return ""
        if len(digits) in self.local_lengths:
            return f"+{self.country_code}{digits}"
        return f"+{digits}"

    def digits(self, phone: Any) -> str:
        return _NON_DIGITS.sub("", str(phone or ""))


_default_normalizer = PhoneNormalizer(os.getenv("PHONE_DEFAULT_COUNTRY_CODE", "55"))


def set_phone_normalizer(normalizer: PhoneNormalizer) -> None:
    global _default_normalizer
    _default_normalizer = normalizer


def normalize_phone(phone: Any) -> str:
    return _default_normalizer(phone)


def phone_digits(phone: Any) -> str:
    return _default_normalizer.digits(phone)


def clean_text(value: Any, max_length: int = 500) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_length]


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def to_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    return default


def is_production() -> bool:
    return os.getenv("APP_ENV", "development").strip().lower() == "production"


def outbound_timeout_seconds() -> float:
    try:
        ms = int(os.getenv("OUTBOUND_HTTP_TIMEOUT_MS", "10000"))
    except ValueError:
        ms = 10000
    return max(1000, ms) / 1000.0


def now_epoch() -> int:
    return int(time.time())


def epoch_to_iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


# epoch columns are 32-bit integers
MAX_EPOCH = 2**31 - 1


def _in_range(ts: int) -> Optional[int]:
    return ts if 0 <= ts <= MAX_EPOCH else None


def parse_epoch(value: Any) -> Optional[int]:
    """Accepts unix seconds (int/str) or ISO-8601 strings.

    None when unparsable or outside the storable range.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return _in_range(int(value))
        except (ValueError, OverflowError):
            return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return _in_range(int(dt.timestamp()))
    text = str(value).strip()
    if text.isascii() and text.isdigit():
        return _in_range(int(text))
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return _in_range(int(dt.timestamp()))
    except (OverflowError, OSError, ValueError):
        return None


_SECRET_PATTERNS = (
    re.compile(r"([?&](?:key|token)=)[^&\s]+", re.IGNORECASE),
    re.compile(r"((?:api[_-]?key|access[_-]?token|token|authorization)\s*[:=]\s*)([^\s,;]+)", re.IGNORECASE),
    re.compile(r"(bearer\s+)[^\s]+", re.IGNORECASE),
)


def redact_secrets(detail: Any, max_length: int = 500) -> str:
    text = str(detail or "").strip()[:max_length]
    text = _SECRET_PATTERNS[0].sub(r"\1[REDACTED]", text)
    text = _SECRET_PATTERNS[1].sub(r"\1[REDACTED]", text)
    text = _SECRET_PATTERNS[2].sub(r"\1[REDACTED]", text)
    return text
