from dataclasses import dataclass
from fastapi import Header, HTTPException
from typing import Optional
import hmac
import logging
import os

from .utils import env_bool, is_production

logger = logging.getLogger(__name__)


@dataclass
class ApiCaller:
    method: str  # api_key | bearer | dev_bypass


def _extract_key(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[tuple]:
    if x_api_key:
        return ("api_key", x_api_key.strip())
    if authorization and authorization.lower().startswith("bearer "):
        return ("bearer", authorization.split(" ", 1)[1].strip())
    return None


async def require_api_key(
    x_api_key: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> ApiCaller:
    """Guard for dashboard/API routes.

    Accepts the shared key either as X-Api-Key or as a bearer token. Local
    development may opt out with ALLOW_DEV_NO_AUTH=1; production never does.
    """
    if env_bool("ALLOW_DEV_NO_AUTH") and not is_production():
        return ApiCaller(method="dev_bypass")
    expected = os.getenv("API_SHARED_KEY", "")
    if not expected:
        logger.warning("api_key_not_configured")
        raise HTTPException(status_code=401, detail="unauthorized")
    found = _extract_key(x_api_key, authorization)
    if not found or not hmac.compare_digest(found[1].encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="unauthorized")
    return ApiCaller(method=found[0])
