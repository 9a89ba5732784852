from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import os
import re
import time
import httpx
import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..metrics_counters import DOWNSTREAM_SYNC
from ..models import Client
from ..utils import env_bool, outbound_timeout_seconds, phone_digits, redact_secrets

logger = logging.getLogger(__name__)

DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive"
FOLDER_MIME = "application/vnd.google-apps.folder"

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|]')
_WHITESPACE = re.compile(r"\s+")


class DriveError(RuntimeError):
    pass


@dataclass
class FolderResult:
    status: str  # skipped_no_client_id | skipped_not_configured | skipped_client_not_found | existing | created | failed
    folder_id: Optional[str] = None
    folder_url: Optional[str] = None
    shared: bool = False
    public_permission_removed: bool = False
    error: Optional[str] = None


def folder_url_for(folder_id: str) -> str:
    return f"https://drive.google.com/drive/folders/{folder_id}"


def sanitize_folder_part(value: Any, max_length: int = 90) -> str:
    text = _UNSAFE_CHARS.sub("-", str(value or "").strip())
    return _WHITESPACE.sub(" ", text)[:max_length]


def build_folder_name(name: Optional[str], phone: Optional[str]) -> str:
    name_part = sanitize_folder_part(name or "Cliente")
    digits = phone_digits(phone)
    return f"{name_part} - {digits}" if digits else name_part


def _escape_query(value: str) -> str:
    return str(value or "").replace("\\", "\\\\").replace("'", "\\'")


def _private_key() -> str:
    return os.getenv("GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY", "").replace("\\n", "\n").strip()


def has_drive_config() -> bool:
    return bool(
        os.getenv("GOOGLE_DRIVE_ROOT_FOLDER_ID", "").strip()
        and os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL", "").strip()
        and _private_key()
    )


class GoogleDriveClient:
    """Minimal Drive v3 REST client authenticated as a service account."""

    def __init__(
        self,
        service_account_email: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.service_account_email = service_account_email or os.getenv("GOOGLE_SERVICE_ACCOUNT_EMAIL", "").strip()
        self.private_key = private_key or _private_key()
        self._owns_http = http is None
        self.http = http or httpx.Client(timeout=timeout or outbound_timeout_seconds())
        self._token: Optional[str] = None
        self._token_exp = 0

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "GoogleDriveClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _access_token(self) -> str:
        now = int(time.time())
        if self._token and (self._token_exp - now) > 60:
            return self._token
        assertion = jwt.encode(
            {
                "iss": self.service_account_email,
                "scope": DRIVE_SCOPE,
                "aud": TOKEN_URL,
                "iat": now,
                "exp": now + 3600,
            },
            self.private_key,
            algorithm="RS256",
        )
        r = self.http.post(
            TOKEN_URL,
            data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
        )
        if r.status_code != 200:
            raise DriveError(f"google token exchange failed ({r.status_code}): {redact_secrets(r.text, 200)}")
        j = r.json()
        self._token = str(j.get("access_token") or "")
        self._token_exp = now + int(j.get("expires_in") or 0)
        if not self._token:
            raise DriveError("google token exchange returned no access_token")
        return self._token

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, json: Any = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        try:
            r = self.http.request(method, f"{DRIVE_API_BASE}{path}", params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise DriveError(f"google drive {method} {path} timed out") from e
        if r.status_code >= 400:
            raise DriveError(f"google drive {method} {path} failed ({r.status_code}): {redact_secrets(r.text, 200)}")
        if r.status_code == 204 or not r.content:
            return {}
        return r.json()

    def find_folder(self, parent_id: str, name: str) -> Optional[Dict[str, Any]]:
        q = " and ".join(
            [
                f"mimeType='{FOLDER_MIME}'",
                "trashed=false",
                f"name='{_escape_query(name)}'",
                f"'{_escape_query(parent_id)}' in parents",
            ]
        )
        j = self._request(
            "GET",
            "/files",
            params={
                "q": q,
                "fields": "files(id,name,webViewLink)",
                "pageSize": 1,
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            },
        )
        files = j.get("files") or []
        if not files or not files[0].get("id"):
            return None
        return files[0]

    def create_folder(self, parent_id: str, name: str) -> Dict[str, Any]:
        j = self._request(
            "POST",
            "/files",
            params={"fields": "id,name,webViewLink", "supportsAllDrives": "true"},
            json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
        )
        if not j.get("id"):
            raise DriveError("Google Drive did not return folder id")
        return j

    def list_permissions(self, file_id: str) -> List[Dict[str, Any]]:
        j = self._request(
            "GET",
            f"/files/{file_id}/permissions",
            params={
                "fields": "permissions(id,type,role,emailAddress,allowFileDiscovery)",
                "supportsAllDrives": "true",
                "pageSize": 100,
            },
        )
        perms = j.get("permissions")
        return perms if isinstance(perms, list) else []

    def delete_permission(self, file_id: str, permission_id: str) -> None:
        self._request("DELETE", f"/files/{file_id}/permissions/{permission_id}", params={"supportsAllDrives": "true"})

    def create_permission(self, file_id: str, email: str, role: str) -> None:
        self._request(
            "POST",
            f"/files/{file_id}/permissions",
            params={"sendNotificationEmail": "false", "supportsAllDrives": "true"},
            json={"type": "user", "role": role, "emailAddress": email},
        )

    def get_folder(self, file_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/files/{file_id}", params={"fields": "id,name,webViewLink", "supportsAllDrives": "true"})


def enforce_permissions(
    drive: GoogleDriveClient,
    file_id: str,
    share_with_email: str = "",
    share_role: str = "reader",
    allow_public: bool = False,
) -> Dict[str, bool]:
    permissions = drive.list_permissions(file_id)
    shared = False
    public_removed = False
    if not allow_public:
        for perm in permissions:
            if perm.get("type") == "anyone" and perm.get("id"):
                drive.delete_permission(file_id, perm["id"])
                public_removed = True
    email = (share_with_email or "").strip()
    if email:
        role = (share_role or "").strip() or "reader"
        present = any(
            p.get("type") == "user"
            and str(p.get("emailAddress") or "").lower() == email.lower()
            and str(p.get("role") or "") == role
            for p in permissions
        )
        if not present:
            drive.create_permission(file_id, email, role)
            shared = True
    return {"shared": shared, "public_permission_removed": public_removed}


def ensure_drive_folder(
    drive: GoogleDriveClient,
    root_folder_id: str,
    folder_name: str,
    share_with_email: str = "",
    share_role: str = "reader",
    allow_public: bool = False,
) -> Dict[str, Any]:
    """Look up a folder by name under the root, creating it when absent."""
    if not (root_folder_id or "").strip():
        raise ValueError("root_folder_id is required")
    if not (folder_name or "").strip():
        raise ValueError("folder_name is required")
    name = sanitize_folder_part(folder_name, 120)
    parent = root_folder_id.strip()
    existing = drive.find_folder(parent, name)
    if existing:
        folder, created = existing, False
    else:
        folder, created = drive.create_folder(parent, name), True
    perms = enforce_permissions(drive, folder["id"], share_with_email, share_role, allow_public)
    meta = drive.get_folder(folder["id"])
    folder_id = meta.get("id") or folder["id"]
    return {
        "id": folder_id,
        "name": meta.get("name") or name,
        "web_view_link": meta.get("webViewLink") or folder_url_for(folder_id),
        "created": created,
        **perms,
    }


def ensure_client_folder(
    db: Session,
    client_id: Optional[str],
    *,
    fallback_name: str = "",
    drive: Optional[GoogleDriveClient] = None,
) -> FolderResult:
    """Idempotently provision the client's Drive folder and persist its reference.

    A stored reference is returned without contacting Drive. The reference is
    written under a row lock; if another writer committed one first, theirs
    wins and ours is discarded.
    """
    if not client_id:
        return FolderResult(status="skipped_no_client_id")
    if not has_drive_config():
        return FolderResult(status="skipped_not_configured")

    client = db.get(Client, client_id)
    if client is None:
        return FolderResult(status="skipped_client_not_found")
    if client.drive_folder_id:
        return FolderResult(
            status="existing",
            folder_id=client.drive_folder_id,
            folder_url=client.drive_folder_url or folder_url_for(client.drive_folder_id),
        )
    name = build_folder_name(client.name or fallback_name, client.whatsapp_phone)
    # release the read snapshot before the external calls
    db.rollback()

    owned = drive is None
    drive = drive or GoogleDriveClient()
    try:
        folder = ensure_drive_folder(
            drive,
            os.getenv("GOOGLE_DRIVE_ROOT_FOLDER_ID", ""),
            name,
            share_with_email=os.getenv("GOOGLE_DRIVE_SHARE_WITH_EMAIL", ""),
            share_role=os.getenv("GOOGLE_DRIVE_SHARE_ROLE", "reader"),
            allow_public=env_bool("GOOGLE_DRIVE_ALLOW_PUBLIC"),
        )
    except Exception:
        DOWNSTREAM_SYNC.labels(target="drive", status="failed").inc()
        raise
    finally:
        if owned:
            drive.close()

    try:
        locked = db.execute(select(Client).where(Client.id == client_id).with_for_update()).scalar_one_or_none()
        if locked is None:
            db.commit()
            return FolderResult(status="skipped_client_not_found")
        if locked.drive_folder_id:
            db.commit()
            return FolderResult(
                status="existing",
                folder_id=locked.drive_folder_id,
                folder_url=locked.drive_folder_url or folder_url_for(locked.drive_folder_id),
            )
        locked.drive_folder_id = folder["id"]
        locked.drive_folder_url = folder["web_view_link"]
        locked.drive_folder_created_at = int(time.time())
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("drive_folder_persist_failed", extra={"client_id": client_id, "folder_id": folder.get("id")})
        raise

    status = "created" if folder["created"] else "existing"
    DOWNSTREAM_SYNC.labels(target="drive", status=status).inc()
    logger.info("drive_folder_ensured", extra={"client_id": client_id, "folder_id": folder["id"], "status": status})
    return FolderResult(
        status=status,
        folder_id=folder["id"],
        folder_url=folder["web_view_link"],
        shared=folder["shared"],
        public_permission_removed=folder["public_permission_removed"],
    )
