#!/usr/bin/env python3
"""
Preflight environment check for deployment.

Loads the repo-root .env (without overriding the process environment) and
reports which integration keys are present. Values are never printed.

Exit codes:
  0 = OK
  2 = Missing keys required by the webhook/API core
  3 = Production deploy without Trello configured (upserts would return 503)
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

CORE_KEYS = ["DATABASE_URL", "WHATSAPP_APP_SECRET", "WHATSAPP_VERIFY_TOKEN", "API_SHARED_KEY"]
OPTIONAL_GROUPS: Dict[str, List[str]] = {
    "whatsapp_sender": ["WHATSAPP_SENDER_ENABLED", "WHATSAPP_PHONE_NUMBER_ID", "WHATSAPP_ACCESS_TOKEN"],
    "google_drive": [
        "GOOGLE_DRIVE_ROOT_FOLDER_ID",
        "GOOGLE_SERVICE_ACCOUNT_EMAIL",
        "GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY",
    ],
    "events": ["REDIS_URL"],
}


def _state(key: str) -> str:
    return "PRESENT" if os.getenv(key, "").strip() else "EMPTY"


def main() -> int:
    load_dotenv(REPO_ROOT / ".env", override=False)
    from src.backend.app.integrations.trello import readiness
    from src.backend.app.utils import is_production

    missing_core = [k for k in CORE_KEYS if _state(k) == "EMPTY"]
    print("Core keys:")
    for k in CORE_KEYS:
        print(f"- {k}: {_state(k)}")

    for group, keys in OPTIONAL_GROUPS.items():
        print(f"\n{group}:")
        for k in keys:
            print(f"- {k}: {_state(k)}")

    trello = readiness()
    print("\ntrello:")
    for k, v in trello["status_by_key"].items():
        print(f"- {k}: {v}")

    if missing_core:
        print("\nERROR: Missing core keys:", ", ".join(missing_core))
        return 2
    if is_production() and not trello["ready"]:
        print("\nERROR: APP_ENV=production but Trello is not configured:", ", ".join(trello["missing"]))
        return 3
    print("\nPreflight OK.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
