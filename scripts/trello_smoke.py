#!/usr/bin/env python3
"""Create (and optionally update) a throwaway Trello card to verify credentials and list ids."""
from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--type", default="task", choices=["task", "briefing", "follow_up"])
    parser.add_argument("--update", action="store_true", help="also update the card after creating it")
    args = parser.parse_args()

    load_dotenv(REPO_ROOT / ".env", override=False)
    from src.backend.app.integrations.trello import TrelloClient, TrelloError, readiness

    ready = readiness()
    if not ready["ready"]:
        print("Trello not configured; missing:", ", ".join(ready["missing"]))
        return 2

    item = {
        "id": f"smoke-{int(time.time())}",
        "type": args.type,
        "title": f"Smoke test {time.strftime('%Y-%m-%d %H:%M:%S')}",
        "description": "Card criado pelo trello_smoke.py; pode ser arquivado.",
        "status": "open",
        "priority": "low",
    }
    try:
        with TrelloClient() as client:
            card = client.create_card(item)
            print("Created:", card["id"], card["url"], "list:", card["list_id"])
            if args.update:
                item.update({"status": "done", "trello_card_id": card["id"], "trello_card_url": card["url"]})
                card = client.update_card(item)
                print("Updated:", card["id"])
    except TrelloError as e:
        print(f"Trello error ({e.status_code}): {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
