#!/usr/bin/env python3
"""Seed relevo dates from a CSV (phone,date[,type]) or a single --phone/--date pair.

Existing active rows for the same phone/date/type are left alone.
"""
from __future__ import annotations

import argparse
import csv
import sys
from datetime import date
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from sqlalchemy import select  # noqa: E402

from src.backend.app.db import SessionLocal  # noqa: E402
from src.backend.app.models import Client, RelevoDate  # noqa: E402
from src.backend.app.utils import normalize_phone  # noqa: E402


def _rows(args):
    if args.csv:
        with open(args.csv, newline="", encoding="utf-8") as fh:
            for rec in csv.reader(fh):
                if not rec or rec[0].strip().lower() in ("phone", "telefone"):
                    continue
                yield rec[0], rec[1], (rec[2] if len(rec) > 2 else "relevo")
    elif args.phone and args.date:
        yield args.phone, args.date, args.type


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--csv")
    parser.add_argument("--phone")
    parser.add_argument("--date", help="YYYY-MM-DD")
    parser.add_argument("--type", default="relevo")
    args = parser.parse_args()

    created = 0
    with SessionLocal() as db:
        for raw_phone, raw_date, kind in _rows(args):
            phone = normalize_phone(raw_phone)
            try:
                when = date.fromisoformat(raw_date.strip())
            except ValueError:
                print(f"skip {raw_phone!r}: invalid date {raw_date!r}")
                continue
            if not phone:
                print(f"skip {raw_phone!r}: invalid phone")
                continue
            kind = (kind or "relevo").strip() or "relevo"
            exists = db.execute(
                select(RelevoDate.id).where(
                    RelevoDate.phone_e164 == phone,
                    RelevoDate.relevo_date == when,
                    RelevoDate.reminder_type == kind,
                    RelevoDate.active.is_(True),
                )
            ).first()
            if exists:
                print("Exists:", phone, when.isoformat(), kind)
                continue
            client_id = db.execute(select(Client.id).where(Client.whatsapp_phone == phone)).scalar_one_or_none()
            db.add(RelevoDate(client_id=client_id, phone_e164=phone, relevo_date=when, reminder_type=kind))
            created += 1
            print("Seeded:", phone, when.isoformat(), kind)
        db.commit()
    print(f"{created} row(s) created")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
