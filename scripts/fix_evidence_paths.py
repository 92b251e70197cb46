#!/usr/bin/env python
"""
Rewrite legacy payment-evidence references.

Registrations created before the storage folder rename still point at
``payment-evidence/<user>/...``. Reads already fall back through the
resolver; this script makes the stored reference canonical
(``evidence/<user>/...``) and records the new path in evidence_history.

Usage:
    # Show what would change
    python scripts/fix_evidence_paths.py --dry-run

    # Apply
    python scripts/fix_evidence_paths.py

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.procuretrain.audit import record_event
from app.procuretrain.constants import LEGACY_EVIDENCE_PREFIX
from app.procuretrain.evidence import canonical_from_legacy
from app.procuretrain.modules.registrations.models import EventRegistration, EvidenceHistory
from scripts._db_utils import script_db_url, script_session


def fix_evidence_paths(s, *, dry_run: bool = False) -> list[tuple[str, str, str]]:
    """Returns (registration_id, old_path, new_path) for each rewritten row."""
    rows = (
        s.query(EventRegistration)
        .filter(EventRegistration.payment_evidence.like(f"{LEGACY_EVIDENCE_PREFIX}%"))
        .order_by(EventRegistration.registered_at.asc())
        .all()
    )
    changed: list[tuple[str, str, str]] = []
    for r in rows:
        old = r.payment_evidence
        new = canonical_from_legacy(old)
        if not new:
            continue
        changed.append((r.id, old, new))
        if dry_run:
            continue
        r.payment_evidence = new
        s.add(EvidenceHistory(registration_id=r.id, file_path=new))
        record_event(
            s,
            actor=None,
            action="evidence.path_fix",
            entity_type="EventRegistration",
            entity_id=r.id,
            metadata={"old_path": old, "new_path": new},
        )
    return changed


def main() -> None:
    parser = argparse.ArgumentParser(description="Rewrite payment-evidence/ references to evidence/")
    parser.add_argument("--dry-run", action="store_true", help="List changes without writing")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args()

    with script_session(script_db_url(args.database_url)) as s:
        changed = fix_evidence_paths(s, dry_run=args.dry_run)
        if args.dry_run:
            s.rollback()

    if not changed:
        print("No legacy paths found to fix.")
        return
    for rid, old, new in changed:
        print(f"{rid}: {old} -> {new}")
    verb = "Would update" if args.dry_run else "Updated"
    print(f"{verb} {len(changed)} registration(s).")


if __name__ == "__main__":
    main()
