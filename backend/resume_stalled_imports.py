#!/usr/bin/env python3
"""List import sessions whose driver went quiet and optionally hand them back to the worker."""

import argparse
from datetime import timedelta

from release_importer.core.config import get_settings
from release_importer.db.session import SessionLocal
from release_importer.services.import_sessions import find_stalled_sessions
from release_importer.workers.tasks.drive_import import drive_import_session

settings = get_settings()

parser = argparse.ArgumentParser(description=__doc__)
parser.add_argument(
    "--older-than",
    type=int,
    default=settings.stalled_after_seconds,
    help="Seconds since the last checkpoint before a session counts as stalled",
)
parser.add_argument("--enqueue", action="store_true", help="Re-enqueue the driver task for each")
args = parser.parse_args()

print("Looking for stalled import sessions...")
db = SessionLocal()
try:
    stalled = find_stalled_sessions(db, timedelta(seconds=args.older_than))
    if not stalled:
        print("✓ No stalled sessions")
    for session in stalled:
        last = session.last_checkpoint_at or session.started_at
        print(
            f"  {session.id}  owner={session.created_by}  "
            f"{session.rows_processed}/{session.total_rows}  last checkpoint {last}"
        )
        if args.enqueue:
            task = drive_import_session.delay(session.id)
            print(f"    ✓ Enqueued driver task {task.id}")
finally:
    db.close()

if stalled and not args.enqueue:
    print(f"\n{len(stalled)} stalled session(s). Re-run with --enqueue to resume them.")
print("\nDone!")
