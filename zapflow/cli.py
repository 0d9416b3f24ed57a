"""Merge duplicate WhatsApp conversations from the command line.

    zapflow-merge-duplicates --session <uuid> --dry-run
    zapflow-merge-duplicates            # every live session
"""

import argparse
import sys

from zapflow.database import SessionLocal
from zapflow.logging_config import setup_logging
from zapflow.models import WhatsappSession
from zapflow.services.merge_service import merge_duplicate_conversations
from zapflow.services.session_service import get_session


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge duplicate WhatsApp conversations (same contact, different JIDs).")
    parser.add_argument("--session", help="Only this session id (default: all live sessions)")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be merged without writing")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging("WARNING")

    db = SessionLocal()
    try:
        if args.session:
            session = get_session(db, args.session)
            if session is None or session.deleted_at is not None:
                print(f"Session not found: {args.session}", file=sys.stderr)
                return 1
            sessions = [session]
        else:
            sessions = db.query(WhatsappSession).filter(WhatsappSession.deleted_at.is_(None)).all()

        total = 0
        for session in sessions:
            report = merge_duplicate_conversations(db, session, dry_run=args.dry_run)
            for group in report.groups:
                print(
                    f"[{session.id}] keep {group.keeper_jid} <- {', '.join(group.duplicate_jids)} "
                    f"({group.messages_moved} messages)"
                )
            total += report.merged

        verb = "Would merge" if args.dry_run else "Merged"
        print(f"{verb} {total} duplicate conversation(s) across {len(sessions)} session(s)")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
