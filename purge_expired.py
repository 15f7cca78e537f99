"""Remove rides past departure and conversations past expiry.

Production stores do this with a TTL index; run this on a schedule when the
database has none (SQLite, plain Postgres).
Run: python purge_expired.py [--dry-run]
"""
from datetime import datetime
from db import get_session, init_db
from models import utcnow
import argparse
import logging
import store

logger = logging.getLogger(__name__)


def purge(now: datetime = None, dry_run: bool = False):
    now = now or utcnow()
    with get_session() as session:
        if dry_run:
            return store.expired_counts(session, now)
        rides, convs = store.purge_expired(session, now)
        session.commit()
    logger.info("purged %d rides and %d conversations", rides, convs)
    return rides, convs


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="Only count what would be removed.")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    init_db()
    rides, convs = purge(dry_run=args.dry_run)
    verb = "Would delete" if args.dry_run else "Deleted"
    print(f"{verb} {rides} expired rides and {convs} expired conversations")


if __name__ == "__main__":
    main()
