"""Purge expired tokens, trusted devices and old audit events.

Meant for cron: python scripts/security_maintenance.py [--interval SECONDS]
"""

import argparse
import logging
import sys
import time
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pathary.core.database import SessionLocal
from pathary.services.maintenance import run_security_maintenance


def run_once() -> None:
    db = SessionLocal()
    try:
        run_security_maintenance(db)
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--interval", type=int, default=0, help="Repeat every N seconds (0 = run once)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    if args.interval <= 0:
        run_once()
        return

    try:
        while True:
            run_once()
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
