import sys

from sqlalchemy.orm import Session

from puosu.database import SessionLocal
from puosu.logging_config import get_logger
from puosu.reconciliation import generate_reconciliation_csv

logger = get_logger(__name__)


def reconcile(output_path: str = "reconciliation.csv") -> int:
    db: Session = SessionLocal()
    try:
        csv_text, mismatch_count = generate_reconciliation_csv(db)
    finally:
        db.close()
    with open(output_path, "w", newline="") as f:
        f.write(csv_text)
    logger.info("Wrote %s with %s unbalanced units", output_path, mismatch_count)
    return 1 if mismatch_count else 0


if __name__ == "__main__":
    exit_code = reconcile(*sys.argv[1:2])
    raise SystemExit(exit_code)
