import json

from sqlalchemy.orm import Session

from puosu.database import SessionLocal, engine
from puosu.models import models
from puosu.orchestrator import run_automation_pass


def sweep() -> dict:
    """Run one automation pass, for cron."""
    models.Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    try:
        return run_automation_pass(db)
    finally:
        db.close()


if __name__ == "__main__":
    summary = sweep()
    print(json.dumps(summary, indent=2, default=str))
    failed = any(not part.get("success", True) for part in summary.values())
    raise SystemExit(1 if failed else 0)
