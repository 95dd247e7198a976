from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from puosu.logging_config import get_logger
from puosu.models import models

logger = get_logger(__name__)


def get_or_create_idempotency(db: Session, key: str, body_hash: str):
    existing = db.query(models.IdempotencyKey).filter_by(key=key).first()
    if existing:
        if existing.request_hash != body_hash:
            raise HTTPException(status_code=409, detail="idempotency conflict")
        return existing.response_body
    return None


def store_idempotency(db: Session, key: str, body_hash: str, response_body: dict):
    record = models.IdempotencyKey(key=key, request_hash=body_hash, response_body=response_body)
    db.add(record)
    db.commit()
    return response_body


def record_action(
    db: Session,
    automation_type: str,
    action_type: str,
    success: bool,
    action_data: Optional[dict] = None,
    target_id: Optional[str] = None,
) -> models.AutomatedAction:
    """
    Append one row to the automation audit log and commit it.

    Rows are never updated afterwards; callers that need the log to survive a
    failed unit of work must roll that work back before calling this.
    """
    record = models.AutomatedAction(
        automation_type=automation_type,
        action_type=action_type,
        success=success,
        target_id=target_id,
        action_data=action_data or {},
    )
    db.add(record)
    db.commit()
    logger.info(
        "Audit automation_type=%s action_type=%s success=%s target_id=%s",
        automation_type,
        action_type,
        success,
        target_id,
    )
    return record


def latest_action(db: Session, automation_type: str) -> Optional[models.AutomatedAction]:
    return (
        db.query(models.AutomatedAction)
        .filter(models.AutomatedAction.automation_type == automation_type)
        .order_by(models.AutomatedAction.created_at.desc(), models.AutomatedAction.id.desc())
        .first()
    )


def record_activity(
    db: Session,
    user_id: Optional[str],
    activity_type: str,
    title: str,
    description: str,
    details: Optional[dict] = None,
) -> models.Activity:
    activity = models.Activity(
        user_id=user_id,
        activity_type=activity_type,
        title=title,
        description=description,
        details=details or {},
    )
    db.add(activity)
    return activity
