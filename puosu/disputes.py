"""
Automated dispute resolution and proof intake.

Disputes are only closed automatically on narrow, checkable grounds; anything
else waits for a moderator. Anomaly detection never decides a proof on its own,
it only routes it to review.
"""
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, DisputeStatus, ProofStatus, settings
from puosu.db import record_action, record_activity
from puosu.helpers import isoformat, utcnow
from puosu.ledger import compare_and_set, detect_suspicious_stats
from puosu.logging_config import get_logger
from puosu.models import models

logger = get_logger(__name__)

PAYMENT_DISPUTE_TYPE = "payment_issue"
FINISHED_STATUSES = (ChallengeStatus.COMPLETED.value, ChallengeStatus.CANCELLED.value)


class Verdict(NamedTuple):
    resolve: bool
    reason: str
    resolution: Optional[str] = None


def _related_unit(db: Session, dispute: models.Dispute):
    """The wager or tournament the dispute is about, if any."""
    if dispute.wager_id:
        return db.get(models.Challenge, dispute.wager_id)
    if dispute.tournament_match_id is not None:
        match = db.get(models.TournamentMatch, dispute.tournament_match_id)
        if match is not None:
            return db.get(models.Tournament, match.tournament_id)
    return None


def evaluate_dispute(db: Session, dispute: models.Dispute, now: datetime) -> Verdict:
    age = now - dispute.created_at
    if age > timedelta(hours=settings.dispute_no_evidence_hours) and not dispute.evidence_urls:
        return Verdict(
            True,
            f"No evidence provided within {settings.dispute_no_evidence_hours} hours",
            "This dispute has been automatically resolved due to insufficient evidence provided within "
            "the required timeframe. If you have new evidence, please submit a new dispute.",
        )

    if dispute.type == PAYMENT_DISPUTE_TYPE:
        recent_payment = (
            db.query(models.Transaction)
            .filter(models.Transaction.user_id == dispute.user_id)
            .filter(models.Transaction.status == "completed")
            .filter(models.Transaction.created_at >= now - timedelta(days=settings.dispute_payment_lookback_days))
            .first()
        )
        if recent_payment is not None:
            return Verdict(
                True,
                "Recent successful payment found",
                "This payment dispute has been resolved as we found a successful transaction in your "
                f"account within the last {settings.dispute_payment_lookback_days} days.",
            )

    related = _related_unit(db, dispute)
    if related is not None and related.status in FINISHED_STATUSES:
        last_change = related.updated_at or related.created_at
        if now - last_change > timedelta(days=settings.dispute_stale_wager_days):
            return Verdict(
                True,
                f"Related wager completed/cancelled more than {settings.dispute_stale_wager_days} days ago",
                "This dispute has been automatically resolved as the related wager was completed or "
                f"cancelled more than {settings.dispute_stale_wager_days} days ago.",
            )

    return Verdict(False, "Requires manual review")


def _close_dispute(db: Session, dispute: models.Dispute, verdict: Verdict, now: datetime) -> bool:
    closed = compare_and_set(
        db,
        update(models.Dispute)
        .where(models.Dispute.id == dispute.id)
        .where(models.Dispute.status == DisputeStatus.PENDING.value)
        .values(
            status=DisputeStatus.RESOLVED.value,
            admin_response=verdict.resolution,
            resolved_at=now,
            updated_at=now,
        ),
    )
    if not closed:
        db.rollback()
        return False
    record_activity(
        db,
        dispute.user_id,
        "dispute_resolved",
        "Dispute Auto-Resolved",
        f"Dispute \"{dispute.title}\" was automatically resolved: {verdict.reason}",
        {
            "dispute_id": dispute.id,
            "resolution_type": "automated",
            "resolution_reason": verdict.reason,
            "timestamp": isoformat(now),
        },
    )
    db.commit()
    db.expire(dispute)
    return True


def resolve_disputes(db: Session, now: Optional[datetime] = None) -> dict:
    """Review pending disputes older than the review delay and auto-resolve the clear cases."""
    now = now or utcnow()
    candidates = (
        db.query(models.Dispute)
        .filter(models.Dispute.status == DisputeStatus.PENDING.value)
        .filter(models.Dispute.created_at < now - timedelta(hours=settings.dispute_review_after_hours))
        .order_by(models.Dispute.created_at.asc())
        .all()
    )
    logger.info("Found %s disputes to review", len(candidates))

    results = []
    resolved = 0
    failed = 0
    for dispute in candidates:
        dispute_id = dispute.id
        try:
            verdict = evaluate_dispute(db, dispute, now)
            if verdict.resolve and _close_dispute(db, dispute, verdict, now):
                resolved += 1
                results.append(
                    {
                        "disputeId": dispute_id,
                        "resolved": True,
                        "resolution": verdict.resolution,
                        "reason": verdict.reason,
                    }
                )
            else:
                results.append({"disputeId": dispute_id, "resolved": False, "reason": verdict.reason})
        except SQLAlchemyError as exc:
            db.rollback()
            failed += 1
            logger.error("Error processing dispute %s: %s", dispute_id, exc)
            results.append({"disputeId": dispute_id, "resolved": False, "error": str(exc)})

    summary = {
        "success": True,
        "message": f"Processed {len(candidates)} disputes, resolved {resolved}",
        "resolved": resolved,
        "results": results,
    }
    record_action(
        db,
        "dispute_resolution",
        "auto_resolve",
        failed == 0,
        {"reviewed": len(candidates), "resolved": resolved, "failed": failed},
    )
    return summary


def submit_proof(
    db: Session,
    submitted_by: str,
    proof_type: str,
    proof_url: str,
    stats_claimed: dict,
    challenge_id: Optional[str] = None,
    tournament_match_id: Optional[int] = None,
) -> models.ProofSubmission:
    """
    Store a result proof. Suspicious stats mark it ``flagged`` for moderators,
    everything else stays ``pending``.
    """
    try:
        suspicious = detect_suspicious_stats(submitted_by, stats_claimed)
    except (TypeError, ValueError) as exc:
        logger.warning("Anomaly check failed for proof by %s, leaving it pending: %s", submitted_by, exc)
        suspicious = False

    proof = models.ProofSubmission(
        challenge_id=challenge_id,
        tournament_match_id=tournament_match_id,
        submitted_by=submitted_by,
        proof_type=proof_type,
        proof_url=proof_url,
        stats_claimed=stats_claimed,
        verification_status=(ProofStatus.FLAGGED if suspicious else ProofStatus.PENDING).value,
    )
    db.add(proof)
    db.commit()
    db.refresh(proof)
    logger.info("Proof %s submitted by %s status=%s", proof.id, submitted_by, proof.verification_status)
    return proof
