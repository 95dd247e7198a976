"""
Scheduled sweeps over challenges and tournaments.

Sweeps keep no state between runs: every pass re-derives its work from the
current rows, so a pass that dies half way is simply picked up by the next one.
A failing unit is logged and counted and the sweep moves on.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from puosu.config import (
    ACTIVE_TOURNAMENT_STATUSES,
    TOURNAMENT_TEMPLATES,
    ChallengeStatus,
    TournamentStatus,
    settings,
)
from puosu.db import record_action
from puosu.disputes import resolve_disputes
from puosu.errors import InsufficientParticipants, PuosuError
from puosu.helpers import isoformat, serialize_tournament, to_cents, utcnow
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.result import Err
from puosu.results import results_complete
from puosu.settlement import finalize_challenge, finalize_tournament
from puosu.state_machine import force_complete_tournament, open_registration, start_challenge, start_tournament

logger = get_logger(__name__)

AUTOMATED = "automated"


def _automated_tournaments(db: Session):
    return db.query(models.Tournament).filter(models.Tournament.automation_enabled.is_(True))


def _result_entry(unit_id: str, result) -> dict:
    if isinstance(result, Err):
        return {"id": unit_id, "success": False, "error": result.message}
    return {"id": unit_id, "success": True, "outcome": result.value.outcome}


def create_automated_tournaments(db: Session, count: int, now: datetime) -> list[models.Tournament]:
    """
    Create ``count`` tournaments from the rotating templates with registration
    windows staggered ``tournament_stagger_minutes`` apart.
    """
    offset = db.query(models.Tournament).filter(models.Tournament.tournament_type == AUTOMATED).count()
    created = []
    for index in range(count):
        template = TOURNAMENT_TEMPLATES[(offset + index) % len(TOURNAMENT_TEMPLATES)]
        registration_start = now + timedelta(minutes=index * settings.tournament_stagger_minutes)
        registration_end = registration_start + timedelta(minutes=settings.registration_window_minutes)
        tournament = models.Tournament(
            name=f"{template['name']} - {registration_start.strftime('%H:%M')}",
            description=f"Automated tournament #{offset + index + 1}",
            game_mode="Kill Race",
            platform="Xbox Series X",
            entry_fee_cents=to_cents(template["entry_fee"]),
            max_participants=template["max_participants"],
            status=(
                TournamentStatus.REGISTRATION_OPEN.value
                if registration_start <= now
                else TournamentStatus.UPCOMING.value
            ),
            registration_start=registration_start,
            registration_end=registration_end,
            tournament_start=registration_end + timedelta(minutes=settings.tournament_start_delay_minutes),
            automation_enabled=True,
            tournament_type=AUTOMATED,
        )
        db.add(tournament)
        created.append(tournament)
    db.commit()
    for tournament in created:
        logger.info("Created automated tournament %s (%s)", tournament.name, tournament.id)
    return created


def run_tournament_automation(db: Session, now: Optional[datetime] = None) -> dict:
    """One lifecycle pass over automated tournaments."""
    now = now or utcnow()
    processed = 0
    errors = 0
    details = {"opened": [], "started": [], "cancelled": [], "force_completed": []}

    due_to_open = (
        _automated_tournaments(db)
        .filter(models.Tournament.status == TournamentStatus.UPCOMING.value)
        .filter(models.Tournament.registration_start <= now)
        .all()
    )
    for tournament in due_to_open:
        try:
            if open_registration(db, tournament.id):
                details["opened"].append(tournament.id)
                processed += 1
        except (PuosuError, SQLAlchemyError) as exc:
            db.rollback()
            logger.error("Error opening registration for tournament %s: %s", tournament.id, exc)
            errors += 1

    due_to_start = (
        _automated_tournaments(db)
        .filter(models.Tournament.status == TournamentStatus.REGISTRATION_OPEN.value)
        .filter(models.Tournament.registration_end <= now)
        .all()
    )
    for tournament in due_to_start:
        try:
            if start_tournament(db, tournament.id):
                details["started"].append(tournament.id)
                processed += 1
        except InsufficientParticipants as exc:
            logger.info("Cancelling tournament %s: %s", tournament.id, exc)
            result = finalize_tournament(
                db,
                tournament.id,
                failure_reason="insufficient participants",
                automation_type="tournament_automation",
            )
            if isinstance(result, Err):
                errors += 1
            else:
                details["cancelled"].append(tournament.id)
                processed += 1
        except (PuosuError, SQLAlchemyError) as exc:
            db.rollback()
            logger.error("Error starting tournament %s: %s", tournament.id, exc)
            errors += 1

    stuck_before = now - timedelta(hours=settings.stuck_tournament_hours)
    stuck = (
        _automated_tournaments(db)
        .filter(models.Tournament.status == TournamentStatus.ONGOING.value)
        .filter(models.Tournament.updated_at < stuck_before)
        .all()
    )
    for tournament in stuck:
        try:
            if force_complete_tournament(db, tournament.id):
                details["force_completed"].append(tournament.id)
                processed += 1
        except (PuosuError, SQLAlchemyError) as exc:
            db.rollback()
            logger.error("Error force-completing tournament %s: %s", tournament.id, exc)
            errors += 1

    live = (
        _automated_tournaments(db)
        .filter(models.Tournament.status.in_([status.value for status in ACTIVE_TOURNAMENT_STATUSES]))
        .count()
    )
    missing = max(settings.min_active_tournaments - live, 0)
    created = create_automated_tournaments(db, missing, now) if missing else []

    summary = {
        "success": errors == 0,
        "processedTournaments": processed,
        "errors": errors,
        "tournamentsCreated": len(created),
        "created": [serialize_tournament(t) for t in created],
        "timestamp": isoformat(now),
        **details,
    }
    record_action(
        db,
        "tournament_automation",
        "lifecycle_sweep",
        errors == 0,
        {key: value for key, value in summary.items() if key != "created"},
    )
    logger.info(
        "Tournament automation processed=%s errors=%s created=%s", processed, errors, len(created)
    )
    return summary


def process_challenge_schedule(db: Session, now: Optional[datetime] = None) -> dict:
    """
    Start open challenges whose start time passed, cancel the under-filled ones
    and finalise active challenges that have been running too long.
    """
    now = now or utcnow()
    started, cancelled, finalised = [], [], []
    errors = 0

    due = (
        db.query(models.Challenge)
        .filter(models.Challenge.status == ChallengeStatus.OPEN.value)
        .filter(models.Challenge.start_time.isnot(None))
        .filter(models.Challenge.start_time <= now)
        .all()
    )
    for challenge in due:
        if challenge.participant_count < settings.min_challenge_participants:
            result = finalize_challenge(
                db,
                challenge.id,
                failure_reason="insufficient participants at start time",
                automation_type="challenge_scheduler",
            )
            if isinstance(result, Err):
                errors += 1
            else:
                cancelled.append(challenge.id)
            continue
        try:
            start_challenge(db, challenge.id)
            started.append(challenge.id)
        except (PuosuError, SQLAlchemyError) as exc:
            db.rollback()
            logger.error("Error starting challenge %s: %s", challenge.id, exc)
            errors += 1

    stuck_before = now - timedelta(hours=settings.stuck_challenge_hours)
    stuck = (
        db.query(models.Challenge)
        .filter(models.Challenge.status == ChallengeStatus.ACTIVE.value)
        .filter(models.Challenge.start_time < stuck_before)
        .all()
    )
    for challenge in stuck:
        reason = None if results_complete(db, challenge.id) else "stuck challenge: results never arrived"
        result = finalize_challenge(db, challenge.id, failure_reason=reason, automation_type="challenge_scheduler")
        if isinstance(result, Err):
            errors += 1
        finalised.append(_result_entry(challenge.id, result))

    summary = {
        "success": errors == 0,
        "started": started,
        "cancelled": cancelled,
        "finalised": finalised,
        "errors": errors,
        "timestamp": isoformat(now),
    }
    if started or cancelled or finalised or errors:
        record_action(db, "challenge_scheduler", "schedule_sweep", errors == 0, summary)
    return summary


def run_wallet_payouts(db: Session) -> dict:
    """
    Pay every active challenge whose results are complete and every completed
    tournament whose prizes are still outstanding. One audit row per batch.
    """
    challenge_results = []
    active = (
        db.query(models.Challenge)
        .filter(models.Challenge.status == ChallengeStatus.ACTIVE.value)
        .filter(models.Challenge.settled_at.is_(None))
        .all()
    )
    for challenge in active:
        if not results_complete(db, challenge.id):
            continue
        result = finalize_challenge(db, challenge.id, automation_type="automated_wallet_payouts")
        challenge_results.append(_result_entry(challenge.id, result))

    tournament_results = []
    outstanding = (
        db.query(models.Tournament)
        .filter(models.Tournament.status == TournamentStatus.COMPLETED.value)
        .filter(models.Tournament.prizes_distributed.is_(False))
        .filter(models.Tournament.settled_at.is_(None))
        .all()
    )
    for tournament in outstanding:
        placed = (
            db.query(models.TournamentParticipant)
            .filter(models.TournamentParticipant.tournament_id == tournament.id)
            .filter(models.TournamentParticipant.placement.isnot(None))
            .count()
        )
        result = finalize_tournament(
            db,
            tournament.id,
            failure_reason=None if placed else "no final standings recorded",
            automation_type="automated_wallet_payouts",
        )
        tournament_results.append(_result_entry(tournament.id, result))

    entries = challenge_results + tournament_results
    failed = sum(1 for entry in entries if not entry["success"])
    summary = {
        "success": failed == 0,
        "challenges": challenge_results,
        "tournaments": tournament_results,
        "processed": len(entries),
        "failed": failed,
    }
    record_action(db, "automated_wallet_payouts", "payout_batch", failed == 0, summary)
    logger.info("Wallet payout batch processed=%s failed=%s", len(entries), failed)
    return summary


def run_automation_pass(db: Session) -> dict:
    return {
        "tournaments": run_tournament_automation(db),
        "challenges": process_challenge_schedule(db),
        "payouts": run_wallet_payouts(db),
        "disputes": resolve_disputes(db),
    }


async def background_automation_worker(db_factory, interval_seconds: Optional[float] = None):
    interval = interval_seconds or settings.automation_interval_seconds
    while True:
        db = db_factory()
        try:
            run_automation_pass(db)
        except (PuosuError, SQLAlchemyError) as exc:
            db.rollback()
            logger.error("Automation pass failed: %s", exc)
        finally:
            db.close()
        await asyncio.sleep(interval)
