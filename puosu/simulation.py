"""
Market engine / simulation runner.

A cycle creates a challenge between funded test accounts, plays a simulated
match and either settles it on generated stats or, when a crash is injected,
refunds every stake. Every cycle leaves exactly one ``market_engine`` audit row:
``settled``, ``refunded`` or ``failed``.
"""
import asyncio
import random
import time
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, ChallengeType, settings
from puosu.db import latest_action, record_action
from puosu.errors import DataIntegrityError, LedgerError, PuosuError
from puosu.helpers import from_cents, to_cents
from puosu.ledger import get_available_test_users, join_challenge_atomic
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.result import Err
from puosu.results import challenge_participant_ids, record_challenge_results
from puosu.settlement import finalize_challenge
from puosu.state_machine import start_challenge

logger = get_logger(__name__)

MARKET_ENGINE = "market_engine"
CRASH_REASON = "simulated match crash"


def last_cycle_crashed(db: Session) -> bool:
    last = latest_action(db, MARKET_ENGINE)
    return bool(last and last.action_type == "refunded" and (last.action_data or {}).get("crashed"))


def generate_stats(rng: random.Random, user_ids: list[str]) -> list[dict]:
    lines = [
        {
            "user_id": user_id,
            "score": rng.randint(1000, 5999),
            "kills": rng.randint(5, 34),
            "deaths": rng.randint(5, 24),
            "assists": rng.randint(0, 14),
            "damage": rng.randint(2000, 11999),
        }
        for user_id in user_ids
    ]
    lines.sort(key=lambda line: line["score"], reverse=True)
    for index, line in enumerate(lines):
        line["placement"] = index + 1
    return lines


def _create_challenge(db: Session, rng: random.Random, users: list[dict]) -> models.Challenge:
    games = db.query(models.Game).filter(models.Game.is_active.is_(True)).order_by(models.Game.name.asc()).all()
    if not games:
        raise DataIntegrityError("No active games found")
    game = rng.choice(games)
    challenge = models.Challenge(
        title=f"Market Cycle - {game.title}",
        game_id=game.id,
        challenge_type=(ChallengeType.ONE_V_ONE if len(users) == 2 else ChallengeType.TOP3).value,
        stake_cents=to_cents(settings.sim_stake_amount),
        max_participants=len(users),
        status=ChallengeStatus.OPEN.value,
        is_test=True,
    )
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    logger.info("Created market challenge %s for %s (%s users)", challenge.id, game.title, len(users))
    return challenge


async def run_market_cycle(
    db: Session,
    rng: Optional[random.Random] = None,
    allow_crash: bool = True,
    manual: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict:
    rng = rng or random.Random()
    started = time.monotonic()
    challenge_id = None
    try:
        users = get_available_test_users(db, settings.sim_min_balance, settings.sim_max_users)
        if len(users) < settings.min_challenge_participants:
            raise DataIntegrityError(f"Insufficient test users: {len(users)} available")

        challenge = _create_challenge(db, rng, users)
        challenge_id = challenge.id
        stake = settings.sim_stake_amount
        for user in users:
            try:
                join_challenge_atomic(db, challenge_id, user["user_id"], stake)
            except LedgerError as exc:
                logger.warning("Failed to join user %s to %s: %s", user["user_id"], challenge_id, exc)

        joined = challenge_participant_ids(db, challenge_id)
        if len(joined) < settings.min_challenge_participants:
            finalize_challenge(db, challenge_id, failure_reason="not enough users joined")
            raise DataIntegrityError(f"Only {len(joined)} users joined challenge {challenge_id}")
        start_challenge(db, challenge_id)

        duration = (
            settings.sim_manual_match_seconds
            if manual
            else settings.sim_match_seconds + rng.random() * settings.sim_match_jitter_seconds
        )
        logger.info("Simulating match duration: %.1fs", duration)
        await sleep(duration)

        crashed = allow_crash and rng.random() < settings.sim_crash_rate
        if crashed and last_cycle_crashed(db):
            logger.info("Crash suppressed for %s: previous cycle already crashed", challenge_id)
            crashed = False

        if crashed:
            logger.warning("Injecting simulated crash into challenge %s", challenge_id)
            result = finalize_challenge(db, challenge_id, failure_reason=CRASH_REASON)
        else:
            record_challenge_results(db, challenge_id, generate_stats(rng, joined))
            result = finalize_challenge(db, challenge_id)
        if isinstance(result, Err):
            raise result.error
    except (PuosuError, SQLAlchemyError) as exc:
        db.rollback()
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.error("Market cycle failed: %s", exc)
        record_action(
            db,
            MARKET_ENGINE,
            "failed",
            False,
            {"error": getattr(exc, "message", str(exc)), "duration_ms": duration_ms, "manual": manual},
            target_id=challenge_id,
        )
        raise

    report = result.value
    duration_ms = int((time.monotonic() - started) * 1000)
    action_type = "settled" if report.outcome == "paid" else "refunded"
    challenge = db.get(models.Challenge, challenge_id)
    summary = {
        "challengeId": challenge_id,
        "outcome": action_type,
        "crashed": crashed,
        "participantCount": len(joined),
        "totalPot": from_cents(challenge.total_pot_cents),
        "winnerId": report.winner_id,
        "totalPaid": report.total_paid,
        "totalRefunded": report.total_refunded,
        "platformFee": report.platform_fee,
        "durationMs": duration_ms,
    }
    record_action(
        db,
        MARKET_ENGINE,
        action_type,
        True,
        {**summary, "crashed": crashed, "duration_ms": duration_ms, "manual": manual},
        target_id=challenge_id,
    )
    logger.info("Market cycle %s for challenge %s in %sms", action_type, challenge_id, duration_ms)
    return {"success": True, **summary}
