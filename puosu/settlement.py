"""
Settlement engine.

A terminal unit is paid out or refunded exactly once. Every money movement of
one settlement (guard claim, payout or refund lines, fee line, status change)
happens inside a single database transaction, so a failure part way through
rolls the whole unit back. ``finalize_challenge`` and ``finalize_tournament``
then fall back to the refund path: a unit never ends half paid.
"""
from dataclasses import asdict, dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, RefundType, TournamentStatus, WalletReason, settings
from puosu.db import record_action, record_activity
from puosu.errors import (
    AlreadySettled,
    InsufficientParticipants,
    InvalidTransition,
    MissingResults,
    NotFound,
    PotMismatch,
    PuosuError,
)
from puosu.helpers import from_cents, utcnow
from puosu.ledger import (
    has_vip_access,
    increment_wallet_balance,
    record_platform_fee,
    secure_settle_challenge,
    secure_settle_tournament,
)
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.payouts import partial_refund_cents, plan_challenge_payouts, plan_tournament_prizes, tournament_shares
from puosu.result import Err, Ok, Result
from puosu.results import ranked_stats
from puosu.state_machine import cancel_open_matches, transition_challenge, transition_tournament

logger = get_logger(__name__)

# Failures that mean the unit is not ours to settle; never compensated with a refund.
NOT_SETTLEABLE = (AlreadySettled, InvalidTransition, NotFound)


@dataclass
class SettlementReport:
    unit_id: str
    outcome: str  # paid|refunded
    pot: float = 0.0
    platform_fee: float = 0.0
    total_paid: float = 0.0
    total_refunded: float = 0.0
    winner_id: Optional[str] = None
    reason: Optional[str] = None
    already_done: bool = False
    lines: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _load(db: Session, model, unit_id: str):
    unit = db.get(model, unit_id)
    if unit is None:
        raise NotFound(f"{model.__tablename__} {unit_id} not found")
    return unit


def settle_challenge(db: Session, challenge_id: str, fee_rate=None) -> SettlementReport:
    """
    Pay out an active challenge whose results are complete.

    ``fee_rate`` defaults to the standard platform rate.
    """
    rate = settings.platform_fee_rate if fee_rate is None else fee_rate
    challenge = _load(db, models.Challenge, challenge_id)
    if challenge.settled_at is not None:
        raise AlreadySettled(f"challenge {challenge_id} already settled")
    if challenge.status != ChallengeStatus.ACTIVE:
        raise InvalidTransition(f"challenge {challenge_id} is {challenge.status}, only active challenges settle")

    try:
        if not secure_settle_challenge(db, challenge_id):
            raise AlreadySettled(f"challenge {challenge_id} already settled")
        participants = db.query(models.ChallengeParticipant).filter_by(challenge_id=challenge_id).all()
        if not participants:
            raise InsufficientParticipants(f"challenge {challenge_id} has no participants")
        stakes = sum(p.stake_paid_cents for p in participants)
        if stakes != challenge.total_pot_cents:
            raise PotMismatch(
                f"challenge {challenge_id} pot {from_cents(challenge.total_pot_cents):.2f} != stakes {from_cents(stakes):.2f}"
            )
        stats = ranked_stats(db, challenge_id)
        if {s.user_id for s in stats} != {p.user_id for p in participants}:
            raise MissingResults(
                f"challenge {challenge_id} has {len(stats)} result lines for {len(participants)} participants"
            )

        plan = plan_challenge_payouts(
            challenge.total_pot_cents,
            challenge.challenge_type,
            [s.user_id for s in stats],
            rate,
        )
        for line in plan.lines:
            amount = from_cents(line.amount_cents)
            increment_wallet_balance(
                db,
                line.user_id,
                line.amount_cents,
                WalletReason.CHALLENGE_PAYOUT,
                challenge_id=challenge_id,
                description=f"Challenge payout: {challenge.title} (place {line.placement})",
                details={"placement": line.placement, "total_pot": from_cents(plan.pot_cents)},
            )
            record_activity(
                db,
                line.user_id,
                "challenge_won" if line.placement == 1 else "challenge_payout",
                "Challenge Victory!" if line.placement == 1 else "Challenge Payout",
                f"You placed {line.placement} in \"{challenge.title}\" and earned ${amount:.2f}",
                {"challenge_id": challenge_id, "payout_amount": amount, "placement": line.placement},
            )
        record_platform_fee(
            db,
            plan.fee_cents,
            challenge_id=challenge_id,
            details={"fee_rate": float(rate), "total_pot": from_cents(plan.pot_cents)},
        )
        winner_id = plan.lines[0].user_id
        transition_challenge(db, challenge_id, ChallengeStatus.COMPLETED, winner_id=winner_id, end_time=utcnow())
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Settled challenge %s pot=%.2f fee=%.2f paid=%.2f winner=%s",
        challenge_id,
        from_cents(plan.pot_cents),
        from_cents(plan.fee_cents),
        from_cents(plan.paid_cents),
        winner_id,
    )
    return SettlementReport(
        unit_id=challenge_id,
        outcome="paid",
        pot=from_cents(plan.pot_cents),
        platform_fee=from_cents(plan.fee_cents),
        total_paid=from_cents(plan.paid_cents),
        winner_id=winner_id,
        lines=[
            {"userId": line.user_id, "placement": line.placement, "amount": from_cents(line.amount_cents)}
            for line in plan.lines
        ],
    )


def refund_challenge(db: Session, challenge_id: str, reason: str) -> SettlementReport:
    """
    Return every participant exactly their stake and cancel the challenge.

    Re-entrant: a challenge that was already refunded reports ``already_done``.
    """
    challenge = _load(db, models.Challenge, challenge_id)
    if challenge.settled_at is not None:
        if challenge.status == ChallengeStatus.CANCELLED:
            return SettlementReport(unit_id=challenge_id, outcome="refunded", reason=reason, already_done=True)
        raise AlreadySettled(f"challenge {challenge_id} already settled")

    try:
        if not secure_settle_challenge(db, challenge_id):
            raise AlreadySettled(f"challenge {challenge_id} already settled")
        participants = db.query(models.ChallengeParticipant).filter_by(challenge_id=challenge_id).all()
        lines = []
        for participant in participants:
            if participant.stake_paid_cents <= 0:
                continue
            amount = from_cents(participant.stake_paid_cents)
            increment_wallet_balance(
                db,
                participant.user_id,
                participant.stake_paid_cents,
                WalletReason.REFUND,
                challenge_id=challenge_id,
                description=f"Challenge refund: {reason}",
                details={"reason": reason},
            )
            record_activity(
                db,
                participant.user_id,
                "challenge_refunded",
                "Stake Refunded",
                f"Your ${amount:.2f} stake in \"{challenge.title}\" was refunded: {reason}",
                {"challenge_id": challenge_id, "refund_amount": amount},
            )
            lines.append({"userId": participant.user_id, "amount": amount})
        transition_challenge(
            db,
            challenge_id,
            ChallengeStatus.CANCELLED,
            cancellation_reason=reason,
            end_time=utcnow(),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    total = sum(line["amount"] for line in lines)
    logger.info("Refunded challenge %s: %s participants, %.2f total (%s)", challenge_id, len(lines), total, reason)
    return SettlementReport(
        unit_id=challenge_id,
        outcome="refunded",
        pot=from_cents(challenge.total_pot_cents),
        total_refunded=round(total, 2),
        reason=reason,
        lines=lines,
    )


def finalize_challenge(
    db: Session,
    challenge_id: str,
    failure_reason: Optional[str] = None,
    fee_rate=None,
    automation_type: str = "settlement_engine",
) -> Result:
    """
    Drive a terminal challenge to exactly one outcome.

    Without a ``failure_reason`` the payout path runs first; any failure of it
    (missing results, a payout line raising, a pot mismatch) is compensated by
    the full refund path. Failures that mean the challenge is not settleable
    at all are returned as ``Err`` untouched.
    """
    if failure_reason is None:
        try:
            report = settle_challenge(db, challenge_id, fee_rate=fee_rate)
            record_action(db, automation_type, "payout", True, report.to_dict(), target_id=challenge_id)
            return Ok(report)
        except NOT_SETTLEABLE as exc:
            logger.info("Challenge %s not settled: %s", challenge_id, exc)
            return Err(exc)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Payout failed for challenge %s, falling back to refund: %s", challenge_id, exc)
            failure_reason = f"payout failed: {exc}"

    try:
        report = refund_challenge(db, challenge_id, failure_reason)
    except (PuosuError, SQLAlchemyError) as exc:
        logger.error("Refund failed for challenge %s: %s", challenge_id, exc)
        record_action(
            db,
            automation_type,
            "refund_failed",
            False,
            {"reason": failure_reason, "error": str(exc)},
            target_id=challenge_id,
        )
        return Err(exc if isinstance(exc, PuosuError) else PuosuError(str(exc)))
    if not report.already_done:
        record_action(db, automation_type, "refund", True, report.to_dict(), target_id=challenge_id)
    return Ok(report)


def _tournament_fee_rate(db: Session, fee_rate):
    if fee_rate is not None:
        return lambda user_id: fee_rate
    return lambda user_id: settings.premium_fee_rate if has_vip_access(db, user_id) else settings.platform_fee_rate


def distribute_tournament_prizes(db: Session, tournament_id: str, fee_rate=None) -> SettlementReport:
    """
    Pay the prize pool of a completed tournament by final placement.

    Without an explicit ``fee_rate`` each winner pays the premium rate when they
    hold VIP access and the standard rate otherwise.
    """
    tournament = _load(db, models.Tournament, tournament_id)
    if tournament.prizes_distributed or tournament.settled_at is not None:
        raise AlreadySettled(f"tournament {tournament_id} already settled")
    if tournament.status != TournamentStatus.COMPLETED:
        raise InvalidTransition(f"tournament {tournament_id} is {tournament.status}, prizes need a completed tournament")

    try:
        if not secure_settle_tournament(db, tournament_id):
            raise AlreadySettled(f"tournament {tournament_id} already settled")
        participants = db.query(models.TournamentParticipant).filter_by(tournament_id=tournament_id).all()
        if not participants:
            raise InsufficientParticipants(f"tournament {tournament_id} has no registrants")
        fees = sum(p.entry_fee_cents for p in participants)
        if fees != tournament.prize_pool_cents:
            raise PotMismatch(
                f"tournament {tournament_id} pool {from_cents(tournament.prize_pool_cents):.2f} != entry fees {from_cents(fees):.2f}"
            )
        placed = sorted((p for p in participants if p.placement), key=lambda p: p.placement)
        needed = min(len(tournament_shares(len(participants))), len(participants))
        if [p.placement for p in placed[:needed]] != list(range(1, needed + 1)):
            raise MissingResults(f"tournament {tournament_id} has no final standings for the prize places")

        plan = plan_tournament_prizes(
            tournament.prize_pool_cents,
            len(participants),
            [p.user_id for p in placed],
            _tournament_fee_rate(db, fee_rate),
        )
        for line in plan.lines:
            amount = from_cents(line.amount_cents)
            increment_wallet_balance(
                db,
                line.user_id,
                line.amount_cents,
                WalletReason.TOURNAMENT_PRIZE,
                tournament_id=tournament_id,
                description=f"Tournament prize: {tournament.name} (place {line.placement})",
                details={
                    "position": line.placement,
                    "gross_prize": from_cents(line.amount_cents + line.fee_cents),
                    "platform_fee": from_cents(line.fee_cents),
                },
            )
            record_activity(
                db,
                line.user_id,
                "prize_won",
                "Prize Won!",
                f"You won ${amount:.2f} for placing {line.placement} in {tournament.name}",
                {"tournament_id": tournament_id, "prize_amount": amount, "position": line.placement},
            )
        record_platform_fee(
            db,
            plan.fee_cents,
            tournament_id=tournament_id,
            details={"prize_pool": from_cents(plan.pot_cents)},
        )
        tournament.prizes_distributed = True
        tournament.winner_id = plan.lines[0].user_id
        tournament.updated_at = utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Distributed %s prizes for tournament %s pool=%.2f fee=%.2f",
        len(plan.lines),
        tournament_id,
        from_cents(plan.pot_cents),
        from_cents(plan.fee_cents),
    )
    return SettlementReport(
        unit_id=tournament_id,
        outcome="paid",
        pot=from_cents(plan.pot_cents),
        platform_fee=from_cents(plan.fee_cents),
        total_paid=from_cents(plan.paid_cents),
        winner_id=plan.lines[0].user_id,
        lines=[
            {
                "userId": line.user_id,
                "placement": line.placement,
                "amount": from_cents(line.amount_cents),
                "fee": from_cents(line.fee_cents),
            }
            for line in plan.lines
        ],
    )


def refund_tournament(
    db: Session,
    tournament_id: str,
    reason: str,
    refund_type: RefundType = RefundType.FULL,
) -> SettlementReport:
    """
    Refund entry fees, cancel open bracket matches and cancel the tournament.

    A partial refund returns half of each entry fee; the retained half is booked
    as a platform fee line so the pool is still fully accounted for.
    """
    tournament = _load(db, models.Tournament, tournament_id)
    if tournament.settled_at is not None or tournament.prizes_distributed:
        if tournament.status == TournamentStatus.CANCELLED:
            return SettlementReport(unit_id=tournament_id, outcome="refunded", reason=reason, already_done=True)
        raise AlreadySettled(f"tournament {tournament_id} already settled")

    refund_type = RefundType(refund_type)
    try:
        if not secure_settle_tournament(db, tournament_id):
            raise AlreadySettled(f"tournament {tournament_id} already settled")
        participants = db.query(models.TournamentParticipant).filter_by(tournament_id=tournament_id).all()
        lines = []
        refunded_cents = 0
        retained_cents = 0
        for participant in participants:
            refund_cents = partial_refund_cents(participant.entry_fee_cents, refund_type)
            retained_cents += participant.entry_fee_cents - refund_cents
            if refund_cents <= 0:
                continue
            increment_wallet_balance(
                db,
                participant.user_id,
                refund_cents,
                WalletReason.REFUND,
                tournament_id=tournament_id,
                description=f"Tournament refund: {reason}",
                details={
                    "original_entry_fee": from_cents(participant.entry_fee_cents),
                    "refund_type": refund_type.value,
                    "reason": reason,
                },
            )
            record_activity(
                db,
                participant.user_id,
                "tournament_refunded",
                "Entry Fee Refunded",
                f"{tournament.name} was cancelled ({reason}); ${from_cents(refund_cents):.2f} returned to your wallet",
                {"tournament_id": tournament_id, "refund_amount": from_cents(refund_cents)},
            )
            refunded_cents += refund_cents
            lines.append(
                {
                    "userId": participant.user_id,
                    "amount": from_cents(refund_cents),
                    "originalFee": from_cents(participant.entry_fee_cents),
                }
            )
        record_platform_fee(
            db,
            retained_cents,
            tournament_id=tournament_id,
            details={"refund_type": refund_type.value, "reason": reason},
        )
        cancelled_matches = cancel_open_matches(db, tournament_id)
        transition_tournament(
            db,
            tournament_id,
            TournamentStatus.CANCELLED,
            cancellation_reason=reason,
            total_refunded_cents=refunded_cents,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Cancelled tournament %s: refunded %.2f to %s players, %s matches cancelled (%s)",
        tournament_id,
        from_cents(refunded_cents),
        len(lines),
        cancelled_matches,
        reason,
    )
    return SettlementReport(
        unit_id=tournament_id,
        outcome="refunded",
        pot=from_cents(tournament.prize_pool_cents),
        platform_fee=from_cents(retained_cents),
        total_refunded=from_cents(refunded_cents),
        reason=reason,
        lines=lines,
    )


def finalize_tournament(
    db: Session,
    tournament_id: str,
    failure_reason: Optional[str] = None,
    fee_rate=None,
    automation_type: str = "settlement_engine",
) -> Result:
    """Prize distribution with the same refund fallback as ``finalize_challenge``."""
    if failure_reason is None:
        try:
            report = distribute_tournament_prizes(db, tournament_id, fee_rate=fee_rate)
            record_action(db, automation_type, "tournament_prizes", True, report.to_dict(), target_id=tournament_id)
            return Ok(report)
        except NOT_SETTLEABLE as exc:
            logger.info("Tournament %s not settled: %s", tournament_id, exc)
            return Err(exc)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prize distribution failed for tournament %s, falling back to refund: %s", tournament_id, exc)
            failure_reason = f"prize distribution failed: {exc}"

    try:
        report = refund_tournament(db, tournament_id, failure_reason)
    except (PuosuError, SQLAlchemyError) as exc:
        logger.error("Refund failed for tournament %s: %s", tournament_id, exc)
        record_action(
            db,
            automation_type,
            "refund_failed",
            False,
            {"reason": failure_reason, "error": str(exc)},
            target_id=tournament_id,
        )
        return Err(exc if isinstance(exc, PuosuError) else PuosuError(str(exc)))
    if not report.already_done:
        record_action(db, automation_type, "tournament_refund", True, report.to_dict(), target_id=tournament_id)
    return Ok(report)


def emergency_stop_tournament(
    db: Session,
    tournament_id: str,
    reason: str,
    refund_type: RefundType = RefundType.FULL,
) -> SettlementReport:
    """
    Halt a tournament in any non-terminal state: open bracket matches are
    cancelled and entry fees refunded (fully or half).
    """
    try:
        report = refund_tournament(db, tournament_id, f"Emergency stop: {reason}", refund_type)
    except PuosuError as exc:
        record_action(
            db,
            "emergency_tournament_stop",
            "stop_failed",
            False,
            {"reason": reason, "error": exc.message},
            target_id=tournament_id,
        )
        raise
    if report.already_done:
        return report
    logger.warning("Emergency stop of tournament %s: %s", tournament_id, reason)
    record_action(
        db,
        "emergency_tournament_stop",
        "tournament_stopped",
        True,
        {**report.to_dict(), "refund_type": RefundType(refund_type).value},
        target_id=tournament_id,
    )
    return report
