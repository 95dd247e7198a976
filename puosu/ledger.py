"""
Ledger primitives: the only sanctioned ways to move money.

Each primitive is a compare-and-set ``UPDATE ... WHERE`` or a unique
constraint enforced by the datastore, so overlapping invocations cannot
double-spend a wallet, double-join a unit or settle a unit twice. No
application-level locks are taken.

``join_challenge_atomic`` and ``join_tournament_atomic`` are complete units of
work and commit (or roll back) themselves. ``increment_wallet_balance``,
``record_platform_fee`` and the ``secure_settle_*`` guards participate in the
caller's transaction, so a settlement can be rolled back as a whole.
"""
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, TournamentStatus, WalletReason, settings
from puosu.errors import (
    AlreadyJoined,
    ChallengeFull,
    ChallengeNotOpen,
    InsufficientFunds,
    InvalidStakeAmount,
    NotFound,
    RegistrationClosed,
    TournamentFull,
)
from puosu.helpers import from_cents, to_cents, utcnow
from puosu.logging_config import get_logger
from puosu.models import models

logger = get_logger(__name__)

MAX_STAKE_CENTS = 1_000_000


def compare_and_set(db: Session, stmt) -> bool:
    db.flush()
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount == 1


def _expire_cached(db: Session, model, pk: Any) -> None:
    cached = db.get(model, pk)
    if cached is not None:
        db.expire(cached)


def _apply_wallet_delta(db: Session, user_id: str, amount_cents: int) -> None:
    stmt = (
        update(models.Profile)
        .where(models.Profile.user_id == user_id)
        .where(models.Profile.wallet_balance_cents + amount_cents >= 0)
        .values(wallet_balance_cents=models.Profile.wallet_balance_cents + amount_cents)
    )
    if not compare_and_set(db, stmt):
        profile = db.get(models.Profile, user_id)
        if profile is None:
            raise NotFound(f"wallet for user {user_id} not found")
        raise InsufficientFunds(
            f"insufficient balance for user {user_id}: needs {from_cents(-amount_cents):.2f}"
        )
    _expire_cached(db, models.Profile, user_id)


def increment_wallet_balance(
    db: Session,
    user_id: str,
    amount_cents: int,
    reason: WalletReason,
    challenge_id: Optional[str] = None,
    tournament_id: Optional[str] = None,
    requires_admin: bool = False,
    description: Optional[str] = None,
    details: Optional[dict] = None,
) -> models.Transaction:
    """
    Credit (positive) or debit (negative) a wallet and write its transaction line.

    The balance never drops below zero. Nothing is committed here: upstream
    idempotency (the settlement guard) decides whether a call may happen at all.
    """
    _apply_wallet_delta(db, user_id, amount_cents)
    line = models.Transaction(
        user_id=user_id,
        type=WalletReason(reason).value,
        amount_cents=amount_cents,
        status="completed",
        challenge_id=challenge_id,
        tournament_id=tournament_id,
        description=description,
        details={**(details or {}), "requires_admin": requires_admin},
    )
    db.add(line)
    logger.info(
        "Wallet delta user_id=%s amount=%.2f reason=%s challenge_id=%s tournament_id=%s",
        user_id,
        from_cents(amount_cents),
        WalletReason(reason).value,
        challenge_id,
        tournament_id,
    )
    return line


def record_platform_fee(
    db: Session,
    amount_cents: int,
    challenge_id: Optional[str] = None,
    tournament_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> Optional[models.Transaction]:
    if amount_cents <= 0:
        return None
    line = models.Transaction(
        user_id=None,
        type=WalletReason.PLATFORM_FEE.value,
        amount_cents=amount_cents,
        status="completed",
        challenge_id=challenge_id,
        tournament_id=tournament_id,
        description="Platform fee",
        details=details or {},
    )
    db.add(line)
    return line


def join_challenge_atomic(db: Session, challenge_id: str, user_id: str, stake_amount) -> models.ChallengeParticipant:
    """
    Debit the stake, insert the participant row and grow the pot as one commit.
    """
    stake_cents = to_cents(stake_amount)
    try:
        challenge = db.get(models.Challenge, challenge_id)
        if challenge is None:
            raise NotFound(f"challenge {challenge_id} not found")
        if stake_cents <= 0 or stake_cents > MAX_STAKE_CENTS or stake_cents != challenge.stake_cents:
            raise InvalidStakeAmount(
                f"stake {from_cents(stake_cents):.2f} does not match challenge stake {from_cents(challenge.stake_cents):.2f}"
            )
        if challenge.status != ChallengeStatus.OPEN:
            raise ChallengeNotOpen(f"challenge {challenge_id} is {challenge.status}")
        already = (
            db.query(models.ChallengeParticipant)
            .filter_by(challenge_id=challenge_id, user_id=user_id)
            .first()
        )
        if already:
            raise AlreadyJoined(f"user {user_id} already joined challenge {challenge_id}")

        claimed = compare_and_set(
            db,
            update(models.Challenge)
            .where(models.Challenge.id == challenge_id)
            .where(models.Challenge.status == ChallengeStatus.OPEN.value)
            .where(models.Challenge.participant_count < models.Challenge.max_participants)
            .values(
                participant_count=models.Challenge.participant_count + 1,
                total_pot_cents=models.Challenge.total_pot_cents + stake_cents,
                updated_at=utcnow(),
            ),
        )
        db.expire(challenge)
        if not claimed:
            if challenge.status != ChallengeStatus.OPEN:
                raise ChallengeNotOpen(f"challenge {challenge_id} is {challenge.status}")
            raise ChallengeFull(f"challenge {challenge_id} is full")

        increment_wallet_balance(
            db,
            user_id,
            -stake_cents,
            WalletReason.CHALLENGE_ENTRY,
            challenge_id=challenge_id,
            description=f"Challenge entry: {challenge.title}",
        )
        participant = models.ChallengeParticipant(
            challenge_id=challenge_id,
            user_id=user_id,
            stake_paid_cents=stake_cents,
        )
        db.add(participant)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AlreadyJoined(f"user {user_id} already joined challenge {challenge_id}") from exc
    except Exception:
        db.rollback()
        raise
    logger.info("User %s joined challenge %s stake=%.2f", user_id, challenge_id, from_cents(stake_cents))
    return participant


def join_tournament_atomic(db: Session, tournament_id: str, user_id: str) -> models.TournamentParticipant:
    """
    Escrow the entry fee into the prize pool and register the user as one commit.
    """
    try:
        tournament = db.get(models.Tournament, tournament_id)
        if tournament is None:
            raise NotFound(f"tournament {tournament_id} not found")
        if tournament.status != TournamentStatus.REGISTRATION_OPEN:
            raise RegistrationClosed(f"tournament {tournament_id} is {tournament.status}")
        already = (
            db.query(models.TournamentParticipant)
            .filter_by(tournament_id=tournament_id, user_id=user_id)
            .first()
        )
        if already:
            raise AlreadyJoined(f"user {user_id} already registered for tournament {tournament_id}")

        fee_cents = tournament.entry_fee_cents
        claimed = compare_and_set(
            db,
            update(models.Tournament)
            .where(models.Tournament.id == tournament_id)
            .where(models.Tournament.status == TournamentStatus.REGISTRATION_OPEN.value)
            .where(models.Tournament.current_participants < models.Tournament.max_participants)
            .values(
                current_participants=models.Tournament.current_participants + 1,
                prize_pool_cents=models.Tournament.prize_pool_cents + fee_cents,
                updated_at=utcnow(),
            ),
        )
        db.expire(tournament)
        if not claimed:
            if tournament.status != TournamentStatus.REGISTRATION_OPEN:
                raise RegistrationClosed(f"tournament {tournament_id} is {tournament.status}")
            raise TournamentFull(f"tournament {tournament_id} is full")

        increment_wallet_balance(
            db,
            user_id,
            -fee_cents,
            WalletReason.TOURNAMENT_ENTRY,
            tournament_id=tournament_id,
            description=f"Tournament entry: {tournament.name}",
        )
        participant = models.TournamentParticipant(
            tournament_id=tournament_id,
            user_id=user_id,
            entry_fee_cents=fee_cents,
        )
        db.add(participant)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise AlreadyJoined(f"user {user_id} already registered for tournament {tournament_id}") from exc
    except Exception:
        db.rollback()
        raise
    logger.info("User %s registered for tournament %s", user_id, tournament_id)
    return participant


def secure_settle_challenge(db: Session, challenge_id: str) -> bool:
    """Claim the one-time settlement guard. False when the challenge was already settled."""
    claimed = compare_and_set(
        db,
        update(models.Challenge)
        .where(models.Challenge.id == challenge_id)
        .where(models.Challenge.settled_at.is_(None))
        .values(settled_at=utcnow()),
    )
    _expire_cached(db, models.Challenge, challenge_id)
    return claimed


def secure_settle_tournament(db: Session, tournament_id: str) -> bool:
    claimed = compare_and_set(
        db,
        update(models.Tournament)
        .where(models.Tournament.id == tournament_id)
        .where(models.Tournament.settled_at.is_(None))
        .values(settled_at=utcnow()),
    )
    _expire_cached(db, models.Tournament, tournament_id)
    return claimed


def get_available_test_users(db: Session, min_balance, max_users: int) -> list[dict]:
    min_cents = to_cents(min_balance)
    profiles = (
        db.query(models.Profile)
        .filter(models.Profile.is_test_account.is_(True))
        .filter(models.Profile.wallet_balance_cents >= min_cents)
        .order_by(models.Profile.created_at.asc())
        .limit(max_users)
        .all()
    )
    return [
        {"user_id": p.user_id, "wallet_balance": from_cents(p.wallet_balance_cents)}
        for p in profiles
    ]


def detect_suspicious_stats(user_id: str, stats_data: dict) -> bool:
    """
    Flag implausible stat lines. A True result routes the record to moderator
    review; it is never a verdict on its own.
    """
    kills = int(stats_data.get("kills") or 0)
    deaths = int(stats_data.get("deaths") or 0)
    score = int(stats_data.get("score") or 0)
    damage = stats_data.get("damage", stats_data.get("damage_dealt"))

    reasons = []
    kd = kills / (deaths or 1)
    if kd > settings.max_kd_ratio and kills > settings.min_kills_for_kd_check:
        reasons.append(f"kd_ratio={kd:.1f}")
    if kills > settings.max_kills:
        reasons.append(f"kills={kills}")
    if damage is not None and kills and float(damage) < kills * settings.min_damage_per_kill:
        reasons.append(f"damage_per_kill={float(damage) / kills:.1f}")
    if score and kills and score < kills * settings.min_score_per_kill:
        reasons.append(f"score_per_kill={score / kills:.1f}")

    if reasons:
        logger.warning("Suspicious stats for user_id=%s: %s", user_id, ", ".join(reasons))
        return True
    return False


def has_vip_access(db: Session, user_id: str) -> bool:
    profile = db.get(models.Profile, user_id)
    if profile is None or not profile.is_premium:
        return False
    return profile.premium_expires_at is None or profile.premium_expires_at > utcnow()
