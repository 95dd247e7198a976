"""
Lifecycle transitions for challenges and tournaments.

A transition is a compare-and-set on the status column: it only fires from one
of the allowed source states. Re-running a transition on a unit that already
sits in the target state is a no-op that returns False, so scheduled sweeps can
safely revisit the same row.

Transition helpers do not commit; the ``start_*``/``open_*``/``force_*``
operations are complete units of work and do.
"""
from sqlalchemy import update
from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, MatchStatus, TournamentStatus, settings
from puosu.errors import InsufficientParticipants, InvalidTransition, NotFound
from puosu.helpers import utcnow
from puosu.ledger import compare_and_set
from puosu.logging_config import get_logger
from puosu.models import models

logger = get_logger(__name__)

CHALLENGE_TRANSITIONS = {
    ChallengeStatus.ACTIVE: {ChallengeStatus.OPEN},
    ChallengeStatus.COMPLETED: {ChallengeStatus.ACTIVE},
    ChallengeStatus.CANCELLED: {ChallengeStatus.OPEN, ChallengeStatus.ACTIVE},
}

TOURNAMENT_TRANSITIONS = {
    TournamentStatus.REGISTRATION_OPEN: {TournamentStatus.UPCOMING},
    TournamentStatus.ONGOING: {TournamentStatus.REGISTRATION_OPEN},
    TournamentStatus.COMPLETED: {TournamentStatus.ONGOING},
    TournamentStatus.CANCELLED: {
        TournamentStatus.UPCOMING,
        TournamentStatus.REGISTRATION_OPEN,
        TournamentStatus.ONGOING,
        TournamentStatus.COMPLETED,
    },
}


def _transition(db: Session, model, unit_id: str, target, transitions: dict, **values) -> bool:
    sources = [status.value for status in transitions[target]]
    changed = compare_and_set(
        db,
        update(model)
        .where(model.id == unit_id)
        .where(model.status.in_(sources))
        .values(status=target.value, updated_at=utcnow(), **values),
    )
    unit = db.get(model, unit_id)
    if unit is None:
        raise NotFound(f"{model.__tablename__} {unit_id} not found")
    db.expire(unit)
    if changed:
        logger.info("Transitioned %s %s -> %s", model.__tablename__, unit_id, target.value)
        return True
    if unit.status == target:
        return False
    raise InvalidTransition(f"{model.__tablename__} {unit_id} cannot move from {unit.status} to {target.value}")


def transition_challenge(db: Session, challenge_id: str, target: ChallengeStatus, **values) -> bool:
    return _transition(db, models.Challenge, challenge_id, target, CHALLENGE_TRANSITIONS, **values)


def transition_tournament(db: Session, tournament_id: str, target: TournamentStatus, **values) -> bool:
    return _transition(db, models.Tournament, tournament_id, target, TOURNAMENT_TRANSITIONS, **values)


def start_challenge(db: Session, challenge_id: str) -> bool:
    """Lock an open challenge for play. Needs at least two participants."""
    challenge = db.get(models.Challenge, challenge_id)
    if challenge is None:
        raise NotFound(f"challenge {challenge_id} not found")
    if challenge.status == ChallengeStatus.ACTIVE:
        return False
    if challenge.participant_count < settings.min_challenge_participants:
        raise InsufficientParticipants(
            f"challenge {challenge_id} has {challenge.participant_count} participants"
        )
    changed = transition_challenge(db, challenge_id, ChallengeStatus.ACTIVE, start_time=utcnow())
    db.commit()
    return changed


def open_registration(db: Session, tournament_id: str) -> bool:
    changed = transition_tournament(db, tournament_id, TournamentStatus.REGISTRATION_OPEN)
    db.commit()
    return changed


def participant_count(db: Session, tournament_id: str) -> int:
    return (
        db.query(models.TournamentParticipant)
        .filter(models.TournamentParticipant.tournament_id == tournament_id)
        .count()
    )


def start_tournament(db: Session, tournament_id: str) -> bool:
    """
    Close registration and begin play. Raises ``InsufficientParticipants``
    below quorum; the caller is expected to cancel and refund in that case.
    """
    tournament = db.get(models.Tournament, tournament_id)
    if tournament is None:
        raise NotFound(f"tournament {tournament_id} not found")
    if tournament.status == TournamentStatus.ONGOING:
        return False
    registrants = participant_count(db, tournament_id)
    if registrants < settings.min_tournament_participants:
        raise InsufficientParticipants(f"tournament {tournament_id} has {registrants} registrants")
    try:
        changed = transition_tournament(db, tournament_id, TournamentStatus.ONGOING)
        if changed:
            generate_bracket(db, tournament_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return changed


def generate_bracket(db: Session, tournament_id: str) -> list[models.TournamentMatch]:
    """Pair registrants in join order for round one; an odd player out gets a bye."""
    registrants = (
        db.query(models.TournamentParticipant)
        .filter(models.TournamentParticipant.tournament_id == tournament_id)
        .order_by(models.TournamentParticipant.joined_at.asc(), models.TournamentParticipant.id.asc())
        .all()
    )
    matches = []
    for index in range(0, len(registrants), 2):
        player1 = registrants[index].user_id
        player2 = registrants[index + 1].user_id if index + 1 < len(registrants) else None
        match = models.TournamentMatch(
            tournament_id=tournament_id,
            round_number=1,
            player1_id=player1,
            player2_id=player2,
            winner_id=None if player2 else player1,
            status=MatchStatus.PENDING.value if player2 else MatchStatus.COMPLETED.value,
        )
        db.add(match)
        matches.append(match)
    logger.info("Generated %s first-round matches for tournament %s", len(matches), tournament_id)
    return matches


def force_complete_tournament(db: Session, tournament_id: str) -> bool:
    changed = transition_tournament(db, tournament_id, TournamentStatus.COMPLETED)
    db.commit()
    if changed:
        logger.warning("Force-completed stuck tournament %s", tournament_id)
    return changed


def cancel_open_matches(db: Session, tournament_id: str) -> int:
    stmt = (
        update(models.TournamentMatch)
        .where(models.TournamentMatch.tournament_id == tournament_id)
        .where(models.TournamentMatch.status.in_([MatchStatus.PENDING.value, MatchStatus.IN_PROGRESS.value]))
        .values(status=MatchStatus.CANCELLED.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.flush()
    return db.execute(stmt).rowcount
