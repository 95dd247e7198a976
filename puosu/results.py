from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, TournamentStatus
from puosu.errors import InvalidRequest, NotFound, PreconditionFailed
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.state_machine import transition_tournament

logger = get_logger(__name__)

STAT_FIELDS = ("score", "kills", "deaths", "assists", "damage")


def challenge_participant_ids(db: Session, challenge_id: str) -> list[str]:
    rows = (
        db.query(models.ChallengeParticipant.user_id)
        .filter(models.ChallengeParticipant.challenge_id == challenge_id)
        .order_by(models.ChallengeParticipant.joined_at.asc(), models.ChallengeParticipant.id.asc())
        .all()
    )
    return [row.user_id for row in rows]


def ranked_stats(db: Session, challenge_id: str) -> list[models.ChallengeStats]:
    return (
        db.query(models.ChallengeStats)
        .filter(models.ChallengeStats.challenge_id == challenge_id)
        .order_by(models.ChallengeStats.placement.asc())
        .all()
    )


def results_complete(db: Session, challenge_id: str) -> bool:
    participants = set(challenge_participant_ids(db, challenge_id))
    recorded = {stat.user_id for stat in ranked_stats(db, challenge_id)}
    return bool(participants) and participants == recorded


def record_challenge_results(db: Session, challenge_id: str, lines: Iterable[dict]) -> list[models.ChallengeStats]:
    """
    Write the per-participant stat lines of an active challenge, once.

    Lines without an explicit ``placement`` are ranked by score, highest first.
    """
    challenge = db.get(models.Challenge, challenge_id)
    if challenge is None:
        raise NotFound(f"challenge {challenge_id} not found")
    if challenge.status != ChallengeStatus.ACTIVE:
        raise PreconditionFailed(f"challenge {challenge_id} is {challenge.status}, results need an active challenge")

    lines = list(lines)
    participants = set(challenge_participant_ids(db, challenge_id))
    unknown = {line["user_id"] for line in lines} - participants
    if unknown:
        raise InvalidRequest(f"results for non-participants: {sorted(unknown)}")
    if len({line["user_id"] for line in lines}) != len(lines):
        raise InvalidRequest("duplicate result lines for a participant")

    if any(line.get("placement") is None for line in lines):
        lines.sort(key=lambda line: line.get("score", 0), reverse=True)
        for index, line in enumerate(lines):
            line["placement"] = index + 1
    elif sorted(line["placement"] for line in lines) != list(range(1, len(lines) + 1)):
        raise InvalidRequest("placements must be unique and consecutive starting at 1")

    stats = [
        models.ChallengeStats(
            challenge_id=challenge_id,
            user_id=line["user_id"],
            placement=line["placement"],
            **{name: int(line.get(name) or 0) for name in STAT_FIELDS},
        )
        for line in lines
    ]
    try:
        db.add_all(stats)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise PreconditionFailed(f"results already recorded for challenge {challenge_id}") from exc
    logger.info("Recorded %s result lines for challenge %s", len(stats), challenge_id)
    return stats


def record_tournament_results(db: Session, tournament_id: str, placements: Iterable[dict]) -> bool:
    """
    Store final standings and complete the tournament. Re-entrant: a completed
    tournament keeps its standings and the call returns False.
    """
    tournament = db.get(models.Tournament, tournament_id)
    if tournament is None:
        raise NotFound(f"tournament {tournament_id} not found")
    if tournament.status == TournamentStatus.COMPLETED:
        return False

    participants = {
        p.user_id: p
        for p in db.query(models.TournamentParticipant).filter_by(tournament_id=tournament_id).all()
    }
    placements = sorted(placements, key=lambda line: line["placement"])
    seen = [line["placement"] for line in placements]
    if seen != list(range(1, len(seen) + 1)):
        raise InvalidRequest("placements must be consecutive starting at 1")
    try:
        for line in placements:
            participant = participants.get(line["user_id"])
            if participant is None:
                raise InvalidRequest(f"user {line['user_id']} is not registered for tournament {tournament_id}")
            participant.placement = line["placement"]
        winner_id = placements[0]["user_id"] if placements else None
        changed = transition_tournament(db, tournament_id, TournamentStatus.COMPLETED, winner_id=winner_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return changed
