import hashlib
import json
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

CENT = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()


def to_cents(amount: Union[Decimal, float, int, str]) -> int:
    """
    Convert a currency amount to integer cents, rounding half-up at the cent.
    """
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: int) -> float:
    return float(Decimal(cents) / 100)


def percent_of(cents: int, rate: Union[Decimal, float, str]) -> int:
    """Share of an amount in cents, rounded half-up to a whole cent."""
    return int((Decimal(cents) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_action(record) -> dict:
    return {
        "id": record.id,
        "automationType": record.automation_type,
        "actionType": record.action_type,
        "success": record.success,
        "targetId": record.target_id,
        "actionData": record.action_data,
        "timestamp": isoformat(record.created_at),
    }


def serialize_challenge(challenge) -> dict:
    return {
        "id": challenge.id,
        "title": challenge.title,
        "challengeType": challenge.challenge_type,
        "status": challenge.status,
        "stakeAmount": from_cents(challenge.stake_cents),
        "totalPot": from_cents(challenge.total_pot_cents),
        "participantCount": challenge.participant_count,
        "maxParticipants": challenge.max_participants,
        "winnerId": challenge.winner_id,
        "settledAt": isoformat(challenge.settled_at),
    }


def serialize_tournament(tournament) -> dict:
    return {
        "id": tournament.id,
        "name": tournament.name,
        "status": tournament.status,
        "entryFee": from_cents(tournament.entry_fee_cents),
        "prizePool": from_cents(tournament.prize_pool_cents),
        "currentParticipants": tournament.current_participants,
        "maxParticipants": tournament.max_participants,
        "registrationStart": isoformat(tournament.registration_start),
        "registrationEnd": isoformat(tournament.registration_end),
        "winnerId": tournament.winner_id,
        "prizesDistributed": tournament.prizes_distributed,
    }
