import csv
from collections import defaultdict
from io import StringIO
from typing import Tuple

from sqlalchemy.orm import Session

from puosu.config import ChallengeStatus, TournamentStatus, WalletReason
from puosu.helpers import from_cents
from puosu.logging_config import get_logger
from puosu.models import models

logger = get_logger(__name__)

ENTRY_REASONS = {WalletReason.CHALLENGE_ENTRY.value, WalletReason.TOURNAMENT_ENTRY.value}
PAYOUT_REASONS = {WalletReason.CHALLENGE_PAYOUT.value, WalletReason.TOURNAMENT_PRIZE.value}

HEADER = ["unitType", "unitId", "status", "pot", "staked", "paidOut", "refunded", "platformFee", "difference"]


def _ledger_totals(db: Session, column) -> dict:
    """Per-unit sums of escrowed stakes and every outflow, in cents."""
    totals = defaultdict(lambda: defaultdict(int))
    rows = db.query(models.Transaction).filter(column.isnot(None)).all()
    for row in rows:
        unit = totals[getattr(row, column.key)]
        if row.type in ENTRY_REASONS:
            unit["staked"] += -row.amount_cents
        elif row.type in PAYOUT_REASONS:
            unit["paid"] += row.amount_cents
        elif row.type == WalletReason.REFUND.value:
            unit["refunded"] += row.amount_cents
        elif row.type == WalletReason.PLATFORM_FEE.value:
            unit["fee"] += row.amount_cents
    return totals


def _check_unit(unit_type: str, unit, pot_cents: int, settled: bool, totals: dict):
    staked = totals["staked"]
    outflow = totals["paid"] + totals["refunded"] + totals["fee"]
    # A live unit still holds its whole pot in escrow.
    held = 0 if settled else pot_cents
    difference = staked - outflow - held
    if difference == 0:
        return None
    return (
        unit_type,
        unit.id,
        unit.status,
        from_cents(pot_cents),
        from_cents(staked),
        from_cents(totals["paid"]),
        from_cents(totals["refunded"]),
        from_cents(totals["fee"]),
        from_cents(difference),
    )


def generate_reconciliation_csv(db: Session) -> Tuple[str, int]:
    """
    Audit money conservation per challenge and tournament and return CSV text
    of the units that do not balance, plus their count.
    """
    mismatches = []
    challenge_totals = _ledger_totals(db, models.Transaction.challenge_id)
    for challenge in db.query(models.Challenge).order_by(models.Challenge.created_at.asc()).all():
        settled = challenge.settled_at is not None and challenge.status in (
            ChallengeStatus.COMPLETED,
            ChallengeStatus.CANCELLED,
        )
        row = _check_unit("challenge", challenge, challenge.total_pot_cents, settled, challenge_totals[challenge.id])
        if row:
            mismatches.append(row)

    tournament_totals = _ledger_totals(db, models.Transaction.tournament_id)
    for tournament in db.query(models.Tournament).order_by(models.Tournament.created_at.asc()).all():
        settled = tournament.settled_at is not None and (
            tournament.prizes_distributed or tournament.status == TournamentStatus.CANCELLED
        )
        row = _check_unit("tournament", tournament, tournament.prize_pool_cents, settled, tournament_totals[tournament.id])
        if row:
            mismatches.append(row)

    logger.info("Reconciliation complete with %s mismatches", len(mismatches))
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(HEADER)
    for row in mismatches:
        writer.writerow(row)
    return output.getvalue(), len(mismatches)
