"""
Payout arithmetic. Pure functions over integer cents.

The platform fee is taken off the gross pot first and the split percentages
apply to what remains. Rounding residue always lands on first place, so
``sum(lines) + fee == pot`` holds exactly for every plan.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Sequence

from puosu.config import CHALLENGE_PAYOUT_SPLITS, TOURNAMENT_PRIZE_SPLITS, ChallengeType, RefundType
from puosu.errors import InvalidRequest, MissingResults
from puosu.helpers import percent_of


@dataclass(frozen=True)
class PayoutLine:
    user_id: str
    placement: int
    amount_cents: int
    fee_cents: int = 0


@dataclass(frozen=True)
class PayoutPlan:
    pot_cents: int
    fee_cents: int
    lines: list[PayoutLine] = field(default_factory=list)

    @property
    def paid_cents(self) -> int:
        return sum(line.amount_cents for line in self.lines)


def validate_fee_rate(rate) -> Decimal:
    value = Decimal(str(rate))
    if value < 0 or value >= 1:
        raise InvalidRequest(f"fee rate must be in [0, 1): {rate}")
    return value


def split_amount(amount_cents: int, shares: Sequence[str], placed: int) -> list[int]:
    """
    Split ``amount_cents`` by ``shares`` across the first ``placed`` places.

    Shares beyond the number of placed participants fold into first place.
    """
    if placed <= 0:
        raise MissingResults("no placed participants to pay")
    used = list(shares[:placed])
    amounts = [percent_of(amount_cents, share) for share in used]
    amounts[0] += amount_cents - sum(amounts)
    return amounts


def plan_challenge_payouts(
    pot_cents: int,
    challenge_type: str,
    ranked_user_ids: Sequence[str],
    fee_rate,
) -> PayoutPlan:
    rate = validate_fee_rate(fee_rate)
    shares = CHALLENGE_PAYOUT_SPLITS[ChallengeType(challenge_type)]
    fee_cents = percent_of(pot_cents, rate)
    net_cents = pot_cents - fee_cents
    amounts = split_amount(net_cents, shares, len(ranked_user_ids))
    lines = [
        PayoutLine(user_id=user_id, placement=index + 1, amount_cents=amount)
        for index, (user_id, amount) in enumerate(zip(ranked_user_ids, amounts))
    ]
    return PayoutPlan(pot_cents=pot_cents, fee_cents=fee_cents, lines=lines)


def tournament_shares(participant_count: int) -> tuple:
    for minimum, shares in TOURNAMENT_PRIZE_SPLITS:
        if participant_count >= minimum:
            return shares
    return TOURNAMENT_PRIZE_SPLITS[-1][1]


def plan_tournament_prizes(
    pool_cents: int,
    participant_count: int,
    ranked_user_ids: Sequence[str],
    fee_rate_for: Callable[[str], object],
) -> PayoutPlan:
    """
    Tournament prizes carry a per-winner fee rate (premium tiers pay less), so
    the fee is taken per prize line rather than once off the pool.
    """
    shares = tournament_shares(participant_count)
    gross = split_amount(pool_cents, shares, len(ranked_user_ids))
    lines = []
    for index, (user_id, gross_cents) in enumerate(zip(ranked_user_ids, gross)):
        rate = validate_fee_rate(fee_rate_for(user_id))
        fee_cents = percent_of(gross_cents, rate)
        lines.append(
            PayoutLine(
                user_id=user_id,
                placement=index + 1,
                amount_cents=gross_cents - fee_cents,
                fee_cents=fee_cents,
            )
        )
    return PayoutPlan(
        pot_cents=pool_cents,
        fee_cents=sum(line.fee_cents for line in lines),
        lines=lines,
    )


def partial_refund_cents(entry_fee_cents: int, refund_type: str) -> int:
    if refund_type == RefundType.FULL:
        return entry_fee_cents
    return percent_of(entry_fee_cents, "0.5")
