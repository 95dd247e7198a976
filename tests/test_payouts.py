import pytest


def test_top3_eight_by_five_dollars():
    from puosu.payouts import plan_challenge_payouts

    users = [f"u{i}" for i in range(8)]
    plan = plan_challenge_payouts(4000, "top3", users, "0.10")

    assert plan.fee_cents == 400
    assert [line.amount_cents for line in plan.lines] == [2160, 1080, 360]
    assert [line.user_id for line in plan.lines] == ["u0", "u1", "u2"]
    assert plan.paid_cents + plan.fee_cents == 4000


def test_one_v_one_winner_takes_net_pot():
    from puosu.payouts import plan_challenge_payouts

    plan = plan_challenge_payouts(1000, "1v1", ["winner", "loser"], 0.10)
    assert plan.fee_cents == 100
    assert len(plan.lines) == 1
    assert plan.lines[0].user_id == "winner"
    assert plan.lines[0].amount_cents == 900


@pytest.mark.parametrize("pot", [1, 7, 333, 1001, 99999])
def test_rounding_residue_lands_on_first_place(pot):
    from puosu.payouts import plan_challenge_payouts

    plan = plan_challenge_payouts(pot, "top3", ["a", "b", "c"], "0.10")
    assert plan.paid_cents + plan.fee_cents == pot
    assert plan.lines[0].amount_cents >= plan.lines[1].amount_cents


def test_unused_shares_fold_into_first_place():
    from puosu.payouts import plan_challenge_payouts

    plan = plan_challenge_payouts(2000, "top3", ["a", "b"], "0.10")
    assert [line.amount_cents for line in plan.lines] == [1260, 540]
    assert plan.paid_cents + plan.fee_cents == 2000


def test_split_requires_a_placed_participant():
    from puosu.errors import MissingResults
    from puosu.payouts import split_amount

    with pytest.raises(MissingResults):
        split_amount(1000, ("1.00",), 0)


@pytest.mark.parametrize("rate", [-0.1, 1, 1.5])
def test_fee_rate_must_be_a_fraction(rate):
    from puosu.errors import InvalidRequest
    from puosu.payouts import plan_challenge_payouts

    with pytest.raises(InvalidRequest):
        plan_challenge_payouts(1000, "1v1", ["a"], rate)


@pytest.mark.parametrize(
    "registrants, shares",
    [(2, ("1.00",)), (3, ("1.00",)), (4, ("0.70", "0.30")), (7, ("0.70", "0.30")), (8, ("0.50", "0.30", "0.20"))],
)
def test_tournament_split_by_registrant_count(registrants, shares):
    from puosu.payouts import tournament_shares

    assert tournament_shares(registrants) == shares


def test_tournament_prizes_charge_fee_per_winner():
    from puosu.payouts import plan_tournament_prizes

    rates = {"vip": "0.05", "regular": "0.10"}
    plan = plan_tournament_prizes(10000, 4, ["vip", "regular"], lambda user_id: rates[user_id])

    first, second = plan.lines
    assert (first.amount_cents, first.fee_cents) == (6650, 350)
    assert (second.amount_cents, second.fee_cents) == (2700, 300)
    assert plan.fee_cents == 650
    assert plan.paid_cents + plan.fee_cents == 10000


def test_partial_refund_returns_half():
    from puosu.payouts import partial_refund_cents

    assert partial_refund_cents(2500, "full") == 2500
    assert partial_refund_cents(2500, "partial") == 1250
    assert partial_refund_cents(5, "partial") == 3
