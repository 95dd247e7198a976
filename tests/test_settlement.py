import pytest


def _active_challenge(seed, database, users, stake=5, challenge_type="1v1"):
    from puosu.ledger import join_challenge_atomic
    from puosu.state_machine import start_challenge

    challenge_id = seed.challenge(stake=stake, max_participants=len(users), challenge_type=challenge_type)
    with database.SessionLocal() as db:
        for user in users:
            join_challenge_atomic(db, challenge_id, user, stake)
        start_challenge(db, challenge_id)
    return challenge_id


def _record_scores(database, challenge_id, users):
    from puosu.results import record_challenge_results

    lines = [
        {"user_id": user, "score": 5000 - index * 100, "kills": 10, "deaths": 5, "damage": 3000}
        for index, user in enumerate(users)
    ]
    with database.SessionLocal() as db:
        record_challenge_results(db, challenge_id, lines)


def _platform_fees(database, models, **unit):
    with database.SessionLocal() as db:
        return sum(
            line.amount_cents for line in db.query(models.Transaction).filter_by(type="platform_fee", **unit).all()
        )


def test_top3_settlement_conserves_money(app_module, seed):
    _, database, models = app_module
    from puosu.settlement import finalize_challenge

    users = seed.profiles(8, balance=20)
    challenge_id = _active_challenge(seed, database, users, stake=5, challenge_type="top3")
    _record_scores(database, challenge_id, users)

    with database.SessionLocal() as db:
        result = finalize_challenge(db, challenge_id)
    report = result.value

    assert report.outcome == "paid"
    assert report.platform_fee == 4.0
    assert [line["amount"] for line in report.lines] == [21.6, 10.8, 3.6]
    assert [seed.balance(u) for u in users[:3]] == [1500 + 2160, 1500 + 1080, 1500 + 360]
    assert all(seed.balance(u) == 1500 for u in users[3:])

    total_after = sum(seed.balance(u) for u in users)
    assert total_after + _platform_fees(database, models, challenge_id=challenge_id) == 8 * 2000

    challenge = seed.get(models.Challenge, challenge_id)
    assert challenge.status == "completed"
    assert challenge.winner_id == users[0]
    assert challenge.settled_at is not None
    with database.SessionLocal() as db:
        activities = db.query(models.Activity).filter_by(activity_type="challenge_won").all()
        assert [a.user_id for a in activities] == [users[0]]


def test_one_v_one_settlement(app_module, seed):
    _, database, models = app_module
    from puosu.settlement import settle_challenge

    winner, loser = seed.profiles(2, balance=10)
    challenge_id = _active_challenge(seed, database, [winner, loser], stake=10)
    _record_scores(database, challenge_id, [winner, loser])

    with database.SessionLocal() as db:
        report = settle_challenge(db, challenge_id)

    assert report.winner_id == winner
    assert seed.balance(winner) == 1800
    assert seed.balance(loser) == 0
    assert _platform_fees(database, models, challenge_id=challenge_id) == 200


def test_second_settlement_is_rejected(app_module, seed):
    _, database, _ = app_module
    from puosu.errors import AlreadySettled
    from puosu.result import Err
    from puosu.settlement import finalize_challenge, settle_challenge

    users = seed.profiles(2, balance=10)
    challenge_id = _active_challenge(seed, database, users)
    _record_scores(database, challenge_id, users)

    with database.SessionLocal() as db:
        settle_challenge(db, challenge_id)
        balances = [seed.balance(u) for u in users]
        with pytest.raises(AlreadySettled):
            settle_challenge(db, challenge_id)
        second = finalize_challenge(db, challenge_id)

    assert isinstance(second, Err)
    assert isinstance(second.error, AlreadySettled)
    assert [seed.balance(u) for u in users] == balances


def test_concurrent_settlements_pay_once(app_module, seed):
    _, database, models = app_module
    from puosu.errors import AlreadySettled
    from puosu.result import Err, Ok
    from puosu.settlement import finalize_challenge

    winner, loser = seed.profiles(2, balance=10)
    challenge_id = _active_challenge(seed, database, [winner, loser])
    _record_scores(database, challenge_id, [winner, loser])

    with database.SessionLocal() as first, database.SessionLocal() as second:
        # Both workers see the challenge as active before either settles it.
        assert first.get(models.Challenge, challenge_id).settled_at is None
        assert second.get(models.Challenge, challenge_id).settled_at is None
        first_result = finalize_challenge(first, challenge_id)
        second_result = finalize_challenge(second, challenge_id)

    assert isinstance(first_result, Ok)
    assert first_result.value.outcome == "paid"
    assert isinstance(second_result, Err)
    assert isinstance(second_result.error, AlreadySettled)
    assert seed.balance(winner) == 500 + 900
    assert seed.balance(loser) == 500
    with database.SessionLocal() as db:
        payouts = db.query(models.Transaction).filter_by(challenge_id=challenge_id, type="challenge_payout").count()
    assert payouts == 1


def test_explicit_placements_must_be_unique_and_consecutive(app_module, seed):
    _, database, models = app_module
    from puosu.errors import InvalidRequest
    from puosu.results import record_challenge_results

    users = seed.profiles(3, balance=10)
    challenge_id = _active_challenge(seed, database, users, challenge_type="top3")

    tied = [{"user_id": user, "score": 10, "placement": 1} for user in users]
    gap = [{"user_id": user, "score": 10, "placement": place} for user, place in zip(users, (1, 2, 4))]
    with database.SessionLocal() as db:
        for lines in (tied, gap):
            with pytest.raises(InvalidRequest):
                record_challenge_results(db, challenge_id, lines)
        assert db.query(models.ChallengeStats).count() == 0

        ordered = [{"user_id": user, "score": 10, "placement": place} for user, place in zip(users, (2, 3, 1))]
        stats = record_challenge_results(db, challenge_id, ordered)
        assert sorted(s.placement for s in stats) == [1, 2, 3]


def test_crash_refunds_every_stake(app_module, seed):
    _, database, models = app_module
    from puosu.settlement import finalize_challenge

    users = seed.profiles(3, balance=10)
    challenge_id = _active_challenge(seed, database, users, stake=10, challenge_type="top3")
    assert all(seed.balance(u) == 0 for u in users)

    with database.SessionLocal() as db:
        report = finalize_challenge(db, challenge_id, failure_reason="simulated match crash").value

    assert report.outcome == "refunded"
    assert report.total_refunded == 30.0
    assert all(seed.balance(u) == 1000 for u in users)
    challenge = seed.get(models.Challenge, challenge_id)
    assert challenge.status == "cancelled"
    assert challenge.cancellation_reason == "simulated match crash"
    with database.SessionLocal() as db:
        refunds = db.query(models.Transaction).filter_by(type="refund", challenge_id=challenge_id).all()
        assert sorted(r.amount_cents for r in refunds) == [1000, 1000, 1000]


def test_refund_is_reentrant(app_module, seed):
    _, database, _ = app_module
    from puosu.settlement import refund_challenge

    users = seed.profiles(2, balance=10)
    challenge_id = _active_challenge(seed, database, users)
    with database.SessionLocal() as db:
        refund_challenge(db, challenge_id, "abandoned")
        again = refund_challenge(db, challenge_id, "abandoned")

    assert again.already_done is True
    assert all(seed.balance(u) == 1000 for u in users)


def test_missing_results_fall_back_to_refund(app_module, seed):
    _, database, models = app_module
    from puosu.results import record_challenge_results
    from puosu.settlement import finalize_challenge

    users = seed.profiles(3, balance=5)
    challenge_id = _active_challenge(seed, database, users, challenge_type="top3")
    with database.SessionLocal() as db:
        record_challenge_results(db, challenge_id, [{"user_id": users[0], "score": 10}])
        report = finalize_challenge(db, challenge_id).value

    assert report.outcome == "refunded"
    assert "payout failed" in report.reason
    assert all(seed.balance(u) == 500 for u in users)
    assert seed.get(models.Challenge, challenge_id).status == "cancelled"


def test_failing_payout_line_rolls_back_and_refunds(app_module, seed, monkeypatch):
    _, database, models = app_module
    import puosu.settlement as settlement
    from puosu.ledger import increment_wallet_balance

    users = seed.profiles(3, balance=5)
    challenge_id = _active_challenge(seed, database, users, challenge_type="top3")
    _record_scores(database, challenge_id, users)

    calls = {"count": 0}

    def flaky_increment(db, user_id, amount_cents, reason, **kwargs):
        if reason == "challenge_payout":
            calls["count"] += 1
            if calls["count"] == 2:
                raise RuntimeError("wallet service down")
        return increment_wallet_balance(db, user_id, amount_cents, reason, **kwargs)

    monkeypatch.setattr(settlement, "increment_wallet_balance", flaky_increment)

    with database.SessionLocal() as db:
        report = settlement.finalize_challenge(db, challenge_id).value

    assert report.outcome == "refunded"
    assert all(seed.balance(u) == 500 for u in users)
    with database.SessionLocal() as db:
        assert db.query(models.Transaction).filter_by(type="challenge_payout").count() == 0
        assert db.query(models.Transaction).filter_by(type="platform_fee").count() == 0


def test_pot_mismatch_is_refunded(app_module, seed):
    _, database, models = app_module
    from puosu.settlement import finalize_challenge

    users = seed.profiles(2, balance=5)
    challenge_id = _active_challenge(seed, database, users)
    _record_scores(database, challenge_id, users)
    with database.SessionLocal() as db:
        challenge = db.get(models.Challenge, challenge_id)
        challenge.total_pot_cents = 1500
        db.commit()
        report = finalize_challenge(db, challenge_id).value

    assert report.outcome == "refunded"
    assert all(seed.balance(u) == 500 for u in users)


def test_open_challenge_cannot_be_paid(app_module, seed):
    _, database, _ = app_module
    from puosu.errors import InvalidTransition
    from puosu.settlement import finalize_challenge

    challenge_id = seed.challenge()
    with database.SessionLocal() as db:
        result = finalize_challenge(db, challenge_id)
    assert isinstance(result.error, InvalidTransition)


def _completed_tournament(seed, database, users, entry_fee=5, placements=None):
    from puosu.ledger import join_tournament_atomic
    from puosu.results import record_tournament_results
    from puosu.state_machine import start_tournament

    tournament_id = seed.tournament(entry_fee=entry_fee, max_participants=len(users))
    with database.SessionLocal() as db:
        for user in users:
            join_tournament_atomic(db, tournament_id, user)
        start_tournament(db, tournament_id)
        if placements is not None:
            record_tournament_results(db, tournament_id, placements)
    return tournament_id


def test_tournament_prizes_with_vip_discount(app_module, seed):
    _, database, models = app_module
    from datetime import timedelta

    from puosu.helpers import utcnow
    from puosu.settlement import finalize_tournament

    vip = seed.profile(balance=25, is_premium=True, premium_expires_at=utcnow() + timedelta(days=1))
    others = seed.profiles(3, balance=25)
    users = [vip] + others
    placements = [{"user_id": user, "placement": index + 1} for index, user in enumerate(users)]
    tournament_id = _completed_tournament(seed, database, users, entry_fee=25, placements=placements)

    with database.SessionLocal() as db:
        report = finalize_tournament(db, tournament_id).value

    # 100.00 pool, 4 registrants: 70/30 split, 5% fee for VIP and 10% otherwise
    assert seed.balance(vip) == 6650
    assert seed.balance(others[0]) == 2700
    assert seed.balance(others[1]) == 0
    assert report.platform_fee == 6.5
    tournament = seed.get(models.Tournament, tournament_id)
    assert tournament.prizes_distributed is True
    assert tournament.winner_id == vip
    assert _platform_fees(database, models, tournament_id=tournament_id) == 650


def test_tournament_prizes_twice(app_module, seed):
    _, database, _ = app_module
    from puosu.errors import AlreadySettled
    from puosu.settlement import distribute_tournament_prizes

    users = seed.profiles(2, balance=5)
    placements = [{"user_id": users[1], "placement": 1}, {"user_id": users[0], "placement": 2}]
    tournament_id = _completed_tournament(seed, database, users, placements=placements)

    with database.SessionLocal() as db:
        distribute_tournament_prizes(db, tournament_id)
        with pytest.raises(AlreadySettled):
            distribute_tournament_prizes(db, tournament_id)

    assert seed.balance(users[1]) == 900
    assert seed.balance(users[0]) == 0


def test_emergency_stop_partial_refund(app_module, seed):
    _, database, models = app_module
    from puosu.settlement import emergency_stop_tournament

    users = seed.profiles(2, balance=25)
    tournament_id = _completed_tournament(seed, database, users, entry_fee=25)

    with database.SessionLocal() as db:
        report = emergency_stop_tournament(db, tournament_id, "server outage", "partial")

    assert report.total_refunded == 25.0
    assert report.platform_fee == 25.0
    assert all(seed.balance(u) == 1250 for u in users)
    tournament = seed.get(models.Tournament, tournament_id)
    assert tournament.status == "cancelled"
    assert tournament.total_refunded_cents == 2500
    with database.SessionLocal() as db:
        statuses = {m.status for m in db.query(models.TournamentMatch).filter_by(tournament_id=tournament_id)}
        assert statuses == {"cancelled"}
        action = db.query(models.AutomatedAction).filter_by(automation_type="emergency_tournament_stop").one()
        assert action.action_type == "tournament_stopped"

    with database.SessionLocal() as db:
        again = emergency_stop_tournament(db, tournament_id, "server outage", "partial")
        stops = db.query(models.AutomatedAction).filter_by(automation_type="emergency_tournament_stop").count()
    assert again.already_done is True
    assert stops == 1
    assert all(seed.balance(u) == 1250 for u in users)


def test_emergency_stop_after_prizes_is_rejected(app_module, seed):
    _, database, _ = app_module
    from puosu.errors import AlreadySettled
    from puosu.settlement import distribute_tournament_prizes, emergency_stop_tournament

    users = seed.profiles(2, balance=5)
    placements = [{"user_id": users[0], "placement": 1}, {"user_id": users[1], "placement": 2}]
    tournament_id = _completed_tournament(seed, database, users, placements=placements)
    with database.SessionLocal() as db:
        distribute_tournament_prizes(db, tournament_id)
        with pytest.raises(AlreadySettled):
            emergency_stop_tournament(db, tournament_id, "too late")
