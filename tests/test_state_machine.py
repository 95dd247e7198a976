import pytest


def _join_all(database, challenge_id, users, stake=5):
    from puosu.ledger import join_challenge_atomic

    with database.SessionLocal() as db:
        for user in users:
            join_challenge_atomic(db, challenge_id, user, stake)


def test_start_challenge_needs_two_participants(app_module, seed):
    _, database, models = app_module
    from puosu.errors import InsufficientParticipants
    from puosu.state_machine import start_challenge

    first, second = seed.profiles(2)
    challenge_id = seed.challenge()
    _join_all(database, challenge_id, [first])

    with database.SessionLocal() as db:
        with pytest.raises(InsufficientParticipants):
            start_challenge(db, challenge_id)

    _join_all(database, challenge_id, [second])
    with database.SessionLocal() as db:
        assert start_challenge(db, challenge_id) is True
        assert start_challenge(db, challenge_id) is False

    challenge = seed.get(models.Challenge, challenge_id)
    assert challenge.status == "active"
    assert challenge.start_time is not None


def test_transitions_are_reentrant_and_reject_illegal_moves(app_module, seed):
    _, database, _ = app_module
    from puosu.config import ChallengeStatus
    from puosu.errors import InvalidTransition, NotFound
    from puosu.state_machine import transition_challenge

    challenge_id = seed.challenge(status="completed")
    with database.SessionLocal() as db:
        assert transition_challenge(db, challenge_id, ChallengeStatus.COMPLETED) is False
        with pytest.raises(InvalidTransition):
            transition_challenge(db, challenge_id, ChallengeStatus.ACTIVE)
        with pytest.raises(InvalidTransition):
            transition_challenge(db, challenge_id, ChallengeStatus.CANCELLED)
        with pytest.raises(NotFound):
            transition_challenge(db, "missing", ChallengeStatus.ACTIVE)


def test_tournament_lifecycle_with_bracket(app_module, seed):
    _, database, models = app_module
    from puosu.ledger import join_tournament_atomic
    from puosu.state_machine import open_registration, start_tournament

    users = seed.profiles(3)
    tournament_id = seed.tournament(status="upcoming")
    with database.SessionLocal() as db:
        assert open_registration(db, tournament_id) is True
        for user in users:
            join_tournament_atomic(db, tournament_id, user)
        assert start_tournament(db, tournament_id) is True
        assert start_tournament(db, tournament_id) is False

        matches = (
            db.query(models.TournamentMatch)
            .filter_by(tournament_id=tournament_id)
            .order_by(models.TournamentMatch.id)
            .all()
        )
        assert [(m.player1_id, m.player2_id) for m in matches] == [(users[0], users[1]), (users[2], None)]
        assert matches[0].status == "pending"
        assert matches[1].status == "completed"
        assert matches[1].winner_id == users[2]

    assert seed.get(models.Tournament, tournament_id).status == "ongoing"


def test_tournament_start_below_quorum(app_module, seed):
    _, database, models = app_module
    from puosu.errors import InsufficientParticipants
    from puosu.ledger import join_tournament_atomic
    from puosu.state_machine import start_tournament

    user = seed.profile()
    tournament_id = seed.tournament()
    with database.SessionLocal() as db:
        join_tournament_atomic(db, tournament_id, user)
        with pytest.raises(InsufficientParticipants):
            start_tournament(db, tournament_id)

    assert seed.get(models.Tournament, tournament_id).status == "registration_open"


def test_cancel_open_matches(app_module, seed):
    _, database, models = app_module
    from puosu.state_machine import cancel_open_matches

    tournament_id = seed.tournament(status="ongoing")
    with database.SessionLocal() as db:
        db.add_all(
            [
                models.TournamentMatch(tournament_id=tournament_id, status="pending"),
                models.TournamentMatch(tournament_id=tournament_id, status="in_progress"),
                models.TournamentMatch(tournament_id=tournament_id, status="completed"),
            ]
        )
        db.commit()
        assert cancel_open_matches(db, tournament_id) == 2
        db.commit()
        statuses = sorted(m.status for m in db.query(models.TournamentMatch).all())
        assert statuses == ["cancelled", "cancelled", "completed"]
