from datetime import timedelta


def _dispute(
    database, models, age, type="gameplay", evidence=None, wager_id=None, status="pending", user_id="user-1", match_id=None
):
    from puosu.helpers import utcnow

    created = utcnow() - age
    with database.SessionLocal() as db:
        dispute = models.Dispute(
            user_id=user_id,
            type=type,
            title=f"{type} dispute",
            status=status,
            evidence_urls=evidence,
            wager_id=wager_id,
            tournament_match_id=match_id,
            created_at=created,
            updated_at=created,
        )
        db.add(dispute)
        db.commit()
        return dispute.id


def test_resolve_disputes(app_module, seed):
    _, database, models = app_module
    from puosu.helpers import utcnow
    from puosu.disputes import resolve_disputes

    stale_wager = seed.challenge(status="completed")
    with database.SessionLocal() as db:
        wager = db.get(models.Challenge, stale_wager)
        wager.updated_at = utcnow() - timedelta(days=8)
        db.add(models.Transaction(user_id="payer", type="deposit", amount_cents=1000, status="completed"))
        db.commit()

    no_evidence = _dispute(database, models, timedelta(hours=49))
    boundary = _dispute(database, models, timedelta(hours=47))
    payment = _dispute(
        database, models, timedelta(hours=30), type="payment_issue", evidence=["https://x/receipt.png"], user_id="payer"
    )
    old_wager = _dispute(database, models, timedelta(hours=30), evidence=["https://x/clip.mp4"], wager_id=stale_wager)
    fresh = _dispute(database, models, timedelta(hours=12))
    done = _dispute(database, models, timedelta(days=3), status="resolved")

    with database.SessionLocal() as db:
        summary = resolve_disputes(db, now=utcnow())

    assert summary["success"] is True
    assert summary["resolved"] == 3
    assert summary["message"] == "Processed 4 disputes, resolved 3"
    outcomes = {entry["disputeId"]: entry for entry in summary["results"]}
    assert set(outcomes) == {no_evidence, boundary, payment, old_wager}
    assert outcomes[boundary] == {"disputeId": boundary, "resolved": False, "reason": "Requires manual review"}
    assert outcomes[payment]["reason"] == "Recent successful payment found"
    assert outcomes[no_evidence]["reason"] == "No evidence provided within 48 hours"

    for dispute_id in (no_evidence, payment, old_wager):
        dispute = seed.get(models.Dispute, dispute_id)
        assert dispute.status == "resolved"
        assert dispute.resolved_at is not None
        assert dispute.admin_response
    assert seed.get(models.Dispute, fresh).status == "pending"
    assert seed.get(models.Dispute, done).admin_response is None

    with database.SessionLocal() as db:
        activities = db.query(models.Activity).filter_by(activity_type="dispute_resolved").all()
        assert len(activities) == 3
        audit = db.query(models.AutomatedAction).filter_by(automation_type="dispute_resolution").one()
        assert audit.action_data == {"reviewed": 4, "resolved": 3, "failed": 0}


def test_recent_wager_needs_manual_review(app_module, seed):
    _, database, models = app_module
    from puosu.helpers import utcnow
    from puosu.disputes import evaluate_dispute

    wager_id = seed.challenge(status="cancelled")
    dispute_id = _dispute(database, models, timedelta(hours=30), evidence=["https://x/1.png"], wager_id=wager_id)
    with database.SessionLocal() as db:
        verdict = evaluate_dispute(db, db.get(models.Dispute, dispute_id), utcnow())
    assert verdict.resolve is False
    assert verdict.reason == "Requires manual review"


def test_stale_tournament_match_dispute_is_resolved(app_module, seed):
    _, database, models = app_module
    from puosu.helpers import utcnow
    from puosu.disputes import evaluate_dispute

    now = utcnow()
    stale = seed.tournament(status="cancelled")
    recent = seed.tournament(status="completed")
    with database.SessionLocal() as db:
        db.get(models.Tournament, stale).updated_at = now - timedelta(days=10)
        db.get(models.Tournament, recent).updated_at = now - timedelta(days=2)
        stale_match = models.TournamentMatch(tournament_id=stale, player1_id="a", player2_id="b")
        recent_match = models.TournamentMatch(tournament_id=recent, player1_id="a", player2_id="b")
        db.add_all([stale_match, recent_match])
        db.commit()
        stale_match_id, recent_match_id = stale_match.id, recent_match.id

    evidence = ["https://x/clip.mp4"]
    on_stale = _dispute(database, models, timedelta(hours=30), evidence=evidence, match_id=stale_match_id)
    on_recent = _dispute(database, models, timedelta(hours=30), evidence=evidence, match_id=recent_match_id)
    on_missing = _dispute(database, models, timedelta(hours=30), evidence=evidence, match_id=9999)

    with database.SessionLocal() as db:
        verdicts = {
            dispute_id: evaluate_dispute(db, db.get(models.Dispute, dispute_id), now)
            for dispute_id in (on_stale, on_recent, on_missing)
        }

    assert verdicts[on_stale].resolve is True
    assert verdicts[on_stale].reason == "Related wager completed/cancelled more than 7 days ago"
    assert verdicts[on_recent].resolve is False
    assert verdicts[on_missing].resolve is False


def test_submit_proof_flags_suspicious_stats(app_module):
    _, database, _ = app_module
    from puosu.disputes import submit_proof

    with database.SessionLocal() as db:
        flagged = submit_proof(
            db, "user-1", "screenshot", "https://x/1.png", {"kills": 25, "deaths": 2, "score": 3000, "damage": 5000},
            challenge_id="c-1",
        )
        clean = submit_proof(
            db, "user-2", "screenshot", "https://x/2.png", {"kills": 12, "deaths": 8, "score": 2500, "damage": 3000},
            challenge_id="c-1",
        )
        unreadable = submit_proof(
            db, "user-3", "video", "https://x/3.mp4", {"kills": "lots"}, tournament_match_id=4
        )

        assert flagged.verification_status == "flagged"
        assert clean.verification_status == "pending"
        assert unreadable.verification_status == "pending"
        assert unreadable.tournament_match_id == 4
