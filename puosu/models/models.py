import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from puosu.database import Base
from puosu.helpers import utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"
    user_id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String, nullable=False)
    wallet_balance_cents = Column(Integer, nullable=False, default=0)
    is_test_account = Column(Boolean, nullable=False, default=False)
    is_premium = Column(Boolean, nullable=False, default=False)
    premium_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Game(Base):
    __tablename__ = "games"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, unique=True, nullable=False)  # slug, e.g. "valorant"
    title = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Challenge(Base):
    __tablename__ = "challenges"
    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(String(36), nullable=True)
    game_id = Column(String(36), ForeignKey("games.id"), nullable=True)
    title = Column(String, nullable=False)
    challenge_type = Column(String, nullable=False)  # 1v1|top3
    stake_cents = Column(Integer, nullable=False)
    max_participants = Column(Integer, nullable=False)
    participant_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="open", index=True)
    total_pot_cents = Column(Integer, nullable=False, default=0)
    lobby_id = Column(String, nullable=True)
    is_test = Column(Boolean, nullable=False, default=False)
    winner_id = Column(String(36), nullable=True)
    settled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class ChallengeParticipant(Base):
    __tablename__ = "challenge_participants"
    id = Column(Integer, primary_key=True)
    challenge_id = Column(String(36), ForeignKey("challenges.id"), index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.user_id"), nullable=False)
    stake_paid_cents = Column(Integer, nullable=False)
    joined_at = Column(DateTime, default=utcnow)
    __table_args__ = (UniqueConstraint("challenge_id", "user_id", name="uq_challenge_participant"),)


class ChallengeStats(Base):
    __tablename__ = "challenge_stats"
    id = Column(Integer, primary_key=True)
    challenge_id = Column(String(36), ForeignKey("challenges.id"), index=True, nullable=False)
    user_id = Column(String(36), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    kills = Column(Integer, nullable=False, default=0)
    deaths = Column(Integer, nullable=False, default=0)
    assists = Column(Integer, nullable=False, default=0)
    damage = Column(Integer, nullable=False, default=0)
    placement = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    __table_args__ = (UniqueConstraint("challenge_id", "user_id", name="uq_challenge_stats"),)


class Tournament(Base):
    __tablename__ = "tournaments"
    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    game_mode = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    entry_fee_cents = Column(Integer, nullable=False)
    max_participants = Column(Integer, nullable=False)
    current_participants = Column(Integer, nullable=False, default=0)
    prize_pool_cents = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="upcoming", index=True)
    registration_start = Column(DateTime, nullable=False)
    registration_end = Column(DateTime, nullable=False)
    tournament_start = Column(DateTime, nullable=True)
    automation_enabled = Column(Boolean, nullable=False, default=True)
    tournament_type = Column(String, nullable=True)
    winner_id = Column(String(36), nullable=True)
    prizes_distributed = Column(Boolean, nullable=False, default=False)
    settled_at = Column(DateTime, nullable=True)
    total_refunded_cents = Column(Integer, nullable=False, default=0)
    cancellation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class TournamentParticipant(Base):
    __tablename__ = "tournament_participants"
    id = Column(Integer, primary_key=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id"), index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("profiles.user_id"), nullable=False)
    entry_fee_cents = Column(Integer, nullable=False)
    placement = Column(Integer, nullable=True)
    joined_at = Column(DateTime, default=utcnow)
    __table_args__ = (UniqueConstraint("tournament_id", "user_id", name="uq_tournament_participant"),)


class TournamentMatch(Base):
    __tablename__ = "tournament_matches"
    id = Column(Integer, primary_key=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id"), index=True, nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    player1_id = Column(String(36), nullable=True)
    player2_id = Column(String(36), nullable=True)
    winner_id = Column(String(36), nullable=True)
    loser_id = Column(String(36), nullable=True)
    status = Column(String, nullable=False, default="pending")
    updated_at = Column(DateTime, default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), index=True, nullable=True)  # null for platform lines
    type = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)  # signed
    status = Column(String, nullable=False, default="completed")
    challenge_id = Column(String(36), index=True, nullable=True)
    tournament_id = Column(String(36), index=True, nullable=True)
    description = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Activity(Base):
    __tablename__ = "activities"
    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), index=True, nullable=True)
    activity_type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Dispute(Base):
    __tablename__ = "disputes"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    evidence_urls = Column(JSON, nullable=True)
    wager_id = Column(String(36), nullable=True)
    tournament_match_id = Column(Integer, nullable=True)
    admin_response = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class ProofSubmission(Base):
    __tablename__ = "proof_submissions"
    id = Column(Integer, primary_key=True)
    challenge_id = Column(String(36), nullable=True)
    tournament_match_id = Column(Integer, nullable=True)
    submitted_by = Column(String(36), nullable=False)
    proof_type = Column(String, nullable=False)
    proof_url = Column(String, nullable=False)
    stats_claimed = Column(JSON, nullable=False)
    verification_status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow)


class AutomatedAction(Base):
    __tablename__ = "automated_actions"
    id = Column(Integer, primary_key=True)
    automation_type = Column(String, index=True, nullable=False)
    action_type = Column(String, nullable=False)
    success = Column(Boolean, nullable=False)
    target_id = Column(String(36), nullable=True)
    action_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class AutomationConfig(Base):
    __tablename__ = "automation_config"
    id = Column(Integer, primary_key=True)
    automation_type = Column(String, unique=True, nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    config_data = Column(JSON, nullable=False)
    run_frequency_minutes = Column(Integer, nullable=False, default=15)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)


class SystemAlert(Base):
    __tablename__ = "system_alerts"
    id = Column(Integer, primary_key=True)
    alert_type = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    message = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, index=True, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)
