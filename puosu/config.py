from enum import Enum
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = "sqlite:///./puosu.db"
    bearer_token: Optional[str] = None
    cors_allowed_origins: list[str] = ["*"]
    game_stats_base_url: str = "http://mock-game-stats:8003"
    game_stats_timeout_seconds: float = 10.0
    rate_limit_per_minute: int = 60
    diagnostics_capacity: int = 200

    # fees
    platform_fee_rate: float = 0.10
    premium_fee_rate: float = 0.05

    # lifecycle
    min_challenge_participants: int = 2
    min_tournament_participants: int = 2
    min_active_tournaments: int = 2
    stuck_tournament_hours: int = 6
    stuck_challenge_hours: int = 6
    tournament_stagger_minutes: int = 10
    registration_window_minutes: int = 45
    tournament_start_delay_minutes: int = 5

    # market engine / simulation
    sim_stake_amount: float = 5.0
    sim_min_balance: float = 5.0
    sim_max_users: int = 8
    sim_crash_rate: float = 0.20
    sim_match_seconds: float = 2.0
    sim_match_jitter_seconds: float = 1.0
    sim_manual_match_seconds: float = 1.0

    # anomaly detection
    max_kd_ratio: float = 10.0
    min_kills_for_kd_check: int = 20
    max_kills: int = 100
    min_damage_per_kill: int = 50
    min_score_per_kill: int = 10

    # disputes
    dispute_review_after_hours: int = 24
    dispute_no_evidence_hours: int = 48
    dispute_payment_lookback_days: int = 7
    dispute_stale_wager_days: int = 7

    # health monitor
    health_min_success_rate: float = 90.0
    health_warn_success_rate: float = 95.0
    health_min_active_users: int = 10
    health_warn_active_users: int = 20
    health_max_avg_duration_ms: int = 20000
    health_warn_avg_duration_ms: int = 15000

    # background worker
    automation_enabled: bool = False
    automation_interval_seconds: float = 300.0


settings = Settings()


class ChallengeStatus(str, Enum):
    OPEN = "open"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChallengeType(str, Enum):
    ONE_V_ONE = "1v1"
    TOP3 = "top3"


class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    REGISTRATION_OPEN = "registration_open"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WalletReason(str, Enum):
    CHALLENGE_ENTRY = "challenge_entry"
    TOURNAMENT_ENTRY = "tournament_entry"
    CHALLENGE_PAYOUT = "challenge_payout"
    TOURNAMENT_PRIZE = "tournament_prize"
    REFUND = "refund"
    PLATFORM_FEE = "platform_fee"


class DisputeStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ProofStatus(str, Enum):
    PENDING = "pending"
    FLAGGED = "flagged"
    VERIFIED = "verified"
    REJECTED = "rejected"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


ACTIVE_TOURNAMENT_STATUSES = (
    TournamentStatus.UPCOMING,
    TournamentStatus.REGISTRATION_OPEN,
    TournamentStatus.ONGOING,
)

# Prize split by registrant count for tournaments: (min_participants, shares)
TOURNAMENT_PRIZE_SPLITS = [
    (8, ("0.50", "0.30", "0.20")),
    (4, ("0.70", "0.30")),
    (0, ("1.00",)),
]

CHALLENGE_PAYOUT_SPLITS = {
    ChallengeType.ONE_V_ONE: ("1.00",),
    ChallengeType.TOP3: ("0.60", "0.30", "0.10"),
}

TOURNAMENT_TEMPLATES = [
    {"name": "Quick Strike", "entry_fee": 5, "max_participants": 8},
    {"name": "Elite Challenge", "entry_fee": 25, "max_participants": 16},
    {"name": "High Stakes", "entry_fee": 50, "max_participants": 12},
]
