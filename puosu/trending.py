"""
Trending games orchestrator: pulls match results for active challenges of the
games that have an enabled stats automation, and settles what is complete.
"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from puosu.clients.game_stats_client import GameStatsClient
from puosu.config import ChallengeStatus, ProofStatus
from puosu.db import record_action
from puosu.errors import PuosuError
from puosu.helpers import isoformat, utcnow
from puosu.ledger import detect_suspicious_stats
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.result import Err
from puosu.results import challenge_participant_ids, record_challenge_results, results_complete
from puosu.settlement import finalize_challenge

logger = get_logger(__name__)

GAME_SLUGS = {
    "fortnite_api": "fortnite",
    "valorant_api": "valorant",
    "warzone_api": "call_of_duty_warzone",
    "counter_strike_2_api": "counter_strike_2",
    "league_of_legends_api": "league_of_legends",
    "overwatch_2_api": "overwatch_2",
}


def game_slug_for(config: models.AutomationConfig) -> str:
    data = config.config_data or {}
    return data.get("game_slug") or GAME_SLUGS.get(config.automation_type) or config.automation_type.removesuffix("_api")


def should_run(config: models.AutomationConfig, now: datetime) -> bool:
    if config.last_run_at is None:
        return True
    return now - config.last_run_at >= timedelta(minutes=config.run_frequency_minutes)


def _flag_for_review(db: Session, challenge_id: str, lines: list[dict]) -> int:
    flagged = 0
    for line in lines:
        if not detect_suspicious_stats(line["user_id"], line):
            continue
        exists = (
            db.query(models.ProofSubmission)
            .filter_by(challenge_id=challenge_id, submitted_by=line["user_id"], proof_type="game_api")
            .first()
        )
        if exists is None:
            db.add(
                models.ProofSubmission(
                    challenge_id=challenge_id,
                    submitted_by=line["user_id"],
                    proof_type="game_api",
                    proof_url=f"game-stats://{challenge_id}/{line['user_id']}",
                    stats_claimed=line,
                    verification_status=ProofStatus.FLAGGED.value,
                )
            )
        flagged += 1
    db.commit()
    return flagged


async def _process_challenge(db: Session, client: GameStatsClient, slug: str, challenge_id: str) -> str:
    """Returns the challenge outcome: settled, refunded, flagged, unavailable or error."""
    if not results_complete(db, challenge_id):
        fetched = await client.fetch_match_results(slug, challenge_id)
        if isinstance(fetched, Err):
            return "unavailable"
        lines = fetched.value
        if {line["user_id"] for line in lines} != set(challenge_participant_ids(db, challenge_id)):
            logger.info("Incomplete results for challenge %s, leaving for next sweep", challenge_id)
            return "unavailable"
        if _flag_for_review(db, challenge_id, lines):
            logger.warning("Challenge %s routed to moderator review", challenge_id)
            return "flagged"
        record_challenge_results(db, challenge_id, lines)

    result = finalize_challenge(db, challenge_id, automation_type="trending_games_orchestrator")
    if isinstance(result, Err):
        return "error"
    return "settled" if result.value.outcome == "paid" else "refunded"


async def run_trending_games(
    db: Session,
    client: GameStatsClient,
    action: str = "run_trending_automation",
    force_sync: bool = False,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    configs = (
        db.query(models.AutomationConfig)
        .filter(models.AutomationConfig.is_enabled.is_(True))
        .filter(models.AutomationConfig.automation_type.like("%_api"))
        .order_by(models.AutomationConfig.automation_type.asc())
        .all()
    )
    logger.info("Found %s enabled stats automations", len(configs))

    results = []
    for config in configs:
        data = config.config_data or {}
        if not (force_sync or should_run(config, now)):
            logger.info("Skipping %s - not due for run", config.automation_type)
            continue
        slug = game_slug_for(config)
        counts = {"settled": 0, "refunded": 0, "flagged": 0, "unavailable": 0, "error": 0}
        try:
            challenge_ids = [
                row.id
                for row in db.query(models.Challenge.id)
                .join(models.Game, models.Game.id == models.Challenge.game_id)
                .filter(models.Game.name == slug)
                .filter(models.Challenge.status == ChallengeStatus.ACTIVE.value)
                .all()
            ]
            for challenge_id in challenge_ids:
                try:
                    counts[await _process_challenge(db, client, slug, challenge_id)] += 1
                except (PuosuError, SQLAlchemyError) as exc:
                    db.rollback()
                    logger.error("Error processing challenge %s for %s: %s", challenge_id, slug, exc)
                    counts["error"] += 1

            config.last_run_at = now
            config.next_run_at = now + timedelta(minutes=config.run_frequency_minutes)
            db.commit()
            results.append(
                {
                    "game": data.get("game_name", slug),
                    "automationType": config.automation_type,
                    "status": "completed",
                    "processedChallenges": len(challenge_ids),
                    "trendScore": data.get("trend_score", 0),
                    "priority": data.get("priority", "medium"),
                    **counts,
                }
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Error processing automation %s: %s", config.automation_type, exc)
            results.append(
                {
                    "game": data.get("game_name", slug),
                    "automationType": config.automation_type,
                    "status": "error",
                    "message": str(exc),
                    "processedChallenges": 0,
                }
            )

    total_errors = sum(r["error"] if r["status"] == "completed" else 1 for r in results)
    summary = {
        "totalAutomations": len(results),
        "totalProcessed": sum(r["processedChallenges"] for r in results),
        "totalSettled": sum(r.get("settled", 0) for r in results),
        "totalFlagged": sum(r.get("flagged", 0) for r in results),
        "totalErrors": total_errors,
        "timestamp": isoformat(now),
    }
    record_action(
        db,
        "trending_games_orchestrator",
        action,
        total_errors == 0,
        {**summary, "gamesProcessed": [r["game"] for r in results], "forceSync": force_sync},
    )
    return {
        "success": True,
        "action": action,
        "results": results,
        "summary": summary,
        "nextScheduledRuns": [
            {
                "game": (config.config_data or {}).get("game_name"),
                "nextRun": isoformat(config.next_run_at),
                "frequencyMinutes": config.run_frequency_minutes,
            }
            for config in configs
        ],
    }
