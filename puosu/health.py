from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from puosu.config import WalletReason, settings
from puosu.db import record_action
from puosu.helpers import from_cents, isoformat, to_cents, utcnow
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.simulation import MARKET_ENGINE

logger = get_logger(__name__)


def collect_metrics(db: Session, now: datetime) -> dict:
    since = now - timedelta(hours=24)
    cycles = (
        db.query(models.AutomatedAction)
        .filter(models.AutomatedAction.automation_type == MARKET_ENGINE)
        .filter(models.AutomatedAction.created_at >= since)
        .all()
    )
    successes = sum(1 for cycle in cycles if cycle.success)
    durations = [
        (cycle.action_data or {}).get("duration_ms")
        for cycle in cycles
        if (cycle.action_data or {}).get("duration_ms") is not None
    ]

    test_users = db.query(models.Profile).filter(models.Profile.is_test_account.is_(True))
    funded = test_users.filter(models.Profile.wallet_balance_cents >= to_cents(settings.sim_min_balance)).count()
    avg_balance = db.query(func.avg(models.Profile.wallet_balance_cents)).filter(
        models.Profile.is_test_account.is_(True)
    ).scalar()

    payout_count, payout_cents = (
        db.query(func.count(models.Transaction.id), func.coalesce(func.sum(models.Transaction.amount_cents), 0))
        .filter(models.Transaction.type.in_([WalletReason.CHALLENGE_PAYOUT.value, WalletReason.TOURNAMENT_PRIZE.value]))
        .filter(models.Transaction.created_at >= since)
        .one()
    )

    return {
        "market_engine": {
            # No cycles in the window is not a failure.
            "success_rate": round(successes / len(cycles) * 100, 2) if cycles else 100.0,
            "avg_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
            "total_cycles_24h": len(cycles),
        },
        "player_pool": {
            "total_test_users": test_users.count(),
            "active_balance_users": funded,
            "avg_balance": round(from_cents(int(avg_balance or 0)), 2),
        },
        "financial_integrity": {
            "successful_payouts_24h": payout_count,
            "total_payout_amount_24h": from_cents(int(payout_cents)),
        },
    }


def system_status(metrics: dict) -> str:
    engine = metrics["market_engine"]
    pool = metrics["player_pool"]
    if engine["success_rate"] < settings.health_min_success_rate or pool["active_balance_users"] < settings.health_min_active_users:
        return "critical"
    if (
        engine["success_rate"] < settings.health_warn_success_rate
        or pool["active_balance_users"] < settings.health_warn_active_users
        or engine["avg_duration_ms"] > settings.health_warn_avg_duration_ms
    ):
        return "warning"
    return "healthy"


def raise_alert(db: Session, alert_type: str, severity: str, message: str, details: dict) -> tuple[models.SystemAlert, bool]:
    """Open an alert unless an unresolved one of the same type already exists."""
    existing = (
        db.query(models.SystemAlert)
        .filter(models.SystemAlert.alert_type == alert_type)
        .filter(models.SystemAlert.resolved.is_(False))
        .first()
    )
    if existing is not None:
        return existing, False
    alert = models.SystemAlert(alert_type=alert_type, severity=severity, message=message, details=details)
    db.add(alert)
    db.commit()
    logger.warning("Generated %s alert: %s", severity, alert_type)
    return alert, True


def recommendations(metrics: dict, status: str) -> list[str]:
    engine = metrics["market_engine"]
    pool = metrics["player_pool"]
    advice = []
    if status == "critical":
        advice.append("CRITICAL: Add more test users immediately")
        advice.append("CRITICAL: Review market engine logs for failures")
    if engine["success_rate"] < settings.health_warn_success_rate:
        advice.append("Investigate recent market engine failures")
    if pool["active_balance_users"] < settings.health_warn_active_users:
        advice.append("Top up test user wallets or add more test users")
    if engine["avg_duration_ms"] > settings.health_warn_avg_duration_ms:
        advice.append("Investigate slow market engine cycles")
    if not advice:
        advice.append("System is running optimally")
    return advice


def run_health_check(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    metrics = collect_metrics(db, now)
    status = system_status(metrics)
    engine = metrics["market_engine"]
    pool = metrics["player_pool"]

    checks = [
        (
            engine["success_rate"] < settings.health_min_success_rate,
            "low_success_rate",
            "critical",
            f"Market engine success rate dropped to {engine['success_rate']}%",
            {"success_rate": engine["success_rate"]},
        ),
        (
            pool["active_balance_users"] < settings.health_min_active_users,
            "insufficient_players",
            "high",
            f"Only {pool['active_balance_users']} active test users available",
            {"active_users": pool["active_balance_users"]},
        ),
        (
            engine["avg_duration_ms"] > settings.health_max_avg_duration_ms,
            "high_latency",
            "medium",
            f"Average execution time: {engine['avg_duration_ms']}ms",
            {"avg_duration_ms": engine["avg_duration_ms"]},
        ),
    ]
    generated = []
    for triggered, alert_type, severity, message, details in checks:
        if not triggered:
            continue
        alert, created = raise_alert(db, alert_type, severity, message, details)
        if created:
            generated.append({"id": alert.id, "type": alert_type, "severity": severity})

    critical = (
        db.query(models.SystemAlert)
        .filter(models.SystemAlert.resolved.is_(False))
        .filter(models.SystemAlert.severity == "critical")
        .order_by(models.SystemAlert.created_at.desc())
        .limit(10)
        .all()
    )
    report = {
        "success": True,
        "timestamp": isoformat(now),
        "platformHealth": {**metrics, "system_status": status},
        "criticalAlerts": [
            {"id": a.id, "type": a.alert_type, "message": a.message, "createdAt": isoformat(a.created_at)}
            for a in critical
        ],
        "alertsGenerated": generated,
        "recommendations": recommendations(metrics, status),
        "nextCheckIn": isoformat(now + timedelta(minutes=5)),
    }
    record_action(
        db,
        "platform_health_monitor",
        "health_check",
        True,
        {"system_status": status, "alerts_generated": len(generated), **metrics},
    )
    logger.info("Platform health %s, %s alerts generated", status, len(generated))
    return report
