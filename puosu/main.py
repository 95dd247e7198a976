import asyncio
import random
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from puosu.clients.game_stats_client import GameStatsClient
from puosu.config import settings
from puosu.database import SessionLocal, engine, get_db
from puosu.db import get_or_create_idempotency, store_idempotency
from puosu.diagnostics import DiagnosticsBuffer
from puosu.disputes import resolve_disputes, submit_proof
from puosu.errors import PuosuError
from puosu.health import run_health_check
from puosu.helpers import from_cents, hash_request, serialize_action, serialize_challenge
from puosu.ledger import join_challenge_atomic, join_tournament_atomic
from puosu.logging_config import get_logger
from puosu.models import models
from puosu.orchestrator import background_automation_worker, run_tournament_automation, run_wallet_payouts
from puosu.reconciliation import generate_reconciliation_csv
from puosu.result import Err
from puosu.results import record_challenge_results, record_tournament_results
from puosu.schemas import (
    DistributePrizesRequest,
    EmergencyStopRequest,
    JoinChallengeRequest,
    JoinResponse,
    JoinTournamentRequest,
    ManualRunRequest,
    MatchFailureRequest,
    ProcessPayoutsRequest,
    ReportResultsRequest,
    StartChallengeRequest,
    SubmitProofRequest,
    TournamentResultsRequest,
    TrendingRequest,
)
from puosu.security import require_bearer_token
from puosu.settlement import emergency_stop_tournament, finalize_challenge, finalize_tournament
from puosu.simulation import run_market_cycle
from puosu.state_machine import start_challenge
from puosu.trending import run_trending_games

logger = get_logger(__name__)

models.Base.metadata.create_all(bind=engine)
app = FastAPI(title="PUOSU Automation Core")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.diagnostics = DiagnosticsBuffer(settings.diagnostics_capacity)
app.state.game_stats_client = GameStatsClient(diagnostics=app.state.diagnostics)


def get_game_stats_client(request: Request) -> GameStatsClient:
    return request.app.state.game_stats_client


def get_rng() -> random.Random:
    return random.Random()


@app.exception_handler(PuosuError)
async def puosu_error_handler(request: Request, exc: PuosuError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "; ".join(messages), "code": "invalid_request"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    # Runs outside the CORS middleware, so the header is set here.
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    headers = {}
    origin = request.headers.get("origin")
    if "*" in settings.cors_allowed_origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin in settings.cors_allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(exc) or exc.__class__.__name__, "code": "internal_error"},
        headers=headers,
    )


@app.on_event("startup")
async def startup_event():
    if not settings.automation_enabled:
        return
    logger.info("Starting PUOSU background automation worker")
    loop = asyncio.get_event_loop()
    loop.create_task(background_automation_worker(SessionLocal))


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.game_stats_client.aclose()
    app.state.diagnostics.clear()


def _replay(db: Session, idempotency_key: Optional[str], body: dict):
    """Stored response for a repeated Idempotency-Key, plus the body hash to store under."""
    if not idempotency_key:
        return None, None
    body_hash = hash_request(body)
    return get_or_create_idempotency(db, idempotency_key, body_hash), body_hash


def _remember(db: Session, idempotency_key: Optional[str], body_hash: Optional[str], response: dict) -> dict:
    if idempotency_key:
        store_idempotency(db, idempotency_key, body_hash, response)
    return response


def _unwrap(result):
    if isinstance(result, Err):
        raise result.error
    return result.value


@app.options("/{path:path}", include_in_schema=False)
async def preflight(path: str):
    return Response(status_code=200)


@app.post("/functions/atomic-market-engine")
async def atomic_market_engine(
    request: ManualRunRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    rng: random.Random = Depends(get_rng),
):
    return await run_market_cycle(db, rng=rng, allow_crash=False, manual=request.manual)


@app.post("/functions/sim-runner")
async def sim_runner(
    request: ManualRunRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    rng: random.Random = Depends(get_rng),
):
    return await run_market_cycle(db, rng=rng, allow_crash=True, manual=request.manual)


@app.post("/functions/join-challenge", response_model=JoinResponse)
async def join_challenge(
    request: JoinChallengeRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    existing, body_hash = _replay(db, idempotency_key, body)
    if existing:
        return existing
    participant = join_challenge_atomic(db, request.challengeId, request.userId, request.stakeAmount)
    challenge = db.get(models.Challenge, request.challengeId)
    profile = db.get(models.Profile, request.userId)
    response = {
        "success": True,
        "participantId": participant.id,
        "newBalance": from_cents(profile.wallet_balance_cents),
        "totalPot": from_cents(challenge.total_pot_cents),
    }
    return _remember(db, idempotency_key, body_hash, response)


@app.post("/functions/join-tournament", response_model=JoinResponse)
async def join_tournament(
    request: JoinTournamentRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    existing, body_hash = _replay(db, idempotency_key, body)
    if existing:
        return existing
    participant = join_tournament_atomic(db, request.tournamentId, request.userId)
    tournament = db.get(models.Tournament, request.tournamentId)
    profile = db.get(models.Profile, request.userId)
    response = {
        "success": True,
        "participantId": participant.id,
        "newBalance": from_cents(profile.wallet_balance_cents),
        "prizePool": from_cents(tournament.prize_pool_cents),
    }
    return _remember(db, idempotency_key, body_hash, response)


@app.post("/functions/start-challenge")
async def start_challenge_route(
    request: StartChallengeRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    changed = start_challenge(db, request.challengeId)
    challenge = db.get(models.Challenge, request.challengeId)
    return {"success": True, "changed": changed, "challenge": serialize_challenge(challenge)}


@app.post("/functions/report-results")
async def report_results(
    request: ReportResultsRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    lines = [
        {
            "user_id": line.userId,
            "score": line.score,
            "kills": line.kills,
            "deaths": line.deaths,
            "assists": line.assists,
            "damage": line.damage,
            "placement": line.placement,
        }
        for line in request.results
    ]
    stats = record_challenge_results(db, request.challengeId, lines)
    return {
        "success": True,
        "challengeId": request.challengeId,
        "results": [{"userId": s.user_id, "placement": s.placement, "score": s.score} for s in stats],
    }


@app.post("/functions/process-match-payouts")
async def process_match_payouts(
    request: ProcessPayoutsRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    existing, body_hash = _replay(db, idempotency_key, body)
    if existing:
        return existing
    report = _unwrap(finalize_challenge(db, request.challengeId, fee_rate=request.feeRate))
    return _remember(db, idempotency_key, body_hash, {"success": True, **report.to_dict()})


@app.post("/functions/handle-match-failure")
async def handle_match_failure(
    request: MatchFailureRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    report = _unwrap(finalize_challenge(db, request.challengeId, failure_reason=request.reason))
    return {"success": True, **report.to_dict()}


@app.post("/functions/automated-wallet-payouts")
async def automated_wallet_payouts(
    request: ManualRunRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    return {**run_wallet_payouts(db), "manual": request.manual}


@app.post("/functions/distribute-tournament-prizes")
async def distribute_tournament_prizes_route(
    request: DistributePrizesRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    existing, body_hash = _replay(db, idempotency_key, body)
    if existing:
        return existing
    report = _unwrap(finalize_tournament(db, request.tournamentId, fee_rate=request.feeRate))
    return _remember(db, idempotency_key, body_hash, {"success": True, **report.to_dict()})


@app.post("/functions/record-tournament-results")
async def record_tournament_results_route(
    request: TournamentResultsRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    placements = [{"user_id": p.userId, "placement": p.placement} for p in request.placements]
    changed = record_tournament_results(db, request.tournamentId, placements)
    return {"success": True, "tournamentId": request.tournamentId, "changed": changed}


@app.post("/functions/tournament-automation")
async def tournament_automation(
    request: ManualRunRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    return {**run_tournament_automation(db), "manual": request.manual}


@app.post("/functions/emergency-tournament-stop")
async def emergency_tournament_stop(
    request: EmergencyStopRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body = request.model_dump()
    existing, body_hash = _replay(db, idempotency_key, body)
    if existing:
        return existing
    report = emergency_stop_tournament(db, request.tournamentId, request.reason, request.refundType)
    response = {
        "success": True,
        "message": f"Tournament stopped. Refunded {len(report.lines)} participants.",
        "refundType": request.refundType,
        **report.to_dict(),
    }
    return _remember(db, idempotency_key, body_hash, response)


@app.post("/functions/resolve-disputes")
async def resolve_disputes_route(
    request: ManualRunRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    return resolve_disputes(db)


@app.post("/functions/submit-proof")
async def submit_proof_route(
    request: SubmitProofRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    proof = submit_proof(
        db,
        submitted_by=request.submittedBy,
        proof_type=request.proofType,
        proof_url=request.proofUrl,
        stats_claimed=request.statsClaimed,
        challenge_id=request.challengeId,
        tournament_match_id=request.tournamentMatchId,
    )
    return {"success": True, "proofId": proof.id, "verificationStatus": proof.verification_status}


@app.post("/functions/platform-health-monitor")
async def platform_health_monitor(
    request: ManualRunRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    return run_health_check(db)


@app.post("/functions/trending-games-orchestrator")
async def trending_games_orchestrator(
    request: TrendingRequest,
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
    client: GameStatsClient = Depends(get_game_stats_client),
):
    return await run_trending_games(db, client, action=request.action, force_sync=request.forceSync)


@app.get("/automation/actions")
async def list_actions(
    automationType: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    _auth=Depends(require_bearer_token),
    db: Session = Depends(get_db),
):
    query = db.query(models.AutomatedAction)
    if automationType:
        query = query.filter(models.AutomatedAction.automation_type == automationType)
    records = query.order_by(models.AutomatedAction.created_at.desc(), models.AutomatedAction.id.desc()).limit(limit).all()
    return [serialize_action(r) for r in records]


@app.get("/diagnostics")
async def diagnostics(request: Request, _auth=Depends(require_bearer_token)):
    buffer = request.app.state.diagnostics
    return {"capacity": buffer.capacity, "entries": buffer.snapshot()}


@app.get("/reconciliation_data")
async def download_reconciliation_csv(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, mismatch_count = generate_reconciliation_csv(db)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": 'attachment; filename="reconciliation.csv"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
