import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, StrictInt
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-game-stats")

DB_URL = os.environ.get("MOCK_GAME_STATS_DB_URL", "sqlite:///./game_stats.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Game Stats")


class PlayerResult(BaseModel):
    userId: str
    score: StrictInt
    kills: StrictInt
    deaths: StrictInt
    assists: StrictInt = 0
    damage: StrictInt = 0
    placement: Optional[StrictInt] = None


class MatchResults(BaseModel):
    results: List[PlayerResult]


class MatchResult(Base):
    __tablename__ = "match_results"
    id = Column(Integer, primary_key=True)
    game_slug = Column(String, nullable=False)
    match_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    score = Column(Integer, nullable=False)
    kills = Column(Integer, nullable=False)
    deaths = Column(Integer, nullable=False)
    assists = Column(Integer, nullable=False, default=0)
    damage = Column(Integer, nullable=False, default=0)
    placement = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (UniqueConstraint("game_slug", "match_id", "user_id", name="uq_match_player"),)


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _serialize(record: MatchResult) -> dict:
    return {
        "userId": record.user_id,
        "score": record.score,
        "kills": record.kills,
        "deaths": record.deaths,
        "assists": record.assists,
        "damage": record.damage,
        "placement": record.placement,
    }


@app.post("/games/{game_slug}/matches/{match_id}/results")
async def publish_results(game_slug: str, match_id: str, payload: MatchResults, db: Session = Depends(get_db)):
    """
    Seed the result lines a real game API would report for a finished match.
    """
    db.query(MatchResult).filter_by(game_slug=game_slug, match_id=match_id).delete()
    for line in payload.results:
        db.add(
            MatchResult(
                game_slug=game_slug,
                match_id=match_id,
                user_id=line.userId,
                score=line.score,
                kills=line.kills,
                deaths=line.deaths,
                assists=line.assists,
                damage=line.damage,
                placement=line.placement,
            )
        )
    db.commit()
    logger.info("Published %s result lines for %s match %s", len(payload.results), game_slug, match_id)
    return {"accepted": True, "lines": len(payload.results)}


@app.get("/games/{game_slug}/matches/{match_id}/results")
async def get_results(game_slug: str, match_id: str, db: Session = Depends(get_db)):
    records = (
        db.query(MatchResult)
        .filter_by(game_slug=game_slug, match_id=match_id)
        .order_by(MatchResult.id)
        .all()
    )
    if not records:
        raise HTTPException(status_code=404, detail="match results not available")
    logger.info("Serving %s result lines for %s match %s", len(records), game_slug, match_id)
    return {"gameSlug": game_slug, "matchId": match_id, "results": [_serialize(r) for r in records]}


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all published match results.
    """
    db.query(MatchResult).delete()
    db.commit()
    logger.warning("Cleared mock game stats via admin endpoint")
    return {"status": "cleared"}
