from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ManualRunRequest(StrictModel):
    manual: bool = False


class JoinChallengeRequest(StrictModel):
    challengeId: str
    userId: str
    stakeAmount: float = Field(gt=0)


class JoinTournamentRequest(StrictModel):
    tournamentId: str
    userId: str


class JoinResponse(BaseModel):
    success: bool
    participantId: int
    newBalance: float
    totalPot: Optional[float] = None
    prizePool: Optional[float] = None


class StartChallengeRequest(StrictModel):
    challengeId: str


class ResultLine(StrictModel):
    userId: str
    score: int = 0
    kills: int = Field(0, ge=0)
    deaths: int = Field(0, ge=0)
    assists: int = Field(0, ge=0)
    damage: int = Field(0, ge=0)
    placement: Optional[int] = Field(None, ge=1)


class ReportResultsRequest(StrictModel):
    challengeId: str
    results: list[ResultLine] = Field(min_length=1)


class ProcessPayoutsRequest(StrictModel):
    challengeId: str
    feeRate: Optional[float] = Field(None, ge=0, lt=1)


class MatchFailureRequest(StrictModel):
    challengeId: str
    reason: str = "match failure"


class DistributePrizesRequest(StrictModel):
    tournamentId: str
    feeRate: Optional[float] = Field(None, ge=0, lt=1)


class Placement(StrictModel):
    userId: str
    placement: int = Field(ge=1)


class TournamentResultsRequest(StrictModel):
    tournamentId: str
    placements: list[Placement] = Field(min_length=1)


class EmergencyStopRequest(StrictModel):
    tournamentId: str
    reason: str
    refundType: Literal["full", "partial"] = "full"


class SubmitProofRequest(StrictModel):
    submittedBy: str
    proofType: str
    proofUrl: str
    statsClaimed: dict
    challengeId: Optional[str] = None
    tournamentMatchId: Optional[int] = None

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.challengeId and self.tournamentMatchId is None:
            raise ValueError("challengeId or tournamentMatchId is required")
        return self


class TrendingRequest(StrictModel):
    action: str = "run_trending_automation"
    forceSync: bool = False
