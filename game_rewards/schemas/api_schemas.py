from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from game_rewards.config import GameProvider
from game_rewards.models import ReconciliationStatus, ReportStatus


class GameStartRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    provider: GameProvider
    gameId: str = Field(..., min_length=1)


class GameStartResponse(BaseModel):
    success: bool = True
    sessionToken: str
    launchUrl: str
    sdkConfig: dict[str, Any]
    expiresAt: datetime


class CallbackResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    transactionId: Optional[str] = None
    pointsCredited: int = 0
    isDuplicate: bool = False
    error: Optional[str] = None


class ReportReviewRequest(BaseModel):
    status: ReportStatus = ReportStatus.REVIEWED
    notes: Optional[str] = None


class ReconciliationUpdateRequest(BaseModel):
    status: ReconciliationStatus
    notes: Optional[str] = None
