from typing import Any, Optional

from pydantic import BaseModel

from game_rewards.config import GameProvider, ValueType


class ParsedCallback(BaseModel):
    providerTransactionId: str
    userId: str
    rewardValue: float
    gameId: Optional[str] = None
    signature: str = ""
    sessionToken: Optional[str] = None
    rawPayload: dict[str, Any]


class CreditMetadata(BaseModel):
    provider: GameProvider
    providerTransactionId: str
    rawValue: float
    valueType: ValueType
    gameId: Optional[str] = None
    sessionId: Optional[str] = None
    requestId: Optional[str] = None
    signatureValid: bool = True
    fraudSignals: list[str] = []

    @classmethod
    def from_parsed_callback(
        cls,
        provider: GameProvider,
        value_type: ValueType,
        parsed: ParsedCallback,
        request_id: str,
        session_id: Optional[str] = None,
        fraud_signals: Optional[list[str]] = None,
    ) -> "CreditMetadata":
        return cls(
            provider=provider,
            providerTransactionId=parsed.providerTransactionId,
            rawValue=parsed.rewardValue,
            valueType=value_type,
            gameId=parsed.gameId,
            sessionId=session_id,
            requestId=request_id,
            signatureValid=True,
            fraudSignals=fraud_signals or [],
        )
