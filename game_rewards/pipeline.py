import logging
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from game_rewards.adapters import get_adapter
from game_rewards.config import GameProvider, ProviderRegistry
from game_rewards.contracts.callbacks import CreditMetadata
from game_rewards.conversion import convert_to_points
from game_rewards.errors import CreditingFailed, FraudRejected, InvalidSignature, MalformedCallback, ProviderDisabled
from game_rewards.fraud import FraudGate, log_invalid_signature
from game_rewards.helpers import generate_request_id
from game_rewards.ledger import CreditingLedger
from game_rewards.logging_config import get_logger, log_event
from game_rewards.security import verify_callback_signature
from game_rewards.sessions import SessionManager


logger = get_logger(__name__)


@dataclass
class CallbackResult:
    success: bool
    points_credited: int
    is_duplicate: bool
    transaction_id: Optional[str]
    status: str
    message: str


class CallbackPipeline:
    """
    Processes one provider callback: parse, verify, score, convert, credit.

    Rejections surface as ``GameRewardsError`` subclasses carrying the HTTP
    status the provider should see.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        sessions: SessionManager,
        fraud_gate: FraudGate,
        ledger: CreditingLedger,
        fraud_reject_threshold: int = 50,
    ):
        self.registry = registry
        self.sessions = sessions
        self.fraud_gate = fraud_gate
        self.ledger = ledger
        self.fraud_reject_threshold = fraud_reject_threshold

    def process(
        self,
        db: Session,
        provider: GameProvider,
        payload: dict,
        header_signature: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> CallbackResult:
        request_id = request_id or generate_request_id()
        started = time.monotonic()
        log_event(logger, logging.INFO, "callback_received", requestId=request_id, provider=provider.value)

        if not self.registry.is_enabled(provider):
            raise ProviderDisabled(f"Provider {provider.value} is not enabled")
        config = self.registry.get(provider)
        adapter = get_adapter(provider)

        try:
            parsed = adapter.parse(payload)
        except MalformedCallback as exc:
            log_event(logger, logging.WARNING, "callback_malformed", requestId=request_id, provider=provider.value, error=exc.detail)
            raise

        signature = header_signature or parsed.signature
        signature_valid = verify_callback_signature(adapter, payload, signature, config.webhook_secret)
        log_event(
            logger,
            logging.INFO,
            "signature_verified",
            requestId=request_id,
            provider=provider.value,
            valid=signature_valid,
            transactionId=parsed.providerTransactionId,
        )
        if not signature_valid:
            log_invalid_signature(db, provider, parsed.providerTransactionId, parsed.userId, payload)
            raise InvalidSignature("Invalid signature")

        session = self.sessions.validate_session(db, parsed.sessionToken)
        fraud = self.fraud_gate.check(
            db,
            parsed.userId,
            provider,
            session_user_id=session.user_id if session else None,
        )
        log_event(
            logger,
            logging.INFO,
            "fraud_check",
            requestId=request_id,
            provider=provider.value,
            passed=fraud.passed,
            riskScore=fraud.risk_score,
            signals=",".join(fraud.signals) or "-",
        )
        if fraud.risk_score >= self.fraud_reject_threshold:
            raise FraudRejected("Request rejected due to suspicious activity", fraud.risk_score, fraud.signals)

        points = convert_to_points(provider, parsed.rewardValue, config.conversion_rules)
        log_event(
            logger,
            logging.INFO,
            "conversion",
            requestId=request_id,
            provider=provider.value,
            originalValue=parsed.rewardValue,
            valueType=adapter.value_type.value,
            pointsConverted=points,
        )

        metadata = CreditMetadata.from_parsed_callback(
            provider,
            adapter.value_type,
            parsed,
            request_id,
            session_id=session.id if session else None,
            fraud_signals=fraud.signals,
        )
        if points <= 0:
            result = self.ledger.record_rejection(db, parsed.userId, metadata)
            message = "Already processed" if result.is_duplicate else "Reward value below minimum threshold"
        else:
            try:
                result = self.ledger.credit_reward(db, parsed.userId, points, metadata)
            except CreditingFailed:
                log_event(
                    logger,
                    logging.ERROR,
                    "wallet_update",
                    requestId=request_id,
                    provider=provider.value,
                    success=False,
                    processingTimeMs=_elapsed_ms(started),
                )
                raise
            message = "Already processed" if result.is_duplicate else "Reward credited"

        log_event(
            logger,
            logging.INFO,
            "wallet_update",
            requestId=request_id,
            provider=provider.value,
            success=result.success,
            isDuplicate=result.is_duplicate,
            transactionId=result.transaction_id,
            pointsCredited=result.points_credited,
            processingTimeMs=_elapsed_ms(started),
        )

        if session is not None and not session.used and not result.is_duplicate:
            self.sessions.mark_used(db, session.id)

        return CallbackResult(
            success=result.success,
            points_credited=result.points_credited,
            is_duplicate=result.is_duplicate,
            transaction_id=result.transaction_id,
            status=result.status.value,
            message=message,
        )


def _elapsed_ms(started: float) -> int:
    return round((time.monotonic() - started) * 1000)
