import secrets
import time
from datetime import datetime
from typing import Optional

from game_rewards.config import ProviderConfig
from game_rewards.models import Discrepancy, GameTransaction, ReconciliationReport


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_transaction(record: GameTransaction) -> dict:
    return {
        "id": record.id,
        "providerTransactionId": record.provider_transaction_id,
        "provider": record.provider,
        "userId": record.user_id,
        "rawValue": record.raw_value,
        "valueType": record.value_type,
        "pointsCredited": record.points_credited,
        "status": record.status,
        "reconciliationStatus": record.reconciliation_status,
        "reconciliationNotes": record.reconciliation_notes,
        "gameId": record.game_id,
        "sessionId": record.session_id,
        "requestId": record.request_id,
        "fraudSignals": record.fraud_signals or [],
        "createdAt": _iso(record.created_at),
    }


def serialize_report(record: ReconciliationReport) -> dict:
    return {
        "id": record.id,
        "provider": record.provider,
        "date": record.date,
        "providerTransactionCount": record.provider_transaction_count,
        "internalTransactionCount": record.internal_transaction_count,
        "totalPointsCredited": record.total_points_credited,
        "matchedCount": record.matched_count,
        "discrepancyCount": record.discrepancy_count,
        "discrepancyIds": record.discrepancy_ids or [],
        "status": record.status,
        "notes": record.notes,
        "generatedAt": _iso(record.generated_at),
        "reviewedAt": _iso(record.reviewed_at),
    }


def serialize_discrepancy(record: Discrepancy) -> dict:
    return {
        "id": record.id,
        "reportId": record.report_id,
        "transactionId": record.transaction_id,
        "providerTransactionId": record.provider_transaction_id,
        "kind": record.kind,
        "expectedValue": record.expected_value,
        "actualValue": record.actual_value,
        "details": record.details,
    }


def serialize_provider(config: ProviderConfig) -> dict:
    # Secrets stay server-side.
    rules = config.conversion_rules
    return {
        "provider": config.provider.value,
        "enabled": config.enabled,
        "appId": config.app_id,
        "launchUrlTemplate": config.launch_url_template,
        "conversionRules": {
            "multiplier": rules.multiplier,
            "minimumValue": rules.minimum_value,
            "maximumCredit": rules.maximum_credit,
            "step": rules.step,
            "description": rules.description,
        },
    }
