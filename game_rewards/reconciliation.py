from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from game_rewards.balance import SqlBalanceStore
from game_rewards.config import GameProvider
from game_rewards.database import utcnow
from game_rewards.errors import ReportNotFound
from game_rewards.logging_config import get_logger
from game_rewards.models import (
    BalanceLedgerEntry,
    Discrepancy,
    DiscrepancyKind,
    GameTransaction,
    ReconciliationReport,
    ReconciliationStatus,
    ReportStatus,
    TransactionStatus,
)


logger = get_logger(__name__)


@dataclass
class Finding:
    transaction_id: str
    provider_transaction_id: Optional[str]
    kind: DiscrepancyKind
    expected_value: Optional[int] = None
    actual_value: Optional[int] = None
    details: str = ""


def parse_report_date(value: str) -> date:
    return date.fromisoformat(value)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def classify(transactions: list[GameTransaction], entries: list[BalanceLedgerEntry]) -> tuple[list[Finding], set[str]]:
    """
    Cross-reference game transactions with balance ledger entries.

    Returns the findings and the ids of credited transactions that matched.
    """
    entries_by_source: dict[str, list[BalanceLedgerEntry]] = {}
    for entry in entries:
        if entry.source_id:
            entries_by_source.setdefault(entry.source_id, []).append(entry)

    findings: list[Finding] = []
    matched: set[str] = set()
    known_ids = set()
    for txn in transactions:
        known_ids.add(txn.id)
        matching = entries_by_source.get(txn.id, [])
        credited_amount = sum(e.amount for e in matching)
        if txn.status == TransactionStatus.CREDITED.value:
            if not matching:
                findings.append(Finding(
                    transaction_id=txn.id,
                    provider_transaction_id=txn.provider_transaction_id,
                    kind=DiscrepancyKind.MISSING_INTERNAL,
                    expected_value=txn.points_credited,
                    details="Game transaction credited but no balance ledger entry found",
                ))
            elif len(matching) > 1 or credited_amount != txn.points_credited:
                findings.append(Finding(
                    transaction_id=txn.id,
                    provider_transaction_id=txn.provider_transaction_id,
                    kind=DiscrepancyKind.AMOUNT_MISMATCH,
                    expected_value=txn.points_credited,
                    actual_value=credited_amount,
                    details=f"Amount mismatch between game transaction and {len(matching)} balance ledger entries",
                ))
            else:
                matched.add(txn.id)
        elif matching:
            findings.append(Finding(
                transaction_id=txn.id,
                provider_transaction_id=txn.provider_transaction_id,
                kind=DiscrepancyKind.STATUS_MISMATCH,
                expected_value=0,
                actual_value=credited_amount,
                details=f"Balance ledger entry exists for a {txn.status} game transaction",
            ))

    for entry in entries:
        if entry.source_id not in known_ids:
            findings.append(Finding(
                transaction_id=entry.source_id or f"ledger:{entry.id}",
                provider_transaction_id=entry.provider_transaction_id,
                kind=DiscrepancyKind.MISSING_PROVIDER,
                actual_value=entry.amount,
                details=f"Balance ledger entry {entry.id} has no matching game transaction",
            ))
    return findings, matched


def generate_daily_report(db: Session, provider: GameProvider, report_date: date) -> ReconciliationReport:
    """
    Reconcile one provider's game transactions against the balance ledger for
    one UTC calendar day, and persist the report with its discrepancies in a
    single commit.
    """
    start, end = day_bounds(report_date)
    transactions = (
        db.query(GameTransaction)
        .filter(GameTransaction.provider == provider.value)
        .filter(GameTransaction.created_at >= start)
        .filter(GameTransaction.created_at < end)
        .order_by(GameTransaction.created_at, GameTransaction.id)
        .all()
    )
    entries = (
        db.query(BalanceLedgerEntry)
        .filter(BalanceLedgerEntry.source == SqlBalanceStore.source)
        .filter(BalanceLedgerEntry.provider == provider.value)
        .filter(BalanceLedgerEntry.created_at >= start)
        .filter(BalanceLedgerEntry.created_at < end)
        .order_by(BalanceLedgerEntry.created_at, BalanceLedgerEntry.id)
        .all()
    )

    findings, matched = classify(transactions, entries)
    discrepant_ids = {f.transaction_id for f in findings}
    total_points = sum(
        t.points_credited for t in transactions if t.status == TransactionStatus.CREDITED.value
    )

    report = ReconciliationReport(
        provider=provider.value,
        date=report_date.isoformat(),
        provider_transaction_count=len(transactions),
        internal_transaction_count=len(entries),
        total_points_credited=total_points,
        matched_count=len(matched),
        discrepancy_count=len(findings),
        discrepancy_ids=[f.transaction_id for f in findings],
        status=ReportStatus.GENERATED.value,
        generated_at=utcnow(),
    )
    try:
        db.add(report)
        db.flush()
        for finding in findings:
            db.add(Discrepancy(
                report_id=report.id,
                transaction_id=finding.transaction_id,
                provider_transaction_id=finding.provider_transaction_id,
                kind=finding.kind.value,
                expected_value=finding.expected_value,
                actual_value=finding.actual_value,
                details=finding.details,
            ))
        # Only pending rows move; a manual "resolved" is left alone on re-runs.
        for txn in transactions:
            if txn.reconciliation_status != ReconciliationStatus.PENDING.value:
                continue
            if txn.id in discrepant_ids:
                txn.reconciliation_status = ReconciliationStatus.DISCREPANT.value
            else:
                txn.reconciliation_status = ReconciliationStatus.MATCHED.value
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to persist reconciliation report provider=%s date=%s", provider.value, report_date)
        raise
    db.refresh(report)

    logger.info(
        "Reconciliation report generated provider=%s date=%s transactions=%s matched=%s discrepancies=%s",
        provider.value,
        report.date,
        report.provider_transaction_count,
        report.matched_count,
        report.discrepancy_count,
    )
    return report


def get_reconciliation_reports(db: Session, provider: Optional[GameProvider] = None, limit: int = 30) -> list[ReconciliationReport]:
    query = db.query(ReconciliationReport)
    if provider:
        query = query.filter(ReconciliationReport.provider == provider.value)
    return query.order_by(ReconciliationReport.generated_at.desc(), ReconciliationReport.id.desc()).limit(limit).all()


def get_report_discrepancies(db: Session, report_id: int) -> list[Discrepancy]:
    if db.get(ReconciliationReport, report_id) is None:
        raise ReportNotFound(f"report {report_id} not found")
    return db.query(Discrepancy).filter(Discrepancy.report_id == report_id).order_by(Discrepancy.id).all()


def mark_report_reviewed(
    db: Session,
    report_id: int,
    notes: Optional[str],
    status: ReportStatus = ReportStatus.REVIEWED,
) -> ReconciliationReport:
    """
    Review status and notes are the only mutable parts of a report.
    """
    if status == ReportStatus.GENERATED:
        raise ValueError("a report cannot be moved back to generated")
    report = db.get(ReconciliationReport, report_id)
    if report is None:
        raise ReportNotFound(f"report {report_id} not found")
    report.status = status.value
    report.notes = notes
    report.reviewed_at = utcnow()
    db.add(report)
    db.commit()
    db.refresh(report)
    logger.info("Reconciliation report reviewed reportId=%s status=%s", report_id, status.value)
    return report
