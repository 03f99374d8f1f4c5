from datetime import date, datetime, timedelta

import pytest

from game_rewards.commands import reconcile as reconcile_command
from game_rewards.config import GameProvider
from game_rewards.errors import ReportNotFound
from game_rewards.models import (
    BalanceLedgerEntry,
    GameTransaction,
    ReportStatus,
    new_id,
)
from game_rewards.reconciliation import (
    generate_daily_report,
    get_reconciliation_reports,
    get_report_discrepancies,
    mark_report_reviewed,
)

DAY = date(2026, 3, 1)
NOON = datetime(2026, 3, 1, 12, 0, 0)


def add_transaction(db, ref, points=10, status="credited", provider="gamezop", created_at=NOON, ledger_amounts=None):
    txn = GameTransaction(
        id=new_id(),
        provider_transaction_id=ref,
        provider=provider,
        user_id="user-1",
        raw_value=points,
        value_type="opaque_points",
        points_credited=points,
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(txn)
    if ledger_amounts is None:
        ledger_amounts = [points] if status == "credited" else []
    for amount in ledger_amounts:
        db.add(add_entry(txn.id, ref, amount, provider, created_at))
    db.commit()
    return txn


def add_entry(source_id, ref, amount, provider="gamezop", created_at=NOON):
    return BalanceLedgerEntry(
        user_id="user-1",
        amount=amount,
        entry_type="credit",
        source="game",
        source_id=source_id,
        provider=provider,
        provider_transaction_id=ref,
        created_at=created_at,
    )


def test_fifty_agreeing_transactions_match(db):
    txns = [add_transaction(db, f"gz-{n}", points=n + 1) for n in range(50)]

    report = generate_daily_report(db, GameProvider.GAMEZOP, DAY)
    assert report.discrepancy_count == 0
    assert report.matched_count == 50
    assert report.provider_transaction_count == 50
    assert report.internal_transaction_count == 50
    assert report.total_points_credited == sum(range(1, 51))
    assert report.status == "generated"

    db.expire_all()
    assert {db.get(GameTransaction, t.id).reconciliation_status for t in txns} == {"matched"}


def test_missing_ledger_entries_are_reported(db):
    for n in range(5):
        add_transaction(db, f"ok-{n}")
    missing = [add_transaction(db, f"lost-{n}", ledger_amounts=[]) for n in range(3)]

    report = generate_daily_report(db, GameProvider.GAMEZOP, DAY)
    assert report.matched_count == 5
    assert report.discrepancy_count == 3
    assert set(report.discrepancy_ids) == {t.id for t in missing}

    found = get_report_discrepancies(db, report.id)
    assert {d.kind for d in found} == {"missing_internal"}
    assert {d.provider_transaction_id for d in found} == {"lost-0", "lost-1", "lost-2"}
    db.expire_all()
    assert db.get(GameTransaction, missing[0].id).reconciliation_status == "discrepant"


def test_amount_status_and_orphan_discrepancies(db):
    add_transaction(db, "short", points=10, ledger_amounts=[7])
    add_transaction(db, "double", points=10, ledger_amounts=[10, 10])
    rejected = add_transaction(db, "small", points=0, status="rejected", ledger_amounts=[4])
    db.add(add_entry("deleted-txn", "orphan", 12))
    db.commit()

    report = generate_daily_report(db, GameProvider.GAMEZOP, DAY)
    kinds = {d.provider_transaction_id: d for d in get_report_discrepancies(db, report.id)}
    assert report.discrepancy_count == 4
    assert kinds["short"].kind == "amount_mismatch"
    assert (kinds["short"].expected_value, kinds["short"].actual_value) == (10, 7)
    assert kinds["double"].kind == "amount_mismatch"
    assert kinds["double"].actual_value == 20
    assert kinds["small"].kind == "status_mismatch"
    assert kinds["small"].transaction_id == rejected.id
    assert kinds["orphan"].kind == "missing_provider"
    assert kinds["orphan"].transaction_id == "deleted-txn"


def test_report_is_scoped_to_provider_and_day(db):
    add_transaction(db, "today")
    add_transaction(db, "yesterday", created_at=NOON - timedelta(days=1))
    add_transaction(db, "midnight", created_at=datetime(2026, 3, 2, 0, 0, 0))
    add_transaction(db, "other-provider", provider="qureka")

    report = generate_daily_report(db, GameProvider.GAMEZOP, DAY)
    assert report.provider_transaction_count == 1
    assert report.internal_transaction_count == 1
    assert report.matched_count == 1


def test_rerun_is_deterministic_and_review_updates_status(db):
    add_transaction(db, "a")
    add_transaction(db, "b", ledger_amounts=[])

    first = generate_daily_report(db, GameProvider.GAMEZOP, DAY)
    second = generate_daily_report(db, GameProvider.GAMEZOP, DAY)
    assert first.id != second.id
    assert (first.matched_count, first.discrepancy_count) == (second.matched_count, second.discrepancy_count)
    assert first.discrepancy_ids == second.discrepancy_ids

    reports = get_reconciliation_reports(db, GameProvider.GAMEZOP)
    assert [r.id for r in reports] == [second.id, first.id]
    assert get_reconciliation_reports(db, GameProvider.ADJOE) == []

    reviewed = mark_report_reviewed(db, first.id, "ledger entry restored manually", ReportStatus.RESOLVED)
    assert reviewed.status == "resolved"
    assert reviewed.notes == "ledger entry restored manually"
    assert reviewed.reviewed_at is not None
    assert reviewed.discrepancy_count == 1

    with pytest.raises(ValueError):
        mark_report_reviewed(db, first.id, None, ReportStatus.GENERATED)
    with pytest.raises(ReportNotFound):
        mark_report_reviewed(db, 999, None)
    with pytest.raises(ReportNotFound):
        get_report_discrepancies(db, 999)


def test_cli_exit_code_reflects_discrepancies(settings, db):
    add_transaction(db, "clean", provider="adjoe")
    add_transaction(db, "lost", provider="qureka", ledger_amounts=[])

    assert reconcile_command.reconcile([GameProvider.ADJOE], DAY, settings) == 0
    assert reconcile_command.reconcile([GameProvider.ADJOE, GameProvider.QUREKA], DAY, settings) == 1
