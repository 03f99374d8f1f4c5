import threading

import pytest
from sqlalchemy.exc import OperationalError

from game_rewards.config import GameProvider, ValueType
from game_rewards.contracts.callbacks import CreditMetadata
from game_rewards.errors import CreditingFailed, TransactionNotFound
from game_rewards.ledger import (
    CreditingLedger,
    find_transaction,
    get_unreconciled_transactions,
    list_transactions,
    update_reconciliation_status,
)
from game_rewards.models import BalanceLedgerEntry, GameTransaction, ReconciliationStatus, TransactionStatus, User

from conftest import seed_user


def _metadata(transaction_id: str, provider: GameProvider = GameProvider.GAMEZOP) -> CreditMetadata:
    return CreditMetadata(
        provider=provider,
        providerTransactionId=transaction_id,
        rawValue=25,
        valueType=ValueType.OPAQUE_POINTS,
        requestId="req_test",
    )


def test_credit_then_duplicate(db):
    seed_user(db, "user-1", points=5)
    ledger = CreditingLedger()

    # 1. First delivery credits the balance
    first = ledger.credit_reward(db, "user-1", 25, _metadata("gz-1"))
    assert first.success and not first.is_duplicate
    assert first.points_credited == 25
    assert first.new_balance == 30

    # 2. Redelivery reports the original transaction and credits nothing
    second = ledger.credit_reward(db, "user-1", 25, _metadata("gz-1"))
    assert second.is_duplicate
    assert second.points_credited == 0
    assert second.status == TransactionStatus.DUPLICATE
    assert second.transaction_id == first.transaction_id

    db.expire_all()
    user = db.get(User, "user-1")
    assert user.points == 30
    assert user.total_points == 30
    assert db.query(GameTransaction).count() == 1
    entries = db.query(BalanceLedgerEntry).all()
    assert len(entries) == 1
    assert entries[0].source == "game"
    assert entries[0].source_id == first.transaction_id


def test_same_transaction_id_is_independent_per_provider(db):
    seed_user(db)
    ledger = CreditingLedger()
    a = ledger.credit_reward(db, "user-1", 10, _metadata("shared-1", GameProvider.GAMEZOP))
    b = ledger.credit_reward(db, "user-1", 10, _metadata("shared-1", GameProvider.QUREKA))
    assert not a.is_duplicate and not b.is_duplicate
    db.expire_all()
    assert db.get(User, "user-1").points == 20


def test_concurrent_deliveries_credit_once(session_factory):
    with session_factory() as db:
        seed_user(db)
    ledger = CreditingLedger()
    barrier = threading.Barrier(4)
    results = []
    lock = threading.Lock()

    def deliver():
        with session_factory() as db:
            barrier.wait()
            result = ledger.credit_reward(db, "user-1", 40, _metadata("gz-race"))
            with lock:
                results.append(result)

    threads = [threading.Thread(target=deliver) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 4
    credited = [r for r in results if not r.is_duplicate]
    assert len(credited) == 1
    assert all(r.transaction_id == credited[0].transaction_id for r in results)
    with session_factory() as db:
        assert db.get(User, "user-1").points == 40
        assert db.query(BalanceLedgerEntry).count() == 1


def test_unknown_user_fails_and_leaves_no_transaction(db):
    ledger = CreditingLedger()
    with pytest.raises(CreditingFailed):
        ledger.credit_reward(db, "ghost", 10, _metadata("gz-ghost"))
    assert db.query(GameTransaction).count() == 0


def test_balance_failure_rolls_back_so_retry_is_safe(db, monkeypatch):
    seed_user(db)
    ledger = CreditingLedger()

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE users", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ledger.balance_store, "credit_user", broken)
    with pytest.raises(CreditingFailed):
        ledger.credit_reward(db, "user-1", 10, _metadata("gz-retry"))
    assert find_transaction(db, GameProvider.GAMEZOP, "gz-retry") is None

    monkeypatch.undo()
    retried = ledger.credit_reward(db, "user-1", 10, _metadata("gz-retry"))
    assert not retried.is_duplicate
    assert retried.new_balance == 10


def test_record_rejection_uses_the_same_key(db):
    seed_user(db)
    ledger = CreditingLedger()
    rejected = ledger.record_rejection(db, "user-1", _metadata("gz-small"))
    assert rejected.status == TransactionStatus.REJECTED
    assert rejected.points_credited == 0

    again = ledger.record_rejection(db, "user-1", _metadata("gz-small"))
    assert again.is_duplicate
    assert db.query(BalanceLedgerEntry).count() == 0


def test_listing_and_reconciliation_updates(db):
    seed_user(db)
    ledger = CreditingLedger()
    for n in range(3):
        ledger.credit_reward(db, "user-1", 5, _metadata(f"gz-{n}"))
    ledger.credit_reward(db, "user-1", 5, _metadata("qk-1", GameProvider.QUREKA))

    records, total = list_transactions(db, provider=GameProvider.GAMEZOP, page=1, limit=2)
    assert total == 3
    assert len(records) == 2

    pending = get_unreconciled_transactions(db, GameProvider.GAMEZOP)
    assert len(pending) == 3

    updated = update_reconciliation_status(db, pending[0].id, ReconciliationStatus.RESOLVED, "checked by ops")
    assert updated.reconciliation_status == "resolved"
    assert updated.reconciliation_notes == "checked by ops"
    assert len(get_unreconciled_transactions(db, GameProvider.GAMEZOP)) == 2

    with pytest.raises(TransactionNotFound):
        update_reconciliation_status(db, "missing", ReconciliationStatus.MATCHED)
