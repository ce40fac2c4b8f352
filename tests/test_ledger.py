"""Tests for the balance ledger."""

from __future__ import annotations

import threading

import pytest

from core.errors import InsufficientFunds, InvalidAmount, InvariantViolation
from core.ledger.balances import BalanceLedger
from core.storage.memory_stores import MemoryStores
from core.types import Currency


@pytest.fixture
def ledger() -> BalanceLedger:
    return BalanceLedger(MemoryStores())


def test_unknown_user_has_zero_balance(ledger: BalanceLedger):
    balance = ledger.get_balance(42)
    assert balance.user_id == 42
    assert balance.available_inr == 0
    assert balance.btc_balance == 0


def test_commit_applies_all_deltas_and_appends_one_event(ledger: BalanceLedger):
    ledger.commit(1, {"available_inr": 100_000}, kind="DEPOSIT_INR")
    event = ledger.commit(1, {"available_inr": -10_000, "available_btc": 108_695}, kind="MARKET_BUY")

    assert event.balance_after.available_inr == 90_000
    assert event.balance_after.available_btc == 108_695
    assert event.kind == "MARKET_BUY"
    assert event.seq is not None
    assert len(ledger.events(1)) == 2


def test_commit_drops_zero_deltas(ledger: BalanceLedger):
    event = ledger.commit(1, {"available_inr": 5, "reserved_inr": 0})
    assert dict(event.deltas) == {"available_inr": 5}


def test_negative_result_is_rejected_and_nothing_is_stored(ledger: BalanceLedger):
    ledger.commit(1, {"available_inr": 1_000})

    with pytest.raises(InvariantViolation):
        ledger.commit(1, {"available_inr": -1_001, "available_btc": 10})

    balance = ledger.get_balance(1)
    assert balance.available_inr == 1_000
    assert balance.available_btc == 0
    assert len(ledger.events(1)) == 1


def test_unknown_field_is_rejected(ledger: BalanceLedger):
    with pytest.raises(ValueError, match="Unknown balance field"):
        ledger.commit(1, {"savings_inr": 10})


def test_reserve_release_round_trip(ledger: BalanceLedger):
    ledger.commit(1, {"available_inr": 50_000})
    before = ledger.get_balance(1)

    ledger.reserve(1, Currency.INR, 20_000)
    reserved = ledger.get_balance(1)
    assert reserved.available_inr == 30_000
    assert reserved.reserved_inr == 20_000
    assert reserved.inr_balance == before.inr_balance

    ledger.release(1, Currency.INR, 20_000)
    assert ledger.get_balance(1) == before


def test_reserve_requires_available_funds(ledger: BalanceLedger):
    ledger.commit(1, {"available_btc": 1_000})
    with pytest.raises(InsufficientFunds):
        ledger.reserve(1, "BTC", 1_001)


def test_release_more_than_reserved_violates_invariant(ledger: BalanceLedger):
    ledger.commit(1, {"available_btc": 1_000})
    ledger.reserve(1, "BTC", 400)
    with pytest.raises(InvariantViolation):
        ledger.release(1, "BTC", 401)


@pytest.mark.parametrize("amount", [0, -5, 1.5, True])
def test_reserve_rejects_bad_amounts(ledger: BalanceLedger, amount):
    ledger.commit(1, {"available_inr": 100})
    with pytest.raises(InvalidAmount):
        ledger.reserve(1, "INR", amount)


def test_ledger_total_matches_balance(ledger: BalanceLedger):
    ledger.commit(1, {"available_inr": 100_000})
    ledger.reserve(1, "INR", 30_000)
    ledger.commit(1, {"reserved_inr": -30_000, "available_btc": 326_086})
    ledger.commit(1, {"available_btc": -26_086, "available_inr": 2_400})

    balance = ledger.get_balance(1)
    assert ledger.ledger_total(1, "INR") == balance.inr_balance == 72_400
    assert ledger.ledger_total(1, "BTC") == balance.btc_balance == 300_000


def test_concurrent_commits_never_overdraw(ledger: BalanceLedger):
    ledger.commit(1, {"available_inr": 1_000})
    failures: list[Exception] = []

    def spend() -> None:
        try:
            with ledger.user_lock(1):
                ledger.ensure_available(1, "INR", 100)
                ledger.commit(1, {"available_inr": -100})
        except InsufficientFunds as e:
            failures.append(e)

    threads = [threading.Thread(target=spend) for _ in range(15)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert ledger.get_balance(1).available_inr == 0
    assert len(failures) == 5


def test_user_ids_lists_funded_users(ledger: BalanceLedger):
    ledger.commit(3, {"available_inr": 1})
    ledger.commit(1, {"available_btc": 1})
    assert list(ledger.user_ids()) == [1, 3]


@pytest.mark.parametrize("delta", [1.5, 0.9, "10", True])
def test_non_integer_delta_is_rejected_and_nothing_is_stored(ledger: BalanceLedger, delta):
    ledger.commit(1, {"available_inr": 1_000})

    with pytest.raises(ValueError, match="must be an int"):
        ledger.commit(1, {"available_inr": delta})

    assert ledger.get_balance(1).available_inr == 1_000
    assert len(ledger.events(1)) == 1


def test_commit_applies_to_balance_written_by_another_ledger(interleaving_stores, make_platform):
    first = make_platform(interleaving_stores)
    second = make_platform(interleaving_stores)
    first.deposit(1, "INR", 100_000)

    interleaving_stores.before_write["commit_deltas"] = lambda: second.deposit(1, "INR", 7_000)
    first.deposit(1, "INR", 5_000)

    balance = first.ledger.get_balance(1)
    assert balance.available_inr == 112_000
    assert first.ledger.ledger_total(1, "INR") == 112_000
    assert first.ledger.events(1)[-1].balance_after.available_inr == 112_000


def test_concurrent_deposits_from_two_ledgers_are_all_kept(stores, make_platform):
    platforms = [make_platform(stores), make_platform(stores)]
    platforms[0].deposit(1, "INR", 100_000)

    threads = [
        threading.Thread(target=lambda p=p: [p.deposit(1, "INR", 1_000) for _ in range(50)])
        for p in platforms
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    balance = platforms[0].ledger.get_balance(1)
    assert balance.available_inr == 200_000
    assert platforms[1].ledger.ledger_total(1, "INR") == balance.available_inr
