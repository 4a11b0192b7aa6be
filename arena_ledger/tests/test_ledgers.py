"""
Unit Tests for the balance ledgers

Tests cover:
1. Non-negative balances and input validation
2. Arena to global transfer
3. Persistence ordering and backup recovery
4. Credits deposits and tiered withdrawals
"""

import json

import pytest
from decimal import Decimal

from arena_ledger.errors import TransferError
from arena_ledger.events import BalanceChanged, EventBus
from arena_ledger.ledgers import CreditsLedger, PersistentLedger, SessionLedger
from arena_ledger.models import LedgerKind
from arena_ledger.money import WithdrawalTier
from arena_ledger.storage import BACKUP_KEY, PLAYER_DATA_KEY, InMemoryStorage, PlayerStore


class TestSessionLedger:
    """Tests for the per-session arena ledger."""

    def test_add_accumulates(self):
        """Test that earned BONK accumulates."""
        arena = SessionLedger()
        arena.add(Decimal("10.25"))
        arena.add(5)
        assert arena.get() == Decimal("15.25")

    def test_balance_never_goes_negative(self):
        """Test that a large negative delta clamps at zero."""
        arena = SessionLedger()
        arena.add(10)
        arena.add(-20)
        assert arena.get() == Decimal("0")
        arena.set(-5)
        assert arena.get() == Decimal("0")

    def test_invalid_amount_leaves_balance(self):
        """Test that non-numeric input is ignored."""
        arena = SessionLedger()
        arena.set(3)
        arena.set("abc")
        arena.add(float("nan"))
        assert arena.get() == Decimal("3")

    def test_init_is_idempotent(self):
        """Test that resetting twice leaves the balance at zero."""
        arena = SessionLedger()
        arena.add(8)
        arena.init()
        arena.init()
        assert arena.get() == Decimal("0")

    def test_transfer_all_to_global(self):
        """Test that the whole arena balance moves to the destination."""
        arena = SessionLedger()
        global_ledger = PersistentLedger(PlayerStore())
        global_ledger.set(50)
        arena.add(Decimal("25.50"))

        record = arena.transfer_all_to(global_ledger)

        assert arena.get() == Decimal("0")
        assert global_ledger.get() == Decimal("75.50")
        assert record.amount_transferred == Decimal("25.50")
        assert record.dest_before == Decimal("50")
        assert record.source_after == Decimal("0")
        assert record.is_conserved()

    def test_transfer_to_non_ledger_fails(self):
        """Test that a destination without add() is rejected before anything moves."""
        arena = SessionLedger()
        arena.add(4)
        with pytest.raises(TransferError):
            arena.transfer_all_to(object())
        assert arena.get() == Decimal("4")


LEDGERS = [
    pytest.param(lambda: (SessionLedger(), None), id="session"),
    pytest.param(lambda: (PersistentLedger(PlayerStore()), "global_token_total"), id="persistent"),
    pytest.param(lambda: (CreditsLedger(PlayerStore()), "credits_total"), id="credits"),
]


def assert_stored_zero(ledger, field):
    if field is None:
        return
    assert getattr(ledger.store.snapshot, field) == Decimal("0")
    assert getattr(PlayerStore(ledger.store.storage).snapshot, field) == Decimal("0")


class TestEveryLedger:
    """Tests for the balance rules shared by all ledgers."""

    @pytest.mark.parametrize("factory", LEDGERS)
    def test_clamps_at_zero(self, factory):
        """Test that no ledger goes below zero, in memory or in storage."""
        ledger, field = factory()
        ledger.add(10)
        ledger.add(-20)
        assert ledger.get() == Decimal("0")
        assert_stored_zero(ledger, field)

        ledger.set(-5)
        assert ledger.get() == Decimal("0")
        assert_stored_zero(ledger, field)

    @pytest.mark.parametrize("factory", LEDGERS)
    def test_reset_is_idempotent(self, factory):
        """Test that resetting twice leaves a stored zero balance."""
        ledger, field = factory()
        ledger.add(8)
        ledger.reset()
        ledger.reset()
        assert ledger.get() == Decimal("0")
        assert_stored_zero(ledger, field)


class TestEvents:
    """Tests for balance change notifications."""

    def test_every_mutation_publishes_absolute_balance(self):
        """Test that subscribers receive the new balance after each change."""
        bus = EventBus()
        seen = []
        bus.subscribe(BalanceChanged, lambda e: seen.append((e.ledger, e.balance)))
        arena = SessionLedger(owner=bus)

        arena.add(2)
        arena.add(3)
        arena.reset()

        assert seen == [
            (LedgerKind.ARENA_BONK, Decimal("2")),
            (LedgerKind.ARENA_BONK, Decimal("5")),
            (LedgerKind.ARENA_BONK, Decimal("0")),
        ]

    def test_persist_happens_before_notify(self):
        """Test that a subscriber already sees the stored value."""
        bus = EventBus()
        store = PlayerStore()
        global_ledger = PersistentLedger(store, owner=bus)
        stored = []
        bus.subscribe(BalanceChanged, lambda e: stored.append(store.snapshot.global_token_total))

        global_ledger.add(5)

        assert stored == [Decimal("5")]

    def test_failing_subscriber_does_not_block_mutation(self):
        """Test that a raising handler is isolated from the ledger."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("display crashed")

        bus.subscribe(BalanceChanged, broken)
        bus.subscribe(BalanceChanged, seen.append)
        arena = SessionLedger(owner=bus)

        assert arena.add(1) == Decimal("1")
        assert len(seen) == 1

    def test_unsubscribe(self):
        """Test that an unsubscribed handler stops receiving events."""
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(BalanceChanged, seen.append)
        arena = SessionLedger(owner=bus)
        arena.add(1)
        unsubscribe()
        arena.add(1)
        assert len(seen) == 1


class TestPersistentLedger:
    """Tests for loading and persisting the global total."""

    def test_survives_reload(self):
        """Test that a new ledger over the same storage sees the balance."""
        storage = InMemoryStorage()
        PersistentLedger(PlayerStore(storage)).set(Decimal("12.34"))
        assert PersistentLedger(PlayerStore(storage)).get() == Decimal("12.34")

    def test_backup_used_when_primary_missing(self):
        """Test recovery from the standalone backup key."""
        storage = InMemoryStorage({BACKUP_KEY: "42.5"})
        assert PersistentLedger(PlayerStore(storage)).get() == Decimal("42.50")

    def test_primary_wins_over_backup(self):
        """Test that the backup is ignored while player data exists."""
        storage = InMemoryStorage({
            PLAYER_DATA_KEY: json.dumps({"global_token_total": "7"}),
            BACKUP_KEY: "42",
        })
        assert PersistentLedger(PlayerStore(storage)).get() == Decimal("7")

    def test_corrupt_backup_defaults_to_zero(self):
        """Test that an unreadable backup is ignored."""
        storage = InMemoryStorage({BACKUP_KEY: "not-a-number"})
        assert PersistentLedger(PlayerStore(storage)).get() == Decimal("0")


class TestCreditsLedger:
    """Tests for credits deposits and withdrawals."""

    def setup_method(self):
        self.credits = CreditsLedger(PlayerStore())
        self.arena_credits = CreditsLedger(kind=LedgerKind.ARENA_CREDITS)

    def test_deposit_moves_credits(self):
        """Test that a deposit debits the game account."""
        self.credits.set(20)
        assert self.arena_credits.deposit_from(self.credits, 5) is True
        assert self.credits.get() == Decimal("15")
        assert self.arena_credits.get() == Decimal("5")

    @pytest.mark.parametrize("amount", [50, 0, -1, "x"])
    def test_rejected_deposits(self, amount):
        """Test insufficient, non-positive and invalid deposits."""
        self.credits.set(20)
        assert self.arena_credits.deposit_from(self.credits, amount) is False
        assert self.credits.get() == Decimal("20")
        assert self.arena_credits.get() == Decimal("0")

    def test_perfect_withdrawal_pays_bonus(self):
        """Test a perfect hack: 100 becomes 110 with nothing retained."""
        self.arena_credits.set(100)
        split = self.arena_credits.withdraw_to(self.credits, 100, 1.0)
        assert split.tier == WithdrawalTier.PERFECT
        assert split.paid_out == Decimal("110")
        assert self.credits.get() == Decimal("110")
        assert self.arena_credits.get() == Decimal("0")

    def test_partial_withdrawal_keeps_half(self):
        """Test a partial hack: half paid out, half stays in the arena."""
        self.arena_credits.set(100)
        split = self.arena_credits.withdraw_to(self.credits, 100, 0.6)
        assert split.tier == WithdrawalTier.PARTIAL
        assert self.credits.get() == Decimal("50")
        assert self.arena_credits.get() == Decimal("50")

    def test_poor_withdrawal_keeps_quarter(self):
        """Test a poor hack: three quarters paid out."""
        self.arena_credits.set(100)
        split = self.arena_credits.withdraw_to(self.credits, 100, 0.2)
        assert split.tier == WithdrawalTier.POOR
        assert split.retained == Decimal("25")
        assert self.credits.get() == Decimal("75")
        assert self.arena_credits.get() == Decimal("25")

    def test_amount_capped_at_balance(self):
        """Test that a withdrawal never takes more than the balance."""
        self.arena_credits.set(10)
        split = self.arena_credits.withdraw_to(self.credits, 200, 0.6)
        assert split.amount == Decimal("10")
        assert self.arena_credits.get() == Decimal("5")

    def test_invalid_ratio_changes_nothing(self):
        """Test that an invalid ratio returns None and leaves balances alone."""
        self.arena_credits.set(10)
        assert self.arena_credits.withdraw_to(self.credits, 10, 1.5) is None
        assert self.arena_credits.get() == Decimal("10")
        assert self.credits.get() == Decimal("0")

    def test_destination_without_add(self):
        """Test that a non-ledger destination is rejected."""
        self.arena_credits.set(10)
        with pytest.raises(TransferError):
            self.arena_credits.withdraw_to(object(), 10, 1.0)
        assert self.arena_credits.get() == Decimal("10")

    def test_failed_credit_restores_source(self):
        """Test that the debit is undone if crediting the destination fails."""

        class Broken(CreditsLedger):
            def add(self, delta):
                raise RuntimeError("storage offline")

        self.arena_credits.set(10)
        with pytest.raises(RuntimeError):
            self.arena_credits.withdraw_to(Broken(), 10, 0.2)
        assert self.arena_credits.get() == Decimal("10")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
