"""
Arena Ledger: in-game currency core

This module provides:
- Arena (per-session) and global (persistent) BONK ledgers
- Dollar-denominated credits ledgers with tiered withdrawals
- Atomic arena → global transfer with rollback on verification failure
- Fetch-then-replace server sync with retry and backoff
- A single-flight withdrawal coordinator with cancellation
"""

from .models import (
    LedgerKind,
    TransferRecord,
    TierSplit,
    PlayerSnapshot,
    SyncResult,
    WithdrawalResult,
    WithdrawalStatus,
    CoordinatorState,
)
from .money import WithdrawalTier
from .ledgers import SessionLedger, PersistentLedger, CreditsLedger
from .reconciliation import ReconciliationService
from .coordinator import WithdrawalCoordinator, WithdrawalLock
from .service import ArenaAccount

__all__ = [
    "LedgerKind",
    "TransferRecord",
    "TierSplit",
    "PlayerSnapshot",
    "SyncResult",
    "WithdrawalResult",
    "WithdrawalStatus",
    "CoordinatorState",
    "WithdrawalTier",
    "SessionLedger",
    "PersistentLedger",
    "CreditsLedger",
    "ReconciliationService",
    "WithdrawalCoordinator",
    "WithdrawalLock",
    "ArenaAccount",
]
