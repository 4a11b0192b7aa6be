"""
Withdrawal sequencing.

A withdrawal moves the whole arena BONK balance into the global ledger,
pays out arena credits by tier, syncs the server and then verifies the
ledgers. The coordinator is the only writer during that sequence; the lock
keeps a second trigger from starting another one until the first has
returned to IDLE.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Optional

from .errors import ConcurrencyRejection, ReconciliationFatalError, TransferError, TransferVerificationError, ValidationError
from .events import BalanceDisplay
from .invariants import InvariantChecker
from .ledgers import CreditsLedger, Ledger, PersistentLedger, SessionLedger
from .models import (
    CoordinatorState,
    SyncMode,
    SyncResult,
    TierSplit,
    TransferRecord,
    WithdrawalResult,
    WithdrawalStatus,
)
from .money import WithdrawalTier, validate_ratio
from .reconciliation import ReconciliationService

log = logging.getLogger(__name__)

BUSY_MESSAGE = "SYSTEM BUSY, TRY AGAIN"


class WithdrawalLock:
    def __init__(self):
        self._lock = asyncio.Lock()
        self.owner: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._lock.locked()

    async def try_acquire(self, owner: str) -> bool:
        if self._lock.locked():
            return False
        # an uncontended acquire returns without yielding to the loop
        await self._lock.acquire()
        self.owner = owner
        return True

    async def acquire(self, owner: str) -> None:
        if not await self.try_acquire(owner):
            raise ConcurrencyRejection(f"Withdrawal lock held by {self.owner}")

    def release(self, owner: Optional[str] = None) -> None:
        if not self._lock.locked():
            return
        if owner is not None and owner != self.owner:
            log.warning("Lock release by %s ignored; held by %s", owner, self.owner)
            return
        self.owner = None
        self._lock.release()


class WithdrawalCoordinator:
    def __init__(
        self,
        arena: SessionLedger,
        global_ledger: PersistentLedger,
        arena_credits: CreditsLedger,
        credits: CreditsLedger,
        reconciliation: ReconciliationService,
        display: Optional[BalanceDisplay] = None,
        lock: Optional[WithdrawalLock] = None,
        epsilon: Decimal = Decimal("0.001"),
        settle_seconds: float = 0.0,
    ):
        self.arena = arena
        self.global_ledger = global_ledger
        self.arena_credits = arena_credits
        self.credits = credits
        self.reconciliation = reconciliation
        self.display = display
        self.lock = lock or WithdrawalLock()
        self.epsilon = epsilon
        self.settle_seconds = settle_seconds

        self.state = CoordinatorState.IDLE
        self.transitions: list[CoordinatorState] = [CoordinatorState.IDLE]
        self._sequence = 0
        self._cancel_event: Optional[asyncio.Event] = None
        self._background: set[asyncio.Task] = set()

    @property
    def in_progress(self) -> bool:
        return self.lock.held

    @property
    def ledgers(self) -> list[Ledger]:
        return [self.arena, self.global_ledger, self.arena_credits, self.credits]

    def cancel(self) -> bool:
        if not self.lock.held or self._cancel_event is None:
            return False
        log.info("Withdrawal cancellation requested")
        self._cancel_event.set()
        return True

    async def drain(self) -> None:
        """Wait for syncs left running by cancelled sequences."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def execute_withdrawal(self, success_ratio, auth_token: Optional[str] = None) -> WithdrawalResult:
        if self.lock.held:
            log.info("Withdrawal already in progress, rejecting duplicate request")
            return WithdrawalResult(status=WithdrawalStatus.BUSY, message=BUSY_MESSAGE)
        try:
            ratio = validate_ratio(success_ratio)
        except ValidationError as e:
            log.warning("Withdrawal rejected: %s", e)
            return WithdrawalResult(status=WithdrawalStatus.INVALID, message=str(e))

        self._sequence += 1
        sequence_id = f"withdrawal-{self._sequence}"
        try:
            await self.lock.acquire(sequence_id)
        except ConcurrencyRejection as e:
            log.info("Withdrawal rejected: %s", e)
            return WithdrawalResult(status=WithdrawalStatus.BUSY, message=BUSY_MESSAGE)

        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        self.transitions = [CoordinatorState.IDLE]
        self._enter(CoordinatorState.LOCKED)
        try:
            return await self._run(sequence_id, ratio, auth_token, cancel_event)
        finally:
            # anything still in flight from this sequence must not touch ledgers now
            cancel_event.set()
            self._cancel_event = None
            self.lock.release(sequence_id)
            self._enter(CoordinatorState.IDLE)

    async def _run(
        self, sequence_id: str, ratio: float, auth_token: Optional[str], cancel_event: asyncio.Event
    ) -> WithdrawalResult:
        if self.settle_seconds > 0:
            await self._unless_cancelled(asyncio.sleep(self.settle_seconds), cancel_event, keep_running=False)
        if cancel_event.is_set():
            return self._cancelled(sequence_id, ratio)

        pre_arena = self.arena.get()
        pre_global = self.global_ledger.get()
        log.info("Withdrawal %s: arena %s, global %s, ratio %.3f", sequence_id, pre_arena, pre_global, ratio)

        try:
            record = self.reconciliation.transfer_arena_to_global()
            self._verify_transfer(record, pre_global)
        except (TransferError, TransferVerificationError) as e:
            log.error("Atomic transfer failed: %s", e)
            try:
                self._rollback(pre_arena, pre_global)
            except ReconciliationFatalError:
                log.critical("Rollback of %s failed; ledgers need manual reconciliation", sequence_id)
                self._enter(CoordinatorState.ROLLED_BACK)
                raise
            self._enter(CoordinatorState.ROLLED_BACK)
            return WithdrawalResult(
                status=WithdrawalStatus.ROLLED_BACK,
                message="WITHDRAWAL FAILED - BALANCES RESTORED",
                success_ratio=ratio,
            )
        self._enter(CoordinatorState.COMMITTED)

        if cancel_event.is_set():
            return self._cancelled(sequence_id, ratio, record)

        payout = self.arena_credits.withdraw_to(self.credits, self.arena_credits.get(), ratio)

        self._enter(CoordinatorState.SYNCING)
        finished, sync_task = await self._unless_cancelled(
            self.reconciliation.sync_global(
                auth_token, record.amount_transferred, add_to_existing=True, is_cancelled=cancel_event.is_set
            ),
            cancel_event,
        )
        if not finished:
            return self._cancelled(sequence_id, ratio, record, payout)
        sync = self._sync_result(sync_task)

        credits_sync = None
        if auth_token:
            finished, credits_task = await self._unless_cancelled(
                self.reconciliation.sync_credits(auth_token), cancel_event
            )
            if not finished:
                return self._cancelled(sequence_id, ratio, record, payout, sync)
            credits_sync = self._sync_result(credits_task)

        report = self._checker(sequence_id).run()
        self._enter(CoordinatorState.VERIFIED)

        return WithdrawalResult(
            status=WithdrawalStatus.COMPLETED,
            message=self._message(payout),
            success_ratio=ratio,
            transfer=record,
            payout=payout,
            sync=sync,
            credits_sync=credits_sync,
            verification=report,
        )

    def _verify_transfer(self, record: TransferRecord, pre_global: Decimal) -> None:
        expected = pre_global + record.amount_transferred
        actual = self.global_ledger.get()
        if abs(actual - expected) > self.epsilon:
            raise TransferVerificationError(
                f"Balance mismatch after transfer. Expected: {expected}, Actual: {actual}", expected, actual
            )
        if self.arena.get() > self.epsilon:
            raise TransferVerificationError(
                f"Arena balance not reset to zero after transfer: {self.arena.get()}", Decimal("0"), self.arena.get()
            )

    def _rollback(self, pre_arena: Decimal, pre_global: Decimal) -> None:
        try:
            self.global_ledger.set(pre_global)
            self.arena.set(pre_arena)
        except Exception as e:
            raise ReconciliationFatalError(f"Failed to restore balances: {e}") from e
        if self.global_ledger.get() != pre_global or self.arena.get() != pre_arena:
            raise ReconciliationFatalError(
                f"Failed to restore balances: global {self.global_ledger.get()} (wanted {pre_global}), "
                f"arena {self.arena.get()} (wanted {pre_arena})"
            )
        log.info("Restored original balances after failed transfer")

    async def _unless_cancelled(self, awaitable: Awaitable, cancel_event: asyncio.Event, keep_running: bool = True):
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task.done():
            return True, task
        if keep_running:
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        else:
            task.cancel()
        return False, task

    def _sync_result(self, task: asyncio.Task) -> SyncResult:
        try:
            return task.result()
        except Exception as e:
            log.exception("Server sync raised unexpectedly; withdrawal stays committed locally")
            return SyncResult(success=False, mode=SyncMode.SKIPPED, synced_total=self.global_ledger.get(), error=str(e))

    def _checker(self, sequence_id: str, full: bool = True) -> InvariantChecker:
        checker = InvariantChecker()
        if full:
            checker.add(
                "withdrawal lock held by the running sequence",
                lambda: self.lock.held and self.lock.owner == sequence_id,
            )
        for ledger in self.ledgers:
            checker.add(f"{ledger.name} balance is non-negative", lambda l=ledger: l.cents >= 0, lambda l=ledger: l.set(0))
        if not full:
            return checker

        checker.add("ARENA_BONK balance is zero after withdrawal", lambda: self.arena.cents == 0, self.arena.reset)
        if self.display is not None:
            for ledger in self.ledgers:
                checker.add(
                    f"{ledger.name} display matches ledger",
                    lambda l=ledger: self.display.get(l.kind) == l.get(),
                    ledger.notify,
                )
        return checker

    def _cancelled(
        self,
        sequence_id: str,
        ratio: float,
        record: Optional[TransferRecord] = None,
        payout: Optional[TierSplit] = None,
        sync: Optional[SyncResult] = None,
    ) -> WithdrawalResult:
        self._enter(CoordinatorState.CANCELLED)
        report = self._checker(sequence_id, full=False).run()
        log.info("Withdrawal %s cancelled in flight", sequence_id)
        return WithdrawalResult(
            status=WithdrawalStatus.CANCELLED,
            message="WITHDRAWAL CANCELLED",
            success_ratio=ratio,
            transfer=record,
            payout=payout,
            sync=sync,
            verification=report,
        )

    @staticmethod
    def _message(payout: Optional[TierSplit]) -> str:
        if payout is None:
            return "WITHDRAWAL COMPLETE"
        if payout.tier == WithdrawalTier.PERFECT:
            return f"PERFECT HACK! WITHDRAWN ${payout.paid_out} (+10% BONUS) TO GAME ACCOUNT"
        return f"WITHDRAWN ${payout.paid_out} TO GAME ACCOUNT (${payout.retained} STAYS IN ARENA)"

    def _enter(self, state: CoordinatorState) -> None:
        self.state = state
        self.transitions.append(state)
        log.debug("Withdrawal coordinator -> %s", state.value)
