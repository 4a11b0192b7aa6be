"""
Balance ledgers.

- SessionLedger: arena BONK earned this session, zeroed at every session start
- PersistentLedger: global BONK total, persisted locally and mirrored to the server
- CreditsLedger: dollar credits, persisted (game account) or volatile (arena wallet)

All ledgers keep integer cents, clamp at zero, and publish the new absolute
balance on the event bus after every mutation.
"""

import logging
from decimal import Decimal
from typing import Callable, Optional

from .client import RetryingClient, ServerClient
from .errors import NetworkSyncError, TransferError, ValidationError
from .events import BalanceChanged, EventBus
from .models import LedgerKind, SyncMode, SyncResult, TierSplit, TransferRecord
from .money import WithdrawalTier, expected_total_cents, from_cents, split_cents, to_cents
from .storage import PlayerStore

log = logging.getLogger(__name__)


class Ledger:
    kind: LedgerKind

    def __init__(self, owner: Optional[EventBus] = None, kind: Optional[LedgerKind] = None):
        self.owner = owner
        if kind is not None:
            self.kind = kind
        self._cents = 0

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def cents(self) -> int:
        return self._cents

    def get(self) -> Decimal:
        return from_cents(self._cents)

    def set(self, amount) -> Decimal:
        try:
            cents = to_cents(amount)
        except ValidationError as e:
            log.warning("%s balance not changed: %s", self.name, e)
            return self.get()
        self._commit(max(0, cents))
        return self.get()

    def add(self, delta) -> Decimal:
        try:
            delta_cents = to_cents(delta)
        except ValidationError as e:
            log.warning("%s balance not changed: %s", self.name, e)
            return self.get()
        self._commit(max(0, self._cents + delta_cents))
        return self.get()

    def reset(self) -> Decimal:
        self._commit(0)
        return self.get()

    def _commit(self, cents: int) -> None:
        self._cents = cents
        self._persist()
        self.notify()

    def _persist(self) -> None:
        pass

    def notify(self) -> None:
        if self.owner is not None:
            self.owner.publish(BalanceChanged(ledger=self.kind, balance=self.get()))

    def __repr__(self):
        return f"{type(self).__name__}({self.name}={self.get()})"


class SessionLedger(Ledger):
    kind = LedgerKind.ARENA_BONK

    def init(self) -> Decimal:
        log.info("%s initialized with zero balance", self.name)
        return self.reset()

    def transfer_all_to(self, destination) -> TransferRecord:
        add = getattr(destination, "add", None)
        if not callable(add):
            raise TransferError(f"{type(destination).__name__} cannot receive a transfer")

        amount = self.get()
        dest_before = destination.get()
        add(amount)
        self.reset()

        record = TransferRecord(
            source_before=amount,
            source_after=self.get(),
            dest_before=dest_before,
            dest_after=destination.get(),
            amount_transferred=amount,
        )
        log.info("Transferred %s from %s; destination now %s", amount, self.name, record.dest_after)
        return record


class StoredLedger(Ledger):
    """Ledger whose balance is written into the player snapshot on every mutation."""

    def __init__(
        self,
        store: Optional[PlayerStore],
        field: str,
        owner: Optional[EventBus] = None,
        kind: Optional[LedgerKind] = None,
    ):
        super().__init__(owner, kind)
        self.store = store
        self.field = field
        if store is not None:
            self.load_from_storage()

    def load_from_storage(self) -> Decimal:
        if self.store.has_primary():
            value = getattr(self.store.snapshot, self.field)
        else:
            value = self._recover_missing()
        try:
            self._cents = max(0, to_cents(value))
        except ValidationError as e:
            log.warning("Stored %s balance unusable, defaulting to 0: %s", self.name, e)
            self._cents = 0
        return self.get()

    def _recover_missing(self):
        return Decimal("0")

    def _persist(self) -> None:
        if self.store is not None:
            self.store.update(**{self.field: self.get()})


class PersistentLedger(StoredLedger):
    """Global BONK total: cached locally, mirrored to the server."""

    kind = LedgerKind.GLOBAL_BONK

    def __init__(
        self,
        store: PlayerStore,
        owner: Optional[EventBus] = None,
        client: Optional[ServerClient] = None,
        field: str = "global_token_total",
    ):
        super().__init__(store, field, owner)
        if client is not None and not isinstance(client, RetryingClient):
            client = RetryingClient(client)
        self.client = client

    def _recover_missing(self):
        backup = self.store.read_backup()
        if backup is not None:
            log.warning("Primary player data missing; restoring %s from backup: %s", self.name, backup)
            return backup
        return Decimal("0")

    async def sync_with_server(
        self,
        auth_token: Optional[str],
        local_delta=0,
        add_to_existing: bool = True,
        include_balance: Optional[bool] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> SyncResult:
        """Reconcile the server copy of the global total with this ledger.

        With ``add_to_existing`` the server's current total is fetched first
        and ``existing + local_delta`` is pushed as an absolute replace, so
        repeated or concurrent syncs never stack additive pushes. The local
        balance already holds the delta, so it is only added on top when
        ``include_balance`` asks for it. Without ``add_to_existing`` the
        local balance (plus ``local_delta``) is pushed as is.
        If the fetch fails, only ``local_delta`` is pushed additively; that
        path can double count if retried and is logged as degraded.

        Push failures are retried by the client. Once retries are exhausted
        the local balance stays as provisional truth and the failure is
        returned in the result, never raised.
        """
        if not auth_token:
            log.error("Cannot sync %s balance: no authentication token", self.name)
            return self._skipped("No authentication token provided")
        if self.client is None:
            log.error("Cannot sync %s balance: no server client configured", self.name)
            return self._skipped("No server client configured")

        try:
            delta_cents = max(0, to_cents(local_delta))
        except ValidationError as e:
            log.warning("Ignoring invalid sync delta: %s", e)
            delta_cents = 0
        if include_balance is None:
            include_balance = not add_to_existing
        local_cents = (self._cents if include_balance else 0) + delta_cents

        if not add_to_existing:
            return await self._push(auth_token, from_cents(local_cents), replace=True)

        try:
            totals = await self.client.fetch_user_totals(auth_token)
        except NetworkSyncError as e:
            log.warning(
                "Could not fetch server total (%s); degraded additive push of %s, may double count if retried",
                e, from_cents(delta_cents),
            )
            return await self._push(
                auth_token, from_cents(delta_cents), replace=False, mode=SyncMode.ADDITIVE_FALLBACK
            )

        existing = totals.global_token_total
        combined = existing + from_cents(local_cents)
        log.info("Syncing %s: server %s + local %s = %s", self.name, existing, from_cents(local_cents), combined)

        result = await self._push(auth_token, combined, replace=True, existing=existing)
        if not result.success:
            return result
        if is_cancelled is not None and is_cancelled():
            log.info("Sync finished after cancellation; local %s balance left untouched", self.name)
            return result
        self.set(combined)
        return result.model_copy(update={"applied_locally": True, "synced_total": self.get()})

    async def _push(
        self,
        auth_token: str,
        total: Decimal,
        replace: bool,
        mode: SyncMode = SyncMode.REPLACE,
        existing: Optional[Decimal] = None,
    ) -> SyncResult:
        try:
            response = await self.client.push_token_total(auth_token, total, replace=replace)
        except NetworkSyncError as e:
            log.error("Sync of %s failed; keeping local %s as provisional: %s", self.name, self.get(), e)
            return SyncResult(
                success=False, mode=mode, synced_total=self.get(),
                existing=existing, pushed_total=total, error=str(e),
            )
        if not response.success:
            log.error("Server rejected %s push of %s", self.name, total)
            return SyncResult(
                success=False, mode=mode, synced_total=self.get(),
                existing=existing, pushed_total=total, error="Server rejected the update",
            )
        synced = response.total if response.total is not None else total
        return SyncResult(success=True, mode=mode, synced_total=synced, existing=existing, pushed_total=total)

    def _skipped(self, reason: str) -> SyncResult:
        return SyncResult(success=False, mode=SyncMode.SKIPPED, synced_total=self.get(), error=reason)


class CreditsLedger(StoredLedger):
    """Dollar credits. Without a store the ledger is volatile (arena wallet)."""

    kind = LedgerKind.CREDITS

    def __init__(
        self,
        store: Optional[PlayerStore] = None,
        owner: Optional[EventBus] = None,
        field: str = "credits_total",
        kind: Optional[LedgerKind] = None,
    ):
        super().__init__(store, field, owner, kind)

    def deposit_from(self, source: Ledger, amount) -> bool:
        try:
            cents = to_cents(amount)
        except ValidationError as e:
            log.warning("Deposit into %s rejected: %s", self.name, e)
            return False
        if cents <= 0:
            log.warning("Deposit into %s rejected: amount must be positive, got %s", self.name, amount)
            return False
        if source.cents < cents:
            log.warning("Insufficient %s balance: have %s, need %s", source.name, source.get(), from_cents(cents))
            return False

        source.set(from_cents(source.cents - cents))
        self.add(from_cents(cents))
        log.info("Deposited %s from %s into %s", from_cents(cents), source.name, self.name)
        return True

    def withdraw_to(self, destination: Ledger, amount, success_ratio) -> Optional[TierSplit]:
        try:
            tier = WithdrawalTier.for_ratio(success_ratio)
            cents = to_cents(amount)
        except ValidationError as e:
            log.warning("Withdrawal from %s rejected: %s", self.name, e)
            return None
        if cents < 0:
            log.warning("Withdrawal from %s rejected: negative amount %s", self.name, amount)
            return None
        if not callable(getattr(destination, "add", None)):
            raise TransferError(f"{type(destination).__name__} cannot receive a withdrawal")

        cents = min(cents, self._cents)
        paid, retained = split_cents(cents, tier)
        expected = expected_total_cents(cents, tier)
        drift = (expected - (paid + retained)) / 100
        if abs(drift) > Decimal("0.01"):
            log.warning(
                "Balance calculation mismatch: expected %s, got %s, diff %s",
                expected / 100, from_cents(paid + retained), drift,
            )

        before = self._cents
        self.set(from_cents(before - (cents - retained)))
        try:
            destination.add(from_cents(paid))
        except Exception:
            self.set(from_cents(before))
            raise

        log.info(
            "%s withdrawal of %s: paid out %s to %s, %s retained",
            tier.value, from_cents(cents), from_cents(paid), destination.name, from_cents(retained),
        )
        return TierSplit(
            tier=tier,
            amount=from_cents(cents),
            paid_out=from_cents(paid),
            retained=from_cents(retained),
            expected_total=expected / 100,
            drift=drift,
        )
