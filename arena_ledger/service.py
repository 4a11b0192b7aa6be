import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .client import HttpServerClient, RetryingClient, RetryPolicy, ServerClient
from .config import Settings
from .coordinator import WithdrawalCoordinator
from .errors import ConcurrencyRejection
from .events import BalanceDisplay, EventBus
from .ledgers import CreditsLedger, PersistentLedger, SessionLedger
from .models import BalancesResponse, GameSettings, LedgerKind, SyncResult, WithdrawalResult
from .reconciliation import ReconciliationService
from .storage import FileStorage, InMemoryStorage, PlayerStore

log = logging.getLogger(__name__)


class ArenaAccount:
    """One player's ledgers, wired together for a game client.

    - arena: BONK earned this session (volatile)
    - global_ledger: persisted BONK total mirrored to the server
    - credits: persisted game-account credits
    - arena_credits: credits deposited into the current arena (volatile)
    """

    def __init__(
        self,
        store: Optional[PlayerStore] = None,
        client: Optional[ServerClient] = None,
        settings: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
    ):
        self.settings = settings or Settings()
        self.bus = bus or EventBus()
        self.display = BalanceDisplay(self.bus)
        self.store = store or PlayerStore(InMemoryStorage())

        if client is not None and not isinstance(client, RetryingClient):
            client = RetryingClient(
                client,
                RetryPolicy(attempts=self.settings.sync_attempts, base_delay=self.settings.sync_base_delay),
            )
        self.client = client

        self.arena = SessionLedger(owner=self.bus)
        self.global_ledger = PersistentLedger(self.store, owner=self.bus, client=self.client)
        self.credits = CreditsLedger(self.store, owner=self.bus)
        self.arena_credits = CreditsLedger(owner=self.bus, kind=LedgerKind.ARENA_CREDITS)

        self.reconciliation = ReconciliationService(
            self.arena, self.global_ledger, self.credits, client=self.client, store=self.store
        )
        self.coordinator = WithdrawalCoordinator(
            self.arena,
            self.global_ledger,
            self.arena_credits,
            self.credits,
            self.reconciliation,
            display=self.display,
            epsilon=self.settings.transfer_epsilon,
            settle_seconds=self.settings.withdrawal_settle_seconds,
        )
        self.auth_token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ArenaAccount":
        settings = settings or Settings.from_env()
        storage = FileStorage(settings.storage_dir) if settings.storage_dir else InMemoryStorage()
        client = HttpServerClient(settings.api_base_url, timeout=settings.api_timeout)
        return cls(store=PlayerStore(storage), client=client, settings=settings)

    @property
    def is_authenticated(self) -> bool:
        return self.auth_token is not None

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()

    def start_session(self) -> None:
        self.arena.init()
        self.arena_credits.reset()
        self.store.update(last_played=datetime.now(timezone.utc))

    async def connect(self, address: str, auth_token: str) -> SyncResult:
        self.auth_token = auth_token
        result = await self.reconciliation.restore_on_connect(auth_token)
        self.store.update(address=address)
        self.arena.init()
        log.info("Player authenticated: %s", address)
        return result

    async def disconnect(self) -> SyncResult:
        result = await self.reconciliation.preserve_on_disconnect(self.auth_token)
        address = self.store.snapshot.address
        self.store.update(address=None)
        self.auth_token = None
        log.info("Player disconnected (wallet: %s, BONK balance: %s)", address, self.global_ledger.get())
        return result

    def earn_bonk(self, amount) -> Decimal:
        # the withdrawal zeroes the arena after its transfer; gameplay is paused until it ends
        if self.coordinator.in_progress:
            raise ConcurrencyRejection("Cannot earn BONK while a withdrawal is in progress")
        return self.arena.add(amount)

    def deposit_to_arena(self, amount) -> bool:
        return self.arena_credits.deposit_from(self.credits, amount)

    async def withdraw(self, success_ratio) -> WithdrawalResult:
        return await self.coordinator.execute_withdrawal(success_ratio, self.auth_token)

    def cancel_withdrawal(self) -> bool:
        return self.coordinator.cancel()

    def update_high_score(self, score: int) -> bool:
        if score <= self.store.snapshot.high_score:
            return False
        self.store.update(high_score=score)
        log.info("New high score for %s: %s", self.store.snapshot.address, score)
        return True

    def update_settings(self, **changes) -> GameSettings:
        current = self.store.snapshot.settings
        updated = current.model_copy(update={k: v for k, v in changes.items() if v is not None})
        self.store.update(settings=updated)
        return updated

    def balances(self) -> BalancesResponse:
        return BalancesResponse(
            address=self.store.snapshot.address,
            arena_bonk=self.arena.get(),
            global_bonk=self.global_ledger.get(),
            credits=self.credits.get(),
            arena_credits=self.arena_credits.get(),
            withdrawal_in_progress=self.coordinator.in_progress,
            state=self.coordinator.state,
        )
