import pytest

from arena_ledger.client import InMemoryServer, RetryingClient, RetryPolicy
from arena_ledger.config import Settings
from arena_ledger.events import BalanceDisplay, EventBus
from arena_ledger.ledgers import CreditsLedger, PersistentLedger, SessionLedger
from arena_ledger.models import LedgerKind
from arena_ledger.reconciliation import ReconciliationService
from arena_ledger.service import ArenaAccount
from arena_ledger.storage import InMemoryStorage, PlayerStore

TOKEN = "test-auth-token"
ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


class Ledgers:
    """Ledgers wired the way ArenaAccount wires them, without the coordinator."""

    def __init__(self, server, storage=None, global_cls=PersistentLedger):
        self.bus = EventBus()
        self.display = BalanceDisplay(self.bus)
        self.storage = storage or InMemoryStorage()
        self.store = PlayerStore(self.storage)
        self.client = RetryingClient(server, RetryPolicy(attempts=3, base_delay=0))
        self.arena = SessionLedger(owner=self.bus)
        self.global_ledger = global_cls(self.store, owner=self.bus, client=self.client)
        self.credits = CreditsLedger(self.store, owner=self.bus)
        self.arena_credits = CreditsLedger(owner=self.bus, kind=LedgerKind.ARENA_CREDITS)
        self.reconciliation = ReconciliationService(self.arena, self.global_ledger, self.credits)


@pytest.fixture
def server():
    server = InMemoryServer()
    server.seed(TOKEN, global_token_total="50", credits_total="10")
    return server


@pytest.fixture
def ledgers(server):
    return Ledgers(server)


@pytest.fixture
def settings():
    return Settings(sync_base_delay=0)


@pytest.fixture
def account(server, settings):
    return ArenaAccount(client=server, settings=settings)
