import logging
from decimal import Decimal
from typing import Callable, Optional

from .client import RetryingClient, ServerClient
from .errors import NetworkSyncError
from .ledgers import CreditsLedger, PersistentLedger, SessionLedger
from .models import SyncMode, SyncResult, TransferRecord
from .storage import PlayerStore

log = logging.getLogger(__name__)


class ReconciliationService:
    """Moves arena BONK into the global ledger and keeps the server copy in step.

    Local ledgers are authoritative as soon as they change; the server is
    brought up to date afterwards with fetch-then-replace pushes.
    """

    def __init__(
        self,
        arena: SessionLedger,
        global_ledger: PersistentLedger,
        credits: CreditsLedger,
        client: Optional[ServerClient] = None,
        store: Optional[PlayerStore] = None,
    ):
        self.arena = arena
        self.global_ledger = global_ledger
        self.credits = credits
        client = client or global_ledger.client
        if client is not None and not isinstance(client, RetryingClient):
            client = RetryingClient(client)
        self.client = client
        self.store = store or global_ledger.store

    def transfer_arena_to_global(self) -> TransferRecord:
        return self.arena.transfer_all_to(self.global_ledger)

    async def sync_global(
        self,
        auth_token: Optional[str],
        delta=0,
        add_to_existing: bool = True,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> SyncResult:
        return await self.global_ledger.sync_with_server(
            auth_token, delta, add_to_existing=add_to_existing, is_cancelled=is_cancelled
        )

    async def sync_credits(self, auth_token: Optional[str]) -> SyncResult:
        total = self.credits.get()
        if not auth_token or self.client is None:
            log.error("Cannot sync credits: not authenticated")
            return SyncResult(success=False, mode=SyncMode.SKIPPED, synced_total=total, error="Not authenticated")
        try:
            response = await self.client.push_credits_total(auth_token, total)
        except NetworkSyncError as e:
            log.error("Error updating credit count on server: %s", e)
            return SyncResult(success=False, mode=SyncMode.REPLACE, synced_total=total, pushed_total=total, error=str(e))
        return SyncResult(
            success=response.success,
            mode=SyncMode.REPLACE,
            synced_total=response.total if response.total is not None else total,
            pushed_total=total,
            error=None if response.success else "Server rejected the update",
        )

    async def restore_on_connect(self, auth_token: Optional[str]) -> SyncResult:
        """Adopt server totals on login, recovering a higher local backup if one survived."""
        if not auth_token or self.client is None:
            return SyncResult(
                success=False, mode=SyncMode.SKIPPED, synced_total=self.global_ledger.get(), error="Not authenticated"
            )
        try:
            totals = await self.client.fetch_user_totals(auth_token)
        except NetworkSyncError as e:
            log.error("Could not load account totals, keeping local balances: %s", e)
            return SyncResult(
                success=False, mode=SyncMode.SKIPPED, synced_total=self.global_ledger.get(), error=str(e)
            )

        self.credits.set(totals.credits_total)
        server_total = totals.global_token_total
        backup = self.store.read_backup()
        best = max(server_total, backup if backup is not None else Decimal("0"))
        log.info("Using highest BONK balance: %s (server: %s, backup: %s)", best, server_total, backup)
        self.global_ledger.set(best)

        if backup is None:
            return SyncResult(
                success=True, mode=SyncMode.REPLACE, synced_total=self.global_ledger.get(),
                existing=server_total, applied_locally=True,
            )
        if backup <= server_total:
            self.store.clear_backup()
            return SyncResult(
                success=True, mode=SyncMode.REPLACE, synced_total=self.global_ledger.get(),
                existing=server_total, applied_locally=True,
            )

        try:
            await self.client.push_token_total(auth_token, backup, replace=True)
        except NetworkSyncError as e:
            log.error("Could not restore backed up balance %s to server: %s", backup, e)
            return SyncResult(
                success=False, mode=SyncMode.REPLACE, synced_total=self.global_ledger.get(),
                existing=server_total, pushed_total=backup, applied_locally=True, error=str(e),
            )
        self.store.clear_backup()
        log.info("Restored backed up BONK balance %s to server", backup)
        return SyncResult(
            success=True, mode=SyncMode.REPLACE, synced_total=self.global_ledger.get(),
            existing=server_total, pushed_total=backup, applied_locally=True,
        )

    async def preserve_on_disconnect(self, auth_token: Optional[str]) -> SyncResult:
        """Back up the global total locally and make sure the server is not behind it."""
        total = self.global_ledger.get()
        if total > 0:
            self.store.write_backup(total)
            log.info("Saved BONK balance backup: %s", total)
        if not auth_token or self.client is None or total <= 0:
            return SyncResult(success=False, mode=SyncMode.SKIPPED, synced_total=total, error="Nothing to push")

        try:
            totals = await self.client.fetch_user_totals(auth_token)
        except NetworkSyncError as e:
            log.error("Could not read server total on disconnect; backup kept: %s", e)
            return SyncResult(success=False, mode=SyncMode.SKIPPED, synced_total=total, error=str(e))

        existing = totals.global_token_total
        if existing >= total:
            return SyncResult(success=True, mode=SyncMode.SKIPPED, synced_total=existing, existing=existing)
        try:
            response = await self.client.push_token_total(auth_token, total, replace=True)
        except NetworkSyncError as e:
            log.error("Final BONK push on disconnect failed; backup kept: %s", e)
            return SyncResult(
                success=False, mode=SyncMode.REPLACE, synced_total=total,
                existing=existing, pushed_total=total, error=str(e),
            )
        return SyncResult(
            success=response.success, mode=SyncMode.REPLACE, synced_total=total,
            existing=existing, pushed_total=total,
        )
