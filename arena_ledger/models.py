from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict

from .money import WithdrawalTier


class LedgerKind(str, Enum):
    ARENA_BONK = "ARENA_BONK"
    GLOBAL_BONK = "GLOBAL_BONK"
    CREDITS = "CREDITS"
    ARENA_CREDITS = "ARENA_CREDITS"


class SyncMode(str, Enum):
    REPLACE = "REPLACE"
    ADDITIVE_FALLBACK = "ADDITIVE_FALLBACK"
    SKIPPED = "SKIPPED"


class WithdrawalStatus(str, Enum):
    COMPLETED = "COMPLETED"
    BUSY = "BUSY"
    ROLLED_BACK = "ROLLED_BACK"
    CANCELLED = "CANCELLED"
    INVALID = "INVALID"


class CoordinatorState(str, Enum):
    IDLE = "IDLE"
    LOCKED = "LOCKED"
    COMMITTED = "COMMITTED"
    SYNCING = "SYNCING"
    VERIFIED = "VERIFIED"
    ROLLED_BACK = "ROLLED_BACK"
    CANCELLED = "CANCELLED"


class TransferRecord(BaseModel):
    source_before: Decimal
    source_after: Decimal
    dest_before: Decimal
    dest_after: Decimal
    amount_transferred: Decimal

    def is_conserved(self, epsilon: Decimal = Decimal("0.001")) -> bool:
        return abs(self.dest_after - (self.dest_before + self.amount_transferred)) <= epsilon


class TierSplit(BaseModel):
    tier: WithdrawalTier
    amount: Decimal
    paid_out: Decimal
    retained: Decimal
    expected_total: Decimal
    drift: Decimal = Decimal("0")


class GameSettings(BaseModel):
    sound_enabled: bool = True
    difficulty: str = "normal"


class PlayerSnapshot(BaseModel):
    address: Optional[str] = None
    global_token_total: Decimal = Decimal("0")
    credits_total: Decimal = Decimal("0")
    high_score: int = 0
    last_played: Optional[datetime] = None
    settings: GameSettings = Field(default_factory=GameSettings)


class UserTotals(BaseModel):
    global_token_total: Decimal = Decimal("0")
    credits_total: Decimal = Decimal("0")


class PushResult(BaseModel):
    success: bool
    total: Optional[Decimal] = None


class SyncResult(BaseModel):
    success: bool
    mode: SyncMode
    synced_total: Decimal
    existing: Optional[Decimal] = None
    pushed_total: Optional[Decimal] = None
    applied_locally: bool = False
    error: Optional[str] = None


class VerificationReport(BaseModel):
    verified: bool
    issues: list[str] = Field(default_factory=list)
    auto_fixed: list[str] = Field(default_factory=list)


class WithdrawalResult(BaseModel):
    status: WithdrawalStatus
    message: str
    success_ratio: Optional[float] = None
    transfer: Optional[TransferRecord] = None
    payout: Optional[TierSplit] = None
    sync: Optional[SyncResult] = None
    credits_sync: Optional[SyncResult] = None
    verification: Optional[VerificationReport] = None

    @property
    def ok(self) -> bool:
        return self.status == WithdrawalStatus.COMPLETED


class BalancesResponse(BaseModel):
    address: Optional[str] = None
    arena_bonk: Decimal
    global_bonk: Decimal
    credits: Decimal
    arena_credits: Decimal
    withdrawal_in_progress: bool
    state: CoordinatorState


class AmountRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount in whole units, two decimal places")

    model_config = ConfigDict(json_schema_extra={"example": {"amount": 12.5}})


class ConnectRequest(BaseModel):
    address: str
    auth_token: str


class WithdrawalRequest(BaseModel):
    success_ratio: float = Field(..., description="Minigame success ratio in [0, 1]")

    model_config = ConfigDict(json_schema_extra={"example": {"success_ratio": 0.6}})


class HighScoreRequest(BaseModel):
    score: int


class SettingsUpdateRequest(BaseModel):
    sound_enabled: Optional[bool] = None
    difficulty: Optional[str] = None
