from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, configure_logging
from .errors import ConcurrencyRejection
from .models import (
    AmountRequest, ConnectRequest, WithdrawalRequest, HighScoreRequest,
    SettingsUpdateRequest, BalancesResponse, WithdrawalResult, WithdrawalStatus,
    SyncResult, GameSettings,
)
from .service import ArenaAccount


def create_app(account: ArenaAccount) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await account.aclose()

    app = FastAPI(
        title="Arena Ledger API",
        description="Arena and global BONK balances, credits, and tiered withdrawals for the game client",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.account = account

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "arena-ledger"}

    @app.get("/balances", response_model=BalancesResponse, tags=["Balances"])
    def get_balances() -> BalancesResponse:
        return account.balances()

    @app.post("/session/start", response_model=BalancesResponse, tags=["Session"])
    def start_session() -> BalancesResponse:
        if account.coordinator.in_progress:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Withdrawal in progress")
        account.start_session()
        return account.balances()

    @app.post("/session/connect", response_model=SyncResult, tags=["Session"])
    async def connect(request: ConnectRequest) -> SyncResult:
        return await account.connect(request.address, request.auth_token)

    @app.post("/session/disconnect", response_model=SyncResult, tags=["Session"])
    async def disconnect() -> SyncResult:
        if not account.is_authenticated:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not connected")
        return await account.disconnect()

    @app.post("/arena/bonk", response_model=BalancesResponse, tags=["Arena"])
    def earn_bonk(request: AmountRequest) -> BalancesResponse:
        if request.amount <= Decimal("0"):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Amount must be positive")
        try:
            account.earn_bonk(request.amount)
        except ConcurrencyRejection as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        return account.balances()

    @app.post("/arena/deposit", response_model=BalancesResponse, tags=["Arena"])
    def deposit_to_arena(request: AmountRequest) -> BalancesResponse:
        if not account.deposit_to_arena(request.amount):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Deposit rejected")
        return account.balances()

    @app.post("/withdrawals", response_model=WithdrawalResult, tags=["Withdrawals"])
    async def withdraw(request: WithdrawalRequest) -> WithdrawalResult:
        result = await account.withdraw(request.success_ratio)
        if result.status == WithdrawalStatus.BUSY:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.message)
        if result.status == WithdrawalStatus.INVALID:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result.message)
        return result

    @app.post("/withdrawals/cancel", tags=["Withdrawals"])
    def cancel_withdrawal():
        return {"cancelled": account.cancel_withdrawal()}

    @app.post("/player/high-score", tags=["Player"])
    def update_high_score(request: HighScoreRequest):
        return {"new_high_score": account.update_high_score(request.score), "high_score": account.store.snapshot.high_score}

    @app.patch("/player/settings", response_model=GameSettings, tags=["Player"])
    def update_settings(request: SettingsUpdateRequest) -> GameSettings:
        return account.update_settings(**request.model_dump())

    return app


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(ArenaAccount.from_settings(settings))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
