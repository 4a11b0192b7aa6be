import logging
import os
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

DEFAULT_API_BASE_URL = "https://bonkgames.io/api/api"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseModel):
    api_base_url: str = DEFAULT_API_BASE_URL
    api_timeout: float = 10.0
    sync_attempts: int = 3
    sync_base_delay: float = 0.5
    storage_dir: Optional[str] = None
    log_level: str = "INFO"
    withdrawal_settle_seconds: float = 0.0
    transfer_epsilon: Decimal = Decimal("0.001")

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "api_base_url": os.getenv("ARENA_API_BASE_URL"),
            "api_timeout": os.getenv("ARENA_API_TIMEOUT"),
            "sync_attempts": os.getenv("ARENA_SYNC_ATTEMPTS"),
            "sync_base_delay": os.getenv("ARENA_SYNC_BASE_DELAY"),
            "storage_dir": os.getenv("ARENA_STORAGE_DIR"),
            "log_level": os.getenv("ARENA_LOG_LEVEL"),
            "withdrawal_settle_seconds": os.getenv("ARENA_WITHDRAWAL_SETTLE_SECONDS"),
        }
        return cls(**{k: v for k, v in env.items() if v not in (None, "")})


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
