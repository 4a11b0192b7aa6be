"""
Durable local storage for the player snapshot.

The game client keeps a single JSON blob per player plus a standalone backup
of the global token total. Backends only deal in string values under string
keys; ``PlayerStore`` owns the snapshot schema and always rewrites the whole
blob so a reader never sees half an update.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as SchemaError

from .models import PlayerSnapshot

log = logging.getLogger(__name__)

PLAYER_DATA_KEY = "playerData"
BACKUP_KEY = "bonkBalanceBackup"


class LocalStorage(ABC):
    @abstractmethod
    def get_item(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...


class InMemoryStorage(LocalStorage):
    def __init__(self, initial: Optional[dict[str, str]] = None):
        self.items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class FileStorage(LocalStorage):
    """One file per key, replaced atomically on every write."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            log.error("Could not read %s: %s", path, e)
            return None

    def set_item(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(self.directory))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


class PlayerStore:
    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        key: str = PLAYER_DATA_KEY,
        backup_key: str = BACKUP_KEY,
    ):
        self.storage = storage or InMemoryStorage()
        self.key = key
        self.backup_key = backup_key
        self._snapshot = self._read()

    @property
    def snapshot(self) -> PlayerSnapshot:
        return self._snapshot

    def has_primary(self) -> bool:
        return self.storage.get_item(self.key) is not None

    def _read(self) -> PlayerSnapshot:
        raw = self.storage.get_item(self.key)
        if raw is None:
            return PlayerSnapshot()
        try:
            return PlayerSnapshot.model_validate_json(raw)
        except SchemaError as e:
            log.warning("Discarding unreadable player data under %r: %s", self.key, e)
            return PlayerSnapshot()

    def save(self, snapshot: Optional[PlayerSnapshot] = None) -> PlayerSnapshot:
        snapshot = snapshot or self._snapshot
        try:
            self.storage.set_item(self.key, snapshot.model_dump_json())
        except OSError as e:
            log.error("Error saving player data: %s", e)
        self._snapshot = snapshot
        return snapshot

    def update(self, **fields) -> PlayerSnapshot:
        return self.save(self._snapshot.model_copy(update=fields))

    def read_backup(self) -> Optional[Decimal]:
        raw = self.storage.get_item(self.backup_key)
        if raw is None:
            return None
        try:
            value = Decimal(raw)
        except InvalidOperation:
            log.warning("Ignoring invalid balance backup %r", raw)
            return None
        if not value.is_finite() or value < 0:
            log.warning("Ignoring invalid balance backup %r", raw)
            return None
        return value

    def write_backup(self, total: Decimal) -> None:
        self.storage.set_item(self.backup_key, str(total))

    def clear_backup(self) -> None:
        self.storage.remove_item(self.backup_key)
