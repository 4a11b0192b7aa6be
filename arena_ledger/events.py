import logging
from collections import defaultdict
from decimal import Decimal
from typing import Callable, Type, TypeVar

from pydantic import BaseModel, ConfigDict

from .models import LedgerKind

log = logging.getLogger(__name__)


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class BalanceChanged(Event):
    ledger: LedgerKind
    balance: Decimal


E = TypeVar("E", bound=Event)


class EventBus:
    """Synchronous, fire-and-forget dispatch keyed on the event class.

    A failing handler is logged and skipped; it never reaches the ledger
    that published the event.
    """

    def __init__(self):
        self._handlers: dict[type, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe():
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                log.exception("Event handler %r failed for %s", handler, type(event).__name__)


class BalanceDisplay:
    """Last balance each subscriber-facing display was told about."""

    def __init__(self, bus: EventBus):
        self.values: dict[LedgerKind, Decimal] = {}
        bus.subscribe(BalanceChanged, self._on_balance_changed)

    def _on_balance_changed(self, event: BalanceChanged) -> None:
        self.values[event.ledger] = event.balance

    def get(self, kind: LedgerKind, default: Decimal = Decimal("0")) -> Decimal:
        return self.values.get(kind, default)
