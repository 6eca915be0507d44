"""Protocol interfaces for the injected capabilities of the engine."""
from .event_bus import EventBus
from .notifier import Notifier
from .price_oracle import PriceOracle
from .settlement import SettlementClient
from .store import PersistentStore

__all__ = [
    "EventBus",
    "Notifier",
    "PersistentStore",
    "PriceOracle",
    "SettlementClient",
]
