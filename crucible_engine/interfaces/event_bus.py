"""Event bus protocol — domain event fan-out."""
from typing import Any, Protocol


class EventBus(Protocol):
    def emit(self, name: str, payload: dict[str, Any]) -> None: ...
