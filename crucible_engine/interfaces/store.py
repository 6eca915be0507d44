"""Persistent store protocol — durable record arrays keyed by name."""
from typing import Any, Protocol


class PersistentStore(Protocol):
    """Load and save lists of JSON-compatible records."""

    async def load(self, key: str) -> list[dict[str, Any]]: ...

    async def save(self, key: str, records: list[dict[str, Any]]) -> None: ...
