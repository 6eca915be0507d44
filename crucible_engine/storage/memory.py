"""In-process store, used by tests and the ``memory`` storage backend."""
from __future__ import annotations

import copy
from typing import Any


class MemoryStore:
    def __init__(self, initial: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self._data: dict[str, list[dict[str, Any]]] = copy.deepcopy(initial or {})

    async def load(self, key: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._data.get(key, []))

    async def save(self, key: str, records: list[dict[str, Any]]) -> None:
        self._data[key] = copy.deepcopy(records)
