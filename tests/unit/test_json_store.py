"""Unit tests for the durable JSON file store."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from crucible_engine.storage import JsonFileStore, MemoryStore
from crucible_engine.storage.json_store import checksum

RECORDS = [
    {"id": "lp:alice:sol:0", "isOpen": True, "baseAmount": 9_900_000_000},
    {"id": "lp:alice:sol:1", "isOpen": False, "baseAmount": 1},
]


class TestJsonFileStore:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path)
        await store.save("lp_positions", RECORDS)
        assert await store.load("lp_positions") == RECORDS

    @pytest.mark.asyncio
    async def test_writes_checksum_sidecar(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path)
        await store.save("transactions", RECORDS)
        payload = (tmp_path / "transactions.json").read_bytes()
        sidecar = (tmp_path / "transactions.json.sha256").read_text()
        assert sidecar == checksum(payload)

    @pytest.mark.asyncio
    async def test_missing_key_loads_empty(self, tmp_path: Path) -> None:
        assert await JsonFileStore(tmp_path).load("crucibles") == []

    @pytest.mark.asyncio
    async def test_creates_root_directory(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "nested" / "data")
        await store.save("crucibles", [{"id": "sol"}])
        assert (tmp_path / "nested" / "data" / "crucibles.json").exists()

    @pytest.mark.asyncio
    async def test_checksum_mismatch_loads_empty(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path)
        await store.save("crucibles", [{"id": "sol"}])
        (tmp_path / "crucibles.json").write_text(json.dumps([{"id": "tampered"}]))
        assert await store.load("crucibles") == []

    @pytest.mark.asyncio
    async def test_malformed_json_loads_empty(self, tmp_path: Path) -> None:
        (tmp_path / "crucibles.json").write_text("{not json")
        assert await JsonFileStore(tmp_path).load("crucibles") == []

    @pytest.mark.asyncio
    async def test_non_list_payload_loads_empty(self, tmp_path: Path) -> None:
        (tmp_path / "crucibles.json").write_text(json.dumps({"id": "sol"}))
        assert await JsonFileStore(tmp_path).load("crucibles") == []

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Invalid store key"):
            await JsonFileStore(tmp_path).save("../escape", [])


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_returns_copies(self) -> None:
        store = MemoryStore()
        records = [{"id": "sol"}]
        await store.save("crucibles", records)
        records[0]["id"] = "mutated"
        loaded = await store.load("crucibles")
        assert loaded == [{"id": "sol"}]
        loaded.append({"id": "x"})
        assert await store.load("crucibles") == [{"id": "sol"}]

    @pytest.mark.asyncio
    async def test_initial_data(self) -> None:
        store = MemoryStore({"crucibles": [{"id": "sol"}]})
        assert await store.load("crucibles") == [{"id": "sol"}]
        assert await store.load("transactions") == []
