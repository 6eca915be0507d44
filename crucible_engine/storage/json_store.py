"""JSON file store — one file per key plus a SHA-256 checksum sidecar."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as w:
            w.write(data)
        os.replace(tmp, path)
    finally:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass


class JsonFileStore:
    """Durable record arrays under ``root``.

    A missing file, malformed JSON, a non-list payload or a checksum mismatch
    all load as an empty list (with a warning) so a corrupted cache never
    blocks startup; the next reconciliation repopulates it.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _paths(self, key: str) -> tuple[Path, Path]:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid store key '{key}'")
        data = self.root / f"{key}.json"
        return data, data.with_name(f"{key}.json.sha256")

    def _load_sync(self, key: str) -> list[dict[str, Any]]:
        data_path, sum_path = self._paths(key)
        if not data_path.exists():
            return []
        payload = data_path.read_bytes()
        if sum_path.exists():
            expected = sum_path.read_text().strip()
            if expected != checksum(payload):
                logger.warning("Checksum mismatch for %s, ignoring stored data", data_path)
                return []
        try:
            records = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Malformed JSON in %s: %s", data_path, e)
            return []
        if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
            logger.warning("Unexpected data shape in %s, ignoring", data_path)
            return []
        return records

    def _save_sync(self, key: str, records: list[dict[str, Any]]) -> None:
        data_path, sum_path = self._paths(key)
        payload = json.dumps(records, indent=2, sort_keys=True).encode("utf-8")
        atomic_write(data_path, payload)
        atomic_write(sum_path, checksum(payload).encode("ascii"))

    async def load(self, key: str) -> list[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._load_sync, key)

    async def save(self, key: str, records: list[dict[str, Any]]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_sync, key, records)
        logger.debug("Saved %d records to %s", len(records), key)
