"""Record stores — persistence for the ordered collections the core owns.

Both backends load and save whole collections and preserve insertion order.
Append-only collections (profit snapshots) can add one record at a time.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

import structlog

from btc_trader.shell.database import Database

log = structlog.get_logger()


class SqliteStore:
    """One named collection inside the shared SQLite database."""

    def __init__(self, db: Database, collection: str) -> None:
        self._db = db
        self._collection = collection

    @property
    def name(self) -> str:
        return self._collection

    async def load(self) -> list[dict[str, Any]]:
        rows = await self._db.fetchall(
            "SELECT data FROM records WHERE collection = ? ORDER BY position",
            (self._collection,),
        )
        return [json.loads(r["data"]) for r in rows]

    async def save(self, records: list[dict[str, Any]]) -> None:
        await self._db.execute("DELETE FROM records WHERE collection = ?", (self._collection,))
        await self._db.executemany(
            "INSERT INTO records (collection, position, data) VALUES (?, ?, ?)",
            [(self._collection, i, json.dumps(r, default=str)) for i, r in enumerate(records)],
        )
        await self._db.commit()

    async def append(self, record: dict[str, Any], keep: int | None = None) -> None:
        row = await self._db.fetchone(
            "SELECT COALESCE(MAX(position), -1) AS last FROM records WHERE collection = ?",
            (self._collection,),
        )
        position = row["last"] + 1
        await self._db.execute(
            "INSERT INTO records (collection, position, data) VALUES (?, ?, ?)",
            (self._collection, position, json.dumps(record, default=str)),
        )
        if keep is not None:
            await self._db.execute(
                "DELETE FROM records WHERE collection = ? AND position <= ?",
                (self._collection, position - keep),
            )
        await self._db.commit()


class JsonFileStore:
    """A JSON array on disk, rewritten atomically on every save."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def name(self) -> str:
        return self._path.stem

    async def load(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        text = await asyncio.to_thread(self._path.read_text)
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError(f"{self._path} does not contain a JSON array")
        return data

    async def save(self, records: list[dict[str, Any]]) -> None:
        await asyncio.to_thread(self._write, json.dumps(records, indent=2, default=str))

    async def append(self, record: dict[str, Any], keep: int | None = None) -> None:
        records = await self.load()
        records.append(record)
        if keep is not None:
            records = records[-keep:]
        await self.save(records)

    def _write(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(text)
        os.replace(tmp, self._path)


def build_stores(storage: str, data_dir: str, db: Database | None) -> dict[str, SqliteStore | JsonFileStore]:
    """Create one store per persisted collection for the configured backend."""
    names = ("lots", "snapshots", "profit_events", "profit_state", "trades")
    if storage == "sqlite":
        if db is None:
            raise RuntimeError("sqlite storage requires a connected Database")
        return {name: SqliteStore(db, name) for name in names}
    return {name: JsonFileStore(Path(data_dir) / f"{name}.json") for name in names}
