from __future__ import annotations

import asyncio
import copy
import json
import sqlite3
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from possync.sync.errors import StoreError
from possync.sync.models import Record
from possync.sync.utils import now_iso


@runtime_checkable
class RecordStore(Protocol):
    """Per entity type collection the engine reads and writes.

    ``update`` is an upsert keyed by the local ``id``.
    """

    async def list_all(self) -> list[Record]: ...

    async def update(self, record: Record) -> None: ...

    async def delete(self, record_id: str) -> None: ...


class MetadataStore(Protocol):
    async def get_last_pull(self, key: str) -> Optional[str]: ...

    async def set_last_pull(self, key: str, value: str) -> None: ...


class MemoryRecordStore:
    def __init__(self, records: list[Record | dict] | None = None):
        self._items: dict[str, dict] = {}
        for record in records or []:
            self.add(record)

    def add(self, record: Record | dict) -> Record:
        if isinstance(record, dict):
            record = Record.from_document(record)
        self._items[record.id] = record.to_document()
        return record

    def get(self, record_id: str) -> Optional[Record]:
        doc = self._items.get(record_id)
        return Record.from_document(copy.deepcopy(doc)) if doc is not None else None

    def ids(self) -> list[str]:
        return list(self._items)

    async def list_all(self) -> list[Record]:
        return [Record.from_document(copy.deepcopy(doc)) for doc in self._items.values()]

    async def update(self, record: Record) -> None:
        self._items[record.id] = copy.deepcopy(record.to_document())

    async def delete(self, record_id: str) -> None:
        self._items.pop(record_id, None)


class MemoryMetadataStore:
    def __init__(self):
        self.values: dict[str, str] = {}

    async def get_last_pull(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set_last_pull(self, key: str, value: str) -> None:
        self.values[key] = value


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    try:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
              entity_type TEXT NOT NULL,
              id TEXT NOT NULL,
              document TEXT NOT NULL,
              updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (entity_type, id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_metadata (
              key TEXT PRIMARY KEY,
              value TEXT,
              updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_records_entity ON records(entity_type)")
        conn.commit()
    finally:
        conn.close()


class SqliteRecordStore:
    """Records of one entity type stored as JSON documents in a shared SQLite file."""

    def __init__(self, db_path: str, entity_type: str):
        self.db_path = db_path
        self.entity_type = entity_type

    def _list_all(self) -> list[Record]:
        conn = get_conn(self.db_path)
        try:
            rows = conn.execute(
                "SELECT document FROM records WHERE entity_type=? ORDER BY rowid",
                (self.entity_type,),
            ).fetchall()
        finally:
            conn.close()
        return [Record.from_document(json.loads(row["document"])) for row in rows]

    def _update(self, record: Record):
        doc = json.dumps(record.to_document(), ensure_ascii=False, default=str)
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO records(entity_type, id, document, updated_at)
                VALUES(?,?,?,?)
                ON CONFLICT(entity_type, id) DO UPDATE SET
                  document=excluded.document,
                  updated_at=excluded.updated_at
                """,
                (self.entity_type, record.id, doc, now_iso()),
            )
            conn.commit()
        finally:
            conn.close()

    def _delete(self, record_id: str):
        conn = get_conn(self.db_path)
        try:
            conn.execute("DELETE FROM records WHERE entity_type=? AND id=?", (self.entity_type, record_id))
            conn.commit()
        finally:
            conn.close()

    async def list_all(self) -> list[Record]:
        try:
            return await asyncio.to_thread(self._list_all)
        except (sqlite3.Error, ValueError) as exc:
            raise StoreError(f"store_list_failed entity={self.entity_type}: {exc}") from exc

    async def update(self, record: Record) -> None:
        try:
            await asyncio.to_thread(self._update, record)
        except sqlite3.Error as exc:
            raise StoreError(f"store_update_failed entity={self.entity_type} id={record.id}: {exc}") from exc

    async def delete(self, record_id: str) -> None:
        try:
            await asyncio.to_thread(self._delete, record_id)
        except sqlite3.Error as exc:
            raise StoreError(f"store_delete_failed entity={self.entity_type} id={record_id}: {exc}") from exc


class SqliteMetadataStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def _get(self, key: str) -> Optional[str]:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT value FROM sync_metadata WHERE key=?", (f"last_pull:{key}",)).fetchone()
        finally:
            conn.close()
        return row["value"] if row else None

    def _set(self, key: str, value: str):
        conn = get_conn(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO sync_metadata(key, value, updated_at) VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (f"last_pull:{key}", value, now_iso()),
            )
            conn.commit()
        finally:
            conn.close()

    async def get_last_pull(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get, key)
        except sqlite3.Error as exc:
            raise StoreError(f"metadata_read_failed key={key}: {exc}") from exc

    async def set_last_pull(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set, key, value)
        except sqlite3.Error as exc:
            raise StoreError(f"metadata_write_failed key={key}: {exc}") from exc
