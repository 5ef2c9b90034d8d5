from __future__ import annotations

import json
import os
import sqlite3
import tempfile
from collections import deque
from typing import Any, Iterable, Protocol

from .errors import ConfigInvalid, RegistryIOError
from .models import ProxyRecord, utc_now
from .settings import Settings

MAX_MEMORY_EVENTS = 500


class ProxyStore(Protocol):
    """Durable storage behind the registry."""

    def load_all(self) -> list[ProxyRecord]: ...

    def upsert(self, record: ProxyRecord) -> None: ...

    def delete(self, proxy_id: str) -> None: ...

    def flush(self) -> None: ...

    def log_event(self, level: str, message: str, proxy_id: str | None = None) -> None: ...

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]: ...

    def close(self) -> None: ...


def _records_from_rows(rows: Iterable[dict[str, Any]], source: str) -> list[ProxyRecord]:
    out: list[ProxyRecord] = []
    for r in rows:
        if not isinstance(r, dict):
            raise RegistryIOError(f"{source}: expected an object per proxy, got {type(r).__name__}")
        try:
            out.append(ProxyRecord.from_dict(r))
        except (TypeError, ValueError) as e:
            raise RegistryIOError(f"{source}: invalid proxy record: {e}") from e
    return out


class JsonFileStore:
    """The whole registry as a single JSON array document.

    Every write replaces the document atomically (temp file + fsync +
    os.replace), so a crash mid-write leaves the previous version intact.
    """

    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        parent = os.path.dirname(self.path)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        self._records: dict[str, ProxyRecord] = {}
        self._events: deque[dict[str, Any]] = deque(maxlen=MAX_MEMORY_EVENTS)
        self._next_event_id = 1

    def load_all(self) -> list[ProxyRecord]:
        if not os.path.exists(self.path):
            self._records = {}
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except OSError as e:
            raise RegistryIOError(f"Cannot read registry {self.path}: {e}") from e
        except ValueError as e:
            raise RegistryIOError(f"Registry {self.path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise RegistryIOError(f"Registry {self.path} must contain a JSON array.")
        records = _records_from_rows(data, self.path)
        self._records = {r.id: r for r in records}
        return records

    def upsert(self, record: ProxyRecord) -> None:
        records = dict(self._records)
        records[record.id] = record
        self._write(records)
        self._records = records

    def delete(self, proxy_id: str) -> None:
        if proxy_id not in self._records:
            return
        records = {k: v for k, v in self._records.items() if k != proxy_id}
        self._write(records)
        self._records = records

    def flush(self) -> None:
        self._write(self._records)

    def _write(self, records: dict[str, ProxyRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records.values()], indent=2)
        directory = os.path.dirname(self.path) or "."
        fd, tmp = tempfile.mkstemp(prefix=".proxies-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise RegistryIOError(f"Cannot write registry {self.path}: {e}") from e

    def log_event(self, level: str, message: str, proxy_id: str | None = None) -> None:
        self._events.append(
            {"id": self._next_event_id, "ts": utc_now(), "level": level.upper(), "proxy_id": proxy_id, "message": message}
        )
        self._next_event_id += 1

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return list(reversed(self._events))[: max(0, limit)]

    def close(self) -> None:
        self.flush()


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (a common result of a
    bind mount whose source file did not exist), the database goes inside it.
    """

    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "proxies.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


_COLUMNS = ("id", "unit_ref", "port", "country", "city", "exit_ip", "healthy", "restarts", "created_at", "notes")


class SqliteStore:
    """Registry rows in SQLite, one row per proxy."""

    def __init__(self, path: str):
        self.path = _resolve_db_path(path)
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_db()
        except sqlite3.Error as e:
            raise RegistryIOError(f"Cannot open registry database {self.path}: {e}") from e

    def _init_db(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS proxies (
                  id TEXT PRIMARY KEY,
                  unit_ref TEXT NOT NULL,
                  port INTEGER NOT NULL,
                  country TEXT,
                  city TEXT,
                  exit_ip TEXT,
                  healthy INTEGER NOT NULL DEFAULT 0,
                  restarts INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  notes TEXT
                );

                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  proxy_id TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_proxies_port ON proxies(port);
                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                """
            )

    def load_all(self) -> list[ProxyRecord]:
        try:
            rows = self._conn.execute("SELECT * FROM proxies ORDER BY created_at").fetchall()
        except sqlite3.Error as e:
            raise RegistryIOError(f"Cannot read registry database {self.path}: {e}") from e
        return _records_from_rows((dict(r) for r in rows), self.path)

    def upsert(self, record: ProxyRecord) -> None:
        row = record.to_dict()
        row["healthy"] = int(record.healthy)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(f"{c}=excluded.{c}" for c in _COLUMNS if c != "id")
        try:
            with self._conn:
                self._conn.execute(
                    f"INSERT INTO proxies ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
                    f"ON CONFLICT(id) DO UPDATE SET {updates}",
                    tuple(row[c] for c in _COLUMNS),
                )
        except sqlite3.Error as e:
            raise RegistryIOError(f"Cannot write proxy {record.id}: {e}") from e

    def delete(self, proxy_id: str) -> None:
        try:
            with self._conn:
                self._conn.execute("DELETE FROM proxies WHERE id=?", (proxy_id,))
        except sqlite3.Error as e:
            raise RegistryIOError(f"Cannot delete proxy {proxy_id}: {e}") from e

    def flush(self) -> None:
        # Every statement commits on its own.
        self._conn.commit()

    def log_event(self, level: str, message: str, proxy_id: str | None = None) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO events (ts, level, proxy_id, message) VALUES (?, ?, ?, ?)",
                    (utc_now(), level.upper(), proxy_id, message),
                )
        except sqlite3.Error as e:
            raise RegistryIOError(f"Cannot write event to {self.path}: {e}") from e

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        try:
            rows = self._conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        except sqlite3.Error as e:
            raise RegistryIOError(f"Cannot read events from {self.path}: {e}") from e
        return [dict(r) for r in rows]

    def close(self) -> None:
        self._conn.close()


def open_store(s: Settings) -> ProxyStore:
    if s.store_backend == "json":
        return JsonFileStore(s.db_path)
    if s.store_backend == "sqlite":
        return SqliteStore(s.db_path)
    raise ConfigInvalid(f"Unknown store backend '{s.store_backend}'.")
