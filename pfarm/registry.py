from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import weakref
from typing import Any, Iterable, Iterator

from .errors import PortExhausted
from .models import ProxyRecord
from .store import ProxyStore

LOGGER = logging.getLogger("ProxyFarm.Registry")

_MUTABLE_FIELDS = {f.name for f in dataclasses.fields(ProxyRecord)} - {"id"}


class KeyedLocks:
    """One asyncio.Lock per key, created on first use.

    Held weakly: a lock disappears once no coroutine is holding or waiting on it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class Registry:
    """In-memory index of proxy records, written through to a ProxyStore.

    Records are loaded once at construction; an unreadable store raises
    RegistryIOError here so the process never runs with an empty view of
    a fleet that actually exists.
    """

    def __init__(self, store: ProxyStore, port_range_start: int, port_range_end: int):
        self._store = store
        self.port_range_start = port_range_start
        self.port_range_end = port_range_end
        self._records: dict[str, ProxyRecord] = {r.id: r for r in store.load_all()}
        self._locks = KeyedLocks()
        self._pending: dict[str, int] = {}
        LOGGER.info("Loaded %s proxy record(s).", len(self._records))

    def lock(self, proxy_id: str) -> asyncio.Lock:
        """Serialization point for read-modify-write on one record."""
        return self._locks.get(proxy_id)

    @contextlib.contextmanager
    def creating(self, proxy_id: str, port: int) -> Iterator[None]:
        """Mark ``proxy_id`` as having a container that is not registered yet.

        Its port counts as used, and the reconciler leaves the container
        alone until the record lands.
        """
        self._pending[proxy_id] = port
        try:
            yield
        finally:
            self._pending.pop(proxy_id, None)

    def is_pending(self, proxy_id: str) -> bool:
        return proxy_id in self._pending

    def add(self, record: ProxyRecord) -> None:
        if record.id in self._records:
            raise ValueError(f"proxy {record.id} already registered")
        self._store.upsert(record)
        self._records[record.id] = record

    def get(self, proxy_id: str) -> ProxyRecord | None:
        return self._records.get(proxy_id)

    def get_by_port(self, port: int) -> ProxyRecord | None:
        for r in self._records.values():
            if r.port == port:
                return r
        return None

    def get_by_unit(self, unit_ref: str) -> ProxyRecord | None:
        for r in self._records.values():
            if r.unit_ref == unit_ref:
                return r
        return None

    def list(self) -> list[ProxyRecord]:
        """All records, newest first."""
        return sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)

    def update(self, proxy_id: str, **changes: Any) -> ProxyRecord | None:
        current = self._records.get(proxy_id)
        if current is None:
            return None
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update field(s): {', '.join(sorted(unknown))}")
        if "restarts" in changes and changes["restarts"] < current.restarts:
            raise ValueError(f"restarts for {proxy_id} cannot decrease ({current.restarts} -> {changes['restarts']})")
        updated = dataclasses.replace(current, **changes)
        self._store.upsert(updated)
        self._records[proxy_id] = updated
        return updated

    def remove(self, proxy_id: str) -> None:
        if self._records.pop(proxy_id, None) is None:
            return
        self._store.delete(proxy_id)

    def used_ports(self) -> set[int]:
        return {r.port for r in self._records.values()} | set(self._pending.values())

    def allocate_port(self, exclude: Iterable[int] = (), observed: Iterable[int] = ()) -> int:
        """First free port in the configured range, scanning upward.

        ``observed`` are ports read straight from the runtime, in case the
        registry has drifted from the containers. Nothing is reserved: a
        caller creating several proxies must pass the ports it already
        claimed in ``exclude``.
        """
        taken = self.used_ports() | set(exclude) | set(observed)
        for port in range(self.port_range_start, self.port_range_end + 1):
            if port not in taken:
                return port
        raise PortExhausted(
            f"No free ports available in range {self.port_range_start}-{self.port_range_end}"
        )

    def flush(self) -> None:
        self._store.flush()

    def log_event(self, level: str, message: str, proxy_id: str | None = None) -> None:
        self._store.log_event(level, message, proxy_id=proxy_id)

    def latest_events(self, limit: int = 100) -> list[dict[str, Any]]:
        return self._store.latest_events(limit)

    def __len__(self) -> int:
        return len(self._records)
