from __future__ import annotations

import logging
import uuid
from collections import defaultdict

from .docker_ops import FARM_LABEL, LABEL_CITY, LABEL_COUNTRY, LABEL_ID, LABEL_PORT, RuntimeClient
from .errors import RuntimeAPIError
from .models import ProxyRecord, ReconcileReport, UnitInfo
from .registry import Registry

LOGGER = logging.getLogger("ProxyFarm.Reconciler")


def pick_survivor(records: list[ProxyRecord]) -> ProxyRecord:
    """Oldest healthy record, or the oldest one if none is healthy."""
    oldest_first = sorted(records, key=lambda r: r.created_at)
    return next((r for r in oldest_first if r.healthy), oldest_first[0])


class Reconciler:
    """Brings the registry in line with the farm containers that actually exist."""

    def __init__(self, registry: Registry, runtime: RuntimeClient):
        self.registry = registry
        self.runtime = runtime

    def _adopt(self, unit: UnitInfo) -> ProxyRecord | None:
        raw_port = unit.labels.get(LABEL_PORT, "")
        if not raw_port.isdigit():
            LOGGER.warning("Container %s has no usable port label; leaving it unadopted.", unit.name)
            return None

        proxy_id = unit.labels.get(LABEL_ID) or ""
        if not proxy_id or self.registry.get(proxy_id) is not None:
            proxy_id = str(uuid.uuid4())

        record = ProxyRecord(
            id=proxy_id,
            unit_ref=unit.id,
            port=int(raw_port),
            country=unit.labels.get(LABEL_COUNTRY),
            city=unit.labels.get(LABEL_CITY),
            healthy=unit.running,
            restarts=0,
            created_at=unit.created_at,
        )
        self.registry.add(record)
        return record

    def _pending(self, unit: UnitInfo) -> bool:
        proxy_id = unit.labels.get(LABEL_ID)
        return bool(proxy_id) and self.registry.is_pending(proxy_id)

    async def _remove_orphan(self, unit: UnitInfo) -> bool:
        try:
            await self.runtime.stop(unit.id)
        except RuntimeAPIError:
            # already stopped or gone
            pass
        try:
            await self.runtime.remove(unit.id)
        except RuntimeAPIError as e:
            LOGGER.warning("Failed to remove orphaned container %s: %s", unit.name, e)
            return False
        return True

    async def reconcile(self, dedupe: bool = False) -> ReconcileReport:
        """Sync registry and runtime.

        Steps run in a fixed order: adopt unknown containers, drop records
        whose container is gone, (optionally) drop duplicate-port records,
        then remove containers nothing points at. Duplicates go before
        orphans so a container whose record was just deduplicated is
        cleaned up in the same pass.
        """
        report = ReconcileReport()
        # records registered while the listing is in flight are not in it
        known = {r.id for r in self.registry.list()}
        units = await self.runtime.list_by_label(f"{FARM_LABEL}=true")
        unit_ids = {u.id for u in units}

        # 1. containers without a record
        for unit in units:
            if self._pending(unit):
                continue
            if self.registry.get_by_unit(unit.id) is None:
                record = self._adopt(unit)
                if record is not None:
                    report.adopted.append(record.id)
                    LOGGER.info("Adopted container %s as proxy %s (port %s).", unit.name, record.id, record.port)

        # 2. records whose container disappeared
        for record in self.registry.list():
            if record.id in known and record.unit_ref not in unit_ids:
                self.registry.remove(record.id)
                report.dropped_missing.append(record.id)
                self.registry.log_event("WARN", f"Removed entry for missing container (port {record.port})", record.id)
                LOGGER.info("Removed entry for missing container: %s (port %s).", record.id, record.port)

        # 3. duplicate ports
        if dedupe:
            by_port: dict[int, list[ProxyRecord]] = defaultdict(list)
            for record in self.registry.list():
                by_port[record.port].append(record)
            for port, group in by_port.items():
                if len(group) < 2:
                    continue
                keep = pick_survivor(group)
                LOGGER.info("Port %s has %s entries; keeping %s.", port, len(group), keep.id)
                for record in group:
                    if record.id != keep.id:
                        self.registry.remove(record.id)
                        report.dropped_duplicates.append(record.id)
                        self.registry.log_event("WARN", f"Removed duplicate on port {port}", record.id)

        # 4. orphaned containers
        referenced = {r.unit_ref for r in self.registry.list()}
        for unit in units:
            if unit.id in referenced or self._pending(unit):
                continue
            LOGGER.info("Removing orphaned container %s.", unit.name)
            if await self._remove_orphan(unit):
                report.orphans_removed.append(unit.id)

        if report.changed:
            LOGGER.info(
                "Reconcile: adopted=%s missing=%s duplicates=%s orphans=%s",
                len(report.adopted),
                len(report.dropped_missing),
                len(report.dropped_duplicates),
                len(report.orphans_removed),
            )
        return report
