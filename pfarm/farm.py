from __future__ import annotations

import asyncio
import logging
from typing import Any

from .docker_ops import RuntimeClient
from .errors import CycleInProgress, ProxyNotFound
from .healer import MAX_AUTO_RESTARTS, AutoHealer, SleepFunc
from .health import HealthProber, SocksProbeFunc, probe_socks_exit_ip
from .lifecycle import LifecycleManager
from .models import BatchResult, CreateProxyOptions, HealReport, HealthResult, ProxyRecord, ReconcileReport
from .reconciler import Reconciler
from .registry import Registry
from .settings import Settings
from .store import ProxyStore

LOGGER = logging.getLogger("ProxyFarm")


class ProxyFarm:
    """Operator-facing operations, with every component wired explicitly."""

    def __init__(
        self,
        settings: Settings,
        store: ProxyStore,
        runtime: RuntimeClient,
        *,
        socks_probe: SocksProbeFunc = probe_socks_exit_ip,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.settings = settings
        self.store = store
        self.runtime = runtime
        self.registry = Registry(store, settings.port_range_start, settings.port_range_end)
        self.lifecycle = LifecycleManager(self.registry, runtime, settings)
        self.prober = HealthProber(self.registry, runtime, settings, socks_probe=socks_probe)
        self.reconciler = Reconciler(self.registry, runtime)
        self.healer = AutoHealer(
            self.registry, self.lifecycle, self.prober, self.reconciler, settings, sleep=sleep
        )
        self._background: set[asyncio.Task[Any]] = set()

    async def start(self) -> None:
        report = await self.reconciler.reconcile()
        LOGGER.info("Proxy farm starting with %s proxies (%s adopted).", len(self.registry), len(report.adopted))
        await self.healer.start()

    async def stop(self) -> None:
        await self.healer.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self.registry.flush()

    def _probe_later(self, proxy_ids: list[str]) -> None:
        """Probe freshly created proxies once their tunnel had time to come up."""

        async def _run() -> None:
            await asyncio.sleep(self.settings.settle_delay_s)
            await self.prober.bulk_health_check(proxy_ids)

        task = asyncio.get_running_loop().create_task(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def create_proxy(self, options: CreateProxyOptions | None = None, probe: bool = True) -> ProxyRecord:
        record = await self.lifecycle.create_proxy(options)
        if probe:
            self._probe_later([record.id])
        return record

    async def create_proxies(self, count: int, options: CreateProxyOptions | None = None, probe: bool = True) -> BatchResult:
        result = await self.lifecycle.create_proxies(count, options)
        if probe and result.created:
            self._probe_later([p.id for p in result.created])
        return result

    async def list_proxies(self, live: bool = False) -> list[ProxyRecord]:
        await self.reconciler.reconcile()
        if live:
            await self.prober.bulk_health_check([r.id for r in self.registry.list()])
        return self.registry.list()

    def get_proxy(self, proxy_id: str) -> ProxyRecord:
        record = self.registry.get(proxy_id)
        if record is None:
            raise ProxyNotFound(proxy_id)
        return record

    async def remove_proxy(self, proxy_id: str) -> None:
        await self.lifecycle.remove_proxy(proxy_id)

    async def rotate_proxy(self, proxy_id: str) -> ProxyRecord:
        return await self.lifecycle.rotate_proxy(proxy_id)

    async def check_health(self, proxy_id: str) -> HealthResult:
        return await self.prober.check_proxy_health(proxy_id)

    async def reconcile(self, dedupe: bool = False) -> ReconcileReport:
        return await self.reconciler.reconcile(dedupe=dedupe)

    async def heal(self) -> HealReport:
        report = await self.healer.heal()
        if report is None:
            raise CycleInProgress("A health cycle is already running; try again shortly.")
        return report

    def status(self) -> dict[str, Any]:
        records = self.registry.list()
        healthy = sum(1 for r in records if r.healthy)
        return {
            "total": len(records),
            "healthy": healthy,
            "unhealthy": len(records) - healthy,
            "at_restart_limit": sum(1 for r in records if not r.healthy and r.restarts >= MAX_AUTO_RESTARTS),
            "ports_used": len(self.registry.used_ports()),
            "port_capacity": self.settings.port_capacity,
            "port_range": [self.settings.port_range_start, self.settings.port_range_end],
            "health_loop_running": self.healer.running,
            "cycle_in_progress": self.healer.cycle_in_progress,
            "last_cycle_at": self.healer.last_cycle_at,
            "auto_heal_enabled": self.settings.auto_heal_enabled,
        }

    def events(self, limit: int = 50) -> list[dict[str, Any]]:
        return self.registry.latest_events(limit)
