from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from .errors import FarmError, RestartLimitReached
from .health import HealthProber
from .lifecycle import LifecycleManager
from .models import HealReport, ProxyRecord, utc_now
from .reconciler import Reconciler
from .registry import Registry
from .settings import Settings

LOGGER = logging.getLogger("ProxyFarm.Healer")

MAX_AUTO_RESTARTS = 3

SleepFunc = Callable[[float], Awaitable[None]]


class AutoHealer:
    """Periodic probe-and-repair loop.

    Unhealthy proxies are rotated until they hit MAX_AUTO_RESTARTS; past
    that they are left alone for an operator to remove.
    """

    def __init__(
        self,
        registry: Registry,
        lifecycle: LifecycleManager,
        prober: HealthProber,
        reconciler: Reconciler,
        settings: Settings,
        *,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.registry = registry
        self.lifecycle = lifecycle
        self.prober = prober
        self.reconciler = reconciler
        self.settings = settings
        self._sleep = sleep
        self._cycle_running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.last_cycle_at: str | None = None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_running

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        LOGGER.info("Health loop started (every %ss, auto-heal %s).",
                    self.settings.health_interval_s, "on" if self.settings.auto_heal_enabled else "off")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_cycle()
                except Exception as exc:
                    LOGGER.exception("Health cycle failed: %s", exc)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=max(1, self.settings.health_interval_s))
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            LOGGER.info("Health loop cancelled.")

    async def run_cycle(self) -> HealReport | None:
        """One pass of the control loop; skipped if another pass is still running."""
        return await self._guarded(dedupe=False, heal=self.settings.auto_heal_enabled)

    async def heal(self) -> HealReport | None:
        """Operator maintenance: reconcile with dedupe, probe everything, heal."""
        return await self._guarded(dedupe=True, heal=True)

    async def _guarded(self, dedupe: bool, heal: bool) -> HealReport | None:
        if self._cycle_running:
            LOGGER.warning("Previous health cycle still running; skipping.")
            return None
        self._cycle_running = True
        try:
            return await self._cycle(dedupe=dedupe, heal=heal)
        finally:
            self._cycle_running = False
            self.last_cycle_at = utc_now()

    async def _cycle(self, dedupe: bool, heal: bool) -> HealReport:
        report = HealReport()
        report.reconcile = await self.reconciler.reconcile(dedupe=dedupe)

        records = self.registry.list()
        results = await self.prober.bulk_health_check([r.id for r in records])
        report.checked = len(results)
        report.unhealthy = [pid for pid, res in results.items() if not res.healthy and res.error != "ProxyNotFound"]

        if report.unhealthy:
            LOGGER.info("Unhealthy proxies: %s", ", ".join(report.unhealthy))
        if not heal or not report.unhealthy:
            return report

        candidates: list[ProxyRecord] = []
        for pid in report.unhealthy:
            record = self.registry.get(pid)
            if record is None:
                continue
            if record.restarts >= MAX_AUTO_RESTARTS:
                LOGGER.warning(
                    "Skipping %s (port %s): exceeded restart limit (%s attempts).", pid, record.port, record.restarts
                )
                self.registry.log_event("WARN", f"Auto-heal skipped after {record.restarts} restarts", pid)
                report.skipped.append(pid)
                continue
            candidates.append(record)

        width = max(1, self.settings.heal_batch_size)
        for i in range(0, len(candidates), width):
            batch = candidates[i : i + width]
            await asyncio.gather(*(self._heal_one(r, report) for r in batch))

        LOGGER.info(
            "Heal pass: %s unhealthy, %s rotated, %s recovered, %s skipped, %s failed.",
            len(report.unhealthy),
            len(report.rotated),
            len(report.recovered),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def _heal_one(self, record: ProxyRecord, report: HealReport) -> None:
        LOGGER.info("Healing unhealthy proxy %s (port %s).", record.id, record.port)
        try:
            rotated = await self.lifecycle.rotate_proxy(record.id, max_restarts=MAX_AUTO_RESTARTS)
        except RestartLimitReached:
            LOGGER.warning("Skipping %s: reached the restart limit while waiting to heal.", record.id)
            self.registry.log_event("WARN", f"Auto-heal skipped after {MAX_AUTO_RESTARTS} restarts", record.id)
            report.skipped.append(record.id)
            return
        except FarmError as e:
            LOGGER.error("Failed to heal proxy %s: %s", record.id, e)
            report.failed.append(record.id)
            return
        report.rotated.append(record.id)

        await self._sleep(self.settings.settle_delay_s)

        health = await self.prober.check_proxy_health(rotated.id)
        if health.healthy:
            LOGGER.info("Proxy %s is healthy again, exit IP %s.", rotated.id, health.exit_ip)
            report.recovered.append(rotated.id)
        else:
            LOGGER.warning("Proxy %s still unhealthy after restart: %s", rotated.id, health.error)
