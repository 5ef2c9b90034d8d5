from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path

import pytest

from pfarm.errors import ProbeTimeout, RuntimeAPIError, UnitNotFound
from pfarm.farm import ProxyFarm
from pfarm.models import UnitInfo, UnitSpec, utc_now
from pfarm.settings import Settings
from pfarm.store import JsonFileStore


@dataclass
class FakeUnit:
    id: str
    name: str
    labels: dict[str, str]
    created_at: str
    running: bool = True
    restarts: int = 0


class FakeRuntime:
    """In-memory RuntimeClient; no Docker daemon involved."""

    def __init__(self) -> None:
        self.units: dict[str, FakeUnit] = {}
        self.specs: dict[str, UnitSpec] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_create_ports: set[int] = set()
        self.fail_start = False
        self.restart_errors: dict[str, Exception] = {}
        self.remove_errors: dict[str, Exception] = {}
        self.exec_outputs: dict[str, str] = {}
        self._seq = 0

    def _unit(self, unit_id: str) -> FakeUnit:
        unit = self.units.get(unit_id)
        if unit is None:
            raise UnitNotFound(f"No such container: {unit_id}")
        return unit

    def add_unit(self, labels: dict[str, str], running: bool = True, created_at: str | None = None) -> str:
        """Simulate a container that appeared outside the control plane."""
        self._seq += 1
        unit_id = f"unit{self._seq:04d}"
        self.units[unit_id] = FakeUnit(unit_id, f"pf_{unit_id}", dict(labels), created_at or utc_now(), running)
        return unit_id

    async def create(self, spec: UnitSpec) -> str:
        port = spec.port_bindings["1080/tcp"][1]
        self.calls.append(("create", spec.name))
        if port in self.fail_create_ports:
            raise RuntimeAPIError(f"Bind for 0.0.0.0:{port} failed: port is already allocated")
        unit_id = self.add_unit(spec.labels, running=False)
        self.units[unit_id].name = spec.name
        self.specs[unit_id] = spec
        return unit_id

    async def start(self, unit_id: str) -> None:
        self.calls.append(("start", unit_id))
        unit = self._unit(unit_id)
        if self.fail_start:
            raise RuntimeAPIError("error gathering device information")
        unit.running = True

    async def stop(self, unit_id: str) -> None:
        self.calls.append(("stop", unit_id))
        self._unit(unit_id).running = False

    async def remove(self, unit_id: str) -> None:
        self.calls.append(("remove", unit_id))
        if unit_id in self.remove_errors:
            raise self.remove_errors[unit_id]
        self._unit(unit_id)
        del self.units[unit_id]

    async def restart(self, unit_id: str) -> None:
        self.calls.append(("restart", unit_id))
        if unit_id in self.restart_errors:
            raise self.restart_errors[unit_id]
        unit = self._unit(unit_id)
        unit.restarts += 1
        unit.running = True

    async def list_by_label(self, label: str) -> list[UnitInfo]:
        key, _, value = label.partition("=")
        return [
            UnitInfo(u.id, u.name, dict(u.labels), u.created_at, u.running)
            for u in self.units.values()
            if u.labels.get(key) == value
        ]

    async def inspect(self, unit_id: str) -> UnitInfo:
        u = self._unit(unit_id)
        return UnitInfo(u.id, u.name, dict(u.labels), u.created_at, u.running)

    async def exec_in_namespace(self, unit_id: str, image: str, command: list[str], timeout: float) -> str:
        self.calls.append(("exec", unit_id))
        self._unit(unit_id)
        return self.exec_outputs.get(unit_id, "")


class FakeSocks:
    """Stand-in for the SOCKS probe, keyed by host port."""

    def __init__(self) -> None:
        self.answers: dict[int, object] = {}
        self.default: object = None
        self.calls: list[int] = []

    async def __call__(self, host: str, port: int, url: str, timeout: float) -> str | None:
        self.calls.append(port)
        answer = self.answers.get(port, self.default)
        if isinstance(answer, BaseException):
            raise answer
        return answer  # type: ignore[return-value]

    def timeout_on(self, port: int) -> None:
        self.answers[port] = ProbeTimeout(f"port {port} timed out")


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        port_range_start=20000,
        port_range_end=20009,
        max_proxies=10,
        vpn_username="user",
        vpn_password="secret",
        default_country="US",
        default_city=None,
        vpn_config_dir=str(tmp_path / "vpn"),
        store_backend="json",
        db_path=str(tmp_path / "data" / "proxies.json"),
        settle_delay_s=0,
        health_interval_s=3600,
        probe_concurrency=4,
        heal_batch_size=2,
        create_batch_size=2,
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def socks() -> FakeSocks:
    return FakeSocks()


@pytest.fixture
def make_farm(settings: Settings, runtime: FakeRuntime, socks: FakeSocks):
    def _make(**overrides) -> ProxyFarm:
        s = dataclasses.replace(settings, **overrides)
        return ProxyFarm(s, JsonFileStore(s.db_path), runtime, socks_probe=socks, sleep=no_sleep)

    return _make


@pytest.fixture
def farm(make_farm) -> ProxyFarm:
    return make_farm()
