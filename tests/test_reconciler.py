from __future__ import annotations

import asyncio

import pytest

from pfarm.errors import RuntimeAPIError
from pfarm.models import CreateProxyOptions, ProxyRecord

pytestmark = pytest.mark.anyio


def _labels(pid: str, port: int, **extra: str) -> dict[str, str]:
    labels = {"proxyfarm": "true", "proxyfarm.id": pid, "proxyfarm.port": str(port)}
    labels.update(extra)
    return labels


def _snapshot(farm, runtime):
    records = sorted((r.id, r.unit_ref, r.port, r.healthy) for r in farm.registry.list())
    return records, sorted(runtime.units)


async def test_adopts_unknown_container(farm, runtime) -> None:
    unit_id = runtime.add_unit(
        _labels("p-1", 20004, **{"proxyfarm.country": "FR"}), running=False, created_at="2024-05-01T10:00:00.000000Z"
    )
    report = await farm.reconciler.reconcile()

    assert report.adopted == ["p-1"]
    record = farm.registry.get("p-1")
    assert record.unit_ref == unit_id
    assert record.port == 20004
    assert record.country == "FR"
    assert record.healthy is False
    assert record.restarts == 0
    assert record.created_at == "2024-05-01T10:00:00.000000Z"


async def test_adopted_container_gets_fresh_id_when_label_id_taken(farm, runtime) -> None:
    existing = await farm.lifecycle.create_proxy()
    runtime.add_unit(_labels(existing.id, 20005))
    report = await farm.reconciler.reconcile()

    assert len(report.adopted) == 1 and report.adopted[0] != existing.id
    assert farm.registry.get(existing.id).unit_ref == existing.unit_ref


async def test_record_dropped_when_container_removed_externally(farm, runtime) -> None:
    keep = await farm.lifecycle.create_proxy()
    gone = await farm.lifecycle.create_proxy()
    del runtime.units[gone.unit_ref]

    report = await farm.reconciler.reconcile()

    assert report.dropped_missing == [gone.id]
    assert farm.registry.get(gone.id) is None
    assert farm.registry.get(keep.id) is not None


async def test_dedupe_keeps_healthy_record(farm, runtime) -> None:
    older = runtime.add_unit(_labels("older", 20003), created_at="2024-01-01T00:00:00.000000Z")
    newer = runtime.add_unit(_labels("newer", 20003), created_at="2024-02-01T00:00:00.000000Z")
    farm.registry.add(ProxyRecord(id="older", unit_ref=older, port=20003, healthy=False, created_at="2024-01-01T00:00:00.000000Z"))
    farm.registry.add(ProxyRecord(id="newer", unit_ref=newer, port=20003, healthy=True, created_at="2024-02-01T00:00:00.000000Z"))

    report = await farm.reconciler.reconcile(dedupe=True)

    assert report.dropped_duplicates == ["older"]
    on_port = [r for r in farm.registry.list() if r.port == 20003]
    assert [r.id for r in on_port] == ["newer"]
    # the losing container is now orphaned and removed in the same pass
    assert report.orphans_removed == [older]
    assert older not in runtime.units and newer in runtime.units


async def test_dedupe_keeps_oldest_when_none_healthy(farm, runtime) -> None:
    ids = []
    for i, ts in enumerate(["2024-03-01", "2024-01-01", "2024-02-01"]):
        unit = runtime.add_unit(_labels(f"p{i}", 20006), running=False, created_at=f"{ts}T00:00:00.000000Z")
        ids.append(unit)

    await farm.reconciler.reconcile(dedupe=True)

    survivors = farm.registry.list()
    assert len(survivors) == 1
    assert survivors[0].id == "p1"
    assert list(runtime.units) == [ids[1]]


async def test_ports_unique_after_dedupe(farm, runtime) -> None:
    for i in range(6):
        runtime.add_unit(_labels(f"p{i}", 20000 + i % 3), running=bool(i % 2))
    await farm.reconciler.reconcile(dedupe=True)

    ports = [r.port for r in farm.registry.list()]
    assert len(ports) == len(set(ports)) == 3


async def test_duplicates_survive_plain_reconcile(farm, runtime) -> None:
    runtime.add_unit(_labels("a", 20001))
    runtime.add_unit(_labels("b", 20001))
    report = await farm.reconciler.reconcile()
    assert report.dropped_duplicates == []
    assert len(farm.registry) == 2


async def test_container_without_port_label_is_orphaned(farm, runtime) -> None:
    unit = runtime.add_unit({"proxyfarm": "true", "proxyfarm.id": "broken"})
    report = await farm.reconciler.reconcile()
    assert report.adopted == []
    assert report.orphans_removed == [unit]
    assert unit not in runtime.units


async def test_orphan_removal_failure_does_not_abort(farm, runtime) -> None:
    unit = runtime.add_unit({"proxyfarm": "true"})
    runtime.remove_errors[unit] = RuntimeAPIError("removal in progress")
    report = await farm.reconciler.reconcile()
    assert report.orphans_removed == []
    assert unit in runtime.units


async def test_unlabelled_containers_are_ignored(farm, runtime) -> None:
    unit = runtime.add_unit({"com.example": "other"})
    await farm.reconciler.reconcile(dedupe=True)
    assert unit in runtime.units
    assert len(farm.registry) == 0


@pytest.mark.parametrize("dedupe", [False, True])
async def test_reconcile_is_idempotent(farm, runtime, dedupe: bool) -> None:
    await farm.lifecycle.create_proxy()
    gone = await farm.lifecycle.create_proxy()
    del runtime.units[gone.unit_ref]
    runtime.add_unit(_labels("stray", 20008))
    runtime.add_unit(_labels("dup", 20008))
    runtime.add_unit({"proxyfarm": "true"})

    await farm.reconciler.reconcile(dedupe=dedupe)
    first = _snapshot(farm, runtime)
    second_report = await farm.reconciler.reconcile(dedupe=dedupe)

    assert _snapshot(farm, runtime) == first
    assert not second_report.changed


def _hold_start(runtime):
    started = asyncio.Event()
    release = asyncio.Event()
    original_start = runtime.start

    async def slow_start(unit_id):
        started.set()
        await release.wait()
        await original_start(unit_id)

    runtime.start = slow_start
    return started, release


async def test_container_being_created_is_not_adopted(farm, runtime) -> None:
    started, release = _hold_start(runtime)
    task = asyncio.get_running_loop().create_task(
        farm.lifecycle.create_proxy(CreateProxyOptions(notes="batch-7"))
    )
    await started.wait()

    assert await farm.list_proxies() == []
    report = await farm.reconcile(dedupe=True)
    assert not report.changed
    assert len(runtime.units) == 1

    release.set()
    record = await task
    assert record.notes == "batch-7"
    assert [r.id for r in farm.registry.list()] == [record.id]
    assert farm.registry.get(record.id).healthy is False


async def test_replacement_being_created_keeps_restart_count(farm, runtime) -> None:
    record = await farm.lifecycle.create_proxy()
    farm.registry.update(record.id, restarts=2)
    del runtime.units[record.unit_ref]
    started, release = _hold_start(runtime)

    task = asyncio.get_running_loop().create_task(farm.lifecycle.rotate_proxy(record.id))
    await started.wait()
    await farm.reconcile()
    release.set()
    replacement = await task

    assert replacement.restarts == 3
    assert [(r.id, r.restarts) for r in farm.registry.list()] == [(replacement.id, 3)]


async def test_record_registered_during_listing_is_kept(farm, runtime) -> None:
    listed = asyncio.Event()
    release = asyncio.Event()
    original_list = runtime.list_by_label
    calls = 0

    async def slow_list(label):
        nonlocal calls
        calls += 1
        units = await original_list(label)
        if calls == 1:
            listed.set()
            await release.wait()
        return units

    runtime.list_by_label = slow_list
    task = asyncio.get_running_loop().create_task(farm.reconciler.reconcile())
    await listed.wait()
    record = await farm.lifecycle.create_proxy()
    release.set()
    report = await task

    assert report.dropped_missing == []
    assert report.orphans_removed == []
    assert farm.registry.get(record.id) is not None
    assert record.unit_ref in runtime.units
