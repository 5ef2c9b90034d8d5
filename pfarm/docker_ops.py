from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, TypeVar

import docker
from docker.errors import APIError, ContainerError, DockerException, ImageNotFound, NotFound

from .errors import RuntimeAPIError, UnitNotFound
from .models import UnitInfo, UnitSpec, format_ts, utc_now

LOGGER = logging.getLogger("ProxyFarm.Runtime")

FARM_LABEL = "proxyfarm"
LABEL_ID = "proxyfarm.id"
LABEL_PORT = "proxyfarm.port"
LABEL_REGION = "proxyfarm.region"
LABEL_COUNTRY = "proxyfarm.country"
LABEL_CITY = "proxyfarm.city"

T = TypeVar("T")


class RuntimeClient(Protocol):
    """What the control plane needs from a container runtime."""

    async def create(self, spec: UnitSpec) -> str: ...

    async def start(self, unit_id: str) -> None: ...

    async def stop(self, unit_id: str) -> None: ...

    async def remove(self, unit_id: str) -> None: ...

    async def restart(self, unit_id: str) -> None: ...

    async def list_by_label(self, label: str) -> list[UnitInfo]: ...

    async def inspect(self, unit_id: str) -> UnitInfo: ...

    async def exec_in_namespace(self, unit_id: str, image: str, command: list[str], timeout: float) -> str: ...


def _parse_docker_time(raw: Any) -> str:
    """Docker reports RFC3339 with nanoseconds; list endpoints use epoch seconds."""
    if isinstance(raw, (int, float)):
        return format_ts(datetime.fromtimestamp(raw, tz=timezone.utc))
    if not raw:
        return utc_now()
    text = str(raw).rstrip("Z")
    if "." in text:
        head, frac = text.split(".", 1)
        # drop any offset after the fraction and trim nanoseconds to micro
        frac = "".join(ch for ch in frac if ch.isdigit())[:6]
        text = f"{head}.{frac or '0'}"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return utc_now()
    return format_ts(dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt)


def _unit_info(container: Any) -> UnitInfo:
    attrs = container.attrs or {}
    return UnitInfo(
        id=container.id,
        name=container.name,
        labels=dict(container.labels or {}),
        created_at=_parse_docker_time(attrs.get("Created")),
        running=container.status == "running",
    )


class DockerRuntime:
    """RuntimeClient backed by the Docker SDK.

    The SDK is blocking, so each call runs in a worker thread; the rest of
    the control plane stays on a single event loop.
    """

    def __init__(self, client_factory: Callable[[], docker.DockerClient] = docker.from_env, stop_timeout: int = 10):
        self._client_factory = client_factory
        self._client: docker.DockerClient | None = None
        self._stop_timeout = stop_timeout

    def _c(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = self._client_factory()
            except DockerException as e:
                raise RuntimeAPIError(f"Docker is not available: {e}") from e
        return self._client

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except NotFound as e:
            raise UnitNotFound(str(e)) from e
        except DockerException as e:
            raise RuntimeAPIError(str(e)) from e

    def _get(self, unit_id: str) -> Any:
        return self._c().containers.get(unit_id)

    def ping(self) -> bool:
        try:
            return bool(self._c().ping())
        except (DockerException, RuntimeAPIError):
            return False

    async def create(self, spec: UnitSpec) -> str:
        def _create() -> str:
            container = self._c().containers.create(
                spec.image,
                name=spec.name,
                environment=spec.environment,
                labels=spec.labels,
                ports=dict(spec.port_bindings),
                cap_add=list(spec.cap_add),
                devices=list(spec.devices),
                volumes=spec.volumes,
                restart_policy={"Name": spec.restart_policy},
            )
            return container.id

        unit_id = await self._call(_create)
        LOGGER.debug("Created container %s (%s).", spec.name, unit_id[:12])
        return unit_id

    async def start(self, unit_id: str) -> None:
        await self._call(lambda: self._get(unit_id).start())

    async def stop(self, unit_id: str) -> None:
        await self._call(lambda: self._get(unit_id).stop(timeout=self._stop_timeout))

    async def remove(self, unit_id: str) -> None:
        await self._call(lambda: self._get(unit_id).remove(force=True))

    async def restart(self, unit_id: str) -> None:
        await self._call(lambda: self._get(unit_id).restart(timeout=self._stop_timeout))

    async def list_by_label(self, label: str) -> list[UnitInfo]:
        def _list() -> list[UnitInfo]:
            containers = self._c().containers.list(all=True, filters={"label": [label]})
            return [_unit_info(c) for c in containers]

        return await self._call(_list)

    async def inspect(self, unit_id: str) -> UnitInfo:
        def _inspect() -> UnitInfo:
            container = self._get(unit_id)
            container.reload()
            return _unit_info(container)

        return await self._call(_inspect)

    async def exec_in_namespace(self, unit_id: str, image: str, command: list[str], timeout: float) -> str:
        """Run a throwaway container inside ``unit_id``'s network namespace."""

        def _run() -> str:
            try:
                out = self._c().containers.run(
                    image,
                    command,
                    network_mode=f"container:{unit_id}",
                    remove=True,
                    stdout=True,
                    stderr=False,
                )
            except ContainerError as e:
                LOGGER.debug("Namespace probe in %s exited %s.", unit_id[:12], e.exit_status)
                return ""
            except ImageNotFound as e:
                raise RuntimeAPIError(f"Probe image {image} not available: {e}") from e
            except APIError as e:
                if e.status_code == 404:
                    raise UnitNotFound(str(e)) from e
                raise
            if isinstance(out, bytes):
                return out.decode("utf-8", errors="replace")
            return str(out or "")

        try:
            return await asyncio.wait_for(self._call(_run), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RuntimeAPIError(f"Namespace probe in {unit_id[:12]} timed out after {timeout}s") from e
