from __future__ import annotations

import asyncio
import logging
import os
import uuid

from .docker_ops import (
    FARM_LABEL,
    LABEL_CITY,
    LABEL_COUNTRY,
    LABEL_ID,
    LABEL_PORT,
    LABEL_REGION,
    RuntimeClient,
)
from .errors import (
    CredentialsMissing,
    PortExhausted,
    PortUnavailable,
    ProxyNotFound,
    RestartLimitReached,
    RuntimeAPIError,
    UnitCreateFailed,
    UnitNotFound,
)
from .models import BatchResult, CreateProxyOptions, ProxyRecord, UnitSpec
from .registry import Registry
from .settings import Settings

LOGGER = logging.getLogger("ProxyFarm.Lifecycle")

SOCKS_INTERNAL_PORT = 1080
VPN_CONFIG_MOUNT = "/vpn"
DEFAULT_VPN_CONFIG = "US_California.ovpn"
LOCAL_NETWORKS = "192.168.0.0/16,10.0.0.0/8,172.16.0.0/12"


def region_label(country: str | None, city: str | None) -> str:
    if country and city:
        return f"{country}-{city}"
    return country or "auto"


def vpn_config_file(country: str | None, city: str | None) -> str:
    """OpenVPN profile name for a region hint.

    The provider may ignore it; the hint is best effort only.
    """
    if country and city:
        return f"{country}_{city.replace(' ', '_')}.ovpn"
    if country:
        if country.lower() in {"us", "usa"}:
            return DEFAULT_VPN_CONFIG
        return f"{country}.ovpn"
    return DEFAULT_VPN_CONFIG


def observed_ports(units) -> set[int]:
    ports: set[int] = set()
    for u in units:
        raw = u.labels.get(LABEL_PORT)
        if raw and raw.isdigit():
            ports.add(int(raw))
    return ports


class LifecycleManager:
    """Creates, removes and rotates the containers behind proxy records."""

    def __init__(self, registry: Registry, runtime: RuntimeClient, settings: Settings):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings

    def _require_credentials(self) -> None:
        if not self.settings.vpn_username or not self.settings.vpn_password:
            raise CredentialsMissing("VPN username and password are required to create a proxy.")

    async def runtime_ports(self) -> set[int]:
        """Ports claimed by farm containers, straight from their labels."""
        try:
            units = await self.runtime.list_by_label(f"{FARM_LABEL}=true")
        except RuntimeAPIError as e:
            LOGGER.warning("Could not list farm containers for port check: %s", e)
            return set()
        return observed_ports(units)

    def build_unit_spec(self, proxy_id: str, port: int, country: str | None, city: str | None) -> UnitSpec:
        s = self.settings
        labels = {
            FARM_LABEL: "true",
            LABEL_ID: proxy_id,
            LABEL_PORT: str(port),
            LABEL_REGION: region_label(country, city),
        }
        if country:
            labels[LABEL_COUNTRY] = country
        if city:
            labels[LABEL_CITY] = city

        env = {
            "SOCKS5_PORT": str(SOCKS_INTERNAL_PORT),
            "OPENVPN_PROTOCOL": "udp",
            "OPENVPN_USERNAME": s.vpn_username or "",
            "OPENVPN_PASSWORD": s.vpn_password or "",
            "OPENVPN_CONFIG": f"{VPN_CONFIG_MOUNT}/{vpn_config_file(country, city)}",
            "OPENVPN_PROVIDER": "PIA",
            "LOCAL_NETWORK": LOCAL_NETWORKS,
        }

        return UnitSpec(
            name=f"pf_{proxy_id}",
            image=s.vpn_image,
            environment=env,
            labels=labels,
            port_bindings={f"{SOCKS_INTERNAL_PORT}/tcp": (s.socks_bind, port)},
            cap_add=["NET_ADMIN"],
            devices=["/dev/net/tun:/dev/net/tun:rwm"],
            volumes={os.path.abspath(s.vpn_config_dir): {"bind": VPN_CONFIG_MOUNT, "mode": "ro"}},
        )

    async def _start_unit(self, spec: UnitSpec) -> str:
        unit_id: str | None = None
        try:
            unit_id = await self.runtime.create(spec)
            await self.runtime.start(unit_id)
        except RuntimeAPIError as e:
            if unit_id is not None:
                try:
                    await self.runtime.remove(unit_id)
                except RuntimeAPIError as cleanup_err:
                    LOGGER.warning("Could not remove half-created container %s: %s", unit_id[:12], cleanup_err)
            raise UnitCreateFailed(f"Failed to start container {spec.name}: {e}") from e
        return unit_id

    def _check_explicit_port(self, port: int, replacing: ProxyRecord | None) -> None:
        s = self.settings
        if not s.port_range_start <= port <= s.port_range_end:
            raise PortUnavailable(f"Port {port} is outside the range {s.port_range_start}-{s.port_range_end}")
        if replacing is not None and port == replacing.port:
            return
        if port in self.registry.used_ports():
            raise PortUnavailable(f"Port {port} is already in use")

    async def create_proxy(
        self,
        options: CreateProxyOptions | None = None,
        *,
        exclude: set[int] | None = None,
        restarts: int = 0,
        replacing: ProxyRecord | None = None,
    ) -> ProxyRecord:
        """Start a tunnel container and persist its record (unhealthy until probed).

        ``replacing`` is the record a recreate retires; its port may be reused.
        """
        self._require_credentials()
        options = options or CreateProxyOptions()

        if options.port is None:
            observed = await self.runtime_ports()
            port = self.registry.allocate_port(exclude or (), observed)
        else:
            port = options.port
            self._check_explicit_port(port, replacing)

        country = options.country or self.settings.default_country
        city = options.city or self.settings.default_city

        proxy_id = str(uuid.uuid4())
        with self.registry.creating(proxy_id, port):
            unit_id = await self._start_unit(self.build_unit_spec(proxy_id, port, country, city))
            record = ProxyRecord(
                id=proxy_id,
                unit_ref=unit_id,
                port=port,
                country=country,
                city=city,
                healthy=False,
                restarts=restarts,
                notes=options.notes,
            )
            self.registry.add(record)
        self.registry.log_event("INFO", f"Created proxy on port {port} ({region_label(country, city)})", proxy_id)
        LOGGER.info("Created proxy %s on port %s (%s).", proxy_id, port, region_label(country, city))
        return record

    async def create_proxies(self, count: int, options: CreateProxyOptions | None = None) -> BatchResult:
        """Create ``count`` proxies in fixed-width concurrent batches.

        Every port claimed during the operation stays excluded, including
        ports whose container failed to start, so a bad port is not retried.
        """
        self._require_credentials()
        options = options or CreateProxyOptions()
        result = BatchResult()
        claimed: set[int] = set()
        width = max(1, self.settings.create_batch_size)
        remaining = max(0, count)

        exhausted = False

        while remaining > 0 and not exhausted:
            observed = await self.runtime_ports()
            ports: list[int] = []
            for _ in range(min(width, remaining)):
                try:
                    port = self.registry.allocate_port(claimed, observed)
                except PortExhausted as e:
                    if not ports and not result.created:
                        raise
                    result.errors.append(str(e))
                    exhausted = True
                    break
                claimed.add(port)
                ports.append(port)

            outcomes = await asyncio.gather(
                *(
                    self.create_proxy(
                        CreateProxyOptions(country=options.country, city=options.city, notes=options.notes, port=p)
                    )
                    for p in ports
                ),
                return_exceptions=True,
            )
            for port, outcome in zip(ports, outcomes):
                if isinstance(outcome, ProxyRecord):
                    result.created.append(outcome)
                elif isinstance(outcome, (UnitCreateFailed, RuntimeAPIError, PortUnavailable)):
                    LOGGER.warning("Failed to create proxy on port %s: %s", port, outcome)
                    result.errors.append(f"port {port}: {outcome}")
                else:
                    raise outcome
            remaining -= len(ports)

        LOGGER.info("Batch create finished: %s created, %s failed.", len(result.created), len(result.errors))
        return result

    async def remove_proxy(self, proxy_id: str) -> None:
        async with self.registry.lock(proxy_id):
            record = self.registry.get(proxy_id)
            if record is None:
                raise ProxyNotFound(proxy_id)
            try:
                await self.runtime.stop(record.unit_ref)
                await self.runtime.remove(record.unit_ref)
            except UnitNotFound:
                LOGGER.debug("Container for %s already gone.", proxy_id)
            self.registry.remove(proxy_id)
        self.registry.log_event("INFO", f"Removed proxy on port {record.port}", proxy_id)
        LOGGER.info("Removed proxy %s (port %s).", proxy_id, record.port)

    async def rotate_proxy(self, proxy_id: str, max_restarts: int | None = None) -> ProxyRecord:
        """Restart the tunnel for a fresh session, recreating it if the container is gone.

        Returns the updated record, or the replacement record (new id,
        same port and region hint) after a recreate. With ``max_restarts``
        a record already at that many restarts raises RestartLimitReached
        instead; the check happens under the record lock.
        """
        async with self.registry.lock(proxy_id):
            record = self.registry.get(proxy_id)
            if record is None:
                raise ProxyNotFound(proxy_id)
            if max_restarts is not None and record.restarts >= max_restarts:
                raise RestartLimitReached(f"Proxy {proxy_id} already restarted {record.restarts} times")
            try:
                await self.runtime.restart(record.unit_ref)
            except UnitNotFound:
                return await self._recreate(record)
            except RuntimeAPIError as e:
                LOGGER.warning("Restart of proxy %s failed (%s); replacing its container.", proxy_id, e)
                await self._discard_unit(record.unit_ref)
                return await self._recreate(record)
            updated = self._mark_rotated(record)
        self.registry.log_event("INFO", f"Rotated proxy (restart #{updated.restarts})", proxy_id)
        LOGGER.info("Rotated proxy %s on port %s (restarts=%s).", proxy_id, record.port, updated.restarts)
        return updated

    def _mark_rotated(self, record: ProxyRecord) -> ProxyRecord:
        updated = self.registry.update(record.id, restarts=record.restarts + 1, exit_ip=None, healthy=False)
        return updated if updated is not None else record

    async def _discard_unit(self, unit_ref: str) -> None:
        try:
            await self.runtime.remove(unit_ref)
        except RuntimeAPIError as e:
            LOGGER.warning("Could not remove container %s: %s", unit_ref[:12], e)

    async def _recreate(self, record: ProxyRecord) -> ProxyRecord:
        """Replace a record whose container cannot be restarted.

        The old record survives (counted as rotated) only when the replacement
        cannot be started.
        """
        LOGGER.warning("Recreating proxy %s on port %s.", record.id, record.port)
        try:
            replacement = await self.create_proxy(
                CreateProxyOptions(country=record.country, city=record.city, notes=record.notes, port=record.port),
                restarts=record.restarts + 1,
                replacing=record,
            )
        except (UnitCreateFailed, PortUnavailable):
            self._mark_rotated(record)
            raise
        self.registry.remove(record.id)
        self.registry.log_event("WARN", f"Recreated proxy {record.id} as {replacement.id}", replacement.id)
        return replacement
