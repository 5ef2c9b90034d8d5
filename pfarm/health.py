from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Awaitable, Callable, Iterable, Optional

import httpx

from .docker_ops import RuntimeClient
from .errors import NoResponse, ProbeTimeout, ProxyNotFound, RuntimeAPIError
from .models import HealthResult, ProxyRecord
from .registry import Registry
from .settings import Settings

LOGGER = logging.getLogger("ProxyFarm.Health")

# ifconfig.io and friends answer with a bare address only for curl-like agents.
PROBE_USER_AGENT = "curl/8.5.0"

SocksProbeFunc = Callable[[str, int, str, float], Awaitable[Optional[str]]]


def parse_exit_ip(text: str | None) -> str | None:
    """Return the first line of ``text`` that is a well-formed IP address."""
    if not text:
        return None
    for line in text.splitlines():
        candidate = "".join(ch for ch in line if ch.isprintable()).strip()
        if not candidate:
            continue
        try:
            return str(ipaddress.ip_address(candidate))
        except ValueError:
            continue
    return None


async def probe_socks_exit_ip(host: str, port: int, url: str, timeout: float) -> str | None:
    """Fetch ``url`` through the SOCKS5 proxy on host:port and return the exit address.

    Raises ProbeTimeout when the proxy does not answer in time; any other
    failure yields None.
    """
    try:
        async with httpx.AsyncClient(
            proxy=f"socks5://{host}:{port}",
            timeout=timeout,
            follow_redirects=False,
            headers={"User-Agent": PROBE_USER_AGENT},
        ) as client:
            resp = await client.get(url)
    except httpx.TimeoutException as e:
        raise ProbeTimeout(f"SOCKS probe on port {port} timed out after {timeout}s") from e
    except httpx.HTTPError as e:
        LOGGER.debug("SOCKS probe on port %s failed: %s", port, e)
        return None
    if resp.status_code != 200:
        LOGGER.debug("SOCKS probe on port %s returned HTTP %s.", port, resp.status_code)
        return None
    return parse_exit_ip(resp.text)


class HealthProber:
    """Checks proxies end to end and records their exit address.

    Order: SOCKS request through the published port first, then a curl
    sidecar in the container's network namespace. The sidecar bypasses the
    SOCKS frontend, so a proxy that only passes the second check has a live
    tunnel behind a broken frontend; both count as healthy.
    """

    def __init__(
        self,
        registry: Registry,
        runtime: RuntimeClient,
        settings: Settings,
        *,
        socks_probe: SocksProbeFunc = probe_socks_exit_ip,
    ):
        self.registry = registry
        self.runtime = runtime
        self.settings = settings
        self._socks_probe = socks_probe

    async def _namespace_probe(self, record: ProxyRecord) -> str | None:
        timeout = self.settings.fallback_timeout_s
        cmd = ["-s", "--max-time", str(int(max(1, timeout))), self.settings.exit_ip_check_url]
        try:
            out = await self.runtime.exec_in_namespace(
                record.unit_ref, self.settings.probe_image, cmd, timeout=timeout + 5
            )
        except RuntimeAPIError as e:
            LOGGER.debug("Namespace probe for %s failed: %s", record.id, e)
            return None
        return parse_exit_ip(out)

    async def check_proxy_health(self, proxy_id: str) -> HealthResult:
        async with self.registry.lock(proxy_id):
            record = self.registry.get(proxy_id)
            if record is None:
                return HealthResult(proxy_id, False, error=ProxyNotFound.code, detail="Proxy not found")

            timed_out = False
            try:
                exit_ip = await self._socks_probe(
                    self.settings.socks_host, record.port, self.settings.exit_ip_check_url, self.settings.probe_timeout_s
                )
            except ProbeTimeout as e:
                LOGGER.debug("%s", e)
                exit_ip = None
                timed_out = True

            if exit_ip is None:
                exit_ip = await self._namespace_probe(record)

            if exit_ip is None:
                self.registry.update(proxy_id, healthy=False)
                error = ProbeTimeout if timed_out else NoResponse
                return HealthResult(proxy_id, False, error=error.code, detail="Proxy not responding")

            self.registry.update(proxy_id, healthy=True, exit_ip=exit_ip)
            return HealthResult(proxy_id, True, exit_ip=exit_ip)

    async def bulk_health_check(self, proxy_ids: Iterable[str], concurrency: int | None = None) -> dict[str, HealthResult]:
        """Probe many proxies concurrently; one result per distinct id, in request order."""
        ids = list(dict.fromkeys(proxy_ids))
        width = max(1, concurrency or self.settings.probe_concurrency)
        sem = asyncio.Semaphore(width)

        async def _one(proxy_id: str) -> HealthResult:
            async with sem:
                try:
                    return await self.check_proxy_health(proxy_id)
                except Exception as exc:
                    # One broken probe must not take the others down with it.
                    LOGGER.warning("Health check for %s raised: %s", proxy_id, exc)
                    return HealthResult(proxy_id, False, error=NoResponse.code, detail=str(exc))

        results = await asyncio.gather(*(_one(i) for i in ids))
        return dict(zip(ids, results))
