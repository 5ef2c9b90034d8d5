from __future__ import annotations

import asyncio
import logging
import signal

import uvicorn

from pfarm.app import create_app
from pfarm.docker_ops import DockerRuntime
from pfarm.errors import ConfigInvalid, RegistryIOError
from pfarm.farm import ProxyFarm
from pfarm.settings import Settings, settings, validate_settings
from pfarm.store import open_store

LOGGER = logging.getLogger("ProxyFarm.Main")


def build_farm(s: Settings) -> ProxyFarm:
    validate_settings(s)
    store = open_store(s)
    return ProxyFarm(s, store, DockerRuntime())


async def run_headless(farm: ProxyFarm) -> None:
    """Control loop only, until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await farm.start()
    LOGGER.info("Proxy farm is running (REST API disabled).")
    await stop.wait()
    LOGGER.info("Shutting down...")
    await farm.stop()


def main() -> int:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        farm = build_farm(settings)
    except (ConfigInvalid, RegistryIOError) as e:
        LOGGER.error("Failed to start: %s", e)
        return 1

    if settings.rest_enabled:
        LOGGER.info("REST API listening on http://%s:%s", settings.rest_host, settings.rest_port)
        uvicorn.run(create_app(farm), host=settings.rest_host, port=settings.rest_port)
    else:
        asyncio.run(run_headless(farm))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
