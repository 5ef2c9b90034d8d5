from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse

from .api_models import CreateBatchRequest, CreateProxyRequest
from .errors import FarmError, ProxyNotFound
from .farm import ProxyFarm

LOGGER = logging.getLogger("ProxyFarm.API")


def create_app(farm: ProxyFarm, run_control_loop: bool = True) -> FastAPI:
    app = FastAPI(title="Proxy Farm", version="1.0.0")

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - FastAPI lifecycle glue
        if run_control_loop:
            await farm.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - FastAPI lifecycle glue
        await farm.stop()

    @app.exception_handler(FarmError)
    async def _farm_error(_request: Request, exc: FarmError) -> JSONResponse:
        if exc.status_code >= 500:
            LOGGER.error("%s: %s", exc.code, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": str(exc)})

    @app.get("/live")
    async def live() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/proxies")
    async def list_proxies(live: bool = Query(False, description="Probe every proxy before answering")) -> list[dict[str, Any]]:
        return [p.to_dict() for p in await farm.list_proxies(live=live)]

    @app.post("/proxies", status_code=201)
    async def create_proxy(req: CreateProxyRequest) -> dict[str, Any]:
        record = await farm.create_proxy(req.to_options())
        return record.to_dict()

    @app.post("/proxies/batch", status_code=201)
    async def create_proxies(req: CreateBatchRequest) -> dict[str, Any]:
        result = await farm.create_proxies(req.count, req.to_options())
        return result.to_dict()

    @app.get("/proxies/{proxy_id}")
    async def get_proxy(proxy_id: str) -> dict[str, Any]:
        return farm.get_proxy(proxy_id).to_dict()

    @app.delete("/proxies/{proxy_id}", status_code=204)
    async def remove_proxy(proxy_id: str) -> Response:
        await farm.remove_proxy(proxy_id)
        return Response(status_code=204)

    @app.post("/proxies/{proxy_id}/rotate")
    async def rotate_proxy(proxy_id: str) -> dict[str, Any]:
        return (await farm.rotate_proxy(proxy_id)).to_dict()

    @app.get("/proxies/{proxy_id}/health")
    async def proxy_health(proxy_id: str) -> dict[str, Any]:
        result = await farm.check_health(proxy_id)
        if result.error == ProxyNotFound.code:
            raise ProxyNotFound(proxy_id)
        return result.to_dict()

    @app.post("/heal")
    async def heal() -> dict[str, Any]:
        return (await farm.heal()).to_dict()

    @app.get("/status")
    async def status() -> dict[str, Any]:
        return farm.status()

    @app.get("/events")
    async def events(limit: int = Query(50, ge=1, le=1000)) -> list[dict[str, Any]]:
        return farm.events(limit)

    return app
