from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from chunkswap.config import get_settings
from chunkswap.database import create_schema, get_engine
from chunkswap.errors import ChunkswapError, NotFoundError
from chunkswap.logger import configure_logging, get_logger
from chunkswap.metrics import observe_http_request
from chunkswap.routes import disks, events, replacements, services, system

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")

_STATUS_BY_KIND: Dict[str, int] = {
    "configuration": 422,
    "precondition": 412,
    "concurrency": 409,
    "validation": 409,
    "remote": 502,
    "persistence": 500,
}


def status_for_error(exc: ChunkswapError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    return _STATUS_BY_KIND.get(exc.kind, 500)


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    current = get_settings()
    logger.info("app.startup", "Starting app", env=current.app_env, version=current.app_version)
    await create_schema(get_engine(current.database_url))
    yield
    await get_engine(current.database_url).dispose()
    logger.info("app.shutdown", "Shutting down app")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


@app.exception_handler(ChunkswapError)
async def chunkswap_error_handler(request: Request, exc: ChunkswapError) -> JSONResponse:
    status_code = status_for_error(exc)
    logger.warning(
        "request.rejected",
        "Operation failed",
        path=request.url.path,
        status_code=status_code,
        kind=exc.kind,
        code=exc.code,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.detail, "code": exc.code, "kind": exc.kind},
    )


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = None
    if request.client:
        client = request.client.host

    start = perf_counter()
    with logger.context(request_id=request_id):
        logger.info(
            "request.start",
            "Started",
            method=request.method,
            path=request.url.path,
            client=client,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (perf_counter() - start) * 1000
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            )
            raise

        duration_ms = (perf_counter() - start) * 1000
        observe_http_request(
            method=request.method,
            path=_route_path(request),
            status=response.status_code,
            duration_seconds=duration_ms / 1000,
        )
        logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(disks.router)
app.include_router(services.router)
app.include_router(replacements.router)
app.include_router(events.router)
