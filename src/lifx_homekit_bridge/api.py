"""HTTP API for inspecting and driving the registry."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .cache import AccessoryCache
from .config import Config
from .devices import DeviceRecord
from .discovery import DiscoveryService
from .errors import DeviceUnreachable, TransientIOFailure, UnknownDevice
from .health import HealthMonitor
from .logging import get_logger, redact_mapping
from .metrics import METRICS_CONTENT_TYPE, latest_metrics, observe_request
from .registry import DeviceRegistry


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_key and api_key_header == config.api_key:
            return
        if config.api_key and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        if config.api_bearer_token and auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_bearer_token:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


class LightStateOut(BaseModel):
    power: bool
    hue: float
    saturation: float
    brightness: float
    kelvin: int


class CapabilitiesOut(BaseModel):
    color: bool
    ambient_light: bool
    min_kelvin: int
    max_kelvin: int
    vendor: Optional[str]
    model: Optional[str]


class DeviceOut(BaseModel):
    """Device response model."""

    id: str
    display_name: str
    status: str
    reachable: bool
    address: Optional[str]
    state: LightStateOut
    capabilities: CapabilitiesOut
    capabilities_resolved: bool
    first_seen: Optional[str]
    last_seen: Optional[str]


class StateOut(BaseModel):
    """Result of a state read; `error` is set when the cached value was served."""

    device_id: str
    reachable: bool
    state: LightStateOut
    error: Optional[str] = None


class CommandIn(BaseModel):
    """Light state change; omitted fields are left as they are."""

    power: Optional[bool] = None
    hue: Optional[float] = Field(default=None, ge=0, le=360)
    saturation: Optional[float] = Field(default=None, ge=0, le=100)
    brightness: Optional[float] = Field(default=None, ge=0, le=100)
    kelvin: Optional[int] = Field(default=None, ge=1000, le=10000)
    fade_ms: Optional[int] = Field(default=None, ge=0)


def _device_out(record: DeviceRecord) -> DeviceOut:
    return DeviceOut(**record.as_dict())


def create_app(
    config: Config,
    registry: DeviceRegistry,
    *,
    health: Optional[HealthMonitor] = None,
    cache: Optional[AccessoryCache] = None,
    discovery: Optional[DiscoveryService] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("lifx.api")
    request_logger = get_logger("lifx.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="LIFX HomeKit Bridge API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Unhandled API error")
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        duration_seconds = time.perf_counter() - start
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redact_mapping(dict(request.headers)),
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    def _record_or_404(device_id: str) -> DeviceRecord:
        record = registry.get(device_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        return record

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health_check() -> Dict[str, str]:
        overall = await health.overall_status() if health else "ok"
        return {"status": overall}

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def bridge_status() -> Dict[str, Any]:
        return {
            "devices": registry.counts(),
            "ignored": registry.ignored,
            "subsystems": dict(await health.snapshot()) if health else {},
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/devices", dependencies=[Depends(auth_dependency)], response_model=List[DeviceOut])
    async def list_devices() -> List[DeviceOut]:
        return [_device_out(record) for record in registry.records()]

    @app.get("/devices/{device_id}", dependencies=[Depends(auth_dependency)], response_model=DeviceOut)
    async def get_device(device_id: str) -> DeviceOut:
        return _device_out(_record_or_404(device_id))

    @app.get("/devices/{device_id}/state", dependencies=[Depends(auth_dependency)], response_model=StateOut)
    async def device_state(device_id: str) -> StateOut:
        result = await registry.refresh(device_id)
        if isinstance(result.error, UnknownDevice):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        record = _record_or_404(device_id)
        assert result.value is not None
        return StateOut(
            device_id=record.id,
            reachable=record.reachable,
            state=LightStateOut(**result.value.as_dict()),
            error=str(result.error) if result.error else None,
        )

    @app.post(
        "/devices/{device_id}/command",
        dependencies=[Depends(auth_dependency)],
        response_model=StateOut,
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def device_command(device_id: str, payload: CommandIn) -> StateOut:
        mutation = payload.model_dump(exclude_none=True)
        fade_ms = mutation.pop("fade_ms", None)
        if not mutation:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No state fields supplied")
        result = await registry.command(device_id, mutation, fade_ms=fade_ms)
        if isinstance(result.error, UnknownDevice):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        if isinstance(result.error, DeviceUnreachable):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Device is offline")
        if isinstance(result.error, TransientIOFailure):
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(result.error))
        assert result.value is not None
        return StateOut(
            device_id=device_id,
            reachable=True,
            state=LightStateOut(**result.value.as_dict()),
        )

    @app.delete("/devices/{device_id}", dependencies=[Depends(auth_dependency)])
    async def remove_device(
        device_id: str,
        ignore: bool = Query(default=False, description="Also ignore future announcements."),
    ) -> Dict[str, Any]:
        removed = await registry.remove(device_id)
        if ignore:
            registry.ignore(device_id)
            if cache is not None:
                await cache.add_ignored(device_id)
        elif not removed:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        return {"device_id": device_id, "removed": removed, "ignored": ignore}

    @app.post("/discovery/rescan", dependencies=[Depends(auth_dependency)], status_code=status.HTTP_202_ACCEPTED)
    async def rescan() -> Dict[str, str]:
        if discovery is None or not discovery.rescan():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Discovery is not running",
            )
        return {"status": "scheduled"}

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self,
        config: Config,
        registry: DeviceRegistry,
        *,
        health: Optional[HealthMonitor] = None,
        cache: Optional[AccessoryCache] = None,
        discovery: Optional[DiscoveryService] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.health = health
        self.cache = cache
        self.discovery = discovery
        self.logger = get_logger("lifx.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server or not self.config.api_enabled:
            return
        app = create_app(
            self.config,
            self.registry,
            health=self.health,
            cache=self.cache,
            discovery=self.discovery,
        )
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info("API server starting", extra={"host": self.config.api_host, "port": self.config.api_port})

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
