from __future__ import annotations

import logging
from typing import Optional

import redis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from . import keys, services
from .auth import (
    AuthResult,
    chief_judge_required,
    current_auth,
    exchange_pin,
    validate_jwt_config,
    write_auth,
)
from .errors import AuthError, ConflictError, NotFoundError, SyncError, ValidationError
from .schemas import EntryDeleteBody, EntryPostBody, FaultDeleteBody, FaultPostBody, TokenRequest
from .settings import Settings, settings
from .store import create_redis

log = logging.getLogger(__name__)


def create_app(client: Optional[redis.Redis] = None, cfg: Settings = settings) -> FastAPI:
    app = FastAPI(title="Race Sync")
    app.state.settings = cfg
    app.state.redis = client if client is not None else create_redis(cfg)
    app.state.backend = services.Backend.from_client(app.state.redis, cfg)
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    def _auth_error(request: Request, exc: AuthError):
        extra = {"expired": True} if exc.expired else {}
        return _error(exc.status_code, str(exc), **extra)

    @app.exception_handler(ValidationError)
    def _validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    def _not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConflictError)
    def _conflict(request: Request, exc: ConflictError):
        return _error(409, str(exc))

    @app.exception_handler(SyncError)
    def _sync_error(request: Request, exc: SyncError):
        log.error("unhandled_sync_error", extra={"path": request.url.path, "error": str(exc)})
        return _error(500, "Internal server error")

    @app.exception_handler(redis.exceptions.ConnectionError)
    @app.exception_handler(redis.exceptions.TimeoutError)
    def _store_unavailable(request: Request, exc: redis.exceptions.RedisError):
        log.error("store_unavailable", extra={"path": request.url.path, "error": str(exc)})
        return _error(503, "Database connection failed. Please try again.")


def _backend(request: Request) -> services.Backend:
    return request.app.state.backend


def _race_id(race_id: Optional[str]) -> str:
    if not race_id:
        raise ValidationError("raceId is required")
    return keys.normalize_race_id(race_id)


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health(request: Request):
        try:
            store_ok = bool(request.app.state.redis.ping())
        except redis.exceptions.RedisError:
            store_ok = False
        return {"status": "ok" if store_ok else "degraded", "store": store_ok}

    # ---------------------------
    # Entries
    # ---------------------------

    @app.get("/api/v1/sync")
    def sync_get(
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        check_only: Optional[str] = Query(default=None, alias="checkOnly"),
        device_id: Optional[str] = Query(default=None, alias="deviceId"),
        device_name: Optional[str] = Query(default=None, alias="deviceName"),
        offset: Optional[str] = Query(default=None),
        limit: Optional[str] = Query(default=None),
        auth: AuthResult = Depends(current_auth),
        backend: services.Backend = Depends(_backend),
    ):
        race = _race_id(race_id)
        if check_only == "true":
            return services.check_race(backend, race)
        return services.get_race_snapshot(
            backend, race, device_id=device_id, device_name=device_name, offset=offset, limit=limit
        )

    @app.post("/api/v1/sync")
    def sync_post(
        body: Optional[EntryPostBody] = None,
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        auth: AuthResult = Depends(current_auth),
        backend: services.Backend = Depends(_backend),
    ):
        race = _race_id(race_id)
        body = body or EntryPostBody()
        return services.add_entry(backend, race, body.entry, body.device_id, body.device_name)

    @app.delete("/api/v1/sync")
    def sync_delete(
        body: Optional[EntryDeleteBody] = None,
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        auth: AuthResult = Depends(current_auth),
        backend: services.Backend = Depends(_backend),
    ):
        race = _race_id(race_id)
        body = body or EntryDeleteBody()
        return services.delete_entry(backend, race, body.entry_id, body.device_id, body.device_name)

    # ---------------------------
    # Faults
    # ---------------------------

    @app.get("/api/v1/faults")
    def faults_get(
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        device_id: Optional[str] = Query(default=None, alias="deviceId"),
        device_name: Optional[str] = Query(default=None, alias="deviceName"),
        gate_start: Optional[str] = Query(default=None, alias="gateStart"),
        gate_end: Optional[str] = Query(default=None, alias="gateEnd"),
        is_ready: Optional[str] = Query(default=None, alias="isReady"),
        first_gate_color: Optional[str] = Query(default=None, alias="firstGateColor"),
        auth: AuthResult = Depends(current_auth),
        backend: services.Backend = Depends(_backend),
    ):
        race = _race_id(race_id)
        return services.get_faults(
            backend,
            race,
            device_id=device_id,
            device_name=device_name,
            gate_start=gate_start,
            gate_end=gate_end,
            is_ready=is_ready == "true",
            first_gate_color=first_gate_color,
        )

    @app.post("/api/v1/faults")
    def faults_post(
        body: Optional[FaultPostBody] = None,
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        auth: AuthResult = Depends(write_auth),
        backend: services.Backend = Depends(_backend),
    ):
        race = _race_id(race_id)
        body = body or FaultPostBody()
        return services.add_fault(
            backend,
            race,
            body.fault,
            body.device_id,
            body.device_name,
            gate_range=body.gate_range,
            is_ready=body.is_ready,
            first_gate_color=body.first_gate_color,
        )

    @app.delete("/api/v1/faults")
    def faults_delete(
        body: Optional[FaultDeleteBody] = None,
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        auth: AuthResult = Depends(chief_judge_required("Fault deletion")),
        backend: services.Backend = Depends(_backend),
    ):
        race = _race_id(race_id)
        body = body or FaultDeleteBody()
        return services.delete_fault(
            backend, race, body.fault_id, body.device_id, body.device_name, body.approved_by
        )

    # ---------------------------
    # Race admin
    # ---------------------------

    @app.get("/api/v1/admin/races")
    def races_list(
        auth: AuthResult = Depends(current_auth),
        backend: services.Backend = Depends(_backend),
    ):
        return {"races": [r.to_wire() for r in backend.races.list_races()]}

    @app.delete("/api/v1/admin/races")
    def races_delete(
        race_id: Optional[str] = Query(default=None, alias="raceId"),
        delete_all: Optional[str] = Query(default=None, alias="deleteAll"),
        auth: AuthResult = Depends(chief_judge_required("Race deletion")),
        backend: services.Backend = Depends(_backend),
    ):
        if delete_all == "true":
            results = backend.races.delete_all()
            return {
                "success": True,
                "deleted": sum(1 for r in results if r["success"]),
                "total": len(results),
                "results": results,
            }
        if not race_id:
            raise ValidationError("raceId is required (or use deleteAll=true)")
        actual = backend.races.delete_race(race_id)
        return {"success": True, "raceId": actual}

    # ---------------------------
    # Auth
    # ---------------------------

    @app.post("/api/v1/auth/token")
    def auth_token(request: Request, body: Optional[TokenRequest] = None):
        problem = validate_jwt_config(request.app.state.settings)
        if problem:
            log.error("jwt_misconfigured", extra={"error": problem})
            return _error(500, "Server configuration error")
        body = body or TokenRequest()
        return exchange_pin(request.app.state.redis, body.pin, body.role, cfg=request.app.state.settings)


app = create_app()
