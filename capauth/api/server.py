from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from capauth.api.auth import ANONYMOUS_ACTOR, Actor, authenticate, load_auth_config
from capauth.api.middleware import AccessLogMiddleware, RequestIdMiddleware
from capauth.api.models import (
    AccessListIn,
    ApiError,
    BulkCheckIn,
    BulkCheckOut,
    CapabilityBody,
    CapabilityIn,
    CapabilityOut,
    CheckIn,
    CheckOut,
    LoadIn,
    LoadOut,
    PropagateOut,
    RoleIn,
)
from capauth.api.rate_limit import TokenBucketRateLimiter
from capauth.core.capabilities.artifacts import AccessRule
from capauth.core.capabilities.exceptions import (
    CapabilityNotFoundError,
    CapabilityValidationError,
    PermissionDenied,
    StoreError,
    StoreTimeoutError,
)
from capauth.core.capabilities.pack import load_capability_pack, resolve_capability_pack_path
from capauth.core.capabilities.service import CapabilityService, build_service, open_sqlite_service
from capauth.core.security.capabilities import CapabilityDef
from capauth.core.security.principal import effective_roles
from capauth.core.storage.memory_store import InMemoryCapabilityStore

log = logging.getLogger("capauth.api")

PACK_DIR = Path(__file__).resolve().parents[2] / "capability_packs"

# Capabilities guarding the mutating endpoints.
CAP_CREATE = "capability.create"
CAP_RETRIEVE = "capability.retrieve"
CAP_UPDATE = "capability.update"
CAP_DELETE = "capability.delete"
CAP_SYNC = "capability.sync"

# Token cost of mutating calls relative to reads.
_MUTATION_COST = 2.0


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Configuration for the API service.

    Security notes:
    - db_path is optional. Without it the registry persists to memory only.
    - Capability packs resolve under capability_packs/ unless
      allow_pack_paths is set.
    """

    db_path: Optional[Path] = None
    role_refs: str = "table"
    store_timeout_sec: Optional[float] = 10.0
    capability_pack: Optional[str] = None
    allow_pack_paths: bool = False
    load_on_startup: bool = True
    log_level: str = "INFO"
    rate_limit_rpm: int = 120
    rate_limit_burst: Optional[int] = None

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Read CAPAUTH_* environment variables.

        Security notes:
        - Env vars are treated as trusted server configuration.
        """

        db_path = os.environ.get("CAPAUTH_DB_PATH", "").strip()
        timeout = _env_float("CAPAUTH_STORE_TIMEOUT_SEC", 10.0)
        return cls(
            db_path=Path(db_path) if db_path else None,
            role_refs=os.environ.get("CAPAUTH_ROLE_REFS", "table").strip() or "table",
            store_timeout_sec=timeout if timeout and timeout > 0 else None,
            capability_pack=os.environ.get("CAPAUTH_CAPABILITY_PACK", "").strip() or None,
            allow_pack_paths=_env_flag("CAPAUTH_ALLOW_PACK_PATHS", False),
            load_on_startup=_env_flag("CAPAUTH_LOAD_ON_STARTUP", True),
            log_level=os.environ.get("CAPAUTH_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            rate_limit_rpm=_env_int("CAPAUTH_RATE_LIMIT_RPM", 120),
            rate_limit_burst=_env_int("CAPAUTH_RATE_LIMIT_BURST", 0) or None,
        )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    return raw in {"1", "true", "TRUE", "yes", "YES"}


def service_from_config(cfg: ServiceConfig) -> CapabilityService:
    """Build the CapabilityService described by cfg."""

    pack = None
    if cfg.capability_pack:
        pack_path = resolve_capability_pack_path(
            cfg.capability_pack,
            base_dir=str(PACK_DIR),
            allow_arbitrary_paths=cfg.allow_pack_paths,
        )
        pack = load_capability_pack(pack_path)

    kwargs: Dict[str, Any] = {
        "pack": pack,
        "timeout": cfg.store_timeout_sec,
        "load": cfg.load_on_startup,
    }
    if cfg.db_path is not None:
        return open_sqlite_service(cfg.db_path, role_refs=cfg.role_refs, **kwargs)
    return build_service(InMemoryCapabilityStore(), **kwargs)


def _cap_out(cap: CapabilityDef) -> CapabilityOut:
    return CapabilityOut(**cap.to_dict())


def _error(status_code: int, error: str, detail: Optional[str] = None, reasons=None) -> JSONResponse:
    body = ApiError(error=error, detail=detail, reasons=reasons or [])
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    service: Optional[CapabilityService] = None,
) -> FastAPI:
    """Create the FastAPI app.

    A pre-built service may be passed in (tests, embedding); otherwise one is
    built from config and closed on shutdown.
    """

    cfg = config or ServiceConfig.from_env()
    auth = load_auth_config()

    # Logging: safe defaults (no request bodies), can be configured by host app.
    logging.getLogger("capauth").setLevel(cfg.log_level)

    owned = service is None
    svc = service or service_from_config(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        if owned:
            svc.close()

    app = FastAPI(title="capauth API", version="0.1", lifespan=lifespan)
    app.state.cfg = cfg
    app.state.service = svc
    app.state.must_auth = auth.must_auth

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(AccessLogMiddleware)

    # Best-effort in-memory rate limiting (per actor_id or client IP).
    limiter = TokenBucketRateLimiter(rpm=cfg.rate_limit_rpm, burst=cfg.rate_limit_burst)
    app.state.rate_limiter = limiter

    @app.exception_handler(CapabilityValidationError)
    async def _validation_handler(_request: Request, exc: CapabilityValidationError):
        return _error(422, "validation_failed", str(exc), [i.to_dict() for i in exc.issues])

    @app.exception_handler(CapabilityNotFoundError)
    async def _not_found_handler(_request: Request, exc: CapabilityNotFoundError):
        return _error(404, "capability_not_found", exc.name)

    @app.exception_handler(StoreError)
    async def _store_handler(request: Request, exc: StoreError):
        error = "store_timeout" if isinstance(exc, StoreTimeoutError) else "store_unavailable"
        log.warning(
            "capability_store_error",
            extra={"request_id": getattr(request.state, "request_id", None), "error": str(exc)},
        )
        return _error(503, error, str(exc))

    @app.exception_handler(PermissionDenied)
    async def _denied_handler(_request: Request, exc: PermissionDenied):
        return _error(403, "forbidden", ",".join(exc.capabilities) or None)

    def get_actor(
        request: Request,
        x_capauth_api_key: Optional[str] = Header(default=None),
    ) -> Actor:
        """Authenticate request.

        Security notes:
        - If auth is required and missing/invalid, fail closed (401).
        """

        if not auth.must_auth:
            # Dev mode (no key configured): anonymous role only.
            actor = ANONYMOUS_ACTOR
        else:
            actor = authenticate(x_capauth_api_key, auth)
            if actor is None:
                raise HTTPException(status_code=401, detail="unauthorized")

        request.state.actor_id = actor.actor_id
        request.state.master = actor.master

        ident = actor.actor_id
        if actor is ANONYMOUS_ACTOR:
            client = getattr(request, "client", None)
            if client and getattr(client, "host", None):
                ident = f"ip:{client.host}"

        cost = _MUTATION_COST if request.method in {"POST", "PUT", "DELETE"} else 1.0
        decision = limiter.check(ident, cost=cost)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail="rate_limited",
                headers={"Retry-After": str(int(decision.retry_after_seconds))},
            )
        return actor

    def _holds(actor: Actor, capability: str) -> bool:
        return svc.check(effective_roles(actor.principal), capability, override=actor.master)

    def _require(actor: Actor, capability: str) -> None:
        """Fail closed (403) unless the actor holds capability."""

        if not _holds(actor, capability):
            raise PermissionDenied([capability])

    def _roles(actor: Actor, requested: Optional[List[str]]):
        return requested if requested is not None else effective_roles(actor.principal)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "auth_required": auth.must_auth,
            "db": str(cfg.db_path) if cfg.db_path else None,
            "capabilities": len(svc.registry),
        }

    # Capability CRUD

    @app.post("/capabilities", response_model=CapabilityOut, status_code=201)
    def create_capability(body: CapabilityIn, actor: Actor = Depends(get_actor)) -> CapabilityOut:
        _require(actor, CAP_CREATE)
        return _cap_out(svc.create(body.model_dump()))

    @app.get("/capabilities", response_model=List[CapabilityOut])
    def list_capabilities(
        actor: Actor = Depends(get_actor),
        prefix: Optional[str] = None,
        visible: bool = False,
    ) -> List[CapabilityOut]:
        """List capabilities.

        Callers holding capability.retrieve see the whole registry; everyone
        else sees only what their own roles satisfy. visible=true forces the
        scoped view.
        """

        if visible or not _holds(actor, CAP_RETRIEVE):
            caps = svc.visible(effective_roles(actor.principal))
            if prefix:
                caps = [c for c in caps if c.name.startswith(prefix.strip().lower())]
        else:
            caps = svc.list(prefix=prefix)
        return [_cap_out(c) for c in caps]

    @app.get("/capabilities/{name}", response_model=CapabilityOut)
    def get_capability(name: str, actor: Actor = Depends(get_actor)) -> CapabilityOut:
        # Without capability.retrieve, only capabilities the caller holds are
        # readable; the 403 does not reveal whether the name exists.
        if not _holds(actor, CAP_RETRIEVE) and not _holds(actor, name):
            raise PermissionDenied([CAP_RETRIEVE])
        return _cap_out(svc.retrieve(name))

    @app.put("/capabilities/{name}", response_model=CapabilityOut)
    def update_capability(
        name: str, body: CapabilityBody, actor: Actor = Depends(get_actor)
    ) -> CapabilityOut:
        _require(actor, CAP_UPDATE)
        return _cap_out(svc.update(name, body.model_dump()))

    @app.delete("/capabilities/{name}", status_code=204)
    def delete_capability(name: str, actor: Actor = Depends(get_actor)) -> None:
        _require(actor, CAP_DELETE)
        svc.delete(name)

    # Role membership

    @app.post("/capabilities/{name}/grant", response_model=CapabilityOut)
    def grant(name: str, body: RoleIn, actor: Actor = Depends(get_actor)) -> CapabilityOut:
        _require(actor, CAP_UPDATE)
        return _cap_out(svc.grant(name, body.role))

    @app.post("/capabilities/{name}/revoke", response_model=CapabilityOut)
    def revoke(name: str, body: RoleIn, actor: Actor = Depends(get_actor)) -> CapabilityOut:
        _require(actor, CAP_UPDATE)
        return _cap_out(svc.revoke(name, body.role))

    @app.post("/capabilities/{name}/restrict", response_model=CapabilityOut)
    def restrict(name: str, body: RoleIn, actor: Actor = Depends(get_actor)) -> CapabilityOut:
        _require(actor, CAP_UPDATE)
        return _cap_out(svc.restrict(name, body.role))

    @app.post("/capabilities/{name}/unrestrict", response_model=CapabilityOut)
    def unrestrict(name: str, body: RoleIn, actor: Actor = Depends(get_actor)) -> CapabilityOut:
        _require(actor, CAP_UPDATE)
        return _cap_out(svc.unrestrict(name, body.role))

    # Checks

    @app.post("/check", response_model=CheckOut)
    def check(body: CheckIn, actor: Actor = Depends(get_actor)) -> CheckOut:
        """Evaluate a permission check.

        Security notes:
        - The master override applies only to the caller's own roles.
        """

        override = actor.master and body.roles is None
        allowed = svc.check(_roles(actor, body.roles), body.capabilities, body.strict, override)
        return CheckOut(allowed=allowed)

    @app.post("/bulk-check", response_model=BulkCheckOut)
    def bulk_check(body: BulkCheckIn, actor: Actor = Depends(get_actor)) -> BulkCheckOut:
        override = actor.master and body.roles is None
        return BulkCheckOut(results=svc.bulk_check(_roles(actor, body.roles), body.checks, override))

    # Derived artifacts

    @app.get("/collections/{collection}/matrix")
    def collection_matrix(
        collection: str,
        actor: Actor = Depends(get_actor),
        actions: Optional[str] = None,
    ) -> Dict[str, Dict[str, bool]]:
        """Collection permission matrix; actions is a comma-separated override."""

        action_list = [a.strip() for a in (actions or "").split(",") if a.strip()] or None
        return svc.matrix(collection, action_list)

    @app.post("/access-list")
    def access_list(body: AccessListIn, actor: Actor = Depends(get_actor)) -> Dict[str, Dict[str, bool]]:
        rules = [AccessRule.from_mapping(r.model_dump()) for r in body.rules]
        return svc.access_list(rules, body.read_capability, body.write_capability)

    # Sync

    @app.post("/sync/load", response_model=LoadOut)
    def sync_load(body: Optional[LoadIn] = None, actor: Actor = Depends(get_actor)) -> LoadOut:
        _require(actor, CAP_SYNC)
        report = svc.load(flush=bool(body.flush) if body else False)
        return LoadOut(
            loaded=report.loaded,
            defaults_created=report.defaults_created,
            unresolved_refs=report.unresolved_refs,
        )

    @app.post("/sync/propagate", response_model=PropagateOut)
    def sync_propagate(actor: Actor = Depends(get_actor)) -> PropagateOut:
        _require(actor, CAP_SYNC)
        report = svc.propagate()
        return PropagateOut(
            ok=report.ok,
            written=report.written,
            failed=report.failed,
            unresolved=report.unresolved,
            timed_out=report.timed_out,
        )

    return app


def app_from_env() -> FastAPI:
    """Factory for Uvicorn / Docker entrypoints.

    uvicorn --factory capauth.api.server:app_from_env
    """

    return create_app(ServiceConfig.from_env())
