#!/usr/bin/env python3
"""
biasdash.api — Bias Dashboard API server.

Serves the candidate fixture and per-country demographic statistics,
proxies single and batch scoring to the upstream scorer, authenticates
users against the credential table and records every login.

Endpoints:
    GET  /api/individuals              → all candidates
    GET  /api/summary                  → totals, mean score, bias flag counts
    GET  /api/countries                → sorted country keys
    GET  /api/country-stats/{country}  → one country's statistics (404 if unknown)
    POST /api/login                    → start a session, append an audit row
    POST /api/signup                   → create a credential (409 if taken)
    GET  /api/logout                   → end the session (idempotent)
    GET  /api/logs                     → newest 500 login audit rows (admin only)
    GET  /api/export                   → candidates as individuals.csv
    POST /api/predict                  → upstream score, passed through verbatim
    POST /api/bias-fixer               → batch score + bias adjustment
    GET  /health                       → liveness probe
    GET  /ready                        → readiness probe
    GET  /*                            → bundled frontend (if a build exists)

Run:
    python -m biasdash.api
    uvicorn biasdash.api:create_app --factory --port 5000

Configuration is read from the environment; see biasdash.config.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.gzip import GZipMiddleware

from biasdash.audit import AuditLog
from biasdash.auth import SessionStore, SessionUser, UsernameTakenError, UserStore
from biasdash.batch import BatchRequest, run_batch
from biasdash.config import ConfigError, Settings, load_settings
from biasdash.constants import CSV_FILENAME, SESSION_COOKIE
from biasdash.db import Database
from biasdash.export import candidates_to_csv
from biasdash.fixtures import FixtureLoadError, FixtureStore
from biasdash.scoring import ScoringClient, ScoringError
from biasdash.security import (
    RequestIdMiddleware,
    RequestSizeLimitMiddleware,
    SecurityHeadersMiddleware,
    apply_security_headers,
    client_ip,
)

__version__ = "1.0.0"

logger = logging.getLogger("biasdash.api")


# ---------------------------------------------------------------------------
# Logging configuration: structured JSON to stdout
# ---------------------------------------------------------------------------

def configure_logging(env: str) -> None:
    logging.basicConfig(
        level=logging.DEBUG if env == "dev" else logging.INFO,
        format="%(message)s",
        stream=sys.stdout,
    )


# ---------------------------------------------------------------------------
# Application context
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class AppContext:
    settings: Settings
    store: FixtureStore
    db: Database
    users: UserStore
    sessions: SessionStore
    audit: AuditLog
    scoring: ScoringClient

    @classmethod
    def build(
        cls,
        settings: Settings,
        scoring_client: ScoringClient | None = None,
    ) -> AppContext:
        """Load fixtures and prepare the database.

        Raises FixtureLoadError or SQLAlchemyError; both are fatal at startup.
        """
        store = FixtureStore.load(settings.data_dir)
        db = Database(settings.database_url)
        db.create_schema()

        users = UserStore(db)
        if settings.bootstrap_admin_username and settings.bootstrap_admin_password:
            created = users.ensure_user(
                settings.bootstrap_admin_username,
                settings.bootstrap_admin_password,
                role="admin",
            )
            logger.info(json.dumps({
                "event": "bootstrap_admin",
                "username": settings.bootstrap_admin_username.lower(),
                "created": created,
            }))

        return cls(
            settings=settings,
            store=store,
            db=db,
            users=users,
            sessions=SessionStore(db, settings.session_secret),
            audit=AuditLog(db),
            scoring=scoring_client or ScoringClient(settings.scoring_api_url),
        )


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

def require_session(request: Request, ctx: AppContext = Depends(get_ctx)) -> SessionUser:
    try:
        user = ctx.sessions.resolve(request.cookies.get(SESSION_COOKIE))
    except SQLAlchemyError as exc:
        _log_persistence_failure("session_lookup", exc)
        raise HTTPException(status_code=500, detail="Session lookup failed.")
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized.")
    return user


def require_admin(user: SessionUser = Depends(require_session)) -> SessionUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only.")
    return user


def _log_persistence_failure(operation: str, exc: Exception) -> None:
    logger.error(json.dumps({
        "event": "persistence_failed",
        "operation": operation,
        "error_type": type(exc).__name__,
        "error": str(exc),
    }))


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

def _require_username(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("username must not be blank.")
    return v


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, v: str) -> str:
        return _require_username(v)


class SignupRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1)
    role: Literal["admin", "user"] = "user"

    @field_validator("username")
    @classmethod
    def _strip_username(cls, v: str) -> str:
        return _require_username(v)


# ---------------------------------------------------------------------------
# /api routes
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.get("/individuals")
def list_individuals(ctx: AppContext = Depends(get_ctx)) -> list[dict[str, Any]]:
    return ctx.store.get_all()


@router.get("/summary")
def summary(ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    return ctx.store.summarize()


@router.get("/countries")
def list_countries(ctx: AppContext = Depends(get_ctx)) -> list[str]:
    return ctx.store.list_countries()


@router.get("/country-stats/{country}")
def country_stats(country: str, ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    stats = ctx.store.country_stats(country)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Country '{country}' not found.")
    return stats


@router.post("/login")
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    ctx: AppContext = Depends(get_ctx),
) -> dict[str, Any]:
    try:
        user = ctx.users.authenticate(body.username, body.password)
    except SQLAlchemyError as exc:
        _log_persistence_failure("credential_lookup", exc)
        raise HTTPException(status_code=500, detail="Login failed.")

    if user is None:
        logger.info(json.dumps({
            "event": "login_failed",
            "username": body.username.strip().lower(),
        }))
        raise HTTPException(status_code=401, detail="Invalid username or password.")

    try:
        cookie = ctx.sessions.create(user)
    except SQLAlchemyError as exc:
        _log_persistence_failure("session_create", exc)
        raise HTTPException(status_code=500, detail="Login failed.")

    # Best-effort: a failed audit insert is logged inside record_login and
    # does not fail the login.
    audited = ctx.audit.record_login(user.username, client_ip(request))

    response.set_cookie(
        SESSION_COOKIE,
        cookie,
        httponly=True,
        samesite="lax",
        secure=not ctx.settings.is_dev,
    )
    logger.info(json.dumps({
        "event": "login_success",
        "username": user.username,
        "role": user.role,
        "audited": audited,
    }))
    return {"status": "success", "user": user.username, "role": user.role}


@router.post("/signup", status_code=201)
def signup(body: SignupRequest, ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    try:
        ctx.users.create_user(body.username, body.password, body.role)
    except UsernameTakenError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except SQLAlchemyError as exc:
        _log_persistence_failure("signup", exc)
        raise HTTPException(status_code=500, detail="Signup failed.")
    return {"status": "created"}


@router.get("/logout")
def logout(request: Request, response: Response, ctx: AppContext = Depends(get_ctx)) -> dict[str, Any]:
    try:
        ctx.sessions.destroy(request.cookies.get(SESSION_COOKIE))
    except SQLAlchemyError as exc:
        _log_persistence_failure("session_destroy", exc)
        raise HTTPException(status_code=500, detail="Logout failed.")
    response.delete_cookie(SESSION_COOKIE)
    return {"status": "logged out"}


@router.get("/logs")
def login_logs(
    _admin: SessionUser = Depends(require_admin),
    ctx: AppContext = Depends(get_ctx),
) -> list[dict[str, Any]]:
    """Newest first, capped at the AUDIT_LOG_LIMIT most recent rows."""
    try:
        return ctx.audit.list_logins()
    except SQLAlchemyError as exc:
        _log_persistence_failure("audit_list", exc)
        raise HTTPException(status_code=500, detail="Could not read login logs.")


@router.get("/export")
def export_csv(ctx: AppContext = Depends(get_ctx)) -> Response:
    try:
        body = candidates_to_csv(ctx.store.get_all())
    except (csv.Error, ValueError, TypeError) as exc:
        logger.error(json.dumps({
            "event": "export_failed",
            "error_type": type(exc).__name__,
            "error": str(exc),
        }))
        raise HTTPException(status_code=500, detail=str(exc))
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={CSV_FILENAME}"},
    )


def _upstream_status(exc: ScoringError) -> int:
    if exc.status_code is not None and 400 <= exc.status_code <= 599:
        return exc.status_code
    return 500


@router.post("/predict")
async def predict(
    request: Request,
    payload: dict[str, Any] = Body(...),
    ctx: AppContext = Depends(get_ctx),
) -> JSONResponse:
    try:
        result = await ctx.scoring.predict(payload)
    except ScoringError as exc:
        logger.warning(json.dumps({
            "event": "scoring_failed",
            "request_id": getattr(request.state, "request_id", "unknown"),
            "upstream_status": exc.status_code,
            "error": exc.message,
        }))
        raise HTTPException(status_code=_upstream_status(exc), detail=exc.message)
    return JSONResponse(content=result)


@router.post("/bias-fixer")
async def bias_fixer(
    params: BatchRequest,
    request: Request,
    ctx: AppContext = Depends(get_ctx),
) -> list[dict[str, Any]]:
    try:
        return await run_batch(
            ctx.store.get_all(),
            ctx.store.country_stats,
            ctx.scoring,
            params,
            concurrency=ctx.settings.batch_concurrency,
        )
    except ScoringError as exc:
        logger.error(json.dumps({
            "event": "batch_failed",
            "request_id": getattr(request.state, "request_id", "unknown"),
            "upstream_status": exc.status_code,
            "error": exc.message,
        }))
        raise HTTPException(status_code=500, detail=exc.message)


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def api_not_found(path: str) -> None:
    raise HTTPException(status_code=404, detail="Not found.")


# ---------------------------------------------------------------------------
# Frontend fallback
# ---------------------------------------------------------------------------

def _frontend_file(build_dir: Path, rel_path: str) -> Path:
    """Resolve a request path to a file in the build, or index.html."""
    root = build_dir.resolve()
    if rel_path:
        candidate = (root / rel_path).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            return root / "index.html"
        if candidate.is_file():
            return candidate
    return root / "index.html"


def _mount_frontend(app: FastAPI, build_dir: Path) -> None:
    @app.get("/{full_path:path}", include_in_schema=False)
    async def frontend(full_path: str) -> FileResponse:
        return FileResponse(_frontend_file(build_dir, full_path))


# ---------------------------------------------------------------------------
# App construction
# ---------------------------------------------------------------------------

def _build_docs_kwargs(settings: Settings) -> dict[str, Any]:
    if settings.is_dev:
        return {"docs_url": "/docs", "redoc_url": "/redoc"}
    return {"docs_url": None, "redoc_url": None, "openapi_url": None}


def create_app(
    settings: Settings | None = None,
    *,
    scoring_client: ScoringClient | None = None,
) -> FastAPI:
    """Build the ASGI app. Loading fixtures and the schema happens here.

    Raises ConfigError, FixtureLoadError or SQLAlchemyError when the
    service cannot start.
    """
    settings = settings or load_settings()
    configure_logging(settings.env)
    ctx = AppContext.build(settings, scoring_client=scoring_client)

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(json.dumps({
            "event": "startup",
            "env": settings.env,
            "candidates": len(ctx.store),
            "countries": ctx.store.country_count,
            "batch_concurrency": settings.batch_concurrency,
            "keepalive_interval": settings.keepalive_interval,
        }))
        keepalive: asyncio.Task[None] | None = None
        if settings.keepalive_interval > 0:
            keepalive = asyncio.create_task(ctx.scoring.keepalive_loop(settings.keepalive_interval))

        yield

        if keepalive is not None:
            keepalive.cancel()
            with suppress(asyncio.CancelledError):
                await keepalive
        ctx.db.dispose()
        logger.info(json.dumps({"event": "shutdown"}))

    app = FastAPI(
        title="Bias Dashboard API",
        version=__version__,
        lifespan=_lifespan,
        **_build_docs_kwargs(settings),
    )
    app.state.ctx = ctx

    # Registration order: CORS → RequestId → RequestSizeLimit → SecurityHeaders → GZip
    # Execution order (outermost first): GZip → SecurityHeaders → RequestSizeLimit → RequestId → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Content-Disposition"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, enable_hsts=not settings.is_dev)
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(p) for p in e.get("loc", []) if p != "body"),
                "message": e.get("msg", "Validation failed"),
            }
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"detail": "Request validation failed.", "errors": errors},
        )

    @app.exception_handler(Exception)
    async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(json.dumps({
            "event": "unhandled_exception",
            "exception_type": type(exc).__name__,
            "error": str(exc),
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
        }))
        # Runs outside the middleware stack, so the header policy is applied here.
        response = JSONResponse(status_code=500, content={"detail": "Internal server error."})
        request_id = getattr(request.state, "request_id", None)
        if request_id:
            response.headers["X-Request-ID"] = request_id
        apply_security_headers(response, request.url.path, enable_hsts=not settings.is_dev)
        return response

    app.include_router(router)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        """Liveness probe. No I/O."""
        return {"status": "ok", "version": __version__}

    @app.get("/ready", include_in_schema=False)
    def ready() -> dict[str, Any]:
        """Readiness probe. Always 200; see the ``ready`` field."""
        db_ok = ctx.db.ping()
        return {
            "ready": db_ok,
            "database": db_ok,
            "candidates": len(ctx.store),
            "countries": ctx.store.country_count,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    build_dir = settings.frontend_build_dir
    if (build_dir / "index.html").is_file():
        _mount_frontend(app, build_dir)
        logger.info(json.dumps({"event": "frontend_mounted", "build_dir": str(build_dir)}))
    else:
        @app.get("/", include_in_schema=False)
        async def root() -> dict[str, Any]:
            return {"service": "biasdash", "version": __version__}

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as exc:
        configure_logging("prod")
        logger.error(json.dumps({"event": "startup_abort", "reason": str(exc)}))
        sys.exit(1)

    try:
        app = create_app(settings)
    except FixtureLoadError as exc:
        logger.error(json.dumps({"event": "startup_abort", "reason": f"fixture: {exc}"}))
        sys.exit(1)
    except SQLAlchemyError as exc:
        logger.error(json.dumps({
            "event": "startup_abort",
            "reason": "database unavailable",
            "error_type": type(exc).__name__,
        }))
        sys.exit(1)

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)  # noqa: S104


if __name__ == "__main__":
    main()
