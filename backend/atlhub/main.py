# atlhub/main.py
from __future__ import annotations

import asyncio
import os
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from atlhub.clienthub.manager import ClientManager
from atlhub.clienthub.oauth import OAuthDancer
from atlhub.config import Configuration, Settings, load_configuration
from atlhub.deps import build_engine, build_sessionmaker, create_tables
from atlhub.errors import AtlClientError, CredentialUnavailable, FactoryError, RefreshFailed, UnknownProvider
from atlhub.routers.connections import router as connections_router, settings_router
from atlhub.services.auth_store import AuthStore, SqlAuthStore
from atlhub.services.logging import (
    get_logger,
    get_trace_id,
    log_kv,
    trace_scope,
)

LOG = logging.getLogger("atlhub")

_ERROR_STATUS = {
    CredentialUnavailable: 401,
    RefreshFailed: 401,
    FactoryError: 500,
    UnknownProvider: 404,
}


def create_app(
    settings: Optional[Settings] = None,
    *,
    auth_store: Optional[AuthStore] = None,
    dancer: Optional[OAuthDancer] = None,
    configuration: Optional[Configuration] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    get_logger("atlhub", debug=settings.debug)

    # ---------- Lifespan (startup/shutdown) ----------
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        store = auth_store
        if store is None:
            engine = build_engine(settings.database_url)
            await create_tables(engine)
            store = SqlAuthStore(build_sessionmaker(engine))

        app.state.dancer = dancer or OAuthDancer.from_settings(settings)
        app.state.configuration = configuration or load_configuration(settings)
        manager = ClientManager(
            store,
            app.state.dancer,
            reauth_on_refresh_failure=settings.reauth_on_refresh_failure,
        )
        manager.configure(app.state.configuration)
        app.state.client_manager = manager
        app.state.dance_tasks = set()
        log_kv(LOG, logging.INFO, "app.started", debug=int(settings.debug))
        try:
            yield
        finally:
            manager.dispose()
            for task in list(app.state.dance_tasks):
                task.cancel()
            if app.state.dance_tasks:
                await asyncio.gather(*app.state.dance_tasks, return_exceptions=True)
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="atlhub", lifespan=lifespan)
    app.include_router(connections_router)
    app.include_router(settings_router)

    # ---------- Errors ----------
    @app.exception_handler(AtlClientError)
    async def client_error_handler(request: Request, exc: AtlClientError):
        status = _ERROR_STATUS.get(type(exc), 500)
        log_kv(LOG, logging.WARNING, "request.client_error", error=exc.code, provider=exc.provider or "-", status=status)
        return JSONResponse(
            status_code=status,
            content={"error": exc.code, "message": exc.message, "provider": exc.provider},
            headers={"X-Trace-Id": get_trace_id()},
        )

    # ---------- Per-request trace middleware ----------
    @app.middleware("http")
    async def trace_middleware(request: Request, call_next):
        with trace_scope() as tid:
            start = time.perf_counter()
            response: Response | None = None
            try:
                response = await call_next(request)
            finally:
                duration_ms = int((time.perf_counter() - start) * 1000)
                log_kv(
                    LOG,
                    logging.INFO,
                    "request.complete",
                    method=request.method,
                    path=request.url.path,
                    status=getattr(response, "status_code", 0) if response else 0,
                    duration_ms=duration_ms,
                )

        response.headers["X-Trace-Id"] = tid
        return response

    # ---------- Health ----------
    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("atlhub.main:app", host="127.0.0.1", port=int(os.getenv("PORT", "8000")))
