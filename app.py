#!/usr/bin/env python3
"""
Itinerizer — Backend API (FastAPI, async)

Session- and credential-scoped service layer for the itinerary viewer:
- ItineraryStore: validated, owner-scoped itinerary persistence (SQLAlchemy)
- Trip designer: one DesignerOrchestrator per API credential (AsyncAnthropic),
  each with its own chat SessionRegistry
- PDF import through an external collaborator (httpx)

create_app() wires everything from a Settings object; all long-lived state
sits on app.state.container. A background task sweeps idle designer
instances and idle sessions every SESSION_SWEEP_INTERVAL seconds, then closes
the upstream clients of any designer instance the cache dropped.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import COOKIE_NAME, auth_router
from config import Settings
from container import ServiceContainer, build_container
from designer_routes import designer_router, import_router
from errors import ItinerizerError
from itineraries import itineraries_router
from validation import violations_from_errors

# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------

async def _sweep_loop(container: ServiceContainer, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(container.sweep)
            await container.close_evicted()
        except Exception as exc:
            # keep sweeping; the next tick retries
            logger.error('Session sweep failed: %s', exc, exc_info=True)


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    if container is None:
        settings  = settings or Settings.from_env()
        container = build_container(settings)
    settings = container.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if settings.sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(_sweep_loop(container, settings.sweep_interval_seconds))
        logger.info('Itinerizer started (auth=%s, cross-owner reads=%s)',
                    settings.auth_mode, settings.allow_cross_owner_reads)
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            await container.aclose()
            logger.info('Itinerizer stopped')

    app = FastAPI(title='Itinerizer API', docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.container = container

    # ── CORS ─────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    # ── Security headers ──────────────────────────────────────────────────────
    @app.middleware('http')
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options']        = 'DENY'
        response.headers['Referrer-Policy']        = 'strict-origin-when-cross-origin'
        if settings.production:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # ── Sliding JWT cookie ────────────────────────────────────────────────────
    @app.middleware('http')
    async def slide_auth_cookie(request: Request, call_next):
        """Re-issue the auth cookie with a fresh TTL after each authenticated request."""
        response = await call_next(request)
        token = getattr(request.state, 'slide_token', None)
        if token:
            response.set_cookie(
                COOKIE_NAME, token,
                httponly=True,
                samesite='lax',
                secure=settings.production,
                max_age=settings.token_ttl_hours * 3600,
                path='/',
            )
        return response

    # ── Map errors → { "error": "..." } ───────────────────────────────────────
    # FastAPI's default shape is { "detail": "..." }; the viewer expects "error".
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={'error': exc.detail},
                            headers=getattr(exc, 'headers', None))

    @app.exception_handler(ItinerizerError)
    async def itinerizer_error_handler(request: Request, exc: ItinerizerError):
        if exc.status_code >= 500:
            logger.error('%s %s → %d: %s', request.method, request.url.path,
                         exc.status_code, exc.message)
        return JSONResponse(status_code=exc.status_code,
                            content={'error': exc.message, **exc.extra()},
                            headers=exc.headers())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        violations = violations_from_errors(exc.errors(), skip=('body',))
        return JSONResponse(status_code=422, content={
            'error':      'Request failed validation',
            'violations': [v.to_dict() for v in violations],
        })

    # ── Router registration ───────────────────────────────────────────────────
    app.include_router(auth_router)
    app.include_router(itineraries_router)
    app.include_router(designer_router)
    app.include_router(import_router)

    # ── Ops ───────────────────────────────────────────────────────────────────
    @app.get('/health')
    async def health():
        metrics = container.store.metrics
        return {
            'status':          'ok',
            'corruptRecords':  metrics.corrupt_records,
            'invalidRecords':  metrics.invalid_records,
            'cachedDesigners': len(container.designers),
        }

    return app


if __name__ == '__main__':
    import uvicorn
    uvicorn.run(create_app(), host='0.0.0.0', port=8000)
