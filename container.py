"""
container.py — Explicit service registry for one Itinerizer process.

build_container(settings) constructs, once:
  - the SQLAlchemy engine and ItineraryStore (plus a startup scan)
  - the optional Redis client
  - the CredentialServiceCache of DesignerOrchestrators, each with its own
    SessionRegistry
  - the RateLimiter and the PDF import client

create_app() stores the result on app.state.container and routes reach it
through the get_container dependency. There are no module-level caches, so
tests build as many independent containers as they like.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from fastapi import Request
from sqlalchemy.engine import Engine

from config import Settings
from database import init_schema, make_engine, make_session_factory
from designer import DesignerOrchestrator
from designer_cache import CredentialServiceCache, credential_fingerprint
from importer import PdfImportClient
from llm import anthropic_llm_factory
from redis_client import connect_redis
from sessions import InMemorySessionStore, RedisSessionStore, SessionRegistry
from storage import ItineraryStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings:     Settings
    engine:       Engine
    store:        ItineraryStore
    designers:    CredentialServiceCache
    rate_limiter: object                       # auth.RateLimiter
    importer:     PdfImportClient | None = None
    redis:        object | None          = None
    sweeps:       int                    = field(default=0)

    def designer_for(self, credential: str) -> DesignerOrchestrator:
        return self.designers.get_or_create(credential)

    def sweep(self) -> dict:
        """Drop idle designer instances, then idle sessions in the survivors."""
        services = self.designers.evict_expired()
        sessions = sum(
            d.sessions.evict_idle(self.settings.session_idle_seconds)
            for d in self.designers.services()
        )
        self.sweeps += 1
        if services or sessions:
            logger.info("Sweep: evicted %d designer instance(s), %d session(s)", services, sessions)
        return {'services': services, 'sessions': sessions}

    async def close_evicted(self) -> int:
        """Close the upstream clients of designer instances the cache has dropped."""
        evicted = self.designers.take_evicted()
        for designer in evicted:
            try:
                await designer.aclose()
            except Exception as exc:
                logger.warning("Closing evicted designer %s failed: %s", designer.credential_id, exc)
        return len(evicted)

    async def aclose(self) -> None:
        await self.close_evicted()
        for designer in self.designers.services():
            await designer.aclose()
        if self.importer is not None:
            await self.importer.aclose()
        self.engine.dispose()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def build_container(
    settings: Settings,
    *,
    llm_factory: Callable[[str], object] | None = None,
    redis_client=None,
    session_clock: Callable[[], datetime] | None = None,
    importer: PdfImportClient | None = None,
) -> ServiceContainer:
    from auth import RateLimiter   # auth depends on this module for get_container

    engine = make_engine(settings.database_url)
    init_schema(engine)
    store = ItineraryStore(make_session_factory(engine))
    store.scan()

    if redis_client is None and settings.redis_url:
        redis_client = connect_redis(settings.redis_url)
    if settings.session_backend == 'redis' and redis_client is None:
        logger.warning("SESSION_BACKEND=redis but Redis is unavailable — using in-memory sessions")

    llm_factory = llm_factory or anthropic_llm_factory(settings.designer_model,
                                                       settings.designer_max_tokens)

    def _make_designer(credential: str) -> DesignerOrchestrator:
        fingerprint = credential_fingerprint(credential)
        if settings.session_backend == 'redis' and redis_client is not None:
            session_store = RedisSessionStore(redis_client, fingerprint, settings.session_idle_seconds)
        else:
            session_store = InMemorySessionStore()
        return DesignerOrchestrator(
            llm_factory(credential),
            store,
            SessionRegistry(session_store, clock=session_clock),
            credential_id = fingerprint,
            max_retries   = settings.upstream_max_retries,
            retry_delay   = settings.upstream_retry_delay,
        )

    designers = CredentialServiceCache(
        _make_designer,
        max_entries = settings.designer_cache_max_entries,
        ttl_seconds = settings.designer_cache_ttl_seconds,
    )

    if importer is None and settings.import_service_url:
        importer = PdfImportClient(
            settings.import_service_url,
            timeout     = settings.import_timeout_seconds,
            max_retries = settings.upstream_max_retries,
            retry_delay = settings.upstream_retry_delay,
        )

    logger.info("Container ready: db=%s sessions=%s redis=%s import=%s",
                engine.url.render_as_string(hide_password=True), settings.session_backend,
                'yes' if redis_client is not None else 'no',
                'yes' if importer is not None else 'no')

    return ServiceContainer(
        settings     = settings,
        engine       = engine,
        store        = store,
        designers    = designers,
        rate_limiter = RateLimiter(redis_client),
        importer     = importer,
        redis        = redis_client,
    )
