"""FastAPI application wiring for the governance service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import Settings, get_settings
from .domain.credentials import CredentialManager
from .domain.delegation import DelegatedPropertiesResolver, SettingsPropertiesProvider
from .domain.service import AccountService
from .domain.status import StatusEngine
from .geocoder import HttpReverseGeocoder
from .jobs.address_backfill import BackfillCoordinator
from .repository import AccountRepository, EventRecordRepository
from .security.login_audit import InMemoryLoginAudit
from .security.passwords import GeneralPasswordPolicy
from .security.redis_login_audit import RedisLoginAudit

logger = logging.getLogger(__name__)

settings = get_settings()


def build_login_audit(settings: Settings) -> InMemoryLoginAudit | RedisLoginAudit:
    """Instantiate the configured failed-login audit backend, preferring Redis when available."""
    if settings.login_audit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("login audit configured for redis backend at %s", settings.redis_url)
            return RedisLoginAudit(client, retention_seconds=settings.login_audit_retention_seconds)
        except Exception as exc:  # pragma: no cover
            logger.warning("redis login audit unavailable, falling back to in-memory: %s", exc)

    logger.info("login audit using in-memory backend")
    return InMemoryLoginAudit(retention_seconds=settings.login_audit_retention_seconds)


def build_account_service(
    settings: Settings,
    pool: ConnectionPool,
    geocoder: HttpReverseGeocoder,
) -> AccountService:
    """Assemble the governance core around a Postgres pool."""
    accounts = AccountRepository(pool)
    events = EventRecordRepository(pool)
    audit = build_login_audit(settings)
    policy = GeneralPasswordPolicy.from_settings(settings)

    def backfill_factory(pool_size: int) -> BackfillCoordinator:
        return BackfillCoordinator(accounts, accounts, events, events, geocoder, pool_size=pool_size)

    return AccountService(
        accounts,
        StatusEngine(accounts, hop_limit=settings.manager_hop_limit),
        CredentialManager(
            policy,
            audit,
            accounts,
            max_stored_length=settings.last_passwords_max_length,
        ),
        DelegatedPropertiesResolver(
            accounts,
            SettingsPropertiesProvider(settings.default_sms_properties, settings.default_smtp_properties),
            hop_limit=settings.manager_hop_limit,
        ),
        audit,
        backfill_factory=backfill_factory,
        users=accounts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, geocoder, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    geocoder = HttpReverseGeocoder(
        settings.geocoder_url,
        timeout=settings.geocoder_timeout_seconds,
        user_agent=settings.geocoder_user_agent,
    )
    app.state.pool = pool
    app.state.account_service = build_account_service(settings, pool, geocoder)
    try:
        yield
    finally:
        app.state.account_service.stop_backfills(settings.backfill_stop_timeout_seconds)
        geocoder.close()
        pool.close()
        pool.wait_close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


app.include_router(v1_router)


@app.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
