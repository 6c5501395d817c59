import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import engine, init_db
from .pipeline import get_registry
from .routers import ledger_router, webhook_router
from .utils.migrations import get_migration_state, run_migrations_if_enabled

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Payment Ledger Reconciler",
    description="Webhook-driven order ledger with relational mirror sync",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router)
app.include_router(ledger_router)


@app.on_event("startup")
def _startup() -> None:
    if not run_migrations_if_enabled(engine):
        init_db()
    registry = get_registry()
    logger.info(
        f"Reconciler started: default_tenant={settings.default_tenant} "
        f"mirror={settings.mirror_backend} ledger_dir={settings.ledger_dir or '(memory)'} "
        f"mirror_writer={'on' if registry.mirror_writer is not None else 'off'}"
    )


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "default_tenant": settings.default_tenant,
        "mirror_backend": settings.mirror_backend,
        "migrations": get_migration_state(engine),
    }
