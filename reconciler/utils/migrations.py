import logging
import os
import sys

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

ADVISORY_LOCK_KEY = 7310419

ALEMBIC_INI = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "alembic.ini")


def _alembic_config(engine=None):
    from alembic.config import Config

    cfg = Config(ALEMBIC_INI)
    cfg.attributes["configure_logger"] = False
    if engine is not None:
        cfg.attributes["database_url"] = engine.url.render_as_string(hide_password=False)
    return cfg


def _get_head_revision() -> str:
    from alembic.script import ScriptDirectory

    script = ScriptDirectory.from_config(_alembic_config())
    head = script.get_current_head()
    return head or "unknown"


def _get_current_revision(engine) -> str:
    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
            row = result.fetchone()
            return row[0] if row else "none"
    except SQLAlchemyError:
        return "unknown"


def get_migration_state(engine) -> dict:
    current = _get_current_revision(engine)
    head = _get_head_revision()
    return {
        "current_revision": current,
        "head_revision": head,
        "migration_pending": current != head,
    }


def migrations_enabled() -> bool:
    from ..config import get_settings

    return get_settings().run_migrations_on_startup.lower() == "true"


def _upgrade(engine) -> None:
    from alembic import command

    command.upgrade(_alembic_config(engine), "head")


def run_migrations_if_enabled(engine) -> bool:
    """Upgrade the mirror schema to head when RUN_MIGRATIONS_ON_STARTUP=true.

    On PostgreSQL the upgrade runs under an advisory lock so only one worker
    migrates. Returns whether migrations ran.
    """
    if not migrations_enabled():
        logger.info("RUN_MIGRATIONS_ON_STARTUP is not enabled; skipping auto-migration")
        return False

    if engine.dialect.name != "postgresql":
        logger.info(f"Running alembic upgrade head on {engine.dialect.name} without advisory lock")
        _upgrade(engine)
        return True

    logger.info(f"RUN_MIGRATIONS_ON_STARTUP is enabled; acquiring advisory lock {ADVISORY_LOCK_KEY}")
    print(f"[startup] Acquiring advisory lock {ADVISORY_LOCK_KEY} for migrations...")

    raw_conn = engine.raw_connection()
    try:
        cursor = raw_conn.cursor()
        cursor.execute("SELECT pg_advisory_lock(%s)", (ADVISORY_LOCK_KEY,))
        logger.info("Advisory lock acquired; running alembic upgrade head")

        try:
            _upgrade(engine)
        finally:
            cursor.execute("SELECT pg_advisory_unlock(%s)", (ADVISORY_LOCK_KEY,))
            logger.info("Advisory lock released")

        logger.info("Migrations complete")
        print("[startup] Migrations complete")
    except Exception as exc:
        logger.error(f"Migration failed: {exc}")
        print(f"[startup] MIGRATION FAILED: {exc}")
        sys.exit(1)
    finally:
        raw_conn.close()
    return True
