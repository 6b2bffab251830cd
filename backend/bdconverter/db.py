"""Database layer. SQLite by default; set DATABASE_URL for any SQLAlchemy URL.
Startup ensures required tables exist; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from bdconverter import config as app_config

logger = logging.getLogger("bdconverter.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("batches", "conversion_results")

IN_MEMORY_URL = "sqlite:///:memory:"


def _is_sqlite() -> bool:
    return app_config.DATABASE_URL.startswith("sqlite")


def _create_engine(url: str) -> Engine:
    if url == IN_MEMORY_URL:
        # one shared connection, otherwise every connection sees an empty database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _create_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", "SQLite" if _is_sqlite() else _engine.dialect.name)
    return _engine


def _create_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS batches (
            batch_id VARCHAR(64) PRIMARY KEY,
            request_id VARCHAR(255),
            status VARCHAR(32) NOT NULL,
            summary_json TEXT,
            error TEXT,
            created_at VARCHAR(64) NOT NULL,
            updated_at VARCHAR(64) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_results (
            batch_id VARCHAR(64) NOT NULL,
            name VARCHAR(512) NOT NULL,
            path TEXT NOT NULL,
            size_bytes BIGINT NOT NULL DEFAULT 0,
            pages INTEGER NOT NULL DEFAULT 0,
            created_at VARCHAR(64) NOT NULL
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        _create_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    global _engine
    logger.info("Database init: preparing %s (tables: %s)", app_config.DATABASE_URL.split(":", 1)[0], ", ".join(REQUIRED_TABLES))
    try:
        _ensure_tables(get_engine())
        logger.info("Database ready")
        return
    except SQLAlchemyError as e:
        logger.warning(
            "Database connection failed: %s. Using in-memory SQLite.",
            getattr(e, "orig", e),
            exc_info=True,
        )

    # Last resort: batch state will not persist across restarts
    app_config.DATABASE_URL = IN_MEMORY_URL
    _engine = _create_engine(IN_MEMORY_URL)
    _ensure_tables(_engine)
    logger.warning("Database unavailable. Using in-memory SQLite. Batch state will not persist across restarts.")


def reset_engine() -> None:
    """Drop the cached engine so the next call picks up DATABASE_URL again."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def save_batch(batch_id: str, status: str, request_id: Optional[str] = None) -> None:
    now = _now_iso()
    params = {"batch_id": batch_id, "request_id": request_id, "status": status, "now": now}
    with session() as conn:
        conn.execute(text("DELETE FROM conversion_results WHERE batch_id = :batch_id"), params)
        conn.execute(text("DELETE FROM batches WHERE batch_id = :batch_id"), params)
        conn.execute(
            text("""
                INSERT INTO batches (batch_id, request_id, status, summary_json, error, created_at, updated_at)
                VALUES (:batch_id, :request_id, :status, NULL, NULL, :now, :now)
            """),
            params,
        )


def update_batch_status(
    batch_id: str,
    status: str,
    summary: Optional[dict] = None,
    error: Optional[str] = None,
) -> None:
    params = {
        "batch_id": batch_id,
        "status": status,
        "summary_json": json.dumps(summary) if summary is not None else None,
        "error": error,
        "now": _now_iso(),
    }
    with session() as conn:
        conn.execute(
            text("""
                UPDATE batches
                SET status = :status,
                    summary_json = COALESCE(:summary_json, summary_json),
                    error = :error,
                    updated_at = :now
                WHERE batch_id = :batch_id
            """),
            params,
        )


def record_results(batch_id: str, results: list[dict]) -> None:
    """Store one row per produced file."""
    if not results:
        return
    now = _now_iso()
    rows = [
        {
            "batch_id": batch_id,
            "name": r["name"],
            "path": r["path"],
            "size_bytes": r["size"],
            "pages": r["pages"],
            "created_at": now,
        }
        for r in results
    ]
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO conversion_results (batch_id, name, path, size_bytes, pages, created_at)
                VALUES (:batch_id, :name, :path, :size_bytes, :pages, :created_at)
            """),
            rows,
        )


def get_batch_from_db(batch_id: str) -> Optional[dict]:
    """Return batch row as dict or None. Used when batch is not in memory (e.g. after restart)."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT batch_id, request_id, status, summary_json, error FROM batches WHERE batch_id = :id"),
            {"id": batch_id},
        ).fetchone()
        if not row:
            return None
        results = conn.execute(
            text("SELECT name, path, size_bytes, pages FROM conversion_results WHERE batch_id = :id ORDER BY name"),
            {"id": batch_id},
        ).fetchall()
    return {
        "batch_id": row[0],
        "request_id": row[1],
        "status": row[2],
        "summary": json.loads(row[3]) if row[3] else None,
        "error": row[4],
        "results": [
            {"name": r[0], "path": r[1], "size": r[2], "pages": r[3]}
            for r in results
        ],
    }
