"""SQLAlchemy engine creation for the structured store.

Engines are created per backend instance (not cached at module level) so the
lifecycle manager can close and rebuild them.

Connection establishment walks a list of strategies, keeping the first one
that both opens and answers ``SELECT 1``. For PostgreSQL (psycopg v3):

    1. no_prepare          prepared statements off + connect timeout
    2. no_prepare_slow     prepared statements off + doubled connect timeout
    3. ssl_required        sslmode=require + prepared statements off
    4. raw                 the DSN exactly as configured

Prepared statements are disabled first because transaction-mode poolers
(PgBouncer, Supabase pooler) reject them. Other dialects only get ``raw``.
If every strategy fails, ConfigurationError is raised: backend construction
fails rather than returning a half-working instance.
"""

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from tabsync.errors import ConfigurationError
from tabsync.logging import get_logger, redact_url
from tabsync.storage.base import BackendConfig

logger = get_logger(__name__)

POSTGRES_DRIVERNAMES = {"postgres", "postgresql", "postgresql+psycopg"}


@dataclass(frozen=True)
class ConnectionStrategy:
    """One set of connect arguments to try."""

    name: str
    connect_args: dict[str, Any] = field(default_factory=dict)


def normalize_database_url(database_url: str) -> URL:
    """Parse a DSN, pinning PostgreSQL URLs to the psycopg v3 driver.

    ``postgres://`` (as handed out by hosted providers) is accepted as an
    alias for ``postgresql://``.

    Raises:
        ConfigurationError: If the DSN cannot be parsed.
    """
    try:
        url = make_url(database_url.strip())
    except ArgumentError as exc:
        raise ConfigurationError("DATABASE_URL is not a valid connection string") from exc
    if url.drivername in POSTGRES_DRIVERNAMES:
        url = url.set(drivername="postgresql+psycopg")
    return url


def connection_strategies(url: URL, connect_timeout_s: int) -> list[ConnectionStrategy]:
    """Return the ordered strategies for ``url``'s dialect."""
    if url.get_backend_name() != "postgresql":
        return [ConnectionStrategy("raw")]
    return [
        ConnectionStrategy(
            "no_prepare",
            {"prepare_threshold": None, "connect_timeout": connect_timeout_s},
        ),
        ConnectionStrategy(
            "no_prepare_slow",
            {"prepare_threshold": None, "connect_timeout": connect_timeout_s * 2},
        ),
        ConnectionStrategy(
            "ssl_required",
            {"sslmode": "require", "prepare_threshold": None},
        ),
        ConnectionStrategy("raw"),
    ]


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(
    url: URL,
    config: BackendConfig,
    strategy: ConnectionStrategy | None = None,
) -> Engine:
    """Create a SQLAlchemy engine for one strategy.

    Pool tuning (non-SQLite): pool_size + max_overflow bound open connections
    (2 + 3 = 5 by default), pool_recycle bounds connection lifetime, and
    pool_pre_ping drops connections killed by the server while idle.
    """
    connect_args = dict(strategy.connect_args) if strategy else {}

    if url.get_backend_name() == "sqlite":
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(url, connect_args=connect_args, echo=False)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        url,
        connect_args=connect_args,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_recycle=config.pool_recycle_s,
        pool_pre_ping=True,
        echo=False,
    )


def probe(engine: Engine) -> None:
    """Run the liveness query. Raises the underlying SQLAlchemy error."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def connect_with_strategies(config: BackendConfig) -> tuple[Engine, str]:
    """Open an engine using the first strategy that passes the probe.

    Returns:
        (engine, strategy name)

    Raises:
        ConfigurationError: If no DSN is configured or every strategy fails.
    """
    if not config.database_url:
        raise ConfigurationError("DATABASE_URL is not configured")

    url = normalize_database_url(config.database_url)
    redacted = redact_url(config.database_url)
    last_error: Exception | None = None

    for attempt, strategy in enumerate(connection_strategies(url, config.connect_timeout_s), 1):
        try:
            engine = create_db_engine(url, config, strategy)
        except (SQLAlchemyError, ImportError, TypeError) as exc:
            logger.warning(
                "db_strategy_failed",
                attempt=attempt,
                strategy=strategy.name,
                stage="create",
                url=redacted,
                error=str(exc),
            )
            last_error = exc
            continue

        try:
            probe(engine)
        except SQLAlchemyError as exc:
            logger.warning(
                "db_strategy_failed",
                attempt=attempt,
                strategy=strategy.name,
                stage="probe",
                url=redacted,
                error=str(exc),
            )
            engine.dispose()
            last_error = exc
            continue

        logger.info("db_connected", attempt=attempt, strategy=strategy.name, url=redacted)
        return engine, strategy.name

    raise ConfigurationError(
        f"Failed to connect to the structured store with all strategies: {last_error}"
    ) from last_error
