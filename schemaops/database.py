import logging
import re
import socket
from functools import lru_cache
from typing import Optional, Union

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from schemaops.config import settings

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("postgres", "postgresql")
DEFAULT_PORT = 5432

# SQLSTATE codes Postgres raises when an object being created is already there
ALREADY_EXISTS_SQLSTATES = frozenset({
    "42P06",  # duplicate_schema
    "42P07",  # duplicate_table
    "42701",  # duplicate_column
    "42710",  # duplicate_object (constraint, policy, index)
    "42723",  # duplicate_function
})

_CREDENTIALS_RE = re.compile(r"(://[^:/@]*):[^@]*@")


class Base(DeclarativeBase):
    pass


class InvalidDatabaseURL(ValueError):
    """DATABASE_URL is missing or not a usable postgres:// URI."""

    def __init__(self, reason: str, url: Optional[str] = None):
        self.reason = reason
        self.redacted_url = redact_url(url) if url else None
        message = reason if not url else f"{reason} ({self.redacted_url})"
        super().__init__(message)


def redact_url(url: Union[str, URL, None]) -> str:
    """Mask the password in a connection string; never raises."""
    if url is None:
        return ""
    if isinstance(url, URL):
        return url.render_as_string(hide_password=True)
    try:
        return make_url(url).render_as_string(hide_password=True)
    except (ArgumentError, ValueError):
        return _CREDENTIALS_RE.sub(r"\1:***@", url)


def validate_database_url(url: Optional[str]) -> URL:
    """
    Parse and check a postgres connection string before any connection is made.

    Returns the URL rewritten for the asyncpg driver, with ``sslmode`` removed
    because asyncpg takes SSL through connect_args.
    """
    if not url or not url.strip():
        raise InvalidDatabaseURL("DATABASE_URL is not set")

    try:
        parsed = make_url(url.strip())
    except (ArgumentError, ValueError):
        raise InvalidDatabaseURL("DATABASE_URL is not a valid URI", url) from None

    scheme = parsed.drivername.split("+", 1)[0]
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidDatabaseURL(
            f"DATABASE_URL scheme must be postgres:// or postgresql://, got {scheme}://",
            url,
        )
    if not parsed.host:
        raise InvalidDatabaseURL("DATABASE_URL has no host", url)

    port = DEFAULT_PORT if parsed.port is None else parsed.port
    if not 0 < port < 65536:
        raise InvalidDatabaseURL(f"DATABASE_URL port {port} is out of range", url)

    return parsed.set(drivername="postgresql+asyncpg", port=port).difference_update_query(
        ["sslmode"]
    )


def check_host_resolves(url: URL) -> None:
    """Fail fast when the host/port of the URL cannot be resolved."""
    try:
        socket.getaddrinfo(url.host, url.port or DEFAULT_PORT)
    except socket.gaierror as exc:
        raise InvalidDatabaseURL(
            f"cannot resolve database host {url.host!r}: {exc.strerror}",
            url.render_as_string(hide_password=False),
        ) from None


def error_sqlstate(exc: BaseException) -> Optional[str]:
    """SQLSTATE of an asyncpg error, raw or wrapped by SQLAlchemy."""
    for candidate in (exc, getattr(exc, "orig", None), getattr(exc, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if isinstance(code, str):
            return code
    return None


def is_already_exists_error(exc: BaseException) -> bool:
    return error_sqlstate(exc) in ALREADY_EXISTS_SQLSTATES


def create_engine(url: Union[str, URL], use_ssl: Optional[bool] = None) -> AsyncEngine:
    if isinstance(url, str):
        url = validate_database_url(url)
    if use_ssl is None:
        use_ssl = settings.ssl_required_for(url.host)
    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
        connect_args={"ssl": "require"} if use_ssl else {},
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    return create_engine(settings.DATABASE_URL)


async def dispose_engine():
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
        get_engine.cache_clear()
        logger.info("db_disconnected")


async def execute_script(conn: AsyncConnection, sql: str) -> None:
    """
    Run a multi-statement SQL script inside the connection's transaction.

    asyncpg only accepts several statements (and ``DO $$`` blocks) through its
    simple-query protocol, so the script goes straight to the driver connection
    instead of through SQLAlchemy's prepared statements.
    """
    # Opens the driver-level transaction before going around the adapter
    await conn.execute(text("SELECT 1"))
    raw = await conn.get_raw_connection()
    await raw.driver_connection.execute(sql)


async def set_tenant_context(conn: Union[AsyncConnection, AsyncSession], tenant_id: str):
    # set_config() with is_local=true scopes the setting to the current
    # transaction only (equivalent to SET LOCAL) and accepts a bound parameter.
    if not tenant_id or not str(tenant_id).strip():
        raise ValueError("tenant_id must be a non-empty string")
    await conn.execute(
        text("SELECT set_config('app.current_tenant_id', :tid, true)"),
        {"tid": str(tenant_id)},
    )


async def check_connection(conn: AsyncConnection) -> None:
    await conn.execute(text("SELECT 1"))


@retry(
    retry=retry_if_exception_type((OSError, DBAPIError)),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=True,
)
async def wait_for_database(engine: AsyncEngine) -> None:
    """Block until the database accepts connections; the app may start first."""
    async with engine.connect() as conn:
        await check_connection(conn)
