"""Database provisioning and connection pool management for hearth."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

logger = logging.getLogger(__name__)

T = TypeVar("T")

_VALID_SSL_MODES = {"disable", "prefer", "allow", "require", "verify-ca", "verify-full"}
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def _normalize_ssl_mode(value: str | None) -> str | None:
    """Normalize an SSL mode value for asyncpg or return None if unset/invalid."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    if normalized in _VALID_SSL_MODES:
        return normalized
    logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
    return None


def db_params_from_url(database_url: str) -> dict[str, str | int | None]:
    """Parse connection params from a libpq-style database URL."""
    parsed = urlparse(database_url)
    sslmode = _normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0])
    return {
        "host": parsed.hostname or "localhost",
        "port": parsed.port or 5432,
        "user": parsed.username or "hearth",
        "password": parsed.password or "hearth",
        "database": parsed.path.lstrip("/") or None,
        "ssl": sslmode,
    }


def db_params_from_env() -> dict[str, str | int | None]:
    """Read DB connection params from environment variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return db_params_from_url(database_url)
    return {
        "host": os.environ.get("POSTGRES_HOST", "localhost"),
        "port": int(os.environ.get("POSTGRES_PORT", "5432")),
        "user": os.environ.get("POSTGRES_USER", "hearth"),
        "password": os.environ.get("POSTGRES_PASSWORD", "hearth"),
        "database": os.environ.get("POSTGRES_DB"),
        "ssl": _normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    }


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """Return True when asyncpg SSL STARTTLS fallback should retry with ssl=disable."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


class Database:
    """An asyncpg pool for one hearth database, plus the proxies the stores use."""

    def __init__(
        self,
        db_name: str,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @property
    def url(self) -> str:
        """libpq-style URL for tools that need one (Alembic)."""
        url = f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db_name}"
        if self.ssl is not None:
            url = f"{url}?sslmode={self.ssl}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def _open(self, opener: Callable[..., Awaitable[T]], kwargs: dict[str, Any]) -> T:
        try:
            return await opener(**kwargs)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.ssl):
                raise
            logger.info("SSL upgrade lost for %s; retrying with ssl=disable", self.db_name)
            return await opener(**{**kwargs, "ssl": "disable"})

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance database if missing."""
        conn = await self._open(asyncpg.connect, self._connect_kwargs("postgres"))
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                logger.debug("Database %s already exists", self.db_name)
                return
            # CREATE DATABASE cannot take bind parameters
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = self._connect_kwargs(self.db_name)
        kwargs.update(min_size=self.min_pool_size, max_size=self.max_pool_size)
        self.pool = await self._open(asyncpg.create_pool, kwargs)
        logger.info(
            "Opened pool for %s (%d-%d connections)",
            self.db_name,
            self.min_pool_size,
            self.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Closed pool for %s", self.db_name)

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and run the block inside one transaction."""
        async with self.require_pool().acquire() as conn:
            async with conn.transaction():
                yield conn

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self.require_pool().fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return await self.require_pool().fetchrow(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self.require_pool().execute(query, *args)

    @classmethod
    def _from_params(
        cls, params: dict[str, str | int | None], db_name: str | None, **kwargs: Any
    ) -> Database:
        return cls(
            db_name=db_name or str(params["database"] or "hearth"),
            host=str(params["host"]),
            port=int(params["port"] or 5432),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
            **kwargs,
        )

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> Database:
        return cls._from_params(db_params_from_url(database_url), None, **kwargs)

    @classmethod
    def from_env(cls, db_name: str | None = None, **kwargs: Any) -> Database:
        """Build from ``DATABASE_URL``, else from the individual ``POSTGRES_*`` variables.

        An explicit ``db_name`` wins over the database named in the environment.
        """
        return cls._from_params(db_params_from_env(), db_name, **kwargs)


def rows_affected(status: str) -> int:
    """Parse the row count from an asyncpg command status (``"UPDATE 3"``)."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0
