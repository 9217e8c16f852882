from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import quote, unquote, urlparse, urlunparse

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

from fitspace.utils.logger import logger

POOL_SIZE = 3
MAX_OVERFLOW = 7
POOL_TIMEOUT = 30
POOL_RECYCLE = 300
CONNECT_TIMEOUT = 15

TRANSIENT_ERRORS = (
    "connection reset", "connection refused", "connection timed out",
    "server closed the connection", "ssl connection has been closed",
    "could not connect to server", "remaining connection slots are reserved",
    "too many connections", "connection pool exhausted",
    "canceling statement due to statement timeout", "database is locked",
)


def normalize_dsn(url: str) -> str:
    """Coerce a Postgres URL onto the psycopg async driver.

    Passwords are decoded until stable and re-encoded once so that special
    characters survive URL parsing. Non-Postgres URLs are returned untouched.
    """
    try:
        parsed = urlparse(url)
        if parsed.password:
            decoded = parsed.password
            while "%" in decoded:
                candidate = unquote(decoded)
                if candidate == decoded:
                    break
                decoded = candidate
            netloc = f"{parsed.username}:{quote(decoded, safe='')}@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            url = urlunparse((parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment))
    except ValueError:
        pass

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if "+asyncpg" in url:
        url = url.replace("+asyncpg", "+psycopg")
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def is_transient(e: Exception) -> bool:
    return any(p in str(e).lower() for p in TRANSIENT_ERRORS)


class Database:
    """Owns the async engine and hands out sessions and transactions."""

    def __init__(self, url: str, echo: bool = False, use_nullpool: Optional[bool] = None):
        self.url = normalize_dsn(url)
        self.echo = echo
        self._use_nullpool = use_nullpool
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgresql")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized")
        return self._engine

    async def init(self) -> None:
        if self._engine is not None:
            return

        if not self.is_postgres:
            self._engine = create_async_engine(self.url, echo=self.echo)
            pool_info = "default"
        else:
            is_pooler = ":6543" in self.url
            use_nullpool = self._use_nullpool if self._use_nullpool is not None else is_pooler
            connect_args = {"connect_timeout": CONNECT_TIMEOUT, "prepare_threshold": None}
            if use_nullpool:
                self._engine = create_async_engine(
                    self.url, poolclass=NullPool, echo=self.echo, connect_args=connect_args,
                )
                pool_info = "NullPool"
            else:
                self._engine = create_async_engine(
                    self.url,
                    poolclass=AsyncAdaptedQueuePool,
                    pool_size=POOL_SIZE,
                    max_overflow=MAX_OVERFLOW,
                    pool_timeout=POOL_TIMEOUT,
                    pool_recycle=POOL_RECYCLE,
                    pool_pre_ping=True,
                    echo=self.echo,
                    connect_args=connect_args,
                )
                pool_info = f"Pool(size={POOL_SIZE}, max={POOL_SIZE + MAX_OVERFLOW})"

        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        logger.info(f"Database initialized | {pool_info}")

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside ``BEGIN``; commits on exit, rolls back on error.

        Connection failures propagate; callers decide whether they are worth
        retrying via :func:`is_transient`.
        """
        if self._session_factory is None:
            await self.init()

        async with self._session_factory() as session:
            async with session.begin():
                yield session
