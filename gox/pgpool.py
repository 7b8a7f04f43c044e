"""
Postgres connection pool factory built on asyncpg.
"""

from typing import Any, Optional

import asyncpg
from pydantic_settings import SettingsConfigDict

from gox.config import BaseConfig, load_from_env
from gox.errors import NoRowsError
from gox.logging import get_logger

UNIQUE_VIOLATION = "23505"

logger = get_logger("gox.pgpool")


class ConnConfig(BaseConfig):
    """Connection settings read from DB_HOST, DB_DATABASE, DB_PORT, DB_USER and DB_PASSWORD."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    host: str = "localhost"
    database: str = "users"
    port: int = 5432
    user: str = "test"
    password: str = "test"


async def new_pg_pool(config: Optional[ConnConfig] = None, **pool_kwargs: Any) -> asyncpg.Pool:
    """Create a pool and make sure the database answers.

    When `config` is None it is loaded from the environment. Extra keyword
    arguments go to `asyncpg.create_pool`.
    """
    if config is None:
        config = load_from_env(ConnConfig)

    pool = await asyncpg.create_pool(
        host=config.host,
        port=config.port,
        database=config.database,
        user=config.user,
        password=config.password,
        ssl=False,
        **pool_kwargs
    )

    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception:
        await pool.close()
        raise

    logger.info("Postgres pool ready", host=config.host, port=config.port, database=config.database)
    return pool


async def fetch_one(pool: asyncpg.Pool, query: str, *args: Any) -> asyncpg.Record:
    """Fetch a single row, raising NoRowsError when there is none."""
    row = await pool.fetchrow(query, *args)
    if row is None:
        raise NoRowsError(details={"query": query})
    return row


def is_no_row_error(err: BaseException) -> bool:
    return isinstance(err, (NoRowsError, asyncpg.exceptions.NoDataFoundError))


def is_duplicate_constraint_error(err: BaseException, constraint_name: str) -> bool:
    return (
        isinstance(err, asyncpg.PostgresError)
        and getattr(err, "sqlstate", None) == UNIQUE_VIOLATION
        and getattr(err, "constraint_name", None) == constraint_name
    )
