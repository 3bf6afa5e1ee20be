"""Checkpoint store factories for the coordinator graph.

The coordinator is compiled with a LangGraph checkpointer so that every
``run`` with the same session id continues the same thread: session-scoped
accumulators (messages, created_entities) survive between requests while
state_reset clears the per-request fields.

Two backends:

    make_checkpointer(dsn)   Postgres (AsyncPostgresSaver on a connection pool)
    make_memory_checkpointer()  in-process MemorySaver (dev / tests / CLI)

Usage:

    async with make_checkpointer(os.environ["POSTGRES_DSN"]) as cp:
        graph = build_coordinator_graph(engine, dispatcher, checkpointer=cp)

Both yield objects that carry two helpers, used by CoordinatorService to
list and look up sessions (GET /runs, GET /runs/{id}):

    await cp.list_thread_ids()   -> list[str]
    await cp.thread_exists(tid)  -> bool
"""

from __future__ import annotations

import logging
import os
import types
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from urllib.parse import urlparse, urlunparse

from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.postgres._ainternal import get_connection  # type: ignore[import]
from langgraph.checkpoint.postgres.aio import AsyncPostgresSaver  # type: ignore[import]
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

logger = logging.getLogger("nflow_agent.persistence.checkpointer")


def _pool_bounds() -> tuple[int, int]:
    return int(os.getenv("POSTGRES_POOL_MIN", "2")), int(os.getenv("POSTGRES_POOL_MAX", "10"))


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------


async def _list_thread_ids(cp: object) -> list[str]:
    """All distinct thread ids in the checkpoints table."""
    async with get_connection(cp.conn) as conn:  # type: ignore[union-attr]
        async with conn.cursor() as cur:
            await cur.execute("SELECT DISTINCT thread_id FROM checkpoints ORDER BY thread_id")
            rows = await cur.fetchall()
    return [row["thread_id"] for row in rows]


async def _thread_exists(cp: object, thread_id: str) -> bool:
    async with get_connection(cp.conn) as conn:  # type: ignore[union-attr]
        async with conn.cursor() as cur:
            await cur.execute(
                "SELECT 1 FROM checkpoints WHERE thread_id = %s LIMIT 1",
                (thread_id,),
            )
            row = await cur.fetchone()
    return row is not None


@asynccontextmanager
async def make_checkpointer(dsn: str) -> AsyncGenerator[object, None]:
    """Yield a Postgres-backed checkpointer on an AsyncConnectionPool.

    Pool size comes from POSTGRES_POOL_MIN / POSTGRES_POOL_MAX (2 / 10).
    cp.setup() creates the checkpoint tables on first use.

    Raises:
        Exception: if the Postgres connection cannot be established.
    """
    pool_min, pool_max = _pool_bounds()
    logger.info(
        "Using Postgres checkpointer (pool min=%d max=%d): dsn=%s",
        pool_min, pool_max, _redact_dsn(dsn),
    )
    pool = AsyncConnectionPool(
        conninfo=dsn,
        min_size=pool_min,
        max_size=pool_max,
        kwargs={"autocommit": True, "prepare_threshold": 0, "row_factory": dict_row},
        open=False,
    )
    await pool.open()
    try:
        cp = AsyncPostgresSaver(conn=pool)
        await cp.setup()
        # Attached on the instance so isinstance(cp, BaseCheckpointSaver) still holds.
        cp.list_thread_ids = types.MethodType(_list_thread_ids, cp)  # type: ignore[attr-defined]
        cp.thread_exists = types.MethodType(_thread_exists, cp)  # type: ignore[attr-defined]
        yield cp
    finally:
        await pool.close()


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


async def _memory_thread_ids(cp: MemorySaver) -> list[str]:
    return sorted(cp.storage.keys())


async def _memory_thread_exists(cp: MemorySaver, thread_id: str) -> bool:
    return bool(cp.storage.get(thread_id))


def make_memory_checkpointer() -> MemorySaver:
    """In-process checkpointer; state lives as long as the process."""
    cp = MemorySaver()
    cp.list_thread_ids = types.MethodType(_memory_thread_ids, cp)  # type: ignore[attr-defined]
    cp.thread_exists = types.MethodType(_memory_thread_exists, cp)  # type: ignore[attr-defined]
    return cp


def _redact_dsn(dsn: str) -> str:
    """Replace the password in a DSN with *** for logging."""
    try:
        parsed = urlparse(dsn)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            netloc = f"{parsed.username}:***@{netloc}"
            return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        pass
    return dsn
