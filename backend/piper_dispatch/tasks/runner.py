"""
Bridge from synchronous Celery tasks to the async services.

Every task invocation gets a fresh event loop from ``asyncio.run``, so
loop-bound resources (database pool, Redis client, HTTP transport) are
released before the loop closes.
"""

import asyncio
from typing import Any, Awaitable, Callable

from piper_dispatch.db.postgres import close_db
from piper_dispatch.db.redis import redis_client
from piper_dispatch.services.email_provider import reset_email_provider


def run_async(factory: Callable[[], Awaitable[Any]]) -> Any:
    async def _run():
        try:
            return await factory()
        finally:
            await reset_email_provider()
            await redis_client.close()
            await close_db()

    return asyncio.run(_run())
