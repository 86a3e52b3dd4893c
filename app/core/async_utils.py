from __future__ import annotations

import asyncio
from typing import Coroutine, TypeVar

import anyio

T = TypeVar("T")


def run_async(coro: Coroutine[object, object, T], *, timeout: float | None = None) -> T:
    """
    Drive a coroutine to completion from synchronous code (CLI commands).

    Refuses to run inside an existing event loop; await the coroutine there instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        pass
    else:
        coro.close()
        raise RuntimeError("run_async called from async context; use await instead")

    async def _runner() -> T:
        if timeout is None:
            return await coro
        with anyio.fail_after(timeout):
            return await coro

    return anyio.run(_runner)
