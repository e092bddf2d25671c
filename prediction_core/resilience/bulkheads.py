from __future__ import annotations

import asyncio
import contextvars
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar


T = TypeVar("T")


FETCH_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="cache-fetch")
IO_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="io")


async def run_io(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    loop = asyncio.get_running_loop()
    ctx = contextvars.copy_context()
    return await loop.run_in_executor(IO_POOL, lambda: ctx.run(fn, *args, **kwargs))
