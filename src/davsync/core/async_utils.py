"""Async bridge for running blocking sync passes from asyncio code."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking function in a worker thread.

    Keeps an event loop responsive while a pass performs network and
    disk I/O.

    Example:
        result = await run_sync(scheduler.sync_now)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
