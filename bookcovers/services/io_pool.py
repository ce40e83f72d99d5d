# FILE: bookcovers/services/io_pool.py
"""
Bounded thread pool for blocking I/O (disk, boto3, Pillow decoding)
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Optional

from bookcovers.config import get_settings

logger = logging.getLogger(__name__)

_executor: Optional[ThreadPoolExecutor] = None


def get_io_executor() -> ThreadPoolExecutor:
    """Get or create the shared I/O executor"""
    global _executor
    if _executor is None:
        workers = get_settings().io_worker_threads
        _executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cover-io")
        logger.info(f"I/O executor started ({workers} workers)")
    return _executor


async def run_blocking(func: Callable[..., Any], *args, executor: Optional[ThreadPoolExecutor] = None, **kwargs) -> Any:
    """Run a blocking callable on the I/O executor"""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor or get_io_executor(), partial(func, *args, **kwargs))


def shutdown_io_executor(wait: bool = True):
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=wait)
        _executor = None
        logger.info("I/O executor stopped")
