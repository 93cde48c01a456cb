"""Deadline guard for asynchronous device operations."""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from miflora_lib.errors import OperationTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _discard_late_result(operation: str, task: "asyncio.Future[object]") -> None:
    """Consume the outcome of an operation the guard already gave up on."""
    if task.cancelled():
        logger.debug(f"Abandoned {operation} was cancelled")
        return

    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned {operation} failed after its deadline: {exc!r}")
    else:
        logger.debug(f"Abandoned {operation} completed after its deadline; result dropped")


async def guard(
    timeout_s: Optional[float],
    operation: Awaitable[T],
    name: str = "operation",
) -> T:
    """Run an operation against a deadline.

    The operation keeps running after the deadline passes; whatever it
    eventually returns or raises is dropped.

    Args:
        timeout_s: Deadline in seconds. None or <= 0 waits without a deadline.
        operation: Coroutine or future to run
        name: Operation name used in the timeout error and logs

    Returns:
        The operation's result

    Raises:
        OperationTimeout: If the deadline passes before the operation finishes
        Any exception raised by the operation itself, unchanged
    """
    if timeout_s is None or timeout_s <= 0:
        return await operation

    task = asyncio.ensure_future(operation)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_s)
    except asyncio.CancelledError:
        task.add_done_callback(lambda t: _discard_late_result(name, t))
        raise

    if task in done:
        return task.result()

    task.add_done_callback(lambda t: _discard_late_result(name, t))
    logger.warning(f"{name} did not finish within {timeout_s:.1f}s")
    raise OperationTimeout(name, timeout_s)
