"""Bounded polling of an assistant run until it completes."""

import asyncio
import time
from typing import Awaitable, Callable

from chatbridge.logging_config import get_logger

logger = get_logger("assistant.polling")

COMPLETED = "completed"
TERMINAL_FAILURES = ("failed", "cancelled", "expired")


class RunFailedError(Exception):
    def __init__(self, run_id: str, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} failed with status {status}")


class RunTimeoutError(Exception):
    def __init__(self, run_id: str, timeout: float):
        self.run_id = run_id
        self.timeout = timeout
        super().__init__(f"Run {run_id} timed out after {timeout:g} seconds")


async def poll_run(
    fetch_status: Callable[[], Awaitable[str]],
    *,
    run_id: str = "",
    interval: float = 1.0,
    timeout: float = 30.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """Poll `fetch_status` every `interval` seconds until the run completes.

    Raises:
        RunFailedError: the run reached failed, cancelled or expired.
        RunTimeoutError: the run did not complete within `timeout` seconds.
    """
    started = clock()
    status = await fetch_status()

    while status != COMPLETED:
        if status in TERMINAL_FAILURES:
            logger.error("Assistant run failed", extra={"context": {"run_id": run_id, "status": status}})
            raise RunFailedError(run_id, status)

        elapsed = clock() - started
        if elapsed > timeout:
            logger.error(
                "Assistant run timed out",
                extra={"context": {"run_id": run_id, "status": status, "elapsed": round(elapsed, 2)}},
            )
            raise RunTimeoutError(run_id, timeout)

        await sleep(interval)
        status = await fetch_status()

    return status
