import asyncio
from typing import Protocol


class Scheduler(Protocol):
    """Source of delays for retry policies."""

    async def sleep(self, delay: float) -> None: ...


class AsyncioScheduler:
    """Wall-clock scheduler on the running event loop."""

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))


def backoff_delay(base: float, attempt: int) -> float:
    """Delay before the retry that follows ``attempt`` (1-based): base * 2**(attempt-1)."""
    return base * (2 ** max(0, attempt - 1))


_default: AsyncioScheduler | None = None


def get_scheduler() -> AsyncioScheduler:
    global _default
    if _default is None:
        _default = AsyncioScheduler()
    return _default
