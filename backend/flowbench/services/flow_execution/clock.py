"""Clock abstraction used by the flow runner for timing and delays."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def monotonic_ms(self) -> float: ...

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Real time: ``time.perf_counter`` for durations, UTC wall clock for stamps."""

    def monotonic_ms(self) -> float:
        return time.perf_counter() * 1000

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
