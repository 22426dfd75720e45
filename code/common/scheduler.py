# =============================================================================
#  Copycord
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("common.scheduler")


def parse_hhmm(value: str) -> tuple[int, int]:
    hh, mm = (value or "").strip().split(":")
    hh_i, mm_i = int(hh), int(mm)
    if not (0 <= hh_i < 24 and 0 <= mm_i < 60):
        raise ValueError(f"invalid HH:MM {value!r}")
    return hh_i, mm_i


def resolve_tz(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[⚠️] Invalid TZ %r; falling back to UTC", name)
        return ZoneInfo("UTC")


def next_cutoff(now: datetime, at: str, tz: ZoneInfo) -> datetime:
    """
    The next wall-clock `at` ("HH:MM") in `tz` strictly after `now`.

    `now` must be timezone-aware; the result is aware and expressed in `tz`.
    """
    hh, mm = parse_hhmm(at)
    local = now.astimezone(tz)
    candidate = datetime.combine(local.date(), dtime(hour=hh, minute=mm), tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(
            local.date() + timedelta(days=1), dtime(hour=hh, minute=mm), tzinfo=tz
        )
    return candidate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DailyScheduler:
    """
    Runs `job` once a day at `run_at` (local to `timezone`), as a background
    asyncio task. The job is a plain coroutine function over durable state; a
    failing run is logged and the next run is scheduled as usual.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        *,
        run_at: str = "03:30",
        timezone: str = "UTC",
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self.job = job
        self.run_at = run_at
        self._tz = resolve_tz(timezone)
        self._now = now_fn
        self._task: Optional[asyncio.Task] = None
        self._stop_evt = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            logger.debug("%s: scheduler already running", self.name)
            return
        self._stop_evt.clear()
        self._task = asyncio.create_task(self._run_loop(), name=f"daily-{self.name}")
        logger.info(
            "[⏰] %s scheduled daily at %s %s", self.name, self.run_at, self._tz.key
        )

    async def stop(self) -> None:
        self._stop_evt.set()
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.debug("%s scheduler stopped", self.name)

    async def run_now(self):
        logger.info("[⏰] %s: manual run requested", self.name)
        return await self.job()

    def seconds_until_next_run(self) -> float:
        now = self._now()
        delta = (next_cutoff(now, self.run_at, self._tz) - now).total_seconds()
        return max(1.0, float(delta))

    async def _run_loop(self) -> None:
        while not self._stop_evt.is_set():
            delay = self.seconds_until_next_run()
            logger.debug("%s: sleeping %.2fs until next run", self.name, delay)
            try:
                await asyncio.wait_for(self._stop_evt.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self.job()
            except Exception:
                logger.exception("[⛔] Scheduled job %s failed", self.name)
