# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import asyncio, logging, time
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from common.errors import InFlightTimeout, RateLimited, TransientNetwork, classify

logger = logging.getLogger("common.rate_limiter")

T = TypeVar("T")


class ActionType(Enum):
    WEBHOOK_MESSAGE = "webhook_message"
    WEBHOOK_CREATE = "webhook_create"
    CREATE_CHANNEL = "create_channel"
    EDIT_CHANNEL = "edit_channel"
    DELETE_CHANNEL = "delete_channel"
    ROLE = "role"
    THREAD = "thread"
    REACTION = "reaction"
    SOURCE_FETCH = "source_fetch"


DEFAULT_LIMITS: Dict[ActionType, Tuple[int, float]] = {
    ActionType.WEBHOOK_MESSAGE: (5, 2.5),
    ActionType.WEBHOOK_CREATE: (1, 30.0),
    ActionType.CREATE_CHANNEL: (2, 15.0),
    ActionType.EDIT_CHANNEL: (3, 15.0),
    ActionType.DELETE_CHANNEL: (3, 15.0),
    ActionType.ROLE: (3, 10.0),
    ActionType.THREAD: (2, 5.0),
    ActionType.REACTION: (4, 2.0),
    ActionType.SOURCE_FETCH: (5, 5.0),
}


class RateLimiter:
    def __init__(self, max_rate: int, time_window: float, min_interval: float = 0.0):
        self._max_rate = max_rate
        self._time_window = time_window
        self._min_interval = max(0.0, min_interval)
        self._allowance = max_rate
        self._last_check = time.monotonic()
        self._last_call = 0.0
        self._lock = asyncio.Lock()
        self._cooldown_until = 0.0

    async def acquire(self):
        async with self._lock:
            now = time.monotonic()

            # remote backoff hints take precedence over the local schedule
            if now < self._cooldown_until:
                await asyncio.sleep(self._cooldown_until - now)
                now = time.monotonic()

            gap = self._last_call + self._min_interval - now
            if gap > 0:
                await asyncio.sleep(gap)
                now = time.monotonic()

            elapsed = now - self._last_check
            self._last_check = now

            self._allowance = min(
                self._max_rate,
                self._allowance + elapsed * (self._max_rate / self._time_window),
            )

            if self._allowance < 1.0:
                wait = (1.0 - self._allowance) * (self._time_window / self._max_rate)
                if wait > 0:
                    await asyncio.sleep(wait)
                self._last_check = time.monotonic()
                self._allowance = 0.0
            else:
                self._allowance -= 1.0
            self._last_call = time.monotonic()

    def backoff(self, seconds: float):
        now = time.monotonic()
        candidate_end = now + max(0.0, seconds)
        if candidate_end > self._cooldown_until:
            self._cooldown_until = candidate_end

    def reset(self):
        self._cooldown_until = 0.0

    def remaining_cooldown(self) -> float:
        return max(0.0, self._cooldown_until - time.monotonic())


def _log_late_result(task: asyncio.Task, action: ActionType, key: str | None):
    if task.cancelled():
        logger.warning("[⌛] Late %s (key=%s) was cancelled", action.name, key)
    elif task.exception() is not None:
        logger.warning(
            "[⌛] Late %s (key=%s) failed: %s", action.name, key, task.exception()
        )
    else:
        logger.info("[⌛] Late %s (key=%s) completed after timeout", action.name, key)


class RateLimitManager:
    """
    One limiter per (action, key). The key is the guild pair for structural
    calls and the mirror channel for webhook sends, so independent pairs never
    share a bucket.
    """

    def __init__(
        self,
        config: Dict[ActionType, Tuple[int, float]] = None,
        *,
        min_interval: float = 0.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
    ):
        self._cfg = dict(DEFAULT_LIMITS)
        self._cfg.update(config or {})
        self._min_interval = min_interval
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self._limiters: Dict[Tuple[ActionType, str], RateLimiter] = {}

    def _get(self, action: ActionType, key: str | None = None) -> RateLimiter:
        k = (action, key or "global")
        lim = self._limiters.get(k)
        if lim is None:
            rate, window = self._cfg[action]
            lim = RateLimiter(rate, window, self._min_interval)
            self._limiters[k] = lim
        return lim

    async def acquire(self, action: ActionType, key: str = None):
        await self._get(action, key).acquire()

    def penalize(self, action: ActionType, seconds: float, key: str | None = None):
        self._get(action, key).backoff(seconds)

    def penalize_all(self, action: ActionType, seconds: float):
        """Apply a cooldown to every key already seen for `action`."""
        for (act, _key), lim in self._limiters.items():
            if act is action:
                lim.backoff(seconds)

    def reset(self, action: ActionType, key: str | None = None):
        self._get(action, key).reset()

    def remaining(self, action: ActionType, key: str | None = None) -> float:
        lim = self._limiters.get((action, key or "global"))
        return lim.remaining_cooldown() if lim else 0.0

    async def _run_shielded(self, action, fn, timeout, key):
        task = asyncio.ensure_future(fn())
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError as e:
            task.add_done_callback(
                lambda t: _log_late_result(t, action, key)
            )
            raise InFlightTimeout(
                f"{action.value} still in flight after {timeout}s; not resending",
                context={"action": action.value, "key": key},
            ) from e

    async def run(
        self,
        action: ActionType,
        fn: Callable[[], Awaitable[T]],
        *,
        key: str | None = None,
        timeout: Optional[float] = None,
        idempotent: bool = True,
    ) -> T:
        """
        Acquire a slot, then await `fn()`.

        RateLimited errors penalize the limiter with the server's retry hint and
        retry; transient network errors retry with exponential backoff. Both are
        bounded by `max_attempts`. Every other error is classified and raised.

        A non-idempotent call that outlives `timeout` is left running and
        raises InFlightTimeout; it is never sent a second time.
        """
        attempt = 0
        while True:
            attempt += 1
            await self.acquire(action, key)
            try:
                if timeout and not idempotent:
                    return await self._run_shielded(action, fn, timeout, key)
                if timeout:
                    return await asyncio.wait_for(fn(), timeout)
                return await fn()
            except InFlightTimeout:
                raise
            except Exception as e:
                err = classify(e, action=action.value)
                if attempt >= self.max_attempts or not isinstance(
                    err, (RateLimited, TransientNetwork)
                ):
                    if err is e:
                        raise
                    raise err from e
                if isinstance(err, RateLimited):
                    self.penalize(action, err.retry_after, key=key)
                    logger.warning(
                        "[⏳] Rate limited on %s (key=%s); retrying in %.2fs",
                        action.name,
                        key,
                        err.retry_after,
                    )
                else:
                    delay = self.base_delay * (2 ** (attempt - 1))
                    logger.debug(
                        "Transient error on %s (attempt %d/%d): %s; retrying in %.1fs",
                        action.name,
                        attempt,
                        self.max_attempts,
                        err,
                        delay,
                    )
                    await asyncio.sleep(delay)
