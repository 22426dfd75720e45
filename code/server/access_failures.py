# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from common import constants
from common.db import DBManager
from common.keyed import KeyedLocks
from common.scheduler import next_cutoff, resolve_tz, utcnow
from server.correspondence import CorrespondenceStore
from server.models import AccessFailureState, HealthState, MappingKind

logger = logging.getLogger("server.access")

AlertFn = Callable[[AccessFailureState], Awaitable[None]]


@dataclass(frozen=True)
class Transition:
    before: HealthState
    after: HealthState
    state: AccessFailureState

    @property
    def changed(self) -> bool:
        return self.before is not self.after


class AccessFailureTracker:
    """
    Healthy -> Degraded -> Blacklisted(until the next daily cutoff) -> Healthy.

    Only access-denied failures should be reported here. A failure while
    blacklisted changes nothing. Any success clears the record.
    """

    def __init__(
        self,
        db: DBManager,
        store: CorrespondenceStore,
        *,
        max_failures: int = constants.MAX_FAILED_ATTEMPTS,
        cutoff: str = constants.BLACKLIST_CUTOFF,
        timezone: str = "UTC",
        now_fn: Callable[[], datetime] = utcnow,
        on_blacklisted: Optional[AlertFn] = None,
        on_recovered: Optional[AlertFn] = None,
    ):
        self.db = db
        self.store = store
        self.max_failures = max(1, int(max_failures))
        self.cutoff = cutoff
        self.tz = resolve_tz(timezone)
        self._now = now_fn
        self.on_blacklisted = on_blacklisted
        self.on_recovered = on_recovered
        self._locks = KeyedLocks()

    def get(self, source_channel_id: int, source_guild_id: int) -> AccessFailureState:
        row = self.db.get_access_failure(source_guild_id, source_channel_id)
        if row is None:
            return AccessFailureState(int(source_channel_id), int(source_guild_id))
        return AccessFailureState.from_row(row)

    def state(self, source_channel_id: int, source_guild_id: int) -> HealthState:
        return self.get(source_channel_id, source_guild_id).state(self._now())

    def is_blacklisted(self, source_channel_id: int, source_guild_id: int) -> bool:
        return self.state(source_channel_id, source_guild_id) is HealthState.BLACKLISTED

    def blacklisted_ids(self, source_guild_id: int) -> set[int]:
        now = self._now()
        out = set()
        for row in self.db.get_all_access_failures():
            st = AccessFailureState.from_row(row)
            if st.source_guild_id == int(source_guild_id) and st.state(now) is HealthState.BLACKLISTED:
                out.add(st.source_channel_id)
        return out

    async def record_failure(
        self,
        source_channel_id: int,
        source_guild_id: int,
        name: Optional[str] = None,
    ) -> Transition:
        async with self._locks.hold((int(source_guild_id), int(source_channel_id))):
            now = self._now()
            st = self.get(source_channel_id, source_guild_id)
            before = st.state(now)

            if before is HealthState.BLACKLISTED:
                logger.debug(
                    "Channel %s already blacklisted until %s; failure ignored",
                    source_channel_id,
                    st.blacklisted_until,
                )
                return Transition(before, before, st)

            if st.blacklisted_until is not None:
                # expired blacklist the sweep has not reached yet
                st.failed_attempts = 0
                st.blacklisted_until = None

            st.failed_attempts += 1
            st.last_failed_at = now
            if name:
                st.name = name
            if st.failed_attempts >= self.max_failures:
                st.blacklisted_until = next_cutoff(now, self.cutoff, self.tz)
            self.db.upsert_access_failure(*st.as_row_args())

            after = st.state(now)
            if after is HealthState.BLACKLISTED:
                logger.warning(
                    "[⛔] Channel %s (%s) blacklisted after %d access failures; retry after %s",
                    st.name or source_channel_id,
                    source_channel_id,
                    st.failed_attempts,
                    st.blacklisted_until.isoformat(),
                )
                if self.on_blacklisted is not None:
                    try:
                        await self.on_blacklisted(st)
                    except Exception:
                        logger.exception("Blacklist alert failed for %s", source_channel_id)
            else:
                logger.info(
                    "[⚠️] Access failure %d/%d on channel %s",
                    st.failed_attempts,
                    self.max_failures,
                    st.name or source_channel_id,
                )
            return Transition(before, after, st)

    async def record_success(self, source_channel_id: int, source_guild_id: int) -> bool:
        """Reset to Healthy. Returns True when there was something to clear."""
        async with self._locks.hold((int(source_guild_id), int(source_channel_id))):
            st = self.get(source_channel_id, source_guild_id)
            cleared = self.db.delete_access_failure(source_guild_id, source_channel_id)
        if cleared:
            logger.info("[✅] Channel %s accessible again; failure record cleared", source_channel_id)
            if self.on_recovered is not None:
                try:
                    await self.on_recovered(st)
                except Exception:
                    logger.exception("Recovery hook failed for %s", source_channel_id)
        return cleared

    async def sweep(self, now: Optional[datetime] = None) -> list[AccessFailureState]:
        """
        Clear every blacklist whose cutoff has passed. Manually-deleted channels
        keep their record; that suppression is lifted only by an explicit restore.
        """
        now = now or self._now()
        cleared: list[AccessFailureState] = []
        for row in self.db.get_all_access_failures():
            st = AccessFailureState.from_row(row)
            if st.blacklisted_until is None or st.blacklisted_until > now:
                continue
            if self.store.is_manually_deleted(
                st.source_channel_id, st.source_guild_id, MappingKind.CHANNEL
            ):
                continue
            async with self._locks.hold((st.source_guild_id, st.source_channel_id)):
                current = self.get(st.source_channel_id, st.source_guild_id)
                if current.blacklisted_until is None or current.blacklisted_until > now:
                    continue
                self.db.delete_access_failure(st.source_guild_id, st.source_channel_id)
            cleared.append(st)

        if cleared:
            logger.info(
                "[🧹] Blacklist sweep cleared %d channel(s): %s",
                len(cleared),
                ", ".join(st.name or str(st.source_channel_id) for st in cleared),
            )
        else:
            logger.debug("Blacklist sweep: nothing to clear")
        return cleared
