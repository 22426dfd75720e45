# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from typing import Awaitable, Callable, Optional

from common import constants
from common.config import Config, GuildPair
from common.errors import MirrorError, NotFound
from common.keyed import KeyedLocks
from common.logging_setup import guild_var, pass_id_var, scope_var
from common.scheduler import DailyScheduler, utcnow
from server.access_failures import AccessFailureTracker
from server.connectors import SourceConnector, TargetConnector, snapshot_from_payload
from server.correspondence import CorrespondenceStore
from server.mentions import RoleMention
from server.models import (
    AccessFailureState,
    DispatchResult,
    MappingKind,
    Reaction,
    RelayEnvelope,
    StructuralSnapshot,
)
from server.relay import MessageRelayPipeline
from server.structure import DiffReport, StructuralDiffEngine

logger = logging.getLogger("server.orchestrator")

Notifier = Callable[[str], Awaitable[None]]


async def log_notifier(text: str) -> None:
    logger.error("[📣] %s", text)


class SyncOrchestrator:
    """
    Owns the event flow: inbound events are queued per source channel and
    relayed by one worker per channel, structure changes trigger debounced
    diff passes (one at a time per mirror guild), and two daily jobs run
    the full reconciliation and the blacklist sweep.
    """

    MAX_REDIFF = 2

    def __init__(
        self,
        config: Config,
        store: CorrespondenceStore,
        tracker: AccessFailureTracker,
        engine: StructuralDiffEngine,
        relay: MessageRelayPipeline,
        source: SourceConnector,
        target_for: Callable[[GuildPair], TargetConnector],
        *,
        notifier: Optional[Notifier] = None,
        debounce: Optional[float] = None,
    ):
        self.config = config
        self.store = store
        self.tracker = tracker
        self.engine = engine
        self.relay = relay
        self.source = source
        self.target_for = target_for
        self.notifier = notifier or log_notifier
        self.debounce = (
            config.STRUCTURE_DEBOUNCE_SECONDS if debounce is None else debounce
        )

        self._pairs: dict[int, GuildPair] = {}
        self._snapshots: dict[int, StructuralSnapshot] = {}
        self._diff_locks = KeyedLocks()
        self._debouncers: dict[int, asyncio.Task] = {}
        self._queues: dict[int, asyncio.Queue] = {}
        self._workers: dict[int, asyncio.Task] = {}
        self._pending: dict[int, deque] = {}
        self._missed: dict[int, int] = {}
        self._side_tasks: set[asyncio.Task] = set()
        self.role_mentions: deque = deque(maxlen=500)
        self._shutting_down = False

        self.reconcile_scheduler = DailyScheduler(
            "reconciliation",
            self.reconcile_all,
            run_at=config.SYNC_RUN_AT,
            timezone=config.TIMEZONE,
        )
        self.sweep_scheduler = DailyScheduler(
            "blacklist-sweep",
            self.sweep_blacklist,
            run_at=config.BLACKLIST_CUTOFF,
            timezone=config.TIMEZONE,
        )

    # ------------------------------------------------------------ lifecycle
    def load_pairs(self) -> list[GuildPair]:
        self._pairs = {p.source_guild_id: p for p in self.config.guild_pairs()}
        return list(self._pairs.values())

    def pair_for(self, source_guild_id: int) -> Optional[GuildPair]:
        if not self._pairs:
            self.load_pairs()
        return self._pairs.get(int(source_guild_id))

    def snapshot_for(self, source_guild_id: int) -> Optional[StructuralSnapshot]:
        return self._snapshots.get(int(source_guild_id))

    def start(self) -> None:
        pairs = self.load_pairs()
        if not pairs:
            logger.warning("[⚠️] No guild pairs configured; nothing will be mirrored")
        self.reconcile_scheduler.start()
        self.sweep_scheduler.start()

    async def stop(self) -> None:
        self._shutting_down = True
        await self.reconcile_scheduler.stop()
        await self.sweep_scheduler.stop()
        tasks = [
            *self._debouncers.values(),
            *self._workers.values(),
            *self._side_tasks,
        ]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._debouncers.clear()
        self._workers.clear()
        self._side_tasks.clear()
        logger.info("[🛑] Orchestrator stopped")

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)
        return task

    async def _notify(self, text: str) -> None:
        try:
            await self.notifier(text)
        except Exception:
            logger.exception("Notifier failed for: %s", text)

    # -------------------------------------------------------------- ingest
    async def ingest(self, event: dict) -> dict:
        """
        Entry point for the inbound event stream. Returns immediately; relay
        and diff work is handed off to queues and background tasks.
        """
        if self._shutting_down:
            return {"ok": False, "error": "shutting-down"}
        typ = event.get("type")
        data = event.get("data") or {}
        gid = data.get("guild_id") or event.get("guild_id")
        if not gid:
            return {"ok": False, "error": "missing-guild"}
        pair = self.pair_for(int(gid))
        if pair is None:
            logger.debug("Event %s for unpaired guild %s ignored", typ, gid)
            return {"ok": False, "error": "unpaired-guild"}

        if typ == "message":
            try:
                envelope = RelayEnvelope.from_payload(data, guild_id=pair.source_guild_id)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("[⚠️] Malformed message event: %s", e)
                return {"ok": False, "error": "bad-message"}
            self.submit(envelope, pair)
        elif typ == "structure":
            snap = snapshot_from_payload(
                pair.source_guild_id,
                data.get("channels") or [],
                data.get("roles") or [],
                data.get("threads") or [],
                data.get("emojis") or [],
            )
            self._snapshots[pair.source_guild_id] = snap
            self.request_diff(pair, snapshot=snap)
        elif typ in ("channel_update", "channel_create", "channel_delete", "role_update"):
            self.request_diff(pair)
        elif typ == "reaction_add":
            if not data.get("message_id"):
                return {"ok": False, "error": "missing-message"}
            emoji = data.get("emoji") or {}
            reaction = Reaction(
                name=emoji.get("name") or "",
                emoji_id=int(emoji["id"]) if emoji.get("id") else None,
                animated=bool(emoji.get("animated")),
            )
            self._spawn(
                self._mirror_reaction(int(data["message_id"]), reaction, pair),
                name=f"reaction-{data.get('message_id')}",
            )
        else:
            return {"ok": False, "error": f"unknown-type:{typ}"}
        return {"ok": True}

    def submit(self, envelope: RelayEnvelope, pair: GuildPair) -> None:
        """Queue an envelope behind earlier messages of the same source channel."""
        cid = envelope.source_channel_id
        q = self._queues.get(cid)
        if q is None:
            q = self._queues[cid] = asyncio.Queue()
        q.put_nowait((envelope, pair))
        worker = self._workers.get(cid)
        if worker is None or worker.done():
            self._workers[cid] = asyncio.create_task(
                self._channel_worker(cid, q), name=f"relay-{cid}"
            )

    async def _channel_worker(self, channel_id: int, q: asyncio.Queue) -> None:
        while True:
            envelope, pair = await q.get()
            try:
                await self._relay_one(envelope, pair)
            finally:
                q.task_done()

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        for q in list(self._queues.values()):
            await q.join()

    async def _relay_one(self, envelope: RelayEnvelope, pair: GuildPair) -> Optional[DispatchResult]:
        token = guild_var.set(str(pair.mirror_guild_id))
        try:
            target = self.target_for(pair)
            result = await self.relay.relay(envelope, pair, target)
        except NotFound as e:
            logger.warning(
                "[⚠️] Mirror channel for %s vanished; scheduling a diff pass: %s",
                envelope.source_channel_id,
                e,
            )
            self.buffer(envelope, pair)
            self.request_diff(pair)
            return None
        except MirrorError as e:
            await self._notify(f"Message {envelope.source_message_id} was not mirrored: {e}")
            return None
        except Exception as e:
            logger.exception("Relay crashed for message %s", envelope.source_message_id)
            await self._notify(f"Message {envelope.source_message_id} was not mirrored: {e!r}")
            return None
        finally:
            guild_var.reset(token)

        if result.skipped == "unmapped":
            self.buffer(envelope, pair)
            self.request_diff(pair)
        elif result.skipped == "blacklisted":
            self._mark_missed(envelope)
        elif result.delivered:
            await self.tracker.record_success(
                envelope.source_channel_id, envelope.source_guild_id
            )
        return result

    # ------------------------------------------------------ pending buffer
    def buffer(self, envelope: RelayEnvelope, pair: GuildPair) -> None:
        q = self._pending.get(envelope.source_channel_id)
        if q is None:
            q = self._pending[envelope.source_channel_id] = deque(
                maxlen=constants.PENDING_PER_CHANNEL_MAX
            )
        if len(q) == q.maxlen:
            logger.warning(
                "[⚠️] Pending buffer full for channel %s; dropping the oldest message",
                envelope.source_channel_id,
            )
            self._mark_missed(q[0][0])
        q.append((envelope, pair))
        logger.debug(
            "Buffered message %s for unmapped channel %s (%d pending)",
            envelope.source_message_id,
            envelope.source_channel_id,
            len(q),
        )

    def pending_count(self, source_channel_id: Optional[int] = None) -> int:
        if source_channel_id is not None:
            return len(self._pending.get(int(source_channel_id), ()))
        return sum(len(q) for q in self._pending.values())

    def flush_pending(self, pair: GuildPair) -> int:
        """Requeue buffered messages whose channel now has a mirror."""
        flushed = 0
        gid = pair.source_guild_id
        for cid in list(self._pending):
            q = self._pending[cid]
            if not q or q[0][1].source_guild_id != gid:
                continue
            if self.store.is_manually_deleted(cid, gid, MappingKind.CHANNEL):
                logger.info("[🧹] Dropping %d buffered message(s) for deleted channel %s", len(q), cid)
                del self._pending[cid]
                continue
            if self.tracker.is_blacklisted(cid, gid):
                logger.info("[🧹] Dropping %d buffered message(s) for blacklisted channel %s", len(q), cid)
                self._mark_missed(q[0][0])
                del self._pending[cid]
                continue
            if self.store.resolve(cid, gid, MappingKind.CHANNEL) is None:
                continue
            del self._pending[cid]
            flushed += len(q)
            if cid in self._missed:
                # older messages were lost: fetch them first, then the buffer
                self._spawn(self._catch_up(pair, cid, list(q)), name=f"catch-up-{cid}")
                continue
            for envelope, p in q:
                self.submit(envelope, p)
        if flushed:
            logger.info("[📤] Flushed %d buffered message(s)", flushed)
        return flushed

    # ------------------------------------------------------------- backfill
    def _mark_missed(self, envelope: RelayEnvelope) -> None:
        self._remember_anchor(envelope.source_channel_id, envelope.source_message_id - 1)

    def _remember_anchor(self, source_channel_id: int, after_id: int) -> None:
        prev = self._missed.get(source_channel_id)
        if prev is None or after_id < prev:
            self._missed[source_channel_id] = after_id

    async def backfill(
        self, pair: GuildPair, source_channel_id: int, *, before: Optional[int] = None
    ) -> int:
        """
        Fetch the source messages a channel missed and queue them, oldest
        first. Starts after the first message known to be missed, or else
        after the newest one that reached the mirror; stops short of
        `before`. Returns how many were queued.
        """
        cid = int(source_channel_id)
        after = self._missed.pop(cid, None)
        if after is None:
            after = self.relay.history.last_for_channel(cid)
        if after is None:
            logger.debug("Nothing to backfill from in channel %s", cid)
            return 0
        try:
            messages = await self.source.fetch_messages_after(
                cid, after, constants.BACKFILL_MAX_MESSAGES
            )
        except MirrorError as e:
            self._remember_anchor(cid, after)
            logger.warning("[⚠️] Backfill of channel %s failed: %s", cid, e)
            return 0

        queued = 0
        for data in sorted(messages, key=lambda m: int(m["id"])):
            mid = int(data["id"])
            if before is not None and mid >= before:
                break
            if self.relay.history.lookup(mid) is not None:
                continue
            try:
                envelope = RelayEnvelope.from_payload(
                    {**data, "channel_id": data.get("channel_id") or cid},
                    guild_id=pair.source_guild_id,
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("[⚠️] Malformed message %s in backfill: %s", mid, e)
                continue
            self.submit(envelope, pair)
            queued += 1
        if queued:
            logger.info("[📥] Backfilling %d missed message(s) in channel %s", queued, cid)
        else:
            logger.info("[✅] No missed messages in channel %s", cid)
        return queued

    async def _catch_up(self, pair: GuildPair, source_channel_id: int, buffered: list) -> None:
        try:
            await self.backfill(
                pair, source_channel_id, before=buffered[0][0].source_message_id
            )
        finally:
            for envelope, p in buffered:
                self.submit(envelope, p)

    async def on_channel_recovered(self, state: AccessFailureState) -> None:
        pair = self.pair_for(state.source_guild_id)
        if pair is None or self._shutting_down:
            return
        self._spawn(
            self.backfill(pair, state.source_channel_id),
            name=f"backfill-{state.source_channel_id}",
        )

    # ----------------------------------------------------------- diff passes
    def request_diff(self, pair: GuildPair, snapshot: Optional[StructuralSnapshot] = None) -> None:
        """Debounced: a burst of structure events collapses into one pass."""
        if self._shutting_down:
            return
        key = pair.mirror_guild_id
        prev = self._debouncers.get(key)
        if prev is not None and not prev.done():
            prev.cancel()

        async def _later():
            await asyncio.sleep(self.debounce)
            me = asyncio.current_task()
            # past the quiet period: later requests queue a new pass instead of cancelling this one
            if self._debouncers.get(key) is me:
                del self._debouncers[key]
            self._side_tasks.add(me)
            me.add_done_callback(self._side_tasks.discard)
            await self.run_diff_pass(pair, snapshot)

        self._debouncers[key] = asyncio.create_task(_later(), name=f"diff-{pair.key}")

    async def run_diff_pass(
        self, pair: GuildPair, snapshot: Optional[StructuralSnapshot] = None
    ) -> Optional[DiffReport]:
        async with self._diff_locks.hold(pair.mirror_guild_id):
            tokens = (
                pass_id_var.set(uuid.uuid4().hex[:8]),
                scope_var.set("diff"),
                guild_var.set(str(pair.mirror_guild_id)),
            )
            try:
                report = await self._diff(pair, snapshot)
            finally:
                for var, tok in zip((pass_id_var, scope_var, guild_var), tokens):
                    var.reset(tok)
        if report is not None:
            self.flush_pending(pair)
        return report

    async def _diff(
        self, pair: GuildPair, snapshot: Optional[StructuralSnapshot]
    ) -> Optional[DiffReport]:
        report: Optional[DiffReport] = None
        for attempt in range(1, self.MAX_REDIFF + 1):
            try:
                if snapshot is None:
                    snapshot = await self.source.snapshot(pair.source_guild_id)
                self._snapshots[pair.source_guild_id] = snapshot
                report = await self.engine.run(
                    pair, snapshot, self.source, self.target_for(pair)
                )
            except Exception as e:
                logger.exception("[⛔] Diff pass for %s failed", pair.key)
                await self._notify(f"Diff pass for {pair.key} failed: {e}")
                return None

            logger.info("[🧩] Diff pass %s: %s", pair.key, report.summary())
            if not report.needs_rediff:
                break
            # something vanished mid-pass: take a fresh look instead of recreating blindly
            logger.info("[🔁] Entity vanished during pass; re-diffing (%d/%d)", attempt, self.MAX_REDIFF)
            snapshot = None

        if report is not None and report.errors:
            await self._notify(
                f"Diff pass for {pair.key} finished with {len(report.errors)} error(s): "
                + "; ".join(report.errors[:5])
            )
        return report

    async def reconcile_all(self) -> dict[str, Optional[DiffReport]]:
        pairs = self.load_pairs()
        results = await asyncio.gather(*(self.run_diff_pass(p) for p in pairs))
        return {p.key: r for p, r in zip(pairs, results)}

    # ------------------------------------------------------------- blacklist
    async def sweep_blacklist(self) -> list[AccessFailureState]:
        cleared = await self.tracker.sweep(utcnow())
        for gid in {st.source_guild_id for st in cleared}:
            pair = self.pair_for(gid)
            if pair is not None:
                self.request_diff(pair)
        for st in cleared:
            await self.on_channel_recovered(st)
        return cleared

    async def alert_blacklisted(self, state: AccessFailureState) -> None:
        await self._notify(
            f"Channel {state.name or state.source_channel_id} is blacklisted after "
            f"{state.failed_attempts} access failures; it will be retried after "
            f"{state.blacklisted_until.isoformat() if state.blacklisted_until else 'the next cutoff'}"
        )

    # ------------------------------------------------------ target-side events
    def on_mirror_channel_deleted(self, mirror_guild_id: int, mirror_channel_id: int) -> bool:
        """
        A mirror channel deleted while no diff pass is running was removed by
        a person; remember that so it is not recreated.
        """
        if self._diff_locks.locked(int(mirror_guild_id)):
            return False
        mapping = self.store.by_mirror_id(mirror_channel_id, MappingKind.CHANNEL)
        if mapping is None or mapping.manually_deleted or not mapping.source_id:
            return False
        return self.store.mark_manually_deleted(
            mapping.source_id, mapping.source_guild_id, MappingKind.CHANNEL
        )

    def on_mirror_category_deleted(self, mirror_guild_id: int, name: str) -> bool:
        """Same as a channel, for categories: they are suppressed by name."""
        if self._diff_locks.locked(int(mirror_guild_id)):
            return False
        if not self._pairs:
            self.load_pairs()
        pair = next(
            (p for p in self._pairs.values() if p.mirror_guild_id == int(mirror_guild_id)),
            None,
        )
        if pair is None:
            return False
        snap = self._snapshots.get(pair.source_guild_id)
        if snap is not None and snap.category_named(name) is None:
            return False
        added = self.store.suppress_category(pair.source_guild_id, name)
        if added:
            logger.info("[🚫] Category %r deleted on the mirror; it will not be recreated", name)
        return added

    async def _mirror_reaction(self, source_message_id: int, reaction: Reaction, pair: GuildPair) -> None:
        try:
            await self.relay.mirror_reaction(source_message_id, reaction, self.target_for(pair))
        except Exception:
            logger.exception("Reaction mirroring failed for %s", source_message_id)

    async def record_role_mentions(
        self,
        envelope: RelayEnvelope,
        result: DispatchResult,
        mentions: list[RoleMention],
    ) -> None:
        for m in mentions:
            self.role_mentions.append(
                (envelope.source_guild_id, result.mirror_channel_id, result.mirror_message_id, m)
            )
        logger.info(
            "[🔔] Message %s mentioned role(s): %s",
            envelope.source_message_id,
            ", ".join(m.name or str(m.source_role_id) for m in mentions),
        )
