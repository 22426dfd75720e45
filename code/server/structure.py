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
from dataclasses import dataclass, field
from typing import Optional

from common.config import GuildPair
from common.errors import AccessDenied, MirrorError, NotFound, TransientNetwork
from server.access_failures import AccessFailureTracker
from server.connectors import SourceConnector, TargetConnector
from server.correspondence import CorrespondenceStore
from server.models import ChannelInfo, ChannelKind, MappingKind, StructuralSnapshot
from server.protection import ProtectionList
from server.roles import RoleSync

logger = logging.getLogger("server.structure")

_FALLBACK_NOTE = "[mirrored {kind} channel]"


@dataclass
class DiffReport:
    categories_created: int = 0
    categories_deleted: int = 0
    channels_created: int = 0
    channels_renamed: int = 0
    channels_moved: int = 0
    channels_deleted: int = 0
    threads_created: int = 0
    repositioned: int = 0
    roles_created: int = 0
    roles_updated: int = 0
    roles_deleted: int = 0
    repaired: int = 0
    skipped: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    needs_rediff: bool = False

    @property
    def mutations(self) -> int:
        return (
            self.categories_created
            + self.categories_deleted
            + self.channels_created
            + self.channels_renamed
            + self.channels_moved
            + self.channels_deleted
            + self.threads_created
            + self.repositioned
            + self.roles_created
            + self.roles_updated
            + self.roles_deleted
        )

    def error(self, what: str, exc: BaseException) -> None:
        self.errors.append(f"{what}: {exc}")
        if isinstance(exc, NotFound):
            self.needs_rediff = True

    def summary(self) -> str:
        parts = []
        for label, n in (
            ("categories created", self.categories_created),
            ("categories deleted", self.categories_deleted),
            ("channels created", self.channels_created),
            ("channels renamed", self.channels_renamed),
            ("channels moved", self.channels_moved),
            ("channels deleted", self.channels_deleted),
            ("threads created", self.threads_created),
            ("repositioned", self.repositioned),
            ("roles created", self.roles_created),
            ("roles updated", self.roles_updated),
            ("roles deleted", self.roles_deleted),
            ("mappings repaired", self.repaired),
        ):
            if n:
                parts.append(f"{n} {label}")
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped")
        if self.deferred:
            parts.append(f"{len(self.deferred)} deferred")
        if self.errors:
            parts.append(f"{len(self.errors)} errors")
        return "; ".join(parts) or "no changes"


class StructuralDiffEngine:
    """
    Reconciles one mirror guild against its source.

    Categories join by name. Channels and roles join through the
    correspondence store, falling back to a name match that adopts the
    existing mirror entity. Renames are edits, never delete+create.
    """

    def __init__(
        self,
        store: CorrespondenceStore,
        tracker: AccessFailureTracker,
        protection: ProtectionList,
        *,
        roles: Optional[RoleSync] = None,
        delete_channels: bool = True,
    ):
        self.store = store
        self.tracker = tracker
        self.protection = protection
        self.roles = roles
        self.delete_channels = delete_channels

    async def run(
        self,
        pair: GuildPair,
        source: StructuralSnapshot,
        source_conn: SourceConnector,
        target_conn: TargetConnector,
    ) -> DiffReport:
        report = DiffReport()
        target = await target_conn.snapshot()
        gid = pair.source_guild_id

        cat_ids = await self._sync_categories(pair, source, target, target_conn, report)
        claimed: set[int] = set()
        live_ids = {ch.id for ch in target.channels}

        for ch in sorted(
            (c for c in source.channels if not c.kind.is_thread), key=lambda c: c.position
        ):
            new_id = await self._sync_channel(
                pair, ch, target, cat_ids, claimed, source_conn, target_conn, report
            )
            if new_id:
                live_ids.add(new_id)

        for th in (c for c in source.channels if c.kind.is_thread):
            await self._sync_thread(
                pair, th, target, live_ids, claimed, source_conn, target_conn, report
            )

        if self.delete_channels:
            await self._delete_orphans(gid, source, target, claimed, target_conn, report)

        if self.roles is not None:
            await self.roles.sync(pair, source, target, target_conn, report)

        await self._reposition(source, target, cat_ids, claimed, target_conn, report)
        return report

    # ------------------------------------------------------------ categories
    async def _sync_categories(
        self,
        pair: GuildPair,
        source: StructuralSnapshot,
        target: StructuralSnapshot,
        target_conn: TargetConnector,
        report: DiffReport,
    ) -> dict[str, int]:
        cat_ids = {c.name: c.id for c in target.categories}
        suppressed = self.store.suppressed_categories(pair.source_guild_id)
        for cat in sorted(source.categories, key=lambda c: c.position):
            if cat.name in cat_ids:
                continue
            if cat.name in suppressed:
                report.skipped.append(f"category {cat.name} (manually deleted)")
                continue
            try:
                cat_ids[cat.name] = await target_conn.create_category(cat.name, cat.position)
            except MirrorError as e:
                logger.warning("[⚠️] Could not create category %r: %s", cat.name, e)
                report.error(f"create category {cat.name}", e)
                continue
            report.categories_created += 1
            logger.info("[➕] Created category %r", cat.name)
        return cat_ids

    # -------------------------------------------------------------- channels
    def _match(
        self,
        pair: GuildPair,
        ch: ChannelInfo,
        target: StructuralSnapshot,
        claimed: set[int],
        report: DiffReport,
        *,
        parent_mirror: Optional[int] = None,
    ):
        """
        (mapping, target channel) for a source channel. Adopts an unclaimed
        same-named mirror channel when no mapping points at a live one.
        """
        gid = pair.source_guild_id
        mapping = self.store.lookup(ch.id, gid, MappingKind.CHANNEL, name=ch.name)
        if mapping is not None and mapping.manually_deleted:
            return mapping, None

        tgt = target.channel(mapping.mirror_id) if mapping and mapping.mirror_id else None
        if tgt is not None and tgt.id in claimed:
            tgt = None
        if tgt is None:
            tgt = next(
                (
                    t
                    for t in target.channels
                    if t.name == ch.name
                    and t.id not in claimed
                    and t.kind.is_thread == ch.kind.is_thread
                    and (parent_mirror is None or t.parent_id == parent_mirror)
                ),
                None,
            )
            if tgt is not None:
                mapping = self.store.register(
                    ch.id,
                    gid,
                    ch.name,
                    tgt.id,
                    MappingKind.CHANNEL,
                    category=ch.category,
                    entity_type=int(ch.kind),
                    mirror_guild_id=pair.mirror_guild_id,
                )
                report.repaired += 1
                logger.info("[🩹] Adopted existing mirror channel %r for %s", ch.name, ch.id)
        return mapping, tgt

    async def _probe(
        self,
        pair: GuildPair,
        ch: ChannelInfo,
        source_conn: SourceConnector,
        report: DiffReport,
    ) -> bool:
        gid = pair.source_guild_id
        try:
            await source_conn.probe_channel(ch)
        except AccessDenied:
            tr = await self.tracker.record_failure(ch.id, gid, ch.name)
            report.skipped.append(f"{ch.name} (access denied, {tr.after.value})")
            return False
        except NotFound:
            report.skipped.append(f"{ch.name} (gone on source)")
            return False
        except TransientNetwork as e:
            logger.debug("Probe for %s hit a transient error: %s", ch.name, e)
            report.deferred.append(f"{ch.name} (probe failed: transient)")
            return False
        await self.tracker.record_success(ch.id, gid)
        return True

    def _target_kind(
        self, ch: ChannelInfo, supported: frozenset[ChannelKind]
    ) -> tuple[ChannelKind, Optional[str]]:
        if ch.kind in supported:
            return ch.kind, ch.topic
        note = _FALLBACK_NOTE.format(kind=ch.kind.name.lower())
        topic = f"{note} {ch.topic}" if ch.topic else note
        return ChannelKind.TEXT, topic[:1024]

    async def _sync_channel(
        self,
        pair: GuildPair,
        ch: ChannelInfo,
        target: StructuralSnapshot,
        cat_ids: dict[str, int],
        claimed: set[int],
        source_conn: SourceConnector,
        target_conn: TargetConnector,
        report: DiffReport,
    ) -> Optional[int]:
        gid = pair.source_guild_id
        mapping, tgt = self._match(pair, ch, target, claimed, report)
        if mapping is not None and mapping.manually_deleted:
            report.skipped.append(f"{ch.name} (manually deleted)")
            return None

        if tgt is not None:
            claimed.add(tgt.id)
            edits: dict = {}
            if tgt.name != ch.name:
                edits["name"] = ch.name
            if tgt.category != ch.category and (ch.category is None or ch.category in cat_ids):
                edits["category_id"] = cat_ids.get(ch.category) if ch.category else None
            if edits:
                try:
                    await target_conn.edit_channel(tgt.id, **edits)
                except MirrorError as e:
                    logger.warning("[⚠️] Could not update channel %r: %s", tgt.name, e)
                    report.error(f"update channel {tgt.name}", e)
                else:
                    if "name" in edits:
                        report.channels_renamed += 1
                        logger.info("[✏️] Renamed channel %r -> %r", tgt.name, ch.name)
                    if "category_id" in edits:
                        report.channels_moved += 1
                        logger.info("[📂] Moved channel %r into %r", ch.name, ch.category)
            if mapping is not None and (
                mapping.name != ch.name or mapping.category != ch.category
            ):
                self.store.register(
                    ch.id,
                    gid,
                    ch.name,
                    tgt.id,
                    MappingKind.CHANNEL,
                    category=ch.category,
                    entity_type=int(ch.kind),
                    mirror_guild_id=pair.mirror_guild_id,
                )
            return None

        if self.tracker.is_blacklisted(ch.id, gid):
            report.skipped.append(f"{ch.name} (blacklisted)")
            return None
        if not await self._probe(pair, ch, source_conn, report):
            return None

        kind, topic = self._target_kind(ch, target_conn.supported_kinds)
        if kind is not ch.kind:
            logger.info(
                "[🔁] %s channel %r not supported on mirror; creating as text",
                ch.kind.name.lower(),
                ch.name,
            )
        try:
            new_id = await target_conn.create_channel(
                ch.name,
                kind,
                category_id=cat_ids.get(ch.category) if ch.category else None,
                position=ch.position,
                topic=topic,
                nsfw=ch.nsfw,
            )
        except MirrorError as e:
            logger.warning("[⚠️] Could not create channel %r: %s", ch.name, e)
            report.error(f"create channel {ch.name}", e)
            return None

        self.store.register(
            ch.id,
            gid,
            ch.name,
            new_id,
            MappingKind.CHANNEL,
            category=ch.category,
            entity_type=int(ch.kind),
            mirror_guild_id=pair.mirror_guild_id,
        )
        claimed.add(new_id)
        report.channels_created += 1
        logger.info("[➕] Created channel #%s (%s)", ch.name, new_id)
        return new_id

    async def _sync_thread(
        self,
        pair: GuildPair,
        th: ChannelInfo,
        target: StructuralSnapshot,
        live_ids: set[int],
        claimed: set[int],
        source_conn: SourceConnector,
        target_conn: TargetConnector,
        report: DiffReport,
    ) -> None:
        gid = pair.source_guild_id
        parent_mirror = (
            self.store.resolve(th.parent_id, gid, MappingKind.CHANNEL) if th.parent_id else None
        )
        if parent_mirror is None or parent_mirror not in live_ids:
            report.deferred.append(f"thread {th.name} (parent not mirrored yet)")
            return

        mapping, tgt = self._match(
            pair, th, target, claimed, report, parent_mirror=parent_mirror
        )
        if mapping is not None and mapping.manually_deleted:
            report.skipped.append(f"thread {th.name} (manually deleted)")
            return
        if tgt is not None:
            claimed.add(tgt.id)
            if tgt.name != th.name:
                try:
                    await target_conn.edit_channel(tgt.id, name=th.name)
                    report.channels_renamed += 1
                    logger.info("[✏️] Renamed thread %r -> %r", tgt.name, th.name)
                except MirrorError as e:
                    report.error(f"rename thread {tgt.name}", e)
                    return
                self.store.register(
                    th.id,
                    gid,
                    th.name,
                    tgt.id,
                    MappingKind.CHANNEL,
                    entity_type=int(th.kind),
                    mirror_guild_id=pair.mirror_guild_id,
                )
            return

        if self.tracker.is_blacklisted(th.id, gid):
            report.skipped.append(f"thread {th.name} (blacklisted)")
            return
        if not await self._probe(pair, th, source_conn, report):
            return
        try:
            new_id = await target_conn.create_thread(parent_mirror, th.name, th.kind)
        except MirrorError as e:
            report.error(f"create thread {th.name}", e)
            return
        self.store.register(
            th.id,
            gid,
            th.name,
            new_id,
            MappingKind.CHANNEL,
            entity_type=int(th.kind),
            mirror_guild_id=pair.mirror_guild_id,
        )
        claimed.add(new_id)
        report.threads_created += 1
        logger.info("[🧵] Created thread %r (%s)", th.name, new_id)

    # ------------------------------------------------------------- deletions
    async def _delete_orphans(
        self,
        gid: int,
        source: StructuralSnapshot,
        target: StructuralSnapshot,
        claimed: set[int],
        target_conn: TargetConnector,
        report: DiffReport,
    ) -> None:
        deleted: set[int] = set()
        channel_names = {c.name for c in source.channels if not c.kind.is_thread}
        thread_names = {c.name for c in source.channels if c.kind.is_thread}

        for tgt in target.channels:
            if tgt.id in claimed:
                continue
            names = thread_names if tgt.kind.is_thread else channel_names
            if tgt.name in names:
                continue
            if tgt.kind.is_thread and tgt.parent_id is not None and tgt.parent_id not in claimed:
                # goes with its parent, or the parent is not ours
                continue
            if self.protection.is_protected(tgt.name, tgt.id):
                logger.debug("Keeping protected channel #%s", tgt.name)
                continue
            try:
                await target_conn.delete_channel(tgt.id)
            except NotFound:
                pass
            except MirrorError as e:
                logger.warning("[⚠️] Could not delete channel #%s: %s", tgt.name, e)
                report.error(f"delete channel {tgt.name}", e)
                continue
            deleted.add(tgt.id)
            mapping = self.store.by_mirror_id(tgt.id, MappingKind.CHANNEL)
            if mapping is not None and not mapping.manually_deleted:
                self.store.remove(mapping.source_id, mapping.source_guild_id, MappingKind.CHANNEL)
            report.channels_deleted += 1
            logger.info("[🗑️] Deleted orphan channel #%s", tgt.name)

        source_cats = {c.name for c in source.categories}
        # categories still holding kept channels stay
        occupied = {
            t.category
            for t in target.channels
            if t.category and t.id not in deleted and t.id not in claimed
        }
        for cat in target.categories:
            if cat.name in source_cats or cat.name in occupied:
                continue
            if self.protection.is_protected(cat.name, cat.id):
                continue
            try:
                await target_conn.delete_channel(cat.id)
            except NotFound:
                pass
            except MirrorError as e:
                report.error(f"delete category {cat.name}", e)
                continue
            report.categories_deleted += 1
            logger.info("[🗑️] Deleted orphan category %r", cat.name)

    # ----------------------------------------------------------- positioning
    async def _reposition(
        self,
        source: StructuralSnapshot,
        target: StructuralSnapshot,
        cat_ids: dict[str, int],
        claimed: set[int],
        target_conn: TargetConnector,
        report: DiffReport,
    ) -> None:
        cat_moves: dict[int, int] = {}
        for cat in source.categories:
            existing = target.category_named(cat.name)
            if existing is not None and existing.position != cat.position:
                cat_moves[existing.id] = cat.position

        chan_moves: dict[int, int] = {}
        for ch in source.channels:
            if ch.kind.is_thread:
                continue
            mirror_id = self.store.resolve(ch.id, source.guild_id, MappingKind.CHANNEL)
            existing = target.channel(mirror_id) if mirror_id else None
            if existing is not None and existing.id in claimed and existing.position != ch.position:
                chan_moves[existing.id] = ch.position

        if not cat_moves and not chan_moves:
            return
        try:
            await target_conn.reposition({**cat_moves, **chan_moves})
        except MirrorError as e:
            report.error("reposition", e)
            return
        report.repositioned += len(cat_moves) + len(chan_moves)
        logger.info(
            "[↕️] Repositioned %d categories and %d channels",
            len(cat_moves),
            len(chan_moves),
        )
