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
from collections import OrderedDict
from typing import Dict, Optional, Tuple

from common import constants
from common.db import DBManager
from server.models import DispatchRecord, Mapping, MappingKind

logger = logging.getLogger("server.correspondence")

_Key = Tuple[int, int]


class _LRU:
    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        self._data: "OrderedDict[object, object]" = OrderedDict()

    def get(self, key):
        val = self._data.get(key)
        if val is not None:
            self._data.move_to_end(key)
        return val

    def put(self, key, val) -> None:
        self._data[key] = val
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def pop(self, key) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class CorrespondenceStore:
    """
    Source id -> mirror id mappings for channels and roles.

    Reads go through a bounded in-memory cache; misses fall back to the
    database by id, then by (guild, name) for legacy rows that were stored
    without an id. A legacy hit is healed in place so the next lookup is a
    plain id match.
    """

    def __init__(
        self,
        db: DBManager,
        *,
        channel_cache_size: int = constants.CHANNEL_CACHE_MAX,
        role_cache_size: int = constants.ROLE_CACHE_MAX,
    ):
        self.db = db
        self._caches: Dict[MappingKind, _LRU] = {
            MappingKind.CHANNEL: _LRU(channel_cache_size),
            MappingKind.ROLE: _LRU(role_cache_size),
        }

    # ------------------------------------------------------------------ reads
    def lookup(
        self,
        source_id: int,
        source_guild_id: int,
        kind: MappingKind,
        name: Optional[str] = None,
    ) -> Optional[Mapping]:
        key: _Key = (int(source_guild_id), int(source_id))
        cache = self._caches[kind]
        hit = cache.get(key)
        if hit is not None:
            return hit

        row = self.db.get_mapping(kind.value, source_guild_id, source_id)
        if row is None and name:
            legacy = self.db.get_legacy_mapping_by_name(kind.value, source_guild_id, name)
            if legacy is not None:
                self.db.heal_legacy_mapping(kind.value, legacy["id"], source_id)
                logger.info(
                    "[🩹] Repaired legacy %s mapping %r -> source id %s",
                    kind.value,
                    name,
                    source_id,
                )
                row = self.db.get_mapping(kind.value, source_guild_id, source_id)
        if row is None:
            return None

        mapping = Mapping.from_row(kind, row)
        cache.put(key, mapping)
        return mapping

    def resolve(
        self,
        source_id: int,
        source_guild_id: int,
        kind: MappingKind,
        name: Optional[str] = None,
    ) -> Optional[int]:
        """Mirror id for a source entity, or None. Manually-deleted entries resolve to None."""
        m = self.lookup(source_id, source_guild_id, kind, name)
        if m is None or m.manually_deleted or not m.mirror_id:
            return None
        return m.mirror_id

    def by_mirror_id(self, mirror_id: int, kind: MappingKind) -> Optional[Mapping]:
        row = self.db.get_mapping_by_cloned_id(kind.value, mirror_id)
        return Mapping.from_row(kind, row) if row else None

    def mappings(self, source_guild_id: int, kind: MappingKind) -> list[Mapping]:
        return [
            Mapping.from_row(kind, r)
            for r in self.db.get_all_mappings(kind.value, source_guild_id)
            if r["original_id"] is not None
        ]

    def manually_deleted(self, source_guild_id: int, kind: MappingKind) -> dict[int, str]:
        """source id -> recorded name for every manually-deleted entity of a guild."""
        return {
            int(r["original_id"]): r["original_name"]
            for r in self.db.get_manually_deleted(kind.value, source_guild_id)
            if r["original_id"] is not None
        }

    def is_manually_deleted(
        self, source_id: int, source_guild_id: int, kind: MappingKind
    ) -> bool:
        m = self.lookup(source_id, source_guild_id, kind)
        return bool(m and m.manually_deleted)

    # ----------------------------------------------------------------- writes
    def register(
        self,
        source_id: int,
        source_guild_id: int,
        name: str,
        mirror_id: int,
        kind: MappingKind,
        *,
        category: Optional[str] = None,
        entity_type: int = 0,
        mirror_guild_id: Optional[int] = None,
    ) -> Mapping:
        """Idempotent upsert; only display fields and the mirror id change on conflict."""
        self.db.upsert_mapping(
            kind.value,
            source_guild_id,
            source_id,
            name,
            mirror_id,
            cloned_guild_id=mirror_guild_id,
            category_name=category,
            entity_type=entity_type,
        )
        self._caches[kind].pop((int(source_guild_id), int(source_id)))
        mapping = self.lookup(source_id, source_guild_id, kind)
        logger.debug(
            "Registered %s mapping %s (%s) -> %s", kind.value, source_id, name, mirror_id
        )
        return mapping

    def remove(self, source_id: int, source_guild_id: int, kind: MappingKind) -> None:
        self.db.delete_mapping(kind.value, source_guild_id, source_id)
        self._caches[kind].pop((int(source_guild_id), int(source_id)))

    def mark_manually_deleted(
        self,
        source_id: int,
        source_guild_id: int,
        kind: MappingKind,
        reason: str = "manual",
    ) -> bool:
        changed = self.db.set_manually_deleted(
            kind.value, source_guild_id, source_id, True, reason
        )
        self._caches[kind].pop((int(source_guild_id), int(source_id)))
        if changed:
            logger.info("[🚫] %s %s marked manually deleted (%s)", kind.value, source_id, reason)
        return changed

    def restore(self, source_id: int, source_guild_id: int, kind: MappingKind) -> bool:
        changed = self.db.set_manually_deleted(kind.value, source_guild_id, source_id, False)
        self._caches[kind].pop((int(source_guild_id), int(source_id)))
        if changed:
            logger.info("[♻️] %s %s restored; eligible for mirroring again", kind.value, source_id)
        return changed

    def suppress_category(self, source_guild_id: int, name: str) -> bool:
        return self.db.add_category_suppression(source_guild_id, name)

    def restore_category(self, source_guild_id: int, name: str) -> bool:
        return self.db.remove_category_suppression(source_guild_id, name)

    def suppressed_categories(self, source_guild_id: int) -> set[str]:
        return self.db.get_category_suppressions(source_guild_id)

    def invalidate(self, kind: Optional[MappingKind] = None) -> None:
        """Drop cached entries (one kind or all); the database is untouched."""
        for k, cache in self._caches.items():
            if kind is None or k is kind:
                cache.clear()
        logger.debug("Correspondence cache invalidated (%s)", kind.value if kind else "all")


class DispatchHistory:
    """
    source message id -> mirrored message, used to link replies and rewrite
    message links. The newest entries stay in memory; the table is the record.
    """

    def __init__(self, db: DBManager, maxsize: int = constants.DISPATCH_HISTORY_MAX):
        self.db = db
        self._recent = _LRU(maxsize)

    def record(self, rec: DispatchRecord) -> None:
        self.db.upsert_message_mapping(
            rec.source_guild_id,
            rec.source_channel_id,
            rec.source_message_id,
            rec.mirror_guild_id,
            rec.mirror_channel_id,
            rec.mirror_message_id,
        )
        self._recent.put(rec.source_message_id, rec)

    def lookup(self, source_message_id: int) -> Optional[DispatchRecord]:
        hit = self._recent.get(int(source_message_id))
        if hit is not None:
            return hit
        row = self.db.get_mapping_by_original(source_message_id)
        if row is None or row["cloned_message_id"] is None:
            return None
        rec = DispatchRecord(
            source_message_id=int(row["original_message_id"]),
            source_channel_id=int(row["original_channel_id"]),
            source_guild_id=int(row["original_guild_id"]),
            mirror_guild_id=int(row["cloned_guild_id"] or 0),
            mirror_channel_id=int(row["cloned_channel_id"] or 0),
            mirror_message_id=int(row["cloned_message_id"]),
        )
        self._recent.put(rec.source_message_id, rec)
        return rec

    def last_for_channel(self, source_channel_id: int) -> Optional[int]:
        """Newest source message id of the channel that reached the mirror."""
        return self.db.get_last_message_id(source_channel_id)

    def __len__(self) -> int:
        return len(self._recent)
