from server.correspondence import CorrespondenceStore, DispatchHistory
from server.models import DispatchRecord, MappingKind

from conftest import SOURCE_GUILD, MIRROR_GUILD


def _insert_legacy_row(db, name, cloned_id):
    with db.conn:
        db.conn.execute(
            "INSERT INTO channel_mappings (original_guild_id, original_id, original_name, cloned_id) "
            "VALUES (?, NULL, ?, ?)",
            (SOURCE_GUILD, name, cloned_id),
        )


def test_register_then_resolve(store):
    store.register(11, SOURCE_GUILD, "general", 5011, MappingKind.CHANNEL, mirror_guild_id=MIRROR_GUILD)
    assert store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL) == 5011
    assert store.resolve(12, SOURCE_GUILD, MappingKind.CHANNEL) is None


def test_register_is_idempotent_and_updates_display_fields(store):
    store.register(11, SOURCE_GUILD, "general", 5011, MappingKind.CHANNEL)
    store.register(11, SOURCE_GUILD, "general-chat", 5011, MappingKind.CHANNEL, category="Main")
    rows = store.mappings(SOURCE_GUILD, MappingKind.CHANNEL)
    assert len(rows) == 1
    assert rows[0].name == "general-chat"
    assert rows[0].category == "Main"


def test_cold_lookup_reads_database(db, store):
    store.register(21, SOURCE_GUILD, "mods", 7021, MappingKind.ROLE)
    cold = CorrespondenceStore(db)
    assert cold.resolve(21, SOURCE_GUILD, MappingKind.ROLE) == 7021


def test_invalidate_keeps_database(store):
    store.register(11, SOURCE_GUILD, "general", 5011, MappingKind.CHANNEL)
    store.invalidate()
    assert store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL) == 5011


def test_legacy_row_is_repaired_by_name(db, store):
    _insert_legacy_row(db, "announcements", 6001)
    assert store.resolve(31, SOURCE_GUILD, MappingKind.CHANNEL) is None

    assert store.resolve(31, SOURCE_GUILD, MappingKind.CHANNEL, name="announcements") == 6001
    row = db.get_mapping("channel", SOURCE_GUILD, 31)
    assert row is not None and row["cloned_id"] == 6001
    # healed: a plain id lookup now works without the name
    assert CorrespondenceStore(db).resolve(31, SOURCE_GUILD, MappingKind.CHANNEL) == 6001


def test_manually_deleted_resolves_to_none(store):
    store.register(11, SOURCE_GUILD, "general", 5011, MappingKind.CHANNEL)
    assert store.mark_manually_deleted(11, SOURCE_GUILD, MappingKind.CHANNEL)
    assert store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL) is None
    assert store.is_manually_deleted(11, SOURCE_GUILD, MappingKind.CHANNEL)
    assert store.manually_deleted(SOURCE_GUILD, MappingKind.CHANNEL) == {11: "general"}

    assert store.restore(11, SOURCE_GUILD, MappingKind.CHANNEL)
    assert store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL) == 5011


def test_by_mirror_id_and_remove(store):
    store.register(11, SOURCE_GUILD, "general", 5011, MappingKind.CHANNEL)
    assert store.by_mirror_id(5011, MappingKind.CHANNEL).source_id == 11
    store.remove(11, SOURCE_GUILD, MappingKind.CHANNEL)
    assert store.by_mirror_id(5011, MappingKind.CHANNEL) is None
    assert store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL) is None


def test_category_suppression_roundtrip(store):
    assert store.suppress_category(SOURCE_GUILD, "Archive")
    assert not store.suppress_category(SOURCE_GUILD, "Archive")
    assert store.suppressed_categories(SOURCE_GUILD) == {"Archive"}
    assert store.restore_category(SOURCE_GUILD, "Archive")
    assert store.suppressed_categories(SOURCE_GUILD) == set()


def test_cache_is_bounded(db):
    small = CorrespondenceStore(db, channel_cache_size=2)
    for i in range(5):
        small.register(i + 1, SOURCE_GUILD, f"c{i}", 100 + i, MappingKind.CHANNEL)
    assert len(small._caches[MappingKind.CHANNEL]) <= 2
    assert small.resolve(1, SOURCE_GUILD, MappingKind.CHANNEL) == 100


def test_dispatch_history_survives_restart(db, history):
    history.record(DispatchRecord(1, 11, SOURCE_GUILD, MIRROR_GUILD, 5011, 8001))
    assert history.lookup(1).mirror_message_id == 8001
    fresh = DispatchHistory(db)
    rec = fresh.lookup(1)
    assert rec.mirror_channel_id == 5011
    assert rec.mirror_guild_id == MIRROR_GUILD
    assert fresh.lookup(2) is None


def test_last_mirrored_message_per_channel(history):
    assert history.last_for_channel(11) is None
    for mid, cid in ((5, 11), (9, 11), (7, 11), (12, 13)):
        history.record(DispatchRecord(mid, cid, SOURCE_GUILD, MIRROR_GUILD, 5011, 8000 + mid))
    assert history.last_for_channel(11) == 9
    assert history.last_for_channel(13) == 12
