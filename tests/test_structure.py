import asyncio
from dataclasses import replace

import pytest

from common.errors import AccessDenied, NotFound, TransientNetwork
from server.models import (
    CategoryInfo,
    ChannelInfo,
    ChannelKind,
    HealthState,
    MappingKind,
    StructuralSnapshot,
)
from server.structure import DiffReport, StructuralDiffEngine

from conftest import SOURCE_GUILD, FakeTarget, calls_named


def snap(channels=(), categories=(), roles=()):
    return StructuralSnapshot(
        SOURCE_GUILD,
        categories=tuple(categories),
        channels=tuple(channels),
        roles=tuple(roles),
    )


MAIN = CategoryInfo(1, "Main", 0)
GENERAL = ChannelInfo(11, "general", ChannelKind.TEXT, position=0, category="Main")
RANDOM = ChannelInfo(12, "random", ChannelKind.TEXT, position=1, category="Main")


@pytest.fixture
def engine(store, tracker, protection):
    return StructuralDiffEngine(store, tracker, protection)


def run(engine, pair, source_snap, source, target) -> DiffReport:
    source.snap = source_snap
    return asyncio.run(engine.run(pair, source_snap, source, target))


def test_first_pass_creates_and_second_is_noop(engine, pair, source, target, store):
    s = snap([GENERAL, RANDOM], [MAIN])
    first = run(engine, pair, s, source, target)
    assert first.categories_created == 1
    assert first.channels_created == 2
    assert not first.errors

    mirror_general = store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL)
    assert target.channels[mirror_general].category == "Main"

    second = run(engine, pair, s, source, target)
    assert second.mutations == 0
    assert second.summary() == "no changes"


def test_rename_edits_in_place(engine, pair, source, target, store):
    run(engine, pair, snap([GENERAL], [MAIN]), source, target)
    mirror_id = store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL)
    created = len(calls_named(target, "create_channel"))

    renamed = replace(GENERAL, name="general-chat")
    report = run(engine, pair, snap([renamed], [MAIN]), source, target)

    assert report.channels_renamed == 1
    assert report.channels_created == 0
    assert report.channels_deleted == 0
    assert calls_named(target, "delete_channel") == []
    assert len(calls_named(target, "create_channel")) == created
    assert target.channels[mirror_id].name == "general-chat"
    assert store.lookup(11, SOURCE_GUILD, MappingKind.CHANNEL).name == "general-chat"
    assert store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL) == mirror_id


def test_move_between_categories(engine, pair, source, target, store):
    other = CategoryInfo(2, "Other", 1)
    run(engine, pair, snap([GENERAL], [MAIN, other]), source, target)
    moved = replace(GENERAL, category="Other")
    report = run(engine, pair, snap([moved], [MAIN, other]), source, target)
    assert report.channels_moved == 1
    mirror_id = store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL)
    assert target.channels[mirror_id].category == "Other"


def test_manually_deleted_channel_is_not_recreated(engine, pair, source, target, store):
    s = snap([GENERAL], [MAIN])
    run(engine, pair, s, source, target)
    mirror_id = store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL)
    del target.channels[mirror_id]
    store.mark_manually_deleted(11, SOURCE_GUILD, MappingKind.CHANNEL)

    report = run(engine, pair, s, source, target)
    assert report.channels_created == 0
    assert any("manually deleted" in s for s in report.skipped)


def test_existing_same_named_channel_is_adopted(engine, pair, source, target, store):
    existing = target.add_channel("lobby")
    report = run(engine, pair, snap([ChannelInfo(13, "lobby")]), source, target)
    assert report.channels_created == 0
    assert report.repaired == 1
    assert store.resolve(13, SOURCE_GUILD, MappingKind.CHANNEL) == existing


def test_orphans_deleted_but_protected_kept(engine, pair, source, target, store):
    stale = target.add_channel("old-stuff")
    logs = target.add_channel("bot-logs")
    empty_cat = target.add_category("Old")
    store.register(99, SOURCE_GUILD, "old-stuff", stale, MappingKind.CHANNEL)

    report = run(engine, pair, snap([GENERAL], [MAIN]), source, target)

    assert stale not in target.channels
    assert logs in target.channels
    assert empty_cat not in target.categories
    assert report.channels_deleted == 1
    assert report.categories_deleted == 1
    assert store.lookup(99, SOURCE_GUILD, MappingKind.CHANNEL) is None


def test_deletion_can_be_disabled(store, tracker, protection, pair, source, target):
    engine = StructuralDiffEngine(store, tracker, protection, delete_channels=False)
    stale = target.add_channel("old-stuff")
    report = run(engine, pair, snap([GENERAL]), source, target)
    assert stale in target.channels
    assert report.channels_deleted == 0


def test_suppressed_category_is_not_recreated(engine, pair, source, target, store):
    store.suppress_category(SOURCE_GUILD, "Main")
    report = run(engine, pair, snap([GENERAL], [MAIN]), source, target)
    assert report.categories_created == 0
    assert target.categories == {}
    assert report.channels_created == 1


def test_thread_created_after_parent_in_same_pass(engine, pair, source, target, store):
    thread = ChannelInfo(21, "help-thread", ChannelKind.PUBLIC_THREAD, parent_id=11)
    s = snap([GENERAL, thread], [MAIN])
    report = run(engine, pair, s, source, target)
    assert report.threads_created == 1
    parent = store.resolve(11, SOURCE_GUILD, MappingKind.CHANNEL)
    mirror_thread = store.resolve(21, SOURCE_GUILD, MappingKind.CHANNEL)
    assert target.channels[mirror_thread].parent_id == parent

    assert run(engine, pair, s, source, target).mutations == 0


def test_thread_with_unmirrored_parent_is_deferred(engine, pair, source, target):
    orphan_thread = ChannelInfo(22, "lost", ChannelKind.PUBLIC_THREAD, parent_id=404)
    report = run(engine, pair, snap([orphan_thread]), source, target)
    assert report.threads_created == 0
    assert report.deferred == ["thread lost (parent not mirrored yet)"]


def test_unsupported_kind_falls_back_to_text(store, tracker, protection, pair, source):
    target = FakeTarget(supported={ChannelKind.TEXT})
    engine = StructuralDiffEngine(store, tracker, protection)
    forum = ChannelInfo(14, "ideas", ChannelKind.FORUM, topic="Share ideas")
    report = run(engine, pair, snap([forum]), source, target)
    assert report.channels_created == 1
    created = target.channels[store.resolve(14, SOURCE_GUILD, MappingKind.CHANNEL)]
    assert created.kind is ChannelKind.TEXT
    assert created.topic == "[mirrored forum channel] Share ideas"
    assert run(engine, pair, snap([forum]), source, target).mutations == 0


def test_access_denied_probe_degrades_then_blacklists(engine, pair, source, target, tracker):
    source.probe_errors[11] = AccessDenied("Missing Access")
    s = snap([GENERAL], [MAIN])

    first = run(engine, pair, s, source, target)
    assert first.channels_created == 0
    assert tracker.state(11, SOURCE_GUILD) is HealthState.DEGRADED

    run(engine, pair, s, source, target)
    assert tracker.state(11, SOURCE_GUILD) is HealthState.BLACKLISTED

    probes = len(source.probed)
    third = run(engine, pair, s, source, target)
    assert len(source.probed) == probes
    assert "general (blacklisted)" in third.skipped


def test_transient_probe_is_deferred_without_counting(engine, pair, source, target, tracker):
    source.probe_errors[11] = TransientNetwork("timeout")
    report = run(engine, pair, snap([GENERAL]), source, target)
    assert report.deferred
    assert tracker.state(11, SOURCE_GUILD) is HealthState.HEALTHY


def test_successful_probe_clears_degraded(engine, pair, source, target, tracker):
    asyncio.run(tracker.record_failure(11, SOURCE_GUILD))
    run(engine, pair, snap([GENERAL]), source, target)
    assert tracker.state(11, SOURCE_GUILD) is HealthState.HEALTHY


def test_reposition_follows_source_order(engine, pair, source, target, store):
    run(engine, pair, snap([GENERAL, RANDOM], [MAIN]), source, target)
    swapped = [replace(GENERAL, position=1), replace(RANDOM, position=0)]
    report = run(engine, pair, snap(swapped, [MAIN]), source, target)
    assert report.repositioned == 2
    assert target.channels[store.resolve(12, SOURCE_GUILD, MappingKind.CHANNEL)].position == 0


def test_reposition_is_one_bulk_call(engine, pair, source, target, store):
    other = CategoryInfo(2, "Other", 1)
    run(engine, pair, snap([GENERAL, RANDOM], [MAIN, other]), source, target)
    target.calls.clear()
    moved = snap(
        [replace(GENERAL, position=1), replace(RANDOM, position=0)],
        [replace(MAIN, position=1), replace(other, position=0)],
    )
    report = run(engine, pair, moved, source, target)
    (call,) = calls_named(target, "reposition")
    assert len(call[1]) == 4
    assert report.repositioned == 4


def test_not_found_requests_rediff():
    report = DiffReport()
    report.error("create channel x", NotFound("gone"))
    assert report.needs_rediff
    assert report.summary() == "1 errors"
