import asyncio
from datetime import datetime, timedelta, timezone

from server.access_failures import AccessFailureTracker
from server.models import HealthState, MappingKind

from conftest import SOURCE_GUILD

VIP = 42


def test_two_failures_blacklist_until_next_cutoff(tracker, clock):
    async def go():
        first = await tracker.record_failure(VIP, SOURCE_GUILD, "vip-lounge")
        second = await tracker.record_failure(VIP, SOURCE_GUILD, "vip-lounge")
        third = await tracker.record_failure(VIP, SOURCE_GUILD, "vip-lounge")
        return first, second, third

    first, second, third = asyncio.run(go())
    assert first.after is HealthState.DEGRADED
    assert first.state.failed_attempts == 1
    assert second.before is HealthState.DEGRADED
    assert second.after is HealthState.BLACKLISTED
    # clock is 12:00 UTC, so the cutoff is tomorrow 03:30
    assert second.state.blacklisted_until == datetime(2024, 5, 2, 3, 30, tzinfo=timezone.utc)

    assert not third.changed
    assert third.after is HealthState.BLACKLISTED
    assert third.state.failed_attempts == 2
    assert tracker.is_blacklisted(VIP, SOURCE_GUILD)


def test_success_resets_to_healthy(tracker):
    async def go():
        await tracker.record_failure(VIP, SOURCE_GUILD)
        return await tracker.record_success(VIP, SOURCE_GUILD)

    assert asyncio.run(go()) is True
    assert tracker.state(VIP, SOURCE_GUILD) is HealthState.HEALTHY
    assert asyncio.run(tracker.record_success(VIP, SOURCE_GUILD)) is False


def test_blacklist_alert_fires_once(db, store, clock):
    alerts = []

    async def alert(state):
        alerts.append(state.source_channel_id)

    t = AccessFailureTracker(db, store, max_failures=2, now_fn=clock, on_blacklisted=alert)

    async def go():
        for _ in range(4):
            await t.record_failure(VIP, SOURCE_GUILD)

    asyncio.run(go())
    assert alerts == [VIP]


def test_recovery_hook_fires_only_when_a_record_is_cleared(db, store, clock):
    recovered = []

    async def hook(state):
        recovered.append((state.source_channel_id, state.failed_attempts))

    t = AccessFailureTracker(db, store, max_failures=2, now_fn=clock, on_recovered=hook)

    async def go():
        await t.record_success(VIP, SOURCE_GUILD)
        await t.record_failure(VIP, SOURCE_GUILD, "vip-lounge")
        await t.record_success(VIP, SOURCE_GUILD)
        await t.record_success(VIP, SOURCE_GUILD)

    asyncio.run(go())
    assert recovered == [(VIP, 1)]


def test_expired_blacklist_counts_healthy_and_restarts(tracker, clock):
    async def blacklist():
        await tracker.record_failure(VIP, SOURCE_GUILD)
        await tracker.record_failure(VIP, SOURCE_GUILD)

    asyncio.run(blacklist())
    clock.now = datetime(2024, 5, 2, 3, 31, tzinfo=timezone.utc)
    assert tracker.state(VIP, SOURCE_GUILD) is HealthState.HEALTHY

    tr = asyncio.run(tracker.record_failure(VIP, SOURCE_GUILD))
    assert tr.after is HealthState.DEGRADED
    assert tr.state.failed_attempts == 1


def test_sweep_clears_expired_only(tracker, clock):
    async def go():
        await tracker.record_failure(1, SOURCE_GUILD, "a")
        await tracker.record_failure(1, SOURCE_GUILD, "a")
        await tracker.record_failure(2, SOURCE_GUILD, "b")

    asyncio.run(go())
    assert asyncio.run(tracker.sweep(clock.now)) == []

    later = clock.now + timedelta(days=1)
    cleared = asyncio.run(tracker.sweep(later))
    assert [s.source_channel_id for s in cleared] == [1]
    assert tracker.get(1, SOURCE_GUILD).failed_attempts == 0
    # degraded record is left for a success to clear
    assert tracker.get(2, SOURCE_GUILD).failed_attempts == 1


def test_sweep_skips_manually_deleted(tracker, store, clock):
    store.register(VIP, SOURCE_GUILD, "vip-lounge", 5042, MappingKind.CHANNEL)
    store.mark_manually_deleted(VIP, SOURCE_GUILD, MappingKind.CHANNEL)

    async def go():
        await tracker.record_failure(VIP, SOURCE_GUILD)
        await tracker.record_failure(VIP, SOURCE_GUILD)
        return await tracker.sweep(clock.now + timedelta(days=2))

    assert asyncio.run(go()) == []
    assert tracker.get(VIP, SOURCE_GUILD).blacklisted_until is not None


def test_blacklisted_ids_per_guild(tracker):
    async def go():
        for cid in (1, 1, 2):
            await tracker.record_failure(cid, SOURCE_GUILD)
        await tracker.record_failure(3, 555)
        await tracker.record_failure(3, 555)

    asyncio.run(go())
    assert tracker.blacklisted_ids(SOURCE_GUILD) == {1}
    assert tracker.blacklisted_ids(555) == {3}
