import asyncio

from server.models import (
    DispatchRecord,
    MessageReference,
    ReferenceKind,
    RelayEnvelope,
    StageStatus,
)
from server.references import ReferenceResolver, excerpt

from conftest import MIRROR_GUILD, SOURCE_GUILD, FakeSource


def reply_to(message_id, kind=ReferenceKind.REPLY, guild_id=SOURCE_GUILD, **kwargs):
    return RelayEnvelope(
        source_message_id=2,
        source_channel_id=11,
        source_guild_id=SOURCE_GUILD,
        content="agreed",
        reference=MessageReference(message_id, 11, guild_id, kind=kind, **kwargs),
    )


def test_no_reference_is_ok_none(history):
    env = RelayEnvelope(1, 11, SOURCE_GUILD)
    out = asyncio.run(ReferenceResolver(history).resolve(env))
    assert out.status is StageStatus.SUCCESS
    assert out.value is None


def test_reply_to_mirrored_message_links_it(history):
    history.record(DispatchRecord(77, 11, SOURCE_GUILD, MIRROR_GUILD, 5011, 8077))
    out = asyncio.run(ReferenceResolver(history).resolve(reply_to(77)))
    assert out.status is StageStatus.SUCCESS
    assert out.value == f"↪️ [Reply](https://discord.com/channels/{MIRROR_GUILD}/5011/8077)"


def test_reply_falls_back_to_source_fetch(history):
    src = FakeSource()
    src.messages[78] = {"content": "original words", "author": {"username": "carol"}}
    out = asyncio.run(ReferenceResolver(history, src).resolve(reply_to(78)))
    assert out.status is StageStatus.SUCCESS
    assert out.value == "↪️ Reply to **carol**\n> original words"


def test_reply_falls_back_to_inline_excerpt(history):
    env = reply_to(79, author="dave", content="inline text")
    out = asyncio.run(ReferenceResolver(history, FakeSource()).resolve(env))
    assert out.status is StageStatus.DEGRADED
    assert out.value == "↪️ Reply to **dave**\n> inline text"


def test_reply_last_resort_is_generic_marker(history):
    out = asyncio.run(ReferenceResolver(history).resolve(reply_to(80)))
    assert out.status is StageStatus.DEGRADED
    assert out.value == "↪️ Reply"


def test_forward_from_other_guild_links_original(history):
    env = reply_to(81, kind=ReferenceKind.FORWARD, guild_id=555)
    out = asyncio.run(ReferenceResolver(history).resolve(env))
    assert out.status is StageStatus.DEGRADED
    assert out.value == "📨 [External forward](https://discord.com/channels/555/11/81)"


def test_forward_within_guild_without_history(history):
    env = reply_to(82, kind=ReferenceKind.FORWARD)
    out = asyncio.run(ReferenceResolver(history).resolve(env))
    assert out.value == "🔄 Forward"


def test_failing_strategy_does_not_break_ladder(history):
    class Broken(FakeSource):
        async def fetch_message(self, channel_id, message_id):
            raise RuntimeError("boom")

    out = asyncio.run(ReferenceResolver(history, Broken()).resolve(reply_to(83)))
    assert out.value == "↪️ Reply"
    assert "boom" in out.reason


def test_excerpt_quotes_and_caps():
    assert excerpt("a\nb") == "> a\n> b"
    long = excerpt("x" * 300, limit=20)
    assert long == "> " + "x" * 17 + "..."
    assert excerpt("   ") == ""
