import asyncio

import pytest

from server.mentions import MentionResolver
from server.models import (
    ChannelInfo,
    DispatchRecord,
    MappingKind,
    RelayEnvelope,
    RoleInfo,
    StructuralSnapshot,
)

from conftest import MIRROR_GUILD, SOURCE_GUILD, FakeSource

SOURCE_SNAP = StructuralSnapshot(
    SOURCE_GUILD,
    channels=(ChannelInfo(11, "general"), ChannelInfo(15, "secret")),
    roles=(RoleInfo(31, "Mods"), RoleInfo(32, "Hidden")),
)


def envelope(content, **kwargs):
    return RelayEnvelope(
        source_message_id=1,
        source_channel_id=11,
        source_guild_id=SOURCE_GUILD,
        content=content,
        **kwargs,
    )


@pytest.fixture
def resolver(store, history):
    store.register(11, SOURCE_GUILD, "general", 5011, MappingKind.CHANNEL)
    store.register(31, SOURCE_GUILD, "Mods", 7031, MappingKind.ROLE)
    return MentionResolver(store, history, source_snapshot=lambda gid: SOURCE_SNAP)


def test_user_mentions_become_names_or_placeholder(resolver, pair):
    env = envelope("hi <@7> and <@!8>", user_names={7: "alice"})
    out = resolver.resolve(env.content, env, pair)
    assert out.text == "hi **@alice** and **@Member**"


def test_role_mentions_map_or_fall_back(resolver, pair):
    env = envelope("<@&31> <@&32> <@&33>")
    out = resolver.resolve(env.content, env, pair)
    assert out.text == "<@&7031> **@Hidden** **@Members**"
    assert [(m.source_role_id, m.mirror_role_id) for m in out.role_mentions] == [
        (31, 7031),
        (32, None),
        (33, None),
    ]


def test_channel_mentions_map_or_fall_back(resolver, pair):
    env = envelope("see <#11>, <#15> and <#16>")
    out = resolver.resolve(env.content, env, pair)
    assert out.text == "see <#5011>, **#secret** and **#unknown-channel**"


def test_message_link_rewritten_from_history(resolver, history, pair):
    history.record(DispatchRecord(444, 11, SOURCE_GUILD, MIRROR_GUILD, 5011, 8444))
    link = f"https://discord.com/channels/{SOURCE_GUILD}/11/444"
    out = resolver.resolve(f"look {link}", envelope(""), pair)
    assert out.text == f"look https://discord.com/channels/{MIRROR_GUILD}/5011/8444"


def test_unmirrored_message_link_points_at_channel(resolver, pair):
    link = f"https://discord.com/channels/{SOURCE_GUILD}/11/445"
    out = resolver.resolve(link, envelope(""), pair)
    assert out.text == f"https://discord.com/channels/{MIRROR_GUILD}/5011"


def test_foreign_guild_links_untouched(resolver, pair):
    link = "https://discord.com/channels/1/2/3"
    assert resolver.resolve(link, envelope(""), pair).text == link


def test_custom_placeholders(store, history, pair):
    r = MentionResolver(
        store,
        history,
        placeholder_user="someone",
        placeholder_role="a role",
        placeholder_channel="a channel",
    )
    out = r.resolve("<@1> <@&2> <#3>", envelope(""), pair)
    assert out.text == "**@someone** **@a role** **#a channel**"


def test_user_names_fetches_missing_best_effort(resolver):
    src = FakeSource()
    src.users[8] = {"username": "bob"}
    env = envelope("<@7> <@8> <@9>", user_names={7: "alice"})
    names = asyncio.run(resolver.user_names(env, [env.content], src.fetch_user))
    assert names == {7: "alice", 8: "bob"}
