import logging

import discord

from server.permissions import BASIC_MEMBER_FLAGS, SAFE_FLAGS, _from_flags, sanitize
from server.protection import ProtectionList


def test_administrator_collapses_to_basic_member():
    owner = discord.Permissions(administrator=True, ban_members=True)
    out = sanitize(owner, label="Owner")
    assert not out.administrator
    assert not out.ban_members
    for flag in BASIC_MEMBER_FLAGS:
        assert getattr(out, flag)


def test_moderation_flags_are_removed():
    perms = discord.Permissions(
        manage_guild=True, kick_members=True, send_messages=True, view_channel=True
    )
    out = sanitize(perms.value)
    assert out.send_messages and out.view_channel
    assert not out.manage_guild
    assert not out.kick_members


def test_result_is_always_a_subset_of_safe_flags():
    out = sanitize(discord.Permissions.all().value & ~discord.Permissions(administrator=True).value)
    assert out.value & ~_from_flags(SAFE_FLAGS).value == 0


def test_removed_log_names_only_dropped_bits(caplog):
    caplog.set_level(logging.INFO, logger="server.permissions")
    perms = discord.Permissions(
        use_external_emojis=True, kick_members=True, send_messages=True
    )
    out = sanitize(perms, label="Helper")
    assert out.use_external_emojis
    (record,) = [r for r in caplog.records if "Removed" in r.getMessage()]
    msg = record.getMessage()
    assert "Removed 1 permission(s) from Helper: kick_members" in msg
    assert "external_emojis" not in msg


def test_none_means_no_permissions():
    assert sanitize(None).value == 0


def test_default_protected_names_and_patterns():
    p = ProtectionList()
    assert p.is_protected("logs")
    assert p.is_protected("Mod-Logs")
    assert p.is_protected("bot-commands")
    assert not p.is_protected("general")
    assert not p.is_protected(None)


def test_configured_names_and_ids():
    p = ProtectionList(names=["Rules"], ids=[77])
    assert p.is_protected("rules")
    assert p.is_protected("anything", 77)
    p.protect_id(78)
    assert p.is_protected("other", 78)


def test_defaults_can_be_disabled():
    assert not ProtectionList(include_defaults=False).is_protected("logs")
