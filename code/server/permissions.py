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
from typing import Union

import discord

logger = logging.getLogger("server.permissions")

SAFE_FLAGS = (
    "view_channel",
    "send_messages",
    "read_message_history",
    "use_external_emojis",
    "use_external_stickers",
    "add_reactions",
    "use_application_commands",
    "create_public_threads",
    "create_private_threads",
    "send_messages_in_threads",
    "connect",
    "speak",
    "use_voice_activation",
    "stream",
    "attach_files",
    "embed_links",
    "request_to_speak",
)

BASIC_MEMBER_FLAGS = (
    "view_channel",
    "send_messages",
    "read_message_history",
    "add_reactions",
    "use_external_emojis",
    "attach_files",
    "embed_links",
    "connect",
    "speak",
    "use_voice_activation",
)


def _from_flags(names) -> discord.Permissions:
    return discord.Permissions(**{n: True for n in names})


def _flag_names(value: int) -> list[str]:
    """One canonical name per set bit; aliases such as external_emojis are skipped."""
    names = []
    for name, bit in discord.Permissions.VALID_FLAGS.items():
        if isinstance(getattr(discord.Permissions, name), discord.flags.alias_flag_value):
            continue
        if value & bit:
            names.append(name)
    return sorted(names)


def sanitize(
    permissions: Union[discord.Permissions, int, str, None],
    *,
    label: str = "",
) -> discord.Permissions:
    """
    Reduce a permission set to the safe allow-list.

    A set carrying administrator collapses to the basic member set. Whatever
    is removed gets logged, so the mirror never gains moderation power.
    """
    if permissions is None:
        return discord.Permissions.none()
    if not isinstance(permissions, discord.Permissions):
        permissions = discord.Permissions(int(permissions))

    if permissions.administrator:
        logger.warning(
            "[🛡️] Administrator stripped from %s; using basic member permissions",
            label or "role",
        )
        return _from_flags(BASIC_MEMBER_FLAGS)

    kept = [name for name in SAFE_FLAGS if getattr(permissions, name, False)]
    out = _from_flags(kept)
    removed = _flag_names(permissions.value & ~out.value)
    if removed:
        logger.info(
            "[🛡️] Removed %d permission(s) from %s: %s",
            len(removed),
            label or "role",
            ", ".join(removed),
        )
    return out
