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
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from common import constants
from common.config import GuildPair
from common.errors import MirrorError
from server.correspondence import CorrespondenceStore, DispatchHistory
from server.models import MappingKind, RelayEnvelope, StructuralSnapshot

logger = logging.getLogger("server.mentions")

SnapshotLookup = Callable[[int], Optional[StructuralSnapshot]]
UserFetcher = Callable[[int], Awaitable[dict]]


@dataclass(frozen=True)
class RoleMention:
    source_role_id: int
    mirror_role_id: Optional[int]
    name: Optional[str]


@dataclass
class ResolvedText:
    text: str
    role_mentions: list[RoleMention] = field(default_factory=list)


class MentionResolver:
    """
    Rewrites source-side mentions and message links so they make sense in the
    mirror guild. Users never exist on the mirror, so they become literal names.
    """

    _m_user = re.compile(r"<@!?(?P<id>\d+)>")
    _m_role = re.compile(r"<@&(?P<id>\d+)>")
    _m_ch = re.compile(r"<#(?P<id>\d+)>")
    _m_link = re.compile(
        r"https?://(?:(?:ptb|canary)\.)?discord(?:app)?\.com/channels/"
        r"(?P<guild>\d+)/(?P<channel>\d+)(?:/(?P<message>\d+))?"
    )

    def __init__(
        self,
        store: CorrespondenceStore,
        history: DispatchHistory,
        *,
        source_snapshot: Optional[SnapshotLookup] = None,
        placeholder_user: str = constants.DEFAULT_PLACEHOLDER_USER,
        placeholder_role: str = constants.DEFAULT_PLACEHOLDER_ROLE,
        placeholder_channel: str = constants.DEFAULT_PLACEHOLDER_CHANNEL,
    ):
        self.store = store
        self.history = history
        self.source_snapshot = source_snapshot or (lambda _gid: None)
        self.placeholder_user = placeholder_user
        self.placeholder_role = placeholder_role
        self.placeholder_channel = placeholder_channel

    async def user_names(
        self,
        envelope: RelayEnvelope,
        texts: Iterable[str],
        fetch_user: Optional[UserFetcher] = None,
    ) -> dict[int, str]:
        """
        Display names for every user mentioned in `texts`. Names carried on the
        envelope win; the rest are fetched best-effort and may stay unknown.
        """
        names = dict(envelope.user_names)
        wanted = {
            int(m.group("id"))
            for t in texts
            if t
            for m in self._m_user.finditer(t)
        } - set(names)
        if fetch_user is None:
            return names
        for uid in sorted(wanted):
            try:
                user = await fetch_user(uid)
            except MirrorError as e:
                logger.debug("User %s unresolved: %s", uid, e)
                continue
            name = (user or {}).get("global_name") or (user or {}).get("username")
            if name:
                names[uid] = name
        return names

    def resolve(
        self,
        text: str,
        envelope: RelayEnvelope,
        pair: GuildPair,
        users: Optional[dict[int, str]] = None,
    ) -> ResolvedText:
        if not text:
            return ResolvedText(text or "")
        users = users if users is not None else envelope.user_names
        gid = envelope.source_guild_id
        snap = self.source_snapshot(gid)
        roles: list[RoleMention] = []

        def _user(m: re.Match) -> str:
            name = users.get(int(m.group("id")))
            return f"**@{name or self.placeholder_user}**"

        def _role(m: re.Match) -> str:
            rid = int(m.group("id"))
            src = snap.role(rid) if snap else None
            mirror = self.store.resolve(rid, gid, MappingKind.ROLE)
            if mirror is None:
                mapping = self.store.lookup(rid, gid, MappingKind.ROLE)
                name = (src.name if src else None) or (mapping.name if mapping else None)
            else:
                name = src.name if src else None
            roles.append(RoleMention(rid, mirror, name))
            if mirror is not None:
                return f"<@&{mirror}>"
            return f"**@{name or self.placeholder_role}**"

        def _channel(m: re.Match) -> str:
            cid = int(m.group("id"))
            mirror = self.store.resolve(cid, gid, MappingKind.CHANNEL)
            if mirror is not None:
                return f"<#{mirror}>"
            src = snap.channel(cid) if snap else None
            if src is None:
                mapping = self.store.lookup(cid, gid, MappingKind.CHANNEL)
                name = mapping.name if mapping else None
            else:
                name = src.name
            return f"**#{name or self.placeholder_channel}**"

        def _link(m: re.Match) -> str:
            if int(m.group("guild")) != gid:
                return m.group(0)
            mid = m.group("message")
            if mid:
                rec = self.history.lookup(int(mid))
                if rec is not None:
                    return constants.MESSAGE_LINK_FMT.format(
                        guild_id=rec.mirror_guild_id,
                        channel_id=rec.mirror_channel_id,
                        message_id=rec.mirror_message_id,
                    )
            mirror = self.store.resolve(int(m.group("channel")), gid, MappingKind.CHANNEL)
            if mirror is None:
                return m.group(0)
            return constants.CHANNEL_LINK_FMT.format(
                guild_id=pair.mirror_guild_id, channel_id=mirror
            )

        out = self._m_link.sub(_link, text)
        out = self._m_user.sub(_user, out)
        out = self._m_role.sub(_role, out)
        out = self._m_ch.sub(_channel, out)
        return ResolvedText(out, roles)
