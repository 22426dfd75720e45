# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
The two sides of a mirror.

The source side is read through Discord's REST API under the source identity
(probes, structure, single-message fetches); live events arrive separately on
the inbound event stream. The target side is the bot, through py-cord, plus
webhooks for sending under an arbitrary name and avatar.
"""

from __future__ import annotations

import io
import logging
from typing import Iterable, Optional, Protocol

import aiohttp
import discord

from common import constants
from common.errors import NotFound, from_status
from common.rate_limiter import ActionType, RateLimitManager
from server.models import (
    CategoryInfo,
    ChannelInfo,
    ChannelKind,
    OutboundPayload,
    RoleInfo,
    StructuralSnapshot,
)

logger = logging.getLogger("server.connectors")

# readable by GET /channels/{id}/messages
_MESSAGE_KINDS = {
    ChannelKind.TEXT,
    ChannelKind.NEWS,
    ChannelKind.NEWS_THREAD,
    ChannelKind.PUBLIC_THREAD,
    ChannelKind.PRIVATE_THREAD,
}


class SourceConnector(Protocol):
    async def snapshot(self, guild_id: int) -> StructuralSnapshot: ...

    async def probe_channel(self, channel: ChannelInfo) -> None: ...

    async def fetch_message(self, channel_id: int, message_id: int) -> dict: ...

    async def fetch_messages_after(
        self, channel_id: int, after_id: int, limit: int
    ) -> list[dict]: ...

    async def fetch_user(self, user_id: int) -> dict: ...


class TargetConnector(Protocol):
    guild_id: int

    @property
    def supported_kinds(self) -> frozenset[ChannelKind]: ...

    async def snapshot(self) -> StructuralSnapshot: ...

    async def create_category(self, name: str, position: int) -> int: ...

    async def create_channel(
        self,
        name: str,
        kind: ChannelKind,
        *,
        category_id: Optional[int],
        position: int,
        topic: Optional[str] = None,
        nsfw: bool = False,
    ) -> int: ...

    async def create_thread(self, parent_id: int, name: str, kind: ChannelKind) -> int: ...

    async def edit_channel(self, channel_id: int, **fields) -> None: ...

    async def delete_channel(self, channel_id: int) -> None: ...

    async def reposition(self, positions: dict[int, int]) -> None: ...

    async def create_role(self, name: str, **fields) -> int: ...

    async def edit_role(self, role_id: int, **fields) -> None: ...

    async def delete_role(self, role_id: int) -> None: ...

    async def dispatch(self, channel_id: int, payload: OutboundPayload) -> int: ...

    async def add_reaction(self, channel_id: int, message_id: int, emoji: str, emoji_id: Optional[int] = None) -> None: ...

    def has_emoji(self, emoji_id: Optional[int], name: str) -> bool: ...


# -------------------------------------------------------------- snapshots
def snapshot_from_payload(
    guild_id: int,
    channels: Iterable[dict],
    roles: Iterable[dict] = (),
    threads: Iterable[dict] = (),
    emojis: Iterable[dict] = (),
) -> StructuralSnapshot:
    """Build a snapshot from Discord REST/gateway JSON objects."""
    channels = list(channels or [])
    cat_names = {
        int(c["id"]): c.get("name") or ""
        for c in channels
        if int(c.get("type", 0)) == ChannelKind.CATEGORY
    }
    categories = tuple(
        CategoryInfo(id=int(c["id"]), name=c.get("name") or "", position=int(c.get("position") or 0))
        for c in channels
        if int(c["id"]) in cat_names
    )
    chans = []
    for c in channels:
        kind = ChannelKind.coerce(c.get("type", 0))
        if kind is ChannelKind.CATEGORY:
            continue
        parent = c.get("parent_id")
        chans.append(
            ChannelInfo(
                id=int(c["id"]),
                name=c.get("name") or "",
                kind=kind,
                position=int(c.get("position") or 0),
                category=cat_names.get(int(parent)) if parent else None,
                topic=c.get("topic"),
                nsfw=bool(c.get("nsfw")),
            )
        )
    for t in threads or []:
        chans.append(
            ChannelInfo(
                id=int(t["id"]),
                name=t.get("name") or "",
                kind=ChannelKind.coerce(t.get("type", ChannelKind.PUBLIC_THREAD)),
                parent_id=int(t["parent_id"]) if t.get("parent_id") else None,
            )
        )
    role_infos = tuple(
        RoleInfo(
            id=int(r["id"]),
            name=r.get("name") or "",
            permissions=int(r.get("permissions") or 0),
            color=int(r.get("color") or 0),
            hoist=bool(r.get("hoist")),
            mentionable=bool(r.get("mentionable")),
            position=int(r.get("position") or 0),
            managed=bool(r.get("managed")) or bool(r.get("tags", {}) or {}),
            is_default=int(r["id"]) == int(guild_id),
        )
        for r in roles or []
    )
    emojis = list(emojis or [])
    return StructuralSnapshot(
        guild_id=int(guild_id),
        categories=categories,
        channels=tuple(chans),
        roles=role_infos,
        emoji_ids=frozenset(int(e["id"]) for e in emojis if e.get("id")),
        emoji_names=frozenset(e.get("name") for e in emojis if e.get("name")),
    )


# ----------------------------------------------------------------- source
class RestSourceConnector:
    """Source-side reads over Discord's REST API with the source identity's token."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        ratelimit: RateLimitManager,
        *,
        api_base: str = constants.DISCORD_API_BASE,
        timeout: float = 30.0,
    ):
        self.session = session
        self.token = token
        self.ratelimit = ratelimit
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str, *, key: str | None = None):
        url = f"{self.api_base}{path}"

        async def _call():
            async with self.session.get(
                url,
                headers={"Authorization": self.token},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = None
                    body = body if isinstance(body, dict) else {}
                    raise from_status(
                        resp.status,
                        body.get("message") or resp.reason or "",
                        code=body.get("code"),
                        retry_after=body.get("retry_after"),
                        context={"path": path},
                    )
                return await resp.json()

        return await self.ratelimit.run(ActionType.SOURCE_FETCH, _call, key=key)

    async def snapshot(self, guild_id: int) -> StructuralSnapshot:
        key = str(guild_id)
        channels = await self._get(f"/guilds/{guild_id}/channels", key=key)
        roles = await self._get(f"/guilds/{guild_id}/roles", key=key)
        try:
            active = await self._get(f"/guilds/{guild_id}/threads/active", key=key)
            threads = (active or {}).get("threads") or []
        except Exception as e:
            logger.debug("Active threads unavailable for guild %s: %s", guild_id, e)
            threads = []
        return snapshot_from_payload(guild_id, channels, roles, threads)

    async def probe_channel(self, channel: ChannelInfo) -> None:
        """Raise AccessDenied/NotFound/TransientNetwork when the channel is unreadable."""
        if channel.kind in _MESSAGE_KINDS:
            await self._get(f"/channels/{channel.id}/messages?limit=1", key=str(channel.id))
        else:
            await self._get(f"/channels/{channel.id}", key=str(channel.id))

    async def fetch_message(self, channel_id: int, message_id: int) -> dict:
        return await self._get(
            f"/channels/{channel_id}/messages/{message_id}", key=str(channel_id)
        )

    async def fetch_messages_after(
        self, channel_id: int, after_id: int, limit: int
    ) -> list[dict]:
        """Messages newer than `after_id`, oldest first, at most `limit` of them."""
        out: list[dict] = []
        cursor = int(after_id)
        while len(out) < limit:
            page = await self._get(
                f"/channels/{channel_id}/messages?after={cursor}"
                f"&limit={min(100, limit - len(out))}",
                key=str(channel_id),
            )
            if not page:
                break
            page = sorted(page, key=lambda m: int(m["id"]))
            out.extend(page)
            cursor = int(page[-1]["id"])
            if len(page) < 100:
                break
        return out[:limit]

    async def fetch_user(self, user_id: int) -> dict:
        return await self._get(f"/users/{user_id}", key="users")


# ----------------------------------------------------------------- target
class DiscordTargetConnector:
    """Mirror-side mutations through the py-cord bot, sends through webhooks."""

    WEBHOOK_NAME = "Copycord"

    def __init__(
        self,
        bot: discord.Bot,
        guild_id: int,
        ratelimit: RateLimitManager,
        session: aiohttp.ClientSession,
        *,
        pair_key: str,
        timeout: float = 30.0,
    ):
        self.bot = bot
        self.guild_id = int(guild_id)
        self.ratelimit = ratelimit
        self.session = session
        self.key = pair_key
        self.timeout = timeout
        self._webhooks: dict[int, discord.Webhook] = {}

    def _guild(self) -> discord.Guild:
        guild = self.bot.get_guild(self.guild_id)
        if guild is None:
            raise NotFound("mirror guild not available", context={"guild_id": self.guild_id})
        return guild

    def _channel(self, channel_id: int):
        ch = self._guild().get_channel_or_thread(int(channel_id))
        if ch is None:
            raise NotFound("channel not found", context={"channel_id": channel_id})
        return ch

    async def _run(self, action: ActionType, fn, *, key: str | None = None, **kw):
        return await self.ratelimit.run(
            action, fn, key=key or self.key, timeout=self.timeout, **kw
        )

    @property
    def supported_kinds(self) -> frozenset[ChannelKind]:
        kinds = {
            ChannelKind.TEXT,
            ChannelKind.VOICE,
            ChannelKind.PUBLIC_THREAD,
            ChannelKind.PRIVATE_THREAD,
        }
        features = set(self._guild().features)
        if "COMMUNITY" in features:
            kinds |= {ChannelKind.FORUM, ChannelKind.STAGE}
        if "NEWS" in features:
            kinds |= {ChannelKind.NEWS, ChannelKind.NEWS_THREAD}
        return frozenset(kinds)

    async def snapshot(self) -> StructuralSnapshot:
        guild = self._guild()
        chans = []
        for ch in guild.channels:
            if isinstance(ch, discord.CategoryChannel):
                continue
            chans.append(
                ChannelInfo(
                    id=ch.id,
                    name=ch.name,
                    kind=ChannelKind.coerce(ch.type.value),
                    position=ch.position,
                    category=ch.category.name if ch.category else None,
                    topic=getattr(ch, "topic", None),
                    nsfw=bool(getattr(ch, "nsfw", False)),
                )
            )
        for th in guild.threads:
            chans.append(
                ChannelInfo(
                    id=th.id,
                    name=th.name,
                    kind=ChannelKind.coerce(th.type.value),
                    parent_id=th.parent_id,
                )
            )
        return StructuralSnapshot(
            guild_id=guild.id,
            categories=tuple(
                CategoryInfo(c.id, c.name, c.position) for c in guild.categories
            ),
            channels=tuple(chans),
            roles=tuple(
                RoleInfo(
                    id=r.id,
                    name=r.name,
                    permissions=r.permissions.value,
                    color=r.color.value,
                    hoist=r.hoist,
                    mentionable=r.mentionable,
                    position=r.position,
                    managed=r.managed,
                    is_default=r.is_default(),
                )
                for r in guild.roles
            ),
            emoji_ids=frozenset(e.id for e in guild.emojis),
            emoji_names=frozenset(e.name for e in guild.emojis),
        )

    # ------------------------------------------------------------ structure
    async def create_category(self, name: str, position: int) -> int:
        guild = self._guild()
        cat = await self._run(
            ActionType.CREATE_CHANNEL,
            lambda: guild.create_category(name, position=position),
        )
        return cat.id

    async def create_channel(
        self,
        name: str,
        kind: ChannelKind,
        *,
        category_id: Optional[int],
        position: int,
        topic: Optional[str] = None,
        nsfw: bool = False,
    ) -> int:
        guild = self._guild()
        category = guild.get_channel(category_id) if category_id else None
        kw = {"category": category, "position": position}

        if kind is ChannelKind.VOICE:
            factory = lambda: guild.create_voice_channel(name, **kw)
        elif kind is ChannelKind.STAGE:
            factory = lambda: guild.create_stage_channel(name, topic=topic or name, **kw)
        elif kind is ChannelKind.FORUM:
            factory = lambda: guild.create_forum_channel(name, topic=topic, nsfw=nsfw, **kw)
        else:
            factory = lambda: guild.create_text_channel(name, topic=topic, nsfw=nsfw, **kw)

        ch = await self._run(ActionType.CREATE_CHANNEL, factory)
        if kind is ChannelKind.NEWS:
            await self._run(
                ActionType.EDIT_CHANNEL, lambda: ch.edit(type=discord.ChannelType.news)
            )
        return ch.id

    async def create_thread(self, parent_id: int, name: str, kind: ChannelKind) -> int:
        parent = self._channel(parent_id)
        if isinstance(parent, discord.ForumChannel):
            factory = lambda: parent.create_thread(name=name, content=f"🧵 {name}")
        else:
            ttype = {
                ChannelKind.PRIVATE_THREAD: discord.ChannelType.private_thread,
                ChannelKind.NEWS_THREAD: discord.ChannelType.news_thread,
            }.get(kind, discord.ChannelType.public_thread)
            factory = lambda: parent.create_thread(name=name, type=ttype)
        th = await self._run(ActionType.THREAD, factory)
        # forum creation may hand back a (thread, message) pair
        th = getattr(th, "thread", th)
        return th.id

    async def edit_channel(self, channel_id: int, **fields) -> None:
        ch = self._channel(channel_id)
        if "category_id" in fields:
            cid = fields.pop("category_id")
            fields["category"] = self._guild().get_channel(cid) if cid else None
        await self._run(ActionType.EDIT_CHANNEL, lambda: ch.edit(**fields))

    async def delete_channel(self, channel_id: int) -> None:
        ch = self._channel(channel_id)
        self._webhooks.pop(int(channel_id), None)
        await self._run(ActionType.DELETE_CHANNEL, lambda: ch.delete())

    async def reposition(self, positions: dict[int, int]) -> None:
        """Move every channel and category in one bulk update for the guild."""
        if not positions:
            return
        for channel_id in positions:
            self._channel(channel_id)
        data = [{"id": int(cid), "position": int(pos)} for cid, pos in positions.items()]
        await self._run(
            ActionType.EDIT_CHANNEL,
            lambda: self.bot.http.bulk_channel_update(
                self.guild_id, data, reason="Copycord mirror reorder"
            ),
        )

    async def create_role(self, name: str, **fields) -> int:
        guild = self._guild()
        perms = discord.Permissions(int(fields.pop("permissions", 0)))
        color = discord.Colour(int(fields.pop("color", 0)))
        role = await self._run(
            ActionType.ROLE,
            lambda: guild.create_role(name=name, permissions=perms, colour=color, **fields),
        )
        return role.id

    async def edit_role(self, role_id: int, **fields) -> None:
        role = self._guild().get_role(int(role_id))
        if role is None:
            raise NotFound("role not found", context={"role_id": role_id})
        if "permissions" in fields:
            fields["permissions"] = discord.Permissions(int(fields["permissions"]))
        if "color" in fields:
            fields["colour"] = discord.Colour(int(fields.pop("color")))
        await self._run(ActionType.ROLE, lambda: role.edit(**fields))

    async def delete_role(self, role_id: int) -> None:
        role = self._guild().get_role(int(role_id))
        if role is None:
            raise NotFound("role not found", context={"role_id": role_id})
        await self._run(ActionType.ROLE, lambda: role.delete())

    # ------------------------------------------------------------- messages
    async def _webhook_for(self, channel) -> discord.Webhook:
        hook = self._webhooks.get(channel.id)
        if hook is not None:
            return hook
        existing = await self._run(ActionType.WEBHOOK_CREATE, lambda: channel.webhooks())
        found = next(
            (w for w in existing if w.name == self.WEBHOOK_NAME and w.token), None
        )
        if found is None:
            found = await self._run(
                ActionType.WEBHOOK_CREATE,
                lambda: channel.create_webhook(name=self.WEBHOOK_NAME),
            )
            logger.info("[🔗] Created webhook for #%s", channel.name)
        hook = discord.Webhook.from_url(found.url, session=self.session)
        self._webhooks[channel.id] = hook
        return hook

    async def dispatch(self, channel_id: int, payload: OutboundPayload) -> int:
        ch = self._channel(channel_id)
        thread = None
        if isinstance(ch, discord.Thread):
            thread, ch = ch, ch.parent

        for attempt in (1, 2):
            hook = await self._webhook_for(ch)

            async def _send():
                kw = {
                    "username": (payload.username or "")[: constants.WEBHOOK_USERNAME_MAX] or None,
                    "avatar_url": payload.avatar_url,
                    "allowed_mentions": discord.AllowedMentions.none(),
                    "wait": True,
                }
                if payload.content:
                    kw["content"] = payload.content
                if payload.embeds:
                    kw["embeds"] = [discord.Embed.from_dict(e) for e in payload.embeds]
                if payload.files:
                    kw["files"] = [
                        discord.File(io.BytesIO(f.data), filename=f.filename)
                        for f in payload.files
                    ]
                if thread is not None:
                    kw["thread"] = thread
                return await hook.send(**kw)

            try:
                msg = await self._run(
                    ActionType.WEBHOOK_MESSAGE,
                    _send,
                    key=f"{self.key}:{ch.id}",
                    idempotent=False,
                )
                return msg.id
            except NotFound:
                # webhook deleted out from under us: rebuild once
                self._webhooks.pop(ch.id, None)
                if attempt == 2:
                    raise
                logger.info("[🔗] Webhook for #%s vanished; recreating", ch.name)
        raise NotFound("webhook unavailable", context={"channel_id": channel_id})

    def _guild_emoji(self, emoji_id: Optional[int], name: str):
        guild = self._guild()
        if emoji_id is not None:
            hit = discord.utils.get(guild.emojis, id=int(emoji_id))
            if hit is not None:
                return hit
        return discord.utils.get(guild.emojis, name=name) if name else None

    def has_emoji(self, emoji_id: Optional[int], name: str) -> bool:
        return self._guild_emoji(emoji_id, name) is not None

    async def add_reaction(
        self, channel_id: int, message_id: int, emoji: str, emoji_id: Optional[int] = None
    ) -> None:
        ch = self._channel(channel_id)
        target = self._guild_emoji(emoji_id, emoji) if emoji_id is not None else emoji
        if target is None:
            raise NotFound("emoji not on mirror guild", context={"emoji": emoji})
        msg = ch.get_partial_message(int(message_id))
        await self._run(ActionType.REACTION, lambda: msg.add_reaction(target))
