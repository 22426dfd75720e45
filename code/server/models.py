# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional


class MappingKind(str, Enum):
    CHANNEL = "channel"
    ROLE = "role"


class ChannelKind(IntEnum):
    """Discord channel type values."""

    TEXT = 0
    VOICE = 2
    CATEGORY = 4
    NEWS = 5
    NEWS_THREAD = 10
    PUBLIC_THREAD = 11
    PRIVATE_THREAD = 12
    STAGE = 13
    FORUM = 15
    MEDIA = 16

    @property
    def is_thread(self) -> bool:
        return self in (
            ChannelKind.NEWS_THREAD,
            ChannelKind.PUBLIC_THREAD,
            ChannelKind.PRIVATE_THREAD,
        )

    @classmethod
    def coerce(cls, value) -> "ChannelKind":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.TEXT


# ---------------------------------------------------------------- snapshots
@dataclass(frozen=True)
class CategoryInfo:
    id: int
    name: str
    position: int = 0


@dataclass(frozen=True)
class ChannelInfo:
    id: int
    name: str
    kind: ChannelKind = ChannelKind.TEXT
    position: int = 0
    category: Optional[str] = None
    parent_id: Optional[int] = None  # threads only
    topic: Optional[str] = None
    nsfw: bool = False


@dataclass(frozen=True)
class RoleInfo:
    id: int
    name: str
    permissions: int = 0
    color: int = 0
    hoist: bool = False
    mentionable: bool = False
    position: int = 0
    managed: bool = False
    is_default: bool = False

    @property
    def mirrorable(self) -> bool:
        return not (self.managed or self.is_default)


@dataclass(frozen=True)
class StructuralSnapshot:
    guild_id: int
    categories: tuple[CategoryInfo, ...] = ()
    channels: tuple[ChannelInfo, ...] = ()
    roles: tuple[RoleInfo, ...] = ()
    emoji_ids: frozenset[int] = frozenset()
    emoji_names: frozenset[str] = frozenset()

    def category_named(self, name: str) -> Optional[CategoryInfo]:
        for c in self.categories:
            if c.name == name:
                return c
        return None

    def channel(self, channel_id: int) -> Optional[ChannelInfo]:
        for ch in self.channels:
            if ch.id == channel_id:
                return ch
        return None

    def role(self, role_id: int) -> Optional[RoleInfo]:
        for r in self.roles:
            if r.id == role_id:
                return r
        return None


# ----------------------------------------------------------------- mappings
@dataclass
class Mapping:
    kind: MappingKind
    source_id: int
    source_guild_id: int
    name: str
    mirror_id: Optional[int]
    category: Optional[str] = None
    entity_type: int = 0
    active: bool = True
    manually_deleted: bool = False

    @classmethod
    def from_row(cls, kind: MappingKind, row) -> "Mapping":
        return cls(
            kind=kind,
            source_id=int(row["original_id"]) if row["original_id"] is not None else 0,
            source_guild_id=int(row["original_guild_id"]),
            name=row["original_name"],
            mirror_id=int(row["cloned_id"]) if row["cloned_id"] is not None else None,
            category=row["category_name"],
            entity_type=int(row["entity_type"] or 0),
            active=bool(row["active"]),
            manually_deleted=bool(row["manually_deleted"]),
        )


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    BLACKLISTED = "blacklisted"


def _ts(dt: Optional[datetime]) -> Optional[float]:
    return dt.timestamp() if dt else None


def _dt(ts: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc) if ts is not None else None


@dataclass
class AccessFailureState:
    source_channel_id: int
    source_guild_id: int
    name: Optional[str] = None
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    blacklisted_until: Optional[datetime] = None

    def state(self, now: datetime) -> HealthState:
        if self.blacklisted_until is not None and now < self.blacklisted_until:
            return HealthState.BLACKLISTED
        if self.blacklisted_until is None and self.failed_attempts > 0:
            return HealthState.DEGRADED
        return HealthState.HEALTHY

    @classmethod
    def from_row(cls, row) -> "AccessFailureState":
        return cls(
            source_channel_id=int(row["original_channel_id"]),
            source_guild_id=int(row["original_guild_id"]),
            name=row["channel_name"],
            failed_attempts=int(row["failed_attempts"] or 0),
            last_failed_at=_dt(row["last_failed_at"]),
            blacklisted_until=_dt(row["blacklisted_until"]),
        )

    def as_row_args(self) -> tuple:
        return (
            self.source_guild_id,
            self.source_channel_id,
            self.name,
            self.failed_attempts,
            _ts(self.last_failed_at),
            _ts(self.blacklisted_until),
        )


# ------------------------------------------------------------ relay envelope
class MessageKind(Enum):
    DEFAULT = "default"
    REPLY = "reply"
    FORWARD = "forward"
    SLASH_COMMAND = "slash_command"
    THREAD_STARTER = "thread_starter"
    SYSTEM = "system"


class ReferenceKind(Enum):
    REPLY = "reply"
    FORWARD = "forward"


@dataclass(frozen=True)
class Attachment:
    id: int
    filename: str
    url: str
    size: int = 0
    content_type: Optional[str] = None


@dataclass(frozen=True)
class Reaction:
    name: str
    emoji_id: Optional[int] = None
    animated: bool = False
    count: int = 1

    @property
    def is_custom(self) -> bool:
        return self.emoji_id is not None


@dataclass(frozen=True)
class Sticker:
    id: int
    name: str


@dataclass(frozen=True)
class MessageReference:
    message_id: int
    channel_id: int
    guild_id: Optional[int]
    kind: ReferenceKind = ReferenceKind.REPLY
    author: Optional[str] = None
    content: Optional[str] = None


@dataclass
class RelayEnvelope:
    source_message_id: int
    source_channel_id: int
    source_guild_id: int
    author_id: int = 0
    author_name: str = ""
    avatar_url: Optional[str] = None
    content: str = ""
    embeds: list[dict] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)
    stickers: list[Sticker] = field(default_factory=list)
    reference: Optional[MessageReference] = None
    kind: MessageKind = MessageKind.DEFAULT
    message_type: int = 0
    interaction_name: Optional[str] = None
    user_names: dict[int, str] = field(default_factory=dict)
    mention_role_ids: list[int] = field(default_factory=list)

    @classmethod
    def from_payload(cls, data: dict, guild_id: Optional[int] = None) -> "RelayEnvelope":
        """Build an envelope from a Discord message object (gateway or REST)."""
        author = data.get("author") or {}
        member = data.get("member") or {}
        aid = int(author.get("id") or 0)
        avatar = author.get("avatar")
        avatar_url = (
            f"https://cdn.discordapp.com/avatars/{aid}/{avatar}.png" if avatar and aid else None
        )

        names: dict[int, str] = {}
        for m in data.get("mentions") or []:
            try:
                uid = int(m["id"])
            except (KeyError, TypeError, ValueError):
                continue
            names[uid] = _display_name(m, m.get("member") or {})

        ref = _reference_from_payload(data)
        content = data.get("content") or ""
        embeds = list(data.get("embeds") or [])
        attachments = data.get("attachments") or []
        if ref and ref.kind is ReferenceKind.FORWARD:
            # forwarded content lives in the snapshot, not on the message
            snap = ((data.get("message_snapshots") or [{}])[0] or {}).get("message") or {}
            content = content or snap.get("content") or ""
            embeds = embeds or list(snap.get("embeds") or [])
            attachments = attachments or snap.get("attachments") or []

        interaction = data.get("interaction_metadata") or data.get("interaction") or {}
        return cls(
            source_message_id=int(data["id"]),
            source_channel_id=int(data["channel_id"]),
            source_guild_id=int(guild_id or data.get("guild_id") or 0),
            author_id=aid,
            author_name=_display_name(author, member),
            avatar_url=avatar_url,
            content=content,
            embeds=embeds,
            attachments=[
                Attachment(
                    id=int(a.get("id") or 0),
                    filename=a.get("filename") or "file",
                    url=a.get("url") or a.get("proxy_url") or "",
                    size=int(a.get("size") or 0),
                    content_type=a.get("content_type"),
                )
                for a in attachments
            ],
            reactions=[
                Reaction(
                    name=(r.get("emoji") or {}).get("name") or "",
                    emoji_id=_int_or_none((r.get("emoji") or {}).get("id")),
                    animated=bool((r.get("emoji") or {}).get("animated")),
                    count=int(r.get("count") or 1),
                )
                for r in data.get("reactions") or []
            ],
            stickers=[
                Sticker(id=int(s.get("id") or 0), name=s.get("name") or "sticker")
                for s in data.get("sticker_items") or data.get("stickers") or []
            ],
            reference=ref,
            kind=detect_kind(data, ref),
            message_type=int(data.get("type") or 0),
            interaction_name=interaction.get("name"),
            user_names=names,
            mention_role_ids=[int(r) for r in data.get("mention_roles") or []],
        )


def _int_or_none(v) -> Optional[int]:
    try:
        return int(v) if v is not None else None
    except (TypeError, ValueError):
        return None


def _display_name(user: dict, member: dict) -> str:
    return (
        member.get("nick")
        or user.get("global_name")
        or user.get("username")
        or ""
    )


def _reference_from_payload(data: dict) -> Optional[MessageReference]:
    ref = data.get("message_reference") or {}
    mid = _int_or_none(ref.get("message_id"))
    if mid is None:
        return None
    is_forward = ref.get("type") == 1 or bool(data.get("message_snapshots"))
    original = data.get("referenced_message") or {}
    author = None
    if original.get("author"):
        author = _display_name(original["author"], original.get("member") or {})
    return MessageReference(
        message_id=mid,
        channel_id=int(ref.get("channel_id") or data.get("channel_id") or 0),
        guild_id=_int_or_none(ref.get("guild_id")),
        kind=ReferenceKind.FORWARD if is_forward else ReferenceKind.REPLY,
        author=author,
        content=original.get("content"),
    )


_SLASH_TYPES = {20, 23}


def detect_kind(data: dict, ref: Optional[MessageReference]) -> MessageKind:
    mtype = int(data.get("type") or 0)
    if mtype in _SLASH_TYPES:
        return MessageKind.SLASH_COMMAND
    if ref is not None and ref.kind is ReferenceKind.FORWARD:
        return MessageKind.FORWARD
    # thread starters carry a reference to the parent message
    if mtype == 21:
        return MessageKind.THREAD_STARTER
    if mtype == 19 or ref is not None:
        return MessageKind.REPLY
    if mtype == 0:
        return MessageKind.DEFAULT
    return MessageKind.SYSTEM


# ------------------------------------------------------------------ dispatch
class StageStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class StageOutcome:
    status: StageStatus
    value: Any = None
    reason: str = ""

    @classmethod
    def ok(cls, value=None) -> "StageOutcome":
        return cls(StageStatus.SUCCESS, value)

    @classmethod
    def degraded(cls, value=None, reason: str = "") -> "StageOutcome":
        return cls(StageStatus.DEGRADED, value, reason)

    @classmethod
    def failed(cls, reason: str = "") -> "StageOutcome":
        return cls(StageStatus.FAILED, None, reason)

    @property
    def usable(self) -> bool:
        return self.status is not StageStatus.FAILED


@dataclass(frozen=True)
class OutboundFile:
    filename: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class OutboundPayload:
    content: str = ""
    embeds: list[dict] = field(default_factory=list)
    files: list[OutboundFile] = field(default_factory=list)
    username: Optional[str] = None
    avatar_url: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.content.strip() and not self.embeds and not self.files


class DispatchStage(str, Enum):
    FULL = "full"
    LINKS = "links"
    MINIMAL = "minimal"


@dataclass
class DispatchResult:
    source_message_id: int
    mirror_channel_id: Optional[int] = None
    mirror_message_id: Optional[int] = None
    stage: Optional[DispatchStage] = None
    outcomes: dict[str, StageOutcome] = field(default_factory=dict)
    skipped: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.mirror_message_id is not None


@dataclass(frozen=True)
class DispatchRecord:
    source_message_id: int
    source_channel_id: int
    source_guild_id: int
    mirror_guild_id: int
    mirror_channel_id: int
    mirror_message_id: int
