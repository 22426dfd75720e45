import itertools
import json
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from common.config import GuildPair
from common.db import DBManager
from common.errors import NotFound
from server.access_failures import AccessFailureTracker
from server.correspondence import CorrespondenceStore, DispatchHistory
from server.models import (
    CategoryInfo,
    ChannelInfo,
    ChannelKind,
    RoleInfo,
    StructuralSnapshot,
)
from server.protection import ProtectionList

SOURCE_GUILD = 100
MIRROR_GUILD = 900


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeSource:
    """In-memory source side. `probe_errors` maps channel id -> exception to raise."""

    def __init__(self, snapshot: StructuralSnapshot = None):
        self.snap = snapshot or StructuralSnapshot(guild_id=SOURCE_GUILD)
        self.probe_errors: dict = {}
        self.probed: list[int] = []
        self.messages: dict = {}
        self.users: dict = {}
        self.history_fetches: list = []

    async def snapshot(self, guild_id):
        return self.snap

    async def probe_channel(self, channel):
        self.probed.append(channel.id)
        err = self.probe_errors.get(channel.id)
        if err is not None:
            raise err

    async def fetch_message(self, channel_id, message_id):
        try:
            return self.messages[message_id]
        except KeyError:
            raise NotFound("unknown message") from None

    async def fetch_messages_after(self, channel_id, after_id, limit):
        self.history_fetches.append((channel_id, after_id))
        found = [
            m for mid, m in self.messages.items()
            if int(m["channel_id"]) == channel_id and mid > after_id
        ]
        return sorted(found, key=lambda m: int(m["id"]), reverse=True)[-limit:]

    async def fetch_user(self, user_id):
        try:
            return self.users[user_id]
        except KeyError:
            raise NotFound("unknown user") from None


class FakeTarget:
    """
    In-memory mirror guild. Every mutation changes the state the next
    snapshot() returns, so a second diff pass sees its own work.
    """

    def __init__(self, guild_id: int = MIRROR_GUILD, supported=None):
        self.guild_id = guild_id
        self.categories: dict[int, CategoryInfo] = {}
        self.channels: dict[int, ChannelInfo] = {}
        self.roles: dict[int, RoleInfo] = {}
        self.emoji_ids: set[int] = set()
        self.emoji_names: set[str] = set()
        self.sent: list = []
        self.reactions: list = []
        self.calls: list = []
        self.dispatch_errors: list = []
        self._ids = itertools.count(50000)
        self._supported = frozenset(supported) if supported is not None else frozenset(
            {ChannelKind.TEXT, ChannelKind.VOICE, ChannelKind.NEWS, ChannelKind.STAGE, ChannelKind.FORUM}
            | {ChannelKind.PUBLIC_THREAD, ChannelKind.PRIVATE_THREAD, ChannelKind.NEWS_THREAD}
        )

    # -- helpers for arranging state
    def add_category(self, name, position=0, cid=None):
        cid = cid or next(self._ids)
        self.categories[cid] = CategoryInfo(cid, name, position)
        return cid

    def add_channel(self, name, kind=ChannelKind.TEXT, category=None, position=0, cid=None, parent_id=None):
        cid = cid or next(self._ids)
        self.channels[cid] = ChannelInfo(
            cid, name, kind, position=position, category=category, parent_id=parent_id
        )
        return cid

    def add_role(self, name, rid=None, **fields):
        rid = rid or next(self._ids)
        self.roles[rid] = RoleInfo(rid, name, **fields)
        return rid

    def _category_name(self, category_id):
        if category_id is None:
            return None
        return self.categories[category_id].name

    # -- TargetConnector
    @property
    def supported_kinds(self):
        return self._supported

    async def snapshot(self):
        return StructuralSnapshot(
            guild_id=self.guild_id,
            categories=tuple(self.categories.values()),
            channels=tuple(self.channels.values()),
            roles=tuple(self.roles.values()),
            emoji_ids=frozenset(self.emoji_ids),
            emoji_names=frozenset(self.emoji_names),
        )

    async def create_category(self, name, position):
        self.calls.append(("create_category", name))
        return self.add_category(name, position)

    async def create_channel(self, name, kind, *, category_id=None, position=0, topic=None, nsfw=False):
        self.calls.append(("create_channel", name, kind))
        cid = next(self._ids)
        self.channels[cid] = ChannelInfo(
            cid,
            name,
            kind,
            position=position,
            category=self._category_name(category_id),
            topic=topic,
            nsfw=nsfw,
        )
        return cid

    async def create_thread(self, parent_id, name, kind):
        self.calls.append(("create_thread", name))
        return self.add_channel(name, kind, parent_id=parent_id)

    async def edit_channel(self, channel_id, **fields):
        self.calls.append(("edit_channel", channel_id, fields))
        ch = self.channels.get(channel_id)
        if ch is None:
            raise NotFound("unknown channel")
        changes = {}
        if "name" in fields:
            changes["name"] = fields["name"]
        if "category_id" in fields:
            changes["category"] = self._category_name(fields["category_id"])
        self.channels[channel_id] = replace(ch, **changes)

    async def delete_channel(self, channel_id):
        self.calls.append(("delete_channel", channel_id))
        if channel_id in self.channels:
            del self.channels[channel_id]
            return
        if channel_id in self.categories:
            name = self.categories.pop(channel_id).name
            for cid, ch in list(self.channels.items()):
                if ch.category == name:
                    self.channels[cid] = replace(ch, category=None)
            return
        raise NotFound("unknown channel")

    async def reposition(self, positions):
        self.calls.append(("reposition", dict(positions)))
        for cid, pos in positions.items():
            if cid in self.channels:
                self.channels[cid] = replace(self.channels[cid], position=pos)
            elif cid in self.categories:
                self.categories[cid] = replace(self.categories[cid], position=pos)

    async def create_role(self, name, **fields):
        self.calls.append(("create_role", name, fields))
        return self.add_role(name, **fields)

    async def edit_role(self, role_id, **fields):
        self.calls.append(("edit_role", role_id, fields))
        self.roles[role_id] = replace(self.roles[role_id], **fields)

    async def delete_role(self, role_id):
        self.calls.append(("delete_role", role_id))
        if self.roles.pop(role_id, None) is None:
            raise NotFound("unknown role")

    async def dispatch(self, channel_id, payload):
        if self.dispatch_errors:
            err = self.dispatch_errors.pop(0)
            if err is not None:
                raise err
        if channel_id not in self.channels:
            raise NotFound("unknown channel", context={"channel_id": channel_id})
        mid = next(self._ids)
        self.sent.append((channel_id, payload))
        return mid

    async def add_reaction(self, channel_id, message_id, emoji, emoji_id=None):
        self.reactions.append((channel_id, message_id, emoji, emoji_id))

    def has_emoji(self, emoji_id, name):
        if emoji_id is not None and emoji_id in self.emoji_ids:
            return True
        return name in self.emoji_names


def calls_named(target: FakeTarget, op: str) -> list:
    return [c for c in target.calls if c[0] == op]


@pytest.fixture
def db(tmp_path):
    manager = DBManager(str(tmp_path / "mirror.db"))
    yield manager
    manager.close()


@pytest.fixture
def store(db):
    return CorrespondenceStore(db)


@pytest.fixture
def history(db):
    return DispatchHistory(db)


@pytest.fixture
def clock():
    return Clock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def tracker(db, store, clock):
    return AccessFailureTracker(db, store, max_failures=2, cutoff="03:30", timezone="UTC", now_fn=clock)


@pytest.fixture
def pair():
    return GuildPair(SOURCE_GUILD, MIRROR_GUILD)


@pytest.fixture
def protection():
    return ProtectionList()


@pytest.fixture
def target():
    return FakeTarget()


@pytest.fixture
def source():
    return FakeSource()


class FakeResponse:
    def __init__(self, status=200, body=b"", reason="OK"):
        self.status = status
        self.reason = reason
        self._body = body

    async def read(self):
        return self._body

    async def json(self, content_type="application/json"):
        return json.loads(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession.get: url -> responses or exceptions, in order."""

    def __init__(self, script=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.requested = []

    def get(self, url, headers=None, timeout=None):
        self.requested.append(url)
        step = self.script[url].pop(0)
        if isinstance(step, Exception):
            raise step
        return step
