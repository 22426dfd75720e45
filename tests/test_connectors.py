import asyncio
import json

import pytest

from common.errors import AccessDenied
from common.rate_limiter import RateLimitManager
from server.connectors import RestSourceConnector

from conftest import FakeResponse, FakeSession

API = "https://api.test"


def page(ids):
    # newest first, the way the API answers
    body = [{"id": str(i), "channel_id": "11", "content": f"m{i}"} for i in sorted(ids, reverse=True)]
    return FakeResponse(body=json.dumps(body).encode())


def connector(session):
    return RestSourceConnector(session, "token", RateLimitManager(base_delay=0), api_base=API)


def test_messages_after_are_paged_and_oldest_first():
    session = FakeSession(
        {
            f"{API}/channels/11/messages?after=10&limit=100": [page(range(11, 111))],
            f"{API}/channels/11/messages?after=110&limit=50": [page(range(111, 116))],
        }
    )
    out = asyncio.run(connector(session).fetch_messages_after(11, 10, 150))
    assert [int(m["id"]) for m in out] == list(range(11, 116))
    assert len(session.requested) == 2


def test_short_page_ends_the_walk():
    session = FakeSession({f"{API}/channels/11/messages?after=0&limit=100": [page([3, 1, 2])]})
    out = asyncio.run(connector(session).fetch_messages_after(11, 0, 100))
    assert [m["content"] for m in out] == ["m1", "m2", "m3"]


def test_unreadable_channel_raises_access_denied():
    denied = FakeResponse(status=403, body=b'{"message": "Missing Access", "code": 50001}', reason="Forbidden")
    session = FakeSession({f"{API}/channels/11/messages?after=5&limit=100": [denied]})
    with pytest.raises(AccessDenied):
        asyncio.run(connector(session).fetch_messages_after(11, 5, 100))
