import asyncio

import pytest

from common.errors import AccessDenied, InFlightTimeout, RateLimited, TransientNetwork
from common.rate_limiter import ActionType, RateLimitManager
from server.discord_hooks import map_route


def flaky(*errors, result="done"):
    calls = []

    async def fn():
        calls.append(1)
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return result

    return fn, calls


def test_run_retries_transient_and_rate_limited():
    rlm = RateLimitManager(base_delay=0, max_attempts=3)
    fn, calls = flaky(TransientNetwork("reset"), RateLimited(retry_after=0))
    assert asyncio.run(rlm.run(ActionType.WEBHOOK_MESSAGE, fn, key="5011")) == "done"
    assert len(calls) == 3


def test_run_gives_up_after_max_attempts():
    rlm = RateLimitManager(base_delay=0, max_attempts=2)
    fn, calls = flaky(TransientNetwork("a"), TransientNetwork("b"), TransientNetwork("c"))
    with pytest.raises(TransientNetwork):
        asyncio.run(rlm.run(ActionType.EDIT_CHANNEL, fn))
    assert len(calls) == 2


def test_access_denied_is_not_retried():
    rlm = RateLimitManager(base_delay=0)
    fn, calls = flaky(AccessDenied("no"))
    with pytest.raises(AccessDenied):
        asyncio.run(rlm.run(ActionType.CREATE_CHANNEL, fn))
    assert len(calls) == 1


def test_timed_out_send_is_not_resent():
    rlm = RateLimitManager(base_delay=0, max_attempts=3)
    sends = []

    async def send():
        sends.append("start")
        await asyncio.sleep(0.2)
        sends.append("landed")
        return "msg"

    async def main():
        with pytest.raises(InFlightTimeout) as info:
            await rlm.run(
                ActionType.WEBHOOK_MESSAGE, send, key="5011", timeout=0.05, idempotent=False
            )
        assert sends == ["start"]
        await asyncio.sleep(0.3)
        return info.value

    err = asyncio.run(main())
    assert sends == ["start", "landed"]
    assert err.context["action"] == ActionType.WEBHOOK_MESSAGE.value


def test_idempotent_timeout_still_retries():
    rlm = RateLimitManager(base_delay=0, max_attempts=2)
    calls = []

    async def slow():
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return "ok"

    assert asyncio.run(rlm.run(ActionType.EDIT_CHANNEL, slow, timeout=0.05)) == "ok"
    assert len(calls) == 2


def test_penalty_is_per_key():
    rlm = RateLimitManager()
    rlm.penalize(ActionType.WEBHOOK_MESSAGE, 30, key="a")
    assert rlm.remaining(ActionType.WEBHOOK_MESSAGE, key="a") > 0
    assert rlm.remaining(ActionType.WEBHOOK_MESSAGE, key="b") == 0
    rlm.reset(ActionType.WEBHOOK_MESSAGE, key="a")
    assert rlm.remaining(ActionType.WEBHOOK_MESSAGE, key="a") == 0


@pytest.mark.parametrize(
    "route, action",
    [
        ("/channels/{channel_id}/webhooks", ActionType.WEBHOOK_CREATE),
        ("/webhooks/{webhook_id}/{webhook_token}", ActionType.WEBHOOK_MESSAGE),
        ("/channels/{channel_id}/messages/{message_id}/reactions/{emoji}/@me", ActionType.REACTION),
        ("/guilds/{guild_id}/channels", ActionType.CREATE_CHANNEL),
        ("/guilds/{guild_id}/roles/{role_id}", ActionType.ROLE),
        ("/channels/{channel_id}", ActionType.EDIT_CHANNEL),
        ("/users/@me", None),
    ],
)
def test_map_route(route, action):
    assert map_route(route) is action
