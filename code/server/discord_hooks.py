# =============================================================================
#  Copycord
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import logging, re
from typing import Optional, Tuple
from common.rate_limiter import ActionType, RateLimitManager

log = logging.getLogger("discord_hooks")

# first match wins, so the more specific routes come first
_ROUTE_MAP: Tuple[Tuple[re.Pattern, ActionType], ...] = (
    (re.compile(r"/channels/\{channel_id\}/webhooks"), ActionType.WEBHOOK_CREATE),
    (re.compile(r"/webhooks/"), ActionType.WEBHOOK_MESSAGE),
    (re.compile(r"/reactions/"), ActionType.REACTION),
    (re.compile(r"/channels/\{channel_id\}/threads"), ActionType.THREAD),
    (re.compile(r"/channels/\{channel_id\}/messages"), ActionType.WEBHOOK_MESSAGE),
    (re.compile(r"/guilds/\{guild_id\}/channels"), ActionType.CREATE_CHANNEL),
    (
        re.compile(
            r"^/(?:api/v\d+/)?guilds/(?:\d+|\{guild_id\})/roles(?:/(?:\d+|\{role_id\}))?(?:\?.*)?$"
        ),
        ActionType.ROLE,
    ),
    (re.compile(r"/channels/\{channel_id\}$"), ActionType.EDIT_CHANNEL),
)

# floor for the cooldown when the hint is tiny
MIN_COOLDOWN_SECONDS = 1.0


def map_route(route: str) -> Optional[ActionType]:
    for pat, act in _ROUTE_MAP:
        if pat.search(route):
            return act
    return None


class DiscordHTTPRLHandler(logging.Handler):
    """
    py-cord retries 429s on its own and only logs them. This handler reads
    those log lines and pushes the same retry hint into our throttle, so the
    next structural call for that action waits instead of queuing up behind
    the library.
    """

    _rx = re.compile(r"Retrying in ([\d.]+) seconds.*bucket \"([^\"]+)\"")

    def __init__(self, ratelimit_mgr: RateLimitManager):
        super().__init__(level=logging.WARNING)
        self.rlm = ratelimit_mgr

    def emit(self, record: logging.LogRecord):
        try:
            m = self._rx.search(record.getMessage())
            if not m:
                return

            retry_after = max(MIN_COOLDOWN_SECONDS, float(m.group(1)))
            bucket = m.group(2)
            route = bucket.split(":")[-1]
            action = map_route(route)
            if not action:
                log.debug(
                    "No ActionType mapping for route=%s (bucket=%s); no penalty applied",
                    route,
                    bucket,
                )
                return

            # webhook sends carry their own per-channel keys and retry in the throttle
            if action == ActionType.WEBHOOK_MESSAGE:
                return

            self.rlm.penalize_all(action, retry_after)
            log.warning(
                "[❗] Discord rate limit detected; holding %s actions for %.2fs",
                action.name,
                retry_after,
            )
        except Exception as e:
            log.exception("[⛔] Error in DiscordHTTPRLHandler.emit: %s", e)


def install_discord_rl_probe(ratelimit_mgr: RateLimitManager):
    http_log = logging.getLogger("discord.http")
    if not any(isinstance(h, DiscordHTTPRLHandler) for h in http_log.handlers):
        http_log.addHandler(DiscordHTTPRLHandler(ratelimit_mgr))
        log.debug("Installed DiscordHTTPRLHandler on 'discord.http' logger")
    else:
        log.debug("DiscordHTTPRLHandler already installed on 'discord.http'")
