# =============================================================================
#  Copycord
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import contextlib
import signal
import asyncio
import logging
import os
import sys
import time
from typing import Optional

import aiohttp
import discord

from common.config import Config, GuildPair
from common.logging_setup import configure_app_logging
from common.rate_limiter import RateLimitManager
from common.websockets import EventStreamServer
from server.access_failures import AccessFailureTracker
from server.attachments import AttachmentFetcher
from server.connectors import DiscordTargetConnector, RestSourceConnector
from server.correspondence import CorrespondenceStore, DispatchHistory
from server.discord_hooks import install_discord_rl_probe
from server.mentions import MentionResolver
from server.orchestrator import SyncOrchestrator
from server.protection import ProtectionList
from server.references import ReferenceResolver
from server.relay import MessageRelayPipeline
from server.roles import RoleSync
from server.structure import StructuralDiffEngine

logger = logging.getLogger("server")


class ServerReceiver:
    """
    The mirror process: a py-cord bot on the mirror side, a REST identity on
    the source side, and the inbound event stream that feeds the orchestrator.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config(logger=logger)
        self.db = self.config.db
        self.bot = discord.Bot(intents=discord.Intents.all())
        self.bot.server = self
        self.ws = EventStreamServer(
            host=self.config.WS_HOST,
            port=self.config.WS_PORT,
            logger=logger.getChild("ws"),
        )
        self.ratelimit = RateLimitManager(min_interval=self.config.MIN_CALL_SPACING)
        install_discord_rl_probe(self.ratelimit)
        self.session: Optional[aiohttp.ClientSession] = None

        self.store = CorrespondenceStore(self.db)
        self.history = DispatchHistory(self.db)
        self.protection = ProtectionList.from_config(self.config)
        self.tracker = AccessFailureTracker(
            self.db,
            self.store,
            max_failures=self.config.MAX_FAILED_ATTEMPTS,
            cutoff=self.config.BLACKLIST_CUTOFF,
            timezone=self.config.TIMEZONE,
        )
        self.engine = StructuralDiffEngine(
            self.store,
            self.tracker,
            self.protection,
            roles=(
                RoleSync(self.store, self.protection, delete_roles=self.config.DELETE_ROLES)
                if self.config.CLONE_ROLES
                else None
            ),
            delete_channels=self.config.DELETE_CHANNELS,
        )
        self.orchestrator: Optional[SyncOrchestrator] = None
        self._targets: dict[int, DiscordTargetConnector] = {}
        self._ws_task: Optional[asyncio.Task] = None
        self._initial_task: Optional[asyncio.Task] = None
        self._started = False
        self._shutting_down = False

        self.bot.event(self.on_ready)
        self.bot.event(self.on_guild_channel_delete)

    def target_for(self, pair: GuildPair) -> DiscordTargetConnector:
        conn = self._targets.get(pair.mirror_guild_id)
        if conn is None:
            conn = self._targets[pair.mirror_guild_id] = DiscordTargetConnector(
                self.bot,
                pair.mirror_guild_id,
                self.ratelimit,
                self.session,
                pair_key=pair.key,
                timeout=self.config.DISPATCH_TIMEOUT_SECONDS,
            )
        return conn

    def _build_orchestrator(self) -> SyncOrchestrator:
        cfg = self.config
        source = RestSourceConnector(
            self.session,
            cfg.CLIENT_TOKEN or "",
            self.ratelimit,
            timeout=cfg.DISPATCH_TIMEOUT_SECONDS,
        )
        mentions = MentionResolver(
            self.store,
            self.history,
            placeholder_user=cfg.PLACEHOLDER_USER,
            placeholder_role=cfg.PLACEHOLDER_ROLE,
            placeholder_channel=cfg.PLACEHOLDER_CHANNEL,
        )
        relay = MessageRelayPipeline(
            self.store,
            self.history,
            self.tracker,
            mentions,
            ReferenceResolver(self.history, source),
            AttachmentFetcher(
                self.session,
                per_item=cfg.MAX_ATTACHMENT_BYTES,
                per_batch=cfg.MAX_BATCH_BYTES,
                max_files=cfg.MAX_FILES_PER_MESSAGE,
            ),
            source=source,
            mirror_reactions=cfg.MIRROR_REACTIONS,
            placeholder_user=cfg.PLACEHOLDER_USER,
            default_avatar_url=cfg.DEFAULT_WEBHOOK_AVATAR_URL,
        )
        orch = SyncOrchestrator(
            cfg, self.store, self.tracker, self.engine, relay, source, self.target_for
        )
        mentions.source_snapshot = orch.snapshot_for
        relay.role_mention_sink = orch.record_role_mentions
        self.tracker.on_blacklisted = orch.alert_blacklisted
        self.tracker.on_recovered = orch.on_channel_recovered
        return orch

    async def on_ready(self):
        if self._started:
            logger.debug("Gateway reconnected; already running")
            return
        self._started = True
        self.session = aiohttp.ClientSession()
        self.orchestrator = self._build_orchestrator()

        pairs = self.orchestrator.load_pairs()
        missing = [p for p in pairs if self.bot.get_guild(p.mirror_guild_id) is None]
        if missing:
            for p in missing:
                logger.error(
                    "[⛔] Bot (ID %s) is not a member of the mirror guild %s",
                    self.bot.user.id,
                    p.mirror_guild_id,
                )
            if len(missing) == len(pairs):
                await self._shutdown()
                sys.exit(1)

        logger.info(
            "[🤖] Logged in as %s; mirroring %d guild pair(s)", self.bot.user.name, len(pairs)
        )
        self.orchestrator.start()
        self._ws_task = asyncio.create_task(self.ws.serve(self.orchestrator.ingest))
        self._initial_task = asyncio.create_task(
            self.orchestrator.reconcile_all(), name="initial-reconcile"
        )

    async def on_guild_channel_delete(self, channel):
        """A mirror channel deleted by hand is remembered and not recreated."""
        if self.orchestrator is None or self._shutting_down:
            return
        guild = getattr(channel, "guild", None)
        if guild is None:
            return
        if isinstance(channel, discord.CategoryChannel):
            self.orchestrator.on_mirror_category_deleted(guild.id, channel.name)
        else:
            self.orchestrator.on_mirror_channel_deleted(guild.id, channel.id)

    async def _shutdown(self):
        """
        Stop taking events, stop the orchestrator, then close the HTTP
        session and the bot last.
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down server...")
        self.ws.begin_shutdown()
        if self._ws_task:
            self._ws_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ws_task

        if self.orchestrator is not None:
            await self.orchestrator.stop()

        try:
            if self.session and not self.session.closed:
                await self.session.close()
        except Exception:
            logger.debug("[shutdown] aiohttp session close failed", exc_info=True)

        try:
            if not self.bot.is_closed():
                await self.bot.close()
        except Exception:
            logger.debug("[shutdown] bot close failed", exc_info=True)

        self.db.close()
        logger.info("Shutdown complete.")

    def run(self):
        """Run the bot until SIGTERM/SIGINT, then shut down cleanly."""
        logger.info("[✨] Starting Copycord mirror server")
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self._shutdown()))

        try:
            loop.run_until_complete(self.bot.start(self.config.SERVER_TOKEN))
        finally:
            pending = asyncio.all_tasks(loop=loop)
            for task in pending:
                task.cancel()
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()


def _autostart_enabled() -> bool:
    return os.getenv("COPYCORD_AUTOSTART", "true").lower() in ("1", "true", "yes", "on")


def main():
    configure_app_logging()
    if _autostart_enabled():
        ServerReceiver().run()
    else:
        while True:
            time.sleep(3600)


if __name__ == "__main__":
    main()
