# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Message relay: one source message in, at most one webhook message out.

Every stage before dispatch degrades locally and records a StageOutcome on
the result. Dispatch itself walks FULL -> LINKS -> MINIMAL; only when the
minimal payload also fails is an error raised, with enough context to find
the message again.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional

from common import constants
from common.config import GuildPair
from common.errors import MirrorError, NotFound, PayloadTooLarge, Unrecoverable
from server.access_failures import AccessFailureTracker
from server.attachments import AttachmentFetcher, PreparedAttachments
from server.connectors import SourceConnector, TargetConnector
from server.correspondence import CorrespondenceStore, DispatchHistory
from server.embeds import EmbedBuilder, EmbedResult, truncate
from server.mentions import MentionResolver, RoleMention
from server.models import (
    DispatchRecord,
    DispatchResult,
    DispatchStage,
    MappingKind,
    MessageKind,
    OutboundPayload,
    Reaction,
    RelayEnvelope,
    StageOutcome,
)
from server.references import ReferenceResolver

logger = logging.getLogger("server.relay")

RoleMentionSink = Callable[[RelayEnvelope, DispatchResult, list[RoleMention]], Awaitable[None]]


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


# ----------------------------------------------------- empty-payload handlers
def _sticker_placeholder(env: RelayEnvelope) -> Optional[str]:
    if not env.stickers:
        return None
    names = ", ".join(s.name for s in env.stickers)
    return f"🎨 {_plural(len(env.stickers), 'sticker')}: {names}"


def _extras_placeholder(env: RelayEnvelope) -> Optional[str]:
    text = _sticker_placeholder(env)
    if text:
        return text
    if env.attachments:
        return f"📎 {_plural(len(env.attachments), 'file')}"
    if env.embeds:
        return "📋 Embed"
    return None


def _system(env: RelayEnvelope) -> str:
    return f"📱 System message (type {env.message_type})"


def _slash(env: RelayEnvelope) -> str:
    if env.interaction_name:
        return f"⚡ Slash command used: /{env.interaction_name}"
    return "⚡ Slash command used"


PLACEHOLDERS: dict[MessageKind, Callable[[RelayEnvelope], str]] = {
    MessageKind.DEFAULT: lambda env: _extras_placeholder(env) or _system(env),
    MessageKind.REPLY: lambda env: _extras_placeholder(env) or "↪️ Reply",
    MessageKind.FORWARD: lambda env: _extras_placeholder(env) or "🔄 Forwarded message",
    MessageKind.SLASH_COMMAND: _slash,
    MessageKind.THREAD_STARTER: lambda env: _extras_placeholder(env) or "🧵 Thread started",
    MessageKind.SYSTEM: lambda env: _extras_placeholder(env) or _system(env),
}


def placeholder_for(env: RelayEnvelope) -> str:
    return PLACEHOLDERS.get(env.kind, _system)(env)


def compose(header: Optional[str], body: str, trailer: list[str]) -> str:
    """
    Join header, body and trailing link lines within the content limit. The
    body is what gets truncated; the header and link lines are kept whole.
    """
    limit = constants.MESSAGE_CONTENT_MAX
    head = header or ""
    tail = "\n".join(trailer)
    fixed = len(head) + len(tail) + (1 if head else 0) + (1 if tail else 0)
    room = limit - fixed
    if body and len(body) > room:
        body = truncate(body, room) if room > 0 else ""
    parts = [p for p in (head, body, tail) if p]
    return truncate("\n".join(parts), limit)


class MessageRelayPipeline:
    def __init__(
        self,
        store: CorrespondenceStore,
        history: DispatchHistory,
        tracker: AccessFailureTracker,
        mentions: MentionResolver,
        references: ReferenceResolver,
        attachments: AttachmentFetcher,
        *,
        source: Optional[SourceConnector] = None,
        mirror_reactions: bool = True,
        placeholder_user: str = constants.DEFAULT_PLACEHOLDER_USER,
        default_avatar_url: Optional[str] = None,
        role_mention_sink: Optional[RoleMentionSink] = None,
    ):
        self.store = store
        self.history = history
        self.tracker = tracker
        self.mentions = mentions
        self.references = references
        self.attachments = attachments
        self.source = source
        self.mirror_reactions = mirror_reactions
        self.placeholder_user = placeholder_user
        self.default_avatar_url = default_avatar_url
        self.role_mention_sink = role_mention_sink

    def mirror_channel(self, envelope: RelayEnvelope) -> tuple[Optional[int], Optional[str]]:
        """(mirror channel id, skip reason); exactly one of the two is set."""
        cid, gid = envelope.source_channel_id, envelope.source_guild_id
        if self.store.is_manually_deleted(cid, gid, MappingKind.CHANNEL):
            return None, "manually deleted"
        if self.tracker.is_blacklisted(cid, gid):
            return None, "blacklisted"
        mirror = self.store.resolve(cid, gid, MappingKind.CHANNEL)
        if mirror is None:
            return None, "unmapped"
        return mirror, None

    async def relay(
        self,
        envelope: RelayEnvelope,
        pair: GuildPair,
        target: TargetConnector,
    ) -> DispatchResult:
        result = DispatchResult(source_message_id=envelope.source_message_id)
        mirror_id, skip = self.mirror_channel(envelope)
        if skip is None and self.history.lookup(envelope.source_message_id) is not None:
            # replays and catch-up fetches can overlap with live delivery
            skip = "already mirrored"
        if skip:
            result.skipped = skip
            logger.debug(
                "Skipping message %s from channel %s: %s",
                envelope.source_message_id,
                envelope.source_channel_id,
                skip,
            )
            return result
        result.mirror_channel_id = mirror_id

        # mentions
        texts = [envelope.content] + [str(e) for e in envelope.embeds]
        try:
            users = await self.mentions.user_names(
                envelope, texts, self.source.fetch_user if self.source else None
            )
            result.outcomes["mentions"] = StageOutcome.ok(users)
        except Exception as e:
            logger.warning("[⚠️] Mention lookup failed for %s: %s", envelope.source_message_id, e)
            users = dict(envelope.user_names)
            result.outcomes["mentions"] = StageOutcome.degraded(users, str(e))
        role_mentions: list[RoleMention] = []

        def render(text: str) -> str:
            resolved = self.mentions.resolve(text, envelope, pair, users)
            role_mentions.extend(resolved.role_mentions)
            return resolved.text

        # reference
        ref_outcome = await self.references.resolve(envelope)
        result.outcomes["reference"] = ref_outcome
        header = render(ref_outcome.value) if ref_outcome.value else None

        # embeds
        try:
            embeds = EmbedBuilder(render).build(envelope.embeds)
            if embeds.dropped or embeds.truncated:
                result.outcomes["embeds"] = StageOutcome.degraded(
                    embeds, f"{embeds.dropped} dropped, {embeds.truncated} truncated"
                )
            else:
                result.outcomes["embeds"] = StageOutcome.ok(embeds)
        except Exception as e:
            logger.warning("[⚠️] Embeds unusable for %s: %s", envelope.source_message_id, e)
            embeds = EmbedResult(dropped=len(envelope.embeds))
            result.outcomes["embeds"] = StageOutcome.degraded(embeds, str(e))

        # attachments
        att_outcome = await self.attachments.prepare(envelope.attachments)
        result.outcomes["attachments"] = att_outcome
        prepared: PreparedAttachments = att_outcome.value

        body = render(envelope.content)
        full = OutboundPayload(
            content=compose(header, body, embeds.urls + prepared.link_lines),
            embeds=embeds.embeds,
            files=prepared.files,
            username=envelope.author_name or self.placeholder_user,
            avatar_url=envelope.avatar_url or self.default_avatar_url,
        )
        if full.is_empty():
            full.content = placeholder_for(envelope)
            result.outcomes["content"] = StageOutcome.degraded(full.content, "empty payload")
            logger.debug(
                "Message %s had nothing to send; using placeholder %r",
                envelope.source_message_id,
                full.content,
            )

        stages = self._stages(envelope, full, header, body, embeds, prepared)
        await self._dispatch(envelope, stages, mirror_id, target, result)

        self.history.record(
            DispatchRecord(
                source_message_id=envelope.source_message_id,
                source_channel_id=envelope.source_channel_id,
                source_guild_id=envelope.source_guild_id,
                mirror_guild_id=pair.mirror_guild_id,
                mirror_channel_id=mirror_id,
                mirror_message_id=result.mirror_message_id,
            )
        )
        logger.info(
            "[💬] Relayed message %s -> #%s (%s)",
            envelope.source_message_id,
            mirror_id,
            result.stage.value,
        )

        if self.mirror_reactions:
            for reaction in envelope.reactions:
                await self._react(target, mirror_id, result.mirror_message_id, reaction)

        if role_mentions and self.role_mention_sink is not None:
            try:
                await self.role_mention_sink(envelope, result, role_mentions)
            except Exception:
                logger.exception("Role mention handler failed for %s", envelope.source_message_id)
        return result

    # ------------------------------------------------------------- dispatch
    def _stages(
        self,
        envelope: RelayEnvelope,
        full: OutboundPayload,
        header: Optional[str],
        body: str,
        embeds: EmbedResult,
        prepared: PreparedAttachments,
    ) -> list[tuple[DispatchStage, OutboundPayload]]:
        stages = [(DispatchStage.FULL, full)]

        if full.files:
            linked = PreparedAttachments(links=prepared.uploaded + prepared.links)
            content = compose(header, body, embeds.urls + linked.link_lines)
            stages.append((DispatchStage.LINKS, replace(full, content=content, files=[])))

        diagnostic = (
            f"-# ⚠️ Message could not be mirrored in full "
            f"({_plural(len(envelope.embeds), 'embed')}, "
            f"{_plural(len(envelope.attachments), 'attachment')})"
        )
        minimal = compose(header, body, [diagnostic])
        stages.append(
            (DispatchStage.MINIMAL, replace(full, content=minimal, embeds=[], files=[]))
        )
        return stages

    async def _dispatch(
        self,
        envelope: RelayEnvelope,
        stages: list[tuple[DispatchStage, OutboundPayload]],
        mirror_id: int,
        target: TargetConnector,
        result: DispatchResult,
    ) -> None:
        """
        Walk the stages. Only a rejected payload moves on to a smaller one:
        "too large" at any stage, or any rejection once the walk has started.
        Access, network and rate-limit failures end the walk at once and are
        never resent.
        """
        payload = stages[0][1]
        last: Optional[MirrorError] = None
        for stage, p in stages:
            if p.is_empty():
                continue
            try:
                result.mirror_message_id = await target.dispatch(mirror_id, p)
            except NotFound as e:
                # the mirror channel is gone; a diff pass decides what happens next
                e.context.update(self._context(envelope, payload, mirror_id))
                result.outcomes["dispatch"] = StageOutcome.failed(str(e))
                raise
            except MirrorError as e:
                last = e
                rejected = isinstance(e, PayloadTooLarge) or (
                    stage is not DispatchStage.FULL and isinstance(e, Unrecoverable)
                )
                if not rejected:
                    result.outcomes["dispatch"] = StageOutcome.failed(str(e))
                    raise Unrecoverable(
                        f"{stage.value} dispatch failed: {e}",
                        context=self._context(envelope, payload, mirror_id),
                    ) from e
                logger.warning(
                    "[⚠️] %s dispatch of %s rejected: %s",
                    stage.value,
                    envelope.source_message_id,
                    e,
                )
                continue
            result.stage = stage
            result.outcomes["dispatch"] = (
                StageOutcome.ok(stage)
                if stage is DispatchStage.FULL
                else StageOutcome.degraded(stage, str(last))
            )
            return

        result.outcomes["dispatch"] = StageOutcome.failed(str(last))
        raise Unrecoverable(
            "dispatch failed at every stage",
            context=self._context(envelope, payload, mirror_id),
        ) from last

    @staticmethod
    def _context(envelope: RelayEnvelope, payload: OutboundPayload, mirror_id: int) -> dict:
        return {
            "author": envelope.author_name or envelope.author_id,
            "source_channel_id": envelope.source_channel_id,
            "mirror_channel_id": mirror_id,
            "source_message_id": envelope.source_message_id,
            "content_length": len(envelope.content or ""),
            "embed_count": len(envelope.embeds),
            "attachment_bytes": sum(a.size for a in envelope.attachments),
        }

    # ------------------------------------------------------------ reactions
    async def _react(
        self,
        target: TargetConnector,
        channel_id: int,
        message_id: int,
        reaction: Reaction,
    ) -> bool:
        if reaction.is_custom and not target.has_emoji(reaction.emoji_id, reaction.name):
            logger.debug("Emoji %s not on mirror guild; reaction skipped", reaction.name)
            return False
        try:
            await target.add_reaction(
                channel_id, message_id, reaction.name, reaction.emoji_id
            )
        except MirrorError as e:
            logger.warning("[⚠️] Could not add reaction %s: %s", reaction.name, e)
            return False
        return True

    async def mirror_reaction(
        self,
        source_message_id: int,
        reaction: Reaction,
        target: TargetConnector,
    ) -> bool:
        """Add a live reaction to the already-mirrored counterpart, if there is one."""
        if not self.mirror_reactions:
            return False
        rec = self.history.lookup(source_message_id)
        if rec is None:
            logger.debug("Reaction on unmirrored message %s ignored", source_message_id)
            return False
        return await self._react(
            target, rec.mirror_channel_id, rec.mirror_message_id, reaction
        )
