# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Reply and forward headers.

Each message reference is resolved by walking an ordered ladder of
strategies, best first. A strategy answers with a StageOutcome; the first
usable answer wins. The last rung always succeeds, so a reference never
fails a relay.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from common import constants
from common.errors import MirrorError
from server.connectors import SourceConnector
from server.correspondence import DispatchHistory
from server.models import MessageReference, ReferenceKind, RelayEnvelope, StageOutcome

logger = logging.getLogger("server.references")


@dataclass(frozen=True)
class _Style:
    emoji: str
    label: str


REPLY = _Style("↪️", "Reply")
FORWARD = _Style("🔄", "Forward")
EXTERNAL_FORWARD = _Style("📨", "External forward")


def style_for(envelope: RelayEnvelope) -> _Style:
    ref = envelope.reference
    if ref is None or ref.kind is ReferenceKind.REPLY:
        return REPLY
    if ref.guild_id is not None and ref.guild_id != envelope.source_guild_id:
        return EXTERNAL_FORWARD
    return FORWARD


def excerpt(text: Optional[str], limit: int = constants.REFERENCE_EXCERPT_MAX) -> str:
    """Quote `text` as a markdown block, capped at `limit` characters."""
    text = (text or "").strip()
    if not text:
        return ""
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return "\n".join(f"> {line}" if line else ">" for line in text.splitlines())


Strategy = Callable[[RelayEnvelope, _Style], Awaitable[StageOutcome]]


class ReferenceResolver:
    def __init__(
        self,
        history: DispatchHistory,
        source: Optional[SourceConnector] = None,
    ):
        self.history = history
        self.source = source

    def ladder(self, envelope: RelayEnvelope) -> list[Strategy]:
        ref = envelope.reference
        if ref is not None and ref.kind is ReferenceKind.FORWARD:
            return [self._from_history, self._external_link, self._generic]
        return [self._from_history, self._from_source, self._inline, self._generic]

    async def resolve(self, envelope: RelayEnvelope) -> StageOutcome:
        """Header line(s) for the envelope's reference; ok(None) when there is none."""
        if envelope.reference is None:
            return StageOutcome.ok(None)
        style = style_for(envelope)
        reasons = []
        for strategy in self.ladder(envelope):
            try:
                outcome = await strategy(envelope, style)
            except Exception as e:
                logger.warning(
                    "[⚠️] Reference strategy %s failed for message %s: %s",
                    strategy.__name__,
                    envelope.source_message_id,
                    e,
                )
                reasons.append(f"{strategy.__name__}: {e}")
                continue
            if outcome.usable:
                if reasons:
                    why = "; ".join(r for r in [*reasons, outcome.reason] if r)
                    outcome = StageOutcome(outcome.status, outcome.value, why)
                return outcome
            reasons.append(outcome.reason)
        return StageOutcome.degraded(f"{style.emoji} {style.label}", "; ".join(reasons))

    # ------------------------------------------------------------ strategies
    async def _from_history(self, envelope: RelayEnvelope, style: _Style) -> StageOutcome:
        ref: MessageReference = envelope.reference
        rec = self.history.lookup(ref.message_id)
        if rec is None:
            return StageOutcome.failed("not mirrored yet")
        link = constants.MESSAGE_LINK_FMT.format(
            guild_id=rec.mirror_guild_id,
            channel_id=rec.mirror_channel_id,
            message_id=rec.mirror_message_id,
        )
        return StageOutcome.ok(f"{style.emoji} [{style.label}]({link})")

    async def _from_source(self, envelope: RelayEnvelope, style: _Style) -> StageOutcome:
        ref: MessageReference = envelope.reference
        if self.source is None:
            return StageOutcome.failed("no source connector")
        try:
            original = await self.source.fetch_message(ref.channel_id, ref.message_id)
        except MirrorError as e:
            return StageOutcome.failed(f"fetch failed: {type(e).__name__}")
        author = original.get("author") or {}
        name = author.get("global_name") or author.get("username") or ref.author
        quote = excerpt(original.get("content"))
        header = f"{style.emoji} {style.label} to **{name}**" if name else f"{style.emoji} {style.label}"
        return StageOutcome.ok(f"{header}\n{quote}" if quote else header)

    async def _inline(self, envelope: RelayEnvelope, style: _Style) -> StageOutcome:
        ref: MessageReference = envelope.reference
        quote = excerpt(ref.content)
        if not quote:
            return StageOutcome.failed("no local content")
        header = (
            f"{style.emoji} {style.label} to **{ref.author}**"
            if ref.author
            else f"{style.emoji} {style.label}"
        )
        return StageOutcome.degraded(f"{header}\n{quote}", "inline excerpt")

    async def _external_link(self, envelope: RelayEnvelope, style: _Style) -> StageOutcome:
        ref: MessageReference = envelope.reference
        if style is not EXTERNAL_FORWARD or not ref.guild_id:
            return StageOutcome.failed("not external")
        link = constants.MESSAGE_LINK_FMT.format(
            guild_id=ref.guild_id, channel_id=ref.channel_id, message_id=ref.message_id
        )
        return StageOutcome.degraded(f"{style.emoji} [{style.label}]({link})", "original link")

    async def _generic(self, envelope: RelayEnvelope, style: _Style) -> StageOutcome:
        return StageOutcome.degraded(f"{style.emoji} {style.label}", "generic marker")
