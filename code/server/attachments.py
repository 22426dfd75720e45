# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import aiohttp

from common import constants
from common.errors import MirrorError, TransientNetwork, classify, from_status
from server.models import Attachment, OutboundFile, StageOutcome

logger = logging.getLogger("server.attachments")


def human_size(n: int) -> str:
    if n >= constants.MB:
        return f"{n / constants.MB:.1f} MB"
    if n >= 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n} B"


def link_for(att: Attachment) -> str:
    """Markdown stand-in for a file that is not re-uploaded."""
    if att.size:
        return f"📎 [{att.filename}]({att.url}) ({human_size(att.size)})"
    return f"📎 [{att.filename}]({att.url})"


@dataclass
class AttachmentPlan:
    uploads: list[Attachment] = field(default_factory=list)
    links: list[Attachment] = field(default_factory=list)


def bucket(
    attachments: Iterable[Attachment],
    *,
    per_item: int = constants.FILE_SIZE_SAFE,
    per_batch: int = constants.WEBHOOK_BATCH_SAFE,
    max_files: int = constants.FILES_PER_MESSAGE,
) -> AttachmentPlan:
    """
    Split attachments into re-uploads and links. An item goes to the upload
    set only if it fits the per-item ceiling and the batch still has room.
    """
    plan = AttachmentPlan()
    total = 0
    for att in attachments:
        if not att.url:
            logger.debug("Attachment %s has no URL; skipping", att.filename)
            continue
        if att.size > per_item:
            plan.links.append(att)
            continue
        if len(plan.uploads) >= max_files or total + att.size > per_batch:
            plan.links.append(att)
            continue
        plan.uploads.append(att)
        total += att.size
    return plan


@dataclass
class PreparedAttachments:
    files: list[OutboundFile] = field(default_factory=list)
    links: list[Attachment] = field(default_factory=list)
    uploaded: list[Attachment] = field(default_factory=list)

    @property
    def link_lines(self) -> list[str]:
        return [link_for(a) for a in self.links]

    @property
    def total_bytes(self) -> int:
        return sum(f.size for f in self.files)


class AttachmentFetcher:
    """Downloads the upload half of a plan; anything that goes wrong becomes a link."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        per_item: int = constants.FILE_SIZE_SAFE,
        per_batch: int = constants.WEBHOOK_BATCH_SAFE,
        max_files: int = constants.FILES_PER_MESSAGE,
        attempts: int = 3,
        base_delay: float = 1.0,
    ):
        self.session = session
        self.per_item = per_item
        self.per_batch = per_batch
        self.max_files = max_files
        self.attempts = max(1, attempts)
        self.base_delay = base_delay

    @staticmethod
    def timeout_for(att: Attachment) -> float:
        # one millisecond per KiB, never under thirty seconds
        return max(30.0, (att.size / 1024) / 1000)

    async def download(self, att: Attachment) -> bytes:
        last: Optional[MirrorError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                async with self.session.get(
                    att.url, timeout=aiohttp.ClientTimeout(total=self.timeout_for(att))
                ) as resp:
                    if resp.status >= 400:
                        raise from_status(
                            resp.status,
                            resp.reason or "download failed",
                            context={"filename": att.filename},
                        )
                    return await resp.read()
            except Exception as e:
                err = classify(e, filename=att.filename)
                if not isinstance(err, TransientNetwork):
                    if err is e:
                        raise
                    raise err from e
                last = err
                if attempt < self.attempts:
                    delay = self.base_delay * (2 ** (attempt - 1))
                    logger.debug(
                        "Download of %s failed (attempt %d/%d); retrying in %.1fs",
                        att.filename,
                        attempt,
                        self.attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
        raise last

    async def prepare(self, attachments: Iterable[Attachment]) -> StageOutcome:
        plan = bucket(
            attachments,
            per_item=self.per_item,
            per_batch=self.per_batch,
            max_files=self.max_files,
        )
        out = PreparedAttachments(links=list(plan.links))
        if not plan.uploads:
            if out.links:
                return StageOutcome.degraded(out, f"{len(out.links)} attachment(s) linked")
            return StageOutcome.ok(out)

        results = await asyncio.gather(
            *(self.download(a) for a in plan.uploads), return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning(
                "[⚠️] %d of %d attachment download(s) failed; sending the batch as links (%s)",
                len(failures),
                len(plan.uploads),
                failures[0],
            )
            out.links = list(plan.uploads) + out.links
            return StageOutcome.degraded(out, f"download failed: {failures[0]}")

        total = 0
        for att, data in zip(plan.uploads, results):
            # the declared size is not trusted
            if len(data) > self.per_item or total + len(data) > self.per_batch:
                logger.info(
                    "[📎] %s is %s after download; linking instead",
                    att.filename,
                    human_size(len(data)),
                )
                out.links.append(att)
                continue
            total += len(data)
            out.files.append(OutboundFile(att.filename, data))
            out.uploaded.append(att)

        if out.links:
            return StageOutcome.degraded(out, f"{len(out.links)} attachment(s) linked")
        return StageOutcome.ok(out)
