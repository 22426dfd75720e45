# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from common import constants

logger = logging.getLogger("server.embeds")

_MEDIA_TYPES = ("gifv", "video", "image")


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    """Cut `text` to `limit` characters, ending with the truncation marker."""
    if text is None or len(text) <= limit:
        return text
    marker = constants.TRUNCATION_MARKER
    if limit <= len(marker):
        return text[:limit]
    return text[: limit - len(marker)] + marker


@dataclass
class EmbedResult:
    embeds: list[dict] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    dropped: int = 0
    truncated: int = 0


def _visible(e: dict) -> bool:
    if e.get("title") or e.get("description"):
        return True
    if (e.get("author") or {}).get("name") or (e.get("footer") or {}).get("text"):
        return True
    if (e.get("image") or {}).get("url") or (e.get("thumbnail") or {}).get("url"):
        return True
    return bool(e.get("fields"))


def _size(e: dict) -> int:
    n = len(e.get("title") or "") + len(e.get("description") or "")
    n += len((e.get("author") or {}).get("name") or "")
    n += len((e.get("footer") or {}).get("text") or "")
    for f in e.get("fields") or []:
        n += len(f.get("name") or "") + len(f.get("value") or "")
    return n


class EmbedBuilder:
    """
    Copies source embeds for a webhook send: mentions resolved per field,
    Discord's length limits enforced, and nothing empty left behind.
    """

    def __init__(self, render: Callable[[str], str]):
        self.render = render

    def _text(self, value, limit: int, result: EmbedResult) -> Optional[str]:
        if not value:
            return None
        out = self.render(str(value))
        cut = truncate(out, limit)
        if cut != out:
            result.truncated += 1
        return cut or None

    def _copy(self, raw: dict, result: EmbedResult) -> dict:
        e: dict = {}
        for key in ("type", "url", "timestamp", "color"):
            if raw.get(key) is not None:
                e[key] = raw[key]
        title = self._text(raw.get("title"), constants.EMBED_TITLE_MAX, result)
        if title:
            e["title"] = title
        desc = self._text(raw.get("description"), constants.EMBED_DESCRIPTION_MAX, result)
        if desc:
            e["description"] = desc

        author = raw.get("author") or {}
        name = self._text(author.get("name"), constants.EMBED_AUTHOR_NAME_MAX, result)
        if name:
            e["author"] = {k: v for k, v in author.items() if k in ("url", "icon_url")}
            e["author"]["name"] = name

        footer = raw.get("footer") or {}
        text = self._text(footer.get("text"), constants.EMBED_FOOTER_MAX, result)
        if text:
            e["footer"] = {"text": text}
            if footer.get("icon_url"):
                e["footer"]["icon_url"] = footer["icon_url"]

        for key in ("image", "thumbnail"):
            url = (raw.get(key) or {}).get("url")
            if url:
                e[key] = {"url": url}

        fields = []
        for f in (raw.get("fields") or [])[: constants.EMBED_FIELDS_MAX]:
            fname = self._text(f.get("name"), constants.EMBED_FIELD_NAME_MAX, result)
            fvalue = self._text(f.get("value"), constants.EMBED_FIELD_VALUE_MAX, result)
            if not fname and not fvalue:
                continue
            fields.append(
                {
                    "name": fname or "\u200b",
                    "value": fvalue or "\u200b",
                    "inline": bool(f.get("inline")),
                }
            )
        if fields:
            e["fields"] = fields
        return e

    def build(self, raw_embeds: list[dict]) -> EmbedResult:
        result = EmbedResult()
        budget = constants.EMBED_TOTAL_MAX
        for raw in raw_embeds or []:
            if not isinstance(raw, dict):
                continue
            page_url = raw.get("url")
            # media previews render from the bare link; re-sending them as embeds shows nothing
            if raw.get("type") in _MEDIA_TYPES and page_url:
                if page_url not in result.urls:
                    result.urls.append(page_url)
                continue

            e = self._copy(raw, result)
            if not _visible(e):
                result.dropped += 1
                logger.debug("Dropped embed with no visible fields")
                continue
            if len(result.embeds) >= constants.EMBEDS_PER_MESSAGE:
                result.dropped += 1
                continue

            size = _size(e)
            if size > budget:
                if budget > len(constants.TRUNCATION_MARKER) and e.get("description"):
                    over = size - budget
                    keep = max(len(e["description"]) - over, 0)
                    e["description"] = truncate(e["description"], keep)
                    result.truncated += 1
                if _size(e) > budget or not _visible(e):
                    result.dropped += 1
                    logger.info("[✂️] Dropped embed over the %d character total", constants.EMBED_TOTAL_MAX)
                    continue
            budget -= _size(e)
            result.embeds.append(e)
        return result
