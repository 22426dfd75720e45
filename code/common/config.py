# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from dataclasses import dataclass
from typing import Optional

from common import constants
from common.db import DBManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuildPair:
    source_guild_id: int
    mirror_guild_id: int

    @property
    def key(self) -> str:
        return f"{self.source_guild_id}:{self.mirror_guild_id}"


class Config:
    def __init__(
        self,
        db: Optional[DBManager] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )
        self.DB_PATH = os.getenv("DB_PATH", "/data/data.db")
        self.db = db or DBManager(self.DB_PATH)

        # --- prefer DB value if set, else environment ---
        def _get_from_db(key: str):
            try:
                return self.db.get_config(key) or None
            except Exception:
                return None

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = _get_from_db(key)
            if v is None or (isinstance(v, str) and v.strip() == ""):
                v = os.getenv(key, env_default)
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except (TypeError, ValueError):
                return int(env_default)

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except (TypeError, ValueError):
                return float(env_default)

        def _bool(key: str, env_default: str = "false") -> bool:
            raw = (_str(key, env_default) or "").strip().lower()
            return raw in ("1", "true", "yes", "y", "on")

        def _csv(key: str) -> list[str]:
            return [t.strip() for t in (_str(key, "") or "").split(",") if t.strip()]

        # --- Tokens / IDs ---
        self.SERVER_TOKEN = _str("SERVER_TOKEN")
        self.CLIENT_TOKEN = _str("CLIENT_TOKEN")
        self.HOST_GUILD_ID = _int("HOST_GUILD_ID", "0")
        self.CLONE_GUILD_ID = _int("CLONE_GUILD_ID", "0")

        # Inbound event stream from the source gateway process
        self.WS_HOST = _str("WS_HOST", "0.0.0.0") or "0.0.0.0"
        self.WS_PORT = _int("WS_PORT", "8765")

        # --- Schedules ---
        self.SYNC_RUN_AT = _str("SYNC_RUN_AT", "03:30") or "03:30"
        self.BLACKLIST_CUTOFF = (
            _str("BLACKLIST_CUTOFF", constants.BLACKLIST_CUTOFF)
            or constants.BLACKLIST_CUTOFF
        )
        self.TIMEZONE = _str("TIMEZONE", os.getenv("TZ", "UTC")) or "UTC"
        self.STRUCTURE_DEBOUNCE_SECONDS = _float("STRUCTURE_DEBOUNCE_SECONDS", "5")

        # --- Limits ---
        self.MAX_FAILED_ATTEMPTS = max(
            1, _int("MAX_FAILED_ATTEMPTS", str(constants.MAX_FAILED_ATTEMPTS))
        )
        self.MAX_ATTACHMENT_BYTES = _int(
            "MAX_ATTACHMENT_BYTES", str(constants.FILE_SIZE_SAFE)
        )
        self.MAX_BATCH_BYTES = _int(
            "MAX_BATCH_BYTES", str(constants.WEBHOOK_BATCH_SAFE)
        )
        self.MAX_FILES_PER_MESSAGE = min(
            constants.FILES_PER_MESSAGE,
            _int("MAX_FILES_PER_MESSAGE", str(constants.FILES_PER_MESSAGE)),
        )
        self.DISPATCH_TIMEOUT_SECONDS = _float("DISPATCH_TIMEOUT_SECONDS", "30")
        self.MIN_CALL_SPACING = _float("MIN_CALL_SPACING", "0.5")

        # --- Feature flags ---
        self.DELETE_CHANNELS = _bool("DELETE_CHANNELS", "true")
        self.DELETE_ROLES = _bool("DELETE_ROLES", "true")
        self.CLONE_ROLES = _bool("CLONE_ROLES", "true")
        self.MIRROR_REACTIONS = _bool("MIRROR_REACTIONS", "true")

        # --- Protection allow-list extensions ---
        self.PROTECTED_CHANNEL_NAMES = [n.lower() for n in _csv("PROTECTED_CHANNEL_NAMES")]
        self.PROTECTED_CHANNEL_IDS = []
        for tok in _csv("PROTECTED_CHANNEL_IDS"):
            try:
                self.PROTECTED_CHANNEL_IDS.append(int(tok))
            except ValueError:
                self.logger.warning("[⚠️] Ignoring invalid protected channel id %r", tok)

        # --- Placeholders ---
        self.PLACEHOLDER_USER = _str(
            "PLACEHOLDER_USER", constants.DEFAULT_PLACEHOLDER_USER
        )
        self.PLACEHOLDER_ROLE = _str(
            "PLACEHOLDER_ROLE", constants.DEFAULT_PLACEHOLDER_ROLE
        )
        self.PLACEHOLDER_CHANNEL = _str(
            "PLACEHOLDER_CHANNEL", constants.DEFAULT_PLACEHOLDER_CHANNEL
        )
        self.DEFAULT_WEBHOOK_AVATAR_URL = _str("DEFAULT_WEBHOOK_AVATAR_URL", "") or None

    def guild_pairs(self) -> list[GuildPair]:
        """
        All enabled (source, mirror) guild pairs. The DB table wins; the
        HOST_GUILD_ID/CLONE_GUILD_ID env pair is the fallback.
        """
        # a source guild mirrors into exactly one target guild
        seen: dict[int, GuildPair] = {}
        for r in self.db.get_guild_pairs():
            src = int(r["original_guild_id"])
            if src in seen:
                self.logger.warning(
                    "[⚠️] Source guild %s already mirrors into %s; ignoring %s",
                    src,
                    seen[src].mirror_guild_id,
                    r["cloned_guild_id"],
                )
                continue
            seen[src] = GuildPair(src, int(r["cloned_guild_id"]))
        pairs = list(seen.values())
        if not pairs and self.HOST_GUILD_ID and self.CLONE_GUILD_ID:
            pairs.append(GuildPair(self.HOST_GUILD_ID, self.CLONE_GUILD_ID))
        return pairs
