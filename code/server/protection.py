# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import re
from typing import Iterable, Optional

from common import constants


class ProtectionList:
    """Channels on the mirror side that structural deletion must never touch."""

    def __init__(
        self,
        names: Iterable[str] = (),
        ids: Iterable[int] = (),
        patterns: Iterable[str] = (),
        *,
        include_defaults: bool = True,
    ):
        self.names = {n.strip().lower() for n in names if n and n.strip()}
        self.ids = {int(i) for i in ids}
        pats = list(patterns)
        if include_defaults:
            self.names |= set(constants.DEFAULT_PROTECTED_NAMES)
            pats = list(constants.DEFAULT_PROTECTED_PATTERNS) + pats
        self.patterns = [re.compile(p, re.IGNORECASE) for p in pats]

    @classmethod
    def from_config(cls, config) -> "ProtectionList":
        return cls(
            names=getattr(config, "PROTECTED_CHANNEL_NAMES", []) or [],
            ids=getattr(config, "PROTECTED_CHANNEL_IDS", []) or [],
        )

    def is_protected(self, name: Optional[str], entity_id: Optional[int] = None) -> bool:
        if entity_id is not None and int(entity_id) in self.ids:
            return True
        if not name:
            return False
        lowered = name.strip().lower()
        if lowered in self.names:
            return True
        return any(p.search(lowered) for p in self.patterns)

    def protect_id(self, entity_id: int) -> None:
        self.ids.add(int(entity_id))
