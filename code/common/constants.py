# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across Copycord services."""

# Discord platform limits
MESSAGE_CONTENT_MAX = 2000
EMBED_TOTAL_MAX = 6000
EMBED_TITLE_MAX = 256
EMBED_DESCRIPTION_MAX = 4096
EMBED_FIELD_NAME_MAX = 256
EMBED_FIELD_VALUE_MAX = 1024
EMBED_FOOTER_MAX = 2048
EMBED_AUTHOR_NAME_MAX = 256
EMBEDS_PER_MESSAGE = 10
EMBED_FIELDS_MAX = 25
FILES_PER_MESSAGE = 10
WEBHOOK_USERNAME_MAX = 80

MB = 1024 * 1024
FILE_SIZE_SAFE = 7 * MB
WEBHOOK_BATCH_SAFE = int(7.5 * MB)

TRUNCATION_MARKER = "...\n*[message truncated: too long]*"
REFERENCE_EXCERPT_MAX = 200

# Access failures
MAX_FAILED_ATTEMPTS = 2
BLACKLIST_CUTOFF = "03:30"

# Bounded in-memory caches
CHANNEL_CACHE_MAX = 2000
ROLE_CACHE_MAX = 500
DISPATCH_HISTORY_MAX = 5000
PENDING_PER_CHANNEL_MAX = 100

# Catch-up after a channel becomes readable again
BACKFILL_MAX_MESSAGES = 100

MAX_ROLES = 250

DISCORD_API_BASE = "https://discord.com/api/v10"
MESSAGE_LINK_FMT = "https://discord.com/channels/{guild_id}/{channel_id}/{message_id}"
CHANNEL_LINK_FMT = "https://discord.com/channels/{guild_id}/{channel_id}"

DEFAULT_PLACEHOLDER_USER = "Member"
DEFAULT_PLACEHOLDER_ROLE = "Members"
DEFAULT_PLACEHOLDER_CHANNEL = "unknown-channel"

DEFAULT_PROTECTED_NAMES = frozenset(
    {
        "newroom",
        "error",
        "roles-logs",
        "admin-logs",
        "members-log",
        "members-logs",
        "commands",
        "chat-staff",
        "roles",
        "mentions-logs",
        "notifications",
        "logs",
        "bot-logs",
        "system-logs",
        "activity-logs",
    }
)

DEFAULT_PROTECTED_PATTERNS = (
    r"^mentions?-logs?$",
    r"^notifications?$",
    r"^logs?$",
    r"^admin-",
    r"^bot-",
    r"^system-",
    r"-logs?$",
)
