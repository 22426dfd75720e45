# =============================================================================
#  Copycord
#  Copyright (C) 2021 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import os
import re
import sys as _sys
import json as _json
import contextvars
from datetime import datetime, timezone


REDACT_KEYS = {"SERVER_TOKEN", "CLIENT_TOKEN"}
_AUTH_RX = re.compile(r"(Bot |Authorization['\"]?\s*[:=]\s*['\"]?)[\w.\-]{20,}")

pass_id_var = contextvars.ContextVar("pass_id", default="-")
scope_var = contextvars.ContextVar("scope", default="-")
guild_var = contextvars.ContextVar("guild", default="-")

_EXTRA_KEYS = (
    "guild_id",
    "channel_id",
    "message_id",
    "stage",
    "took_ms",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _redact_value(val):
    try:
        s = str(val)
        for k in REDACT_KEYS:
            envv = os.getenv(k)
            if envv and envv in s:
                s = s.replace(envv, "***REDACTED***")
        return _AUTH_RX.sub(r"\1***REDACTED***", s)
    except Exception:
        return "<unprintable>"


def _redact_obj(obj):
    if isinstance(obj, dict):
        return {
            k: ("***REDACTED***" if str(k) in REDACT_KEYS and v else v)
            for k, v in obj.items()
        }
    return obj


def _redact_arg(a):
    if isinstance(a, dict):
        return _redact_obj(a)
    if isinstance(a, str):
        return _redact_value(a)
    return a


class RedactFilter(logging.Filter):
    """Injects context + redacts secrets appearing in args/msg."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.pass_id = pass_id_var.get()
        record.scope = scope_var.get()
        record.guild = guild_var.get()
        if isinstance(record.args, dict):
            record.args = {k: _redact_arg(v) for k, v in record.args.items()}
        elif isinstance(record.args, (tuple, list)):
            new_args = [_redact_arg(a) for a in record.args]
            record.args = tuple(new_args) if isinstance(record.args, tuple) else new_args
        if isinstance(record.msg, str):
            record.msg = _redact_value(record.msg)
        return True


LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        mark = LEVEL_MARK.get(record.levelno, "•")
        scope = getattr(record, "scope", "-")
        pid = getattr(record, "pass_id", "-")
        guild = getattr(record, "guild", "-")
        msg = super().format(record)
        extras = []
        for k in _EXTRA_KEYS:
            v = getattr(record, k, None)
            if v not in (None, "", []):
                extras.append(f"{k}={v}")
        extras_s = f" | {' '.join(extras)}" if extras else ""
        return (
            f"{_now_iso()} {mark} {record.levelname:<8} [{scope}] "
            f"(pass={pid} guild={guild}) {msg}{extras_s}"
        )


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = {
            "time": _now_iso(),
            "lvl": record.levelname,
            "msg": super().format(record),
            "scope": getattr(record, "scope", "-"),
            "pass_id": getattr(record, "pass_id", "-"),
            "guild": getattr(record, "guild", "-"),
            "logger": record.name,
        }
        for k in _EXTRA_KEYS:
            v = getattr(record, k, None)
            if v not in (None, "", []):
                base[k] = v
        return _json.dumps(base, separators=(",", ":"), default=str)


class ContextAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name="copycord", **ctx):
    logger = logging.getLogger(name)
    return ContextAdapter(logger, dict(ctx))


def configure_app_logging():
    """
    Unified logging config with:
    - LOG_FORMAT: HUMAN (default) or JSON
    - LOG_LEVEL: DEBUG/INFO/etc.
    - redaction + pass/guild context on every record
    """
    fmt = os.getenv("LOG_FORMAT", "HUMAN").strip().upper()
    lvl = os.getenv("LOG_LEVEL", "INFO").strip().upper()

    root = logging.getLogger()
    root.handlers.clear()
    h = logging.StreamHandler(stream=_sys.stdout)
    h.setFormatter(
        JSONFormatter("%(message)s") if fmt == "JSON" else HumanFormatter("%(message)s")
    )
    h.addFilter(RedactFilter())
    root.addHandler(h)
    root.setLevel(getattr(logging, lvl, logging.INFO))

    quiet = logging.WARNING if root.level > logging.DEBUG else logging.INFO
    for name in ("discord", "discord.gateway", "discord.client", "websockets"):
        logging.getLogger(name).setLevel(quiet)
    return get_logger("copycord")
