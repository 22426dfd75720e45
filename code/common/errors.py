# =============================================================================
#  Copycord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Error taxonomy shared by the diff engine, the relay pipeline and the connectors.

Library exceptions (py-cord, aiohttp, asyncio timeouts) are mapped onto these
classes by :func:`classify` so callers branch on one vocabulary.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

import aiohttp
import discord

# Discord JSON error codes
_ACCESS_CODES = {50001, 50013, 20001}
_NOT_FOUND_CODES = {10003, 10004, 10008, 10011, 10015}
_TOO_LARGE_CODES = {40005}


class MirrorError(Exception):
    """Base class; `context` carries whatever the raiser knew at the time."""

    def __init__(self, message: str = "", *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        ctx = " ".join(f"{k}={v!r}" for k, v in self.context.items())
        return f"{base} ({ctx})" if base else ctx


class AccessDenied(MirrorError):
    pass


class NotFound(MirrorError):
    pass


class PayloadTooLarge(MirrorError):
    pass


class RateLimited(MirrorError):
    def __init__(self, message: str = "", *, retry_after: float = 1.0, context=None):
        super().__init__(message, context=context)
        self.retry_after = max(0.0, float(retry_after))


class TransientNetwork(MirrorError):
    pass


class InFlightTimeout(TransientNetwork):
    """A non-idempotent call outlived its timeout and may still land; never retried."""


class Unrecoverable(MirrorError):
    pass


def from_status(
    status: int,
    message: str = "",
    *,
    code: Optional[int] = None,
    retry_after: Optional[float] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> MirrorError:
    """Build the taxonomy error for an HTTP status / Discord error code."""
    if status == 429:
        return RateLimited(message, retry_after=retry_after or 1.0, context=context)
    if status in (401, 403) or code in _ACCESS_CODES:
        return AccessDenied(message, context=context)
    if status == 404 or code in _NOT_FOUND_CODES:
        return NotFound(message, context=context)
    if status == 413 or code in _TOO_LARGE_CODES:
        return PayloadTooLarge(message, context=context)
    if status >= 500:
        return TransientNetwork(message, context=context)
    return Unrecoverable(message, context=context)


def _retry_after_of(exc: discord.HTTPException) -> Optional[float]:
    resp = getattr(exc, "response", None)
    headers = getattr(resp, "headers", None) or {}
    raw = headers.get("Retry-After") or headers.get("X-RateLimit-Reset-After")
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def classify(exc: BaseException, **context: Any) -> MirrorError:
    """
    Map any exception raised while talking to Discord onto the taxonomy.
    Taxonomy errors pass through with the extra context merged in.
    """
    if isinstance(exc, MirrorError):
        exc.context.update({k: v for k, v in context.items() if k not in exc.context})
        return exc

    text = str(exc) or exc.__class__.__name__
    if isinstance(exc, discord.Forbidden):
        err: MirrorError = AccessDenied(text, context=context)
    elif isinstance(exc, discord.NotFound):
        err = NotFound(text, context=context)
    elif isinstance(exc, discord.HTTPException):
        err = from_status(
            int(getattr(exc, "status", 0) or 0),
            text,
            code=getattr(exc, "code", None),
            retry_after=_retry_after_of(exc),
            context=context,
        )
    elif isinstance(exc, aiohttp.ClientResponseError):
        err = from_status(exc.status, text, context=context)
    elif isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        err = TransientNetwork(text, context=context)
    else:
        err = Unrecoverable(text, context=context)
    err.__cause__ = exc
    return err
