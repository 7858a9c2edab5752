"""Per-session metrics cache shared by status ticks and session end.

The status line runs on every tick and sees the freshest metrics; the
session-end hook may not (some hosts deliver a sparse payload on exit). The
status tick therefore stores its payload here and session end consumes it.

Architecture:
    status tick (many per session)
            | write(session_id, payload), high-watermark on used_percentage
            v
    <cache_dir>/<session_id>.json
            |
            v (once)
    session end: read_and_consume(session_id)
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import TYPE_CHECKING, Any

from ccmetrics.events import MetricsSource
from ccmetrics.metrics.snapshot import SessionMetricsSnapshot

if TYPE_CHECKING:
    from ccmetrics.store import KeyValueStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def _used_percentage(payload: dict[str, Any]) -> float:
    context = payload.get("context_window")
    if not isinstance(context, dict):
        return 0.0
    value = context.get("used_percentage")
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class MetricsCache:
    """Stores the latest status payload for each live session."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _load(self, session_id: str) -> dict[str, Any] | None:
        raw = self.store.get(session_id)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def write(self, session_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Cache a status payload, never regressing a real context reading.

        If the incoming used_percentage is exactly 0 and the cached one is
        non-zero, the cached percentage is kept and every other field comes
        from the incoming payload. Otherwise the payload overwrites wholesale.

        Args:
            session_id: Session the payload belongs to.
            payload: Decoded status payload.

        Returns:
            The payload as written.
        """
        incoming_pct = _used_percentage(payload)
        to_write = payload

        if incoming_pct == 0:
            existing = self._load(session_id)
            old_pct = _used_percentage(existing) if existing else 0.0
            if old_pct != 0:
                logger.debug(f"HIGH-WATERMARK: incoming is 0, keeping old={old_pct}")
                to_write = dict(payload)
                context = payload.get("context_window")
                context = dict(context) if isinstance(context, dict) else {}
                context["used_percentage"] = old_pct
                to_write["context_window"] = context
        else:
            logger.debug(f"session={session_id} writing incoming_pct={incoming_pct}")

        self.store.put(session_id, json.dumps(to_write).encode())
        return to_write

    def read_and_consume(self, session_id: str) -> SessionMetricsSnapshot | None:
        """Return the cached snapshot and delete the entry.

        The entry is deleted whether or not it is valid; an invalid entry
        (undecodable, or without a model) yields None so the caller falls
        back to the next source.
        """
        raw = self.store.get(session_id)
        if raw is None:
            return None

        self.store.delete(session_id)
        logger.info(f"Reading cached metrics for session {session_id}")

        try:
            data = json.loads(raw)
        except ValueError:
            data = None

        if not isinstance(data, dict) or data.get("model") is None:
            logger.warning(
                f"Cache file invalid/empty for session {session_id}, trying stdin fallback"
            )
            return None

        logger.debug(f"cache valid, context_window: {data.get('context_window', {})}")
        return SessionMetricsSnapshot.from_payload(
            data, session_id=session_id, source=MetricsSource.CACHE
        )

    def collect_garbage(self, max_age_days: int = 30, now: float | None = None) -> int:
        """Delete entries untouched for longer than max_age_days.

        Returns:
            Number of entries removed.
        """
        now = time.time() if now is None else now
        cutoff = now - max_age_days * SECONDS_PER_DAY
        removed = 0

        for key in self.store.keys():
            modified = self.store.modified_at(key)
            if modified is not None and modified < cutoff:
                if self.store.delete(key):
                    removed += 1

        if removed:
            logger.info(f"Removed {removed} stale cache entries older than {max_age_days} days")
        return removed
