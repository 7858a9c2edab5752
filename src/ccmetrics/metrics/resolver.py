"""Pick the metrics source for a finished session.

Tiers, first usable result wins:
    1. cache       latest status-tick payload (MetricsCache)
    2. stdin       the session-end payload itself
    3. transcript  model and token sums rebuilt from the transcript, only
                   when tiers 1-2 report no tokens and no model
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from ccmetrics.events import MetricsSource
from ccmetrics.metrics.snapshot import SessionMetricsSnapshot
from ccmetrics.metrics.transcript import TranscriptSummary, scan_transcript

if TYPE_CHECKING:
    from ccmetrics.events import HookPayload
    from ccmetrics.metrics.cache import MetricsCache

logger = logging.getLogger(__name__)


def resolve_snapshot(
    cache: MetricsCache,
    payload: HookPayload,
    transcript: TranscriptSummary | None = None,
) -> SessionMetricsSnapshot:
    """Resolve the cumulative snapshot for a session-end event.

    Args:
        cache: Metrics cache; the session's entry is consumed.
        payload: Session-end hook payload.
        transcript: Pre-scanned transcript. Scanned from
                    payload.transcript_path when omitted.

    Returns:
        Snapshot tagged with the tier that produced it.
    """
    snapshot = None
    if payload.session_id:
        snapshot = cache.read_and_consume(payload.session_id)

    if snapshot is None:
        logger.info("Extracting metrics from stdin (cache unavailable)")
        snapshot = SessionMetricsSnapshot.from_payload(
            payload.raw, session_id=payload.session_id, source=MetricsSource.STDIN
        )

    if not snapshot.is_empty:
        return snapshot

    if transcript is None:
        transcript = scan_transcript(payload.transcript_path)

    if not transcript.has_usage:
        return snapshot

    logger.info(
        f"Reconstructed metrics from transcript: model={transcript.model} "
        f"in={transcript.input_tokens} out={transcript.output_tokens}"
    )
    return replace(
        snapshot,
        model=transcript.model or snapshot.model,
        input_tokens=transcript.input_tokens,
        output_tokens=transcript.output_tokens,
        source=MetricsSource.TRANSCRIPT,
    )
