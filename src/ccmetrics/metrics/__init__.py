"""Session metrics for ccmetrics.

This package turns the host's cumulative session counters into one
per-segment record.

Architecture:
    status tick payload
            | MetricsCache.write (high-watermark)
            v
    <state_dir>/metrics_cache/<session_id>.json
            |
            v (session end)
    resolve_snapshot: cache -> stdin -> transcript
            |
            v
    BaselineTracker.compute_delta (skipped for transcript source)
            |
            v
    build_record + should_skip -> MetricsRecord
"""

from ccmetrics.metrics.snapshot import SessionMetricsSnapshot, UNKNOWN_MODEL
from ccmetrics.metrics.cache import MetricsCache
from ccmetrics.metrics.baseline import BaselineCheckpoint, BaselineTracker, checkpoint_key
from ccmetrics.metrics.transcript import TranscriptSummary, scan_transcript
from ccmetrics.metrics.resolver import resolve_snapshot
from ccmetrics.metrics.record import MetricsRecord, build_record, should_skip

__all__ = [
    # Snapshots
    "SessionMetricsSnapshot",
    "UNKNOWN_MODEL",
    "MetricsCache",
    # Segments
    "BaselineCheckpoint",
    "BaselineTracker",
    "checkpoint_key",
    # Transcript
    "TranscriptSummary",
    "scan_transcript",
    # Records
    "resolve_snapshot",
    "MetricsRecord",
    "build_record",
    "should_skip",
]
