"""Per-segment deltas across conversation resets.

The host reports cumulative counters that keep growing across a reset
(`/clear`), while the session id changes. To record per-segment metrics, the
cumulative values seen at a reset are saved as a checkpoint keyed by the
workspace path; the next segment in the same workspace subtracts it.

    segment A ends, reason=clear  -> submit A - (no checkpoint), save A
    segment B ends, reason=other  -> submit B - A, delete checkpoint
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from ccmetrics.events import EndReason

if TYPE_CHECKING:
    from ccmetrics.metrics.snapshot import SessionMetricsSnapshot
    from ccmetrics.store import KeyValueStore

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "_clear_baseline_"


def checkpoint_key(workspace_path: str) -> str:
    """Stable store key for a workspace path."""
    digest = hashlib.md5(workspace_path.encode()).hexdigest()[:8]
    return f"{CHECKPOINT_PREFIX}{digest}"


@dataclass
class BaselineCheckpoint:
    """Cumulative values observed at the last reset in a workspace."""

    cost_usd: Decimal
    duration_ms: int
    input_tokens: int
    output_tokens: int
    saved_at: int = 0

    @classmethod
    def from_snapshot(
        cls, snapshot: SessionMetricsSnapshot, saved_at: int | None = None
    ) -> BaselineCheckpoint:
        return cls(
            cost_usd=snapshot.cost_usd,
            duration_ms=snapshot.duration_ms,
            input_tokens=snapshot.input_tokens,
            output_tokens=snapshot.output_tokens,
            saved_at=int(time.time()) if saved_at is None else saved_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["cost_usd"] = str(self.cost_usd)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BaselineCheckpoint:
        """Create from dictionary.

        Raises:
            ValueError: If a field is missing or not a finite number.
        """
        try:
            checkpoint = cls(
                cost_usd=Decimal(str(data["cost_usd"])),
                duration_ms=int(data["duration_ms"]),
                input_tokens=int(data["input_tokens"]),
                output_tokens=int(data["output_tokens"]),
                saved_at=int(data.get("saved_at", 0)),
            )
        except (KeyError, TypeError, InvalidOperation, OverflowError) as e:
            raise ValueError(f"Invalid checkpoint: {e}") from e
        if not checkpoint.cost_usd.is_finite():
            raise ValueError(f"Invalid checkpoint: cost is {checkpoint.cost_usd}")
        return checkpoint

    def exceeds(self, snapshot: SessionMetricsSnapshot) -> bool:
        """True if any field is larger than the snapshot's cumulative value."""
        return (
            self.cost_usd > snapshot.cost_usd
            or self.duration_ms > snapshot.duration_ms
            or self.input_tokens > snapshot.input_tokens
            or self.output_tokens > snapshot.output_tokens
        )


class BaselineTracker:
    """Turns cumulative snapshots into per-segment deltas."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self, key: str) -> BaselineCheckpoint | None:
        """Load a checkpoint, deleting it if unreadable."""
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("checkpoint is not an object")
            return BaselineCheckpoint.from_dict(data)
        except ValueError as e:
            logger.warning(f"Discarding unreadable baseline {key}: {e}")
            self.store.delete(key)
            return None

    def save(self, key: str, checkpoint: BaselineCheckpoint) -> None:
        self.store.put(key, json.dumps(checkpoint.to_dict()).encode())

    def compute_delta(
        self,
        cumulative: SessionMetricsSnapshot,
        key: str,
        reason: EndReason,
    ) -> tuple[SessionMetricsSnapshot, SessionMetricsSnapshot]:
        """Subtract the workspace checkpoint from a cumulative snapshot.

        A checkpoint with any field larger than the cumulative value is
        stale (the host restarted its counters) and is discarded. After
        the delta is computed, a reset saves the cumulative values as the
        new checkpoint; any other reason ends the chain and deletes it.

        Args:
            cumulative: Snapshot as reported by the host.
            key: Checkpoint key from checkpoint_key().
            reason: Why the segment ended.

        Returns:
            Tuple of (delta, cumulative). Model and context percent pass
            through unchanged.
        """
        checkpoint = self.load(key)
        delta = cumulative

        if checkpoint is not None:
            if checkpoint.exceeds(cumulative):
                logger.warning(
                    f"Stale baseline {key} (cost={checkpoint.cost_usd}, "
                    f"in={checkpoint.input_tokens}, out={checkpoint.output_tokens}) "
                    f"exceeds current session (cost={cumulative.cost_usd}, "
                    f"in={cumulative.input_tokens}, out={cumulative.output_tokens}), discarding"
                )
                self.store.delete(key)
            else:
                delta = replace(
                    cumulative,
                    cost_usd=max(cumulative.cost_usd - checkpoint.cost_usd, Decimal(0)),
                    duration_ms=max(cumulative.duration_ms - checkpoint.duration_ms, 0),
                    input_tokens=max(cumulative.input_tokens - checkpoint.input_tokens, 0),
                    output_tokens=max(cumulative.output_tokens - checkpoint.output_tokens, 0),
                )
                logger.info(
                    f"Applied baseline {key}: delta cost={delta.cost_usd} "
                    f"in={delta.input_tokens} out={delta.output_tokens}"
                )

        if reason is EndReason.CLEAR:
            self.save(key, BaselineCheckpoint.from_snapshot(cumulative))
            logger.info(f"Saved baseline {key} for next segment")
        elif self.store.delete(key):
            logger.debug(f"Removed baseline {key}, chain ended ({reason.value})")

        return delta, cumulative
