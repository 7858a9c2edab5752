"""Cumulative session metrics as reported by the host application."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from ccmetrics.events import MetricsSource

UNKNOWN_MODEL = "unknown"


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(number, 0.0) if math.isfinite(number) else 0.0


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        return Decimal(0)
    try:
        # str() keeps 1.8 as Decimal("1.8") instead of its binary expansion
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)
    if not amount.is_finite() or amount < 0:
        return Decimal(0)
    return amount


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class SessionMetricsSnapshot:
    """Point-in-time cumulative metrics for one session.

    Attributes:
        session_id: Segment identifier.
        model: Model display name (falls back to id, then "unknown").
        cost_usd: Cumulative cost in USD.
        duration_ms: Cumulative wall-clock duration.
        input_tokens: Cumulative input tokens.
        output_tokens: Cumulative output tokens.
        context_used_percent: Context window usage, 0-100.
        source: Which finalization tier produced this snapshot.
    """

    session_id: str
    model: str = UNKNOWN_MODEL
    cost_usd: Decimal = Decimal(0)
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    context_used_percent: float = 0.0
    source: MetricsSource = MetricsSource.STDIN

    @property
    def is_empty(self) -> bool:
        """No tokens and no known model."""
        return (
            self.input_tokens == 0
            and self.output_tokens == 0
            and self.model == UNKNOWN_MODEL
        )

    @classmethod
    def from_payload(
        cls,
        data: dict[str, Any],
        session_id: str | None = None,
        source: MetricsSource = MetricsSource.STDIN,
    ) -> SessionMetricsSnapshot:
        """Build a snapshot from a host status or session-end payload.

        Missing or malformed numbers default to zero.

        Args:
            data: Decoded payload.
            session_id: Overrides the payload's session_id when given.
            source: Provenance tag.
        """
        model_section = _section(data, "model")
        cost = _section(data, "cost")
        context = _section(data, "context_window")

        model = model_section.get("display_name") or model_section.get("id")
        return cls(
            session_id=session_id or str(data.get("session_id") or ""),
            model=str(model) if model else UNKNOWN_MODEL,
            cost_usd=_as_decimal(cost.get("total_cost_usd")),
            duration_ms=_as_int(cost.get("total_duration_ms")),
            input_tokens=_as_int(context.get("total_input_tokens")),
            output_tokens=_as_int(context.get("total_output_tokens")),
            context_used_percent=min(_as_float(context.get("used_percentage")), 100.0),
            source=source,
        )
