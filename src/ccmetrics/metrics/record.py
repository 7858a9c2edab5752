"""The outbound session record.

One row per finished segment, inserted into the remote sessions table.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from ccmetrics.events import ClientType, MetricsSource
from ccmetrics.metrics.snapshot import UNKNOWN_MODEL

if TYPE_CHECKING:
    from ccmetrics.enrichment import EnrichmentData
    from ccmetrics.metrics.snapshot import SessionMetricsSnapshot
    from ccmetrics.metrics.transcript import TranscriptSummary

CENTS = Decimal("0.01")


def _floor_utilization(value: float | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return math.floor(value)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class MetricsRecord:
    """A row for the remote sessions table.

    Field names match the table's columns.
    """

    session_id: str
    developer: str
    hostname: str
    project_path: str
    duration_minutes: float
    cost_usd: Decimal
    input_tokens: int
    output_tokens: int
    message_count: int
    user_message_count: int
    tools_used: str
    context_usage_percent: float
    model: str
    seven_day_utilization: int | None = None
    seven_day_resets_at: str | None = None
    five_hour_utilization: int | None = None
    five_hour_resets_at: str | None = None
    seven_day_sonnet_utilization: int | None = None
    seven_day_sonnet_resets_at: str | None = None
    claude_account_email: str | None = None
    metrics_source: MetricsSource = MetricsSource.UNKNOWN
    client_type: ClientType = ClientType.CLI

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["cost_usd"] = float(self.cost_usd)
        data["metrics_source"] = self.metrics_source.value
        data["client_type"] = self.client_type.value
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict()).encode()


def build_record(
    snapshot: SessionMetricsSnapshot,
    transcript: TranscriptSummary,
    enrichment: EnrichmentData | None,
    developer: str,
    hostname: str,
    project_path: str,
    client_type: ClientType = ClientType.CLI,
) -> MetricsRecord:
    """Assemble the outbound record for a finished segment.

    Args:
        snapshot: Resolved (and baseline-adjusted) metrics.
        transcript: Message and tool counts for the segment.
        enrichment: Usage and account data, or None if unavailable.
        developer: Developer identity from config.
        hostname: Machine name.
        project_path: Workspace path from the hook payload.
        client_type: Front end the session ran in.

    Returns:
        MetricsRecord ready for submission.
    """
    record = MetricsRecord(
        session_id=snapshot.session_id,
        developer=developer,
        hostname=hostname,
        project_path=project_path,
        duration_minutes=round(snapshot.duration_ms / 60000, 2),
        cost_usd=snapshot.cost_usd.quantize(CENTS, rounding=ROUND_HALF_UP),
        input_tokens=snapshot.input_tokens,
        output_tokens=snapshot.output_tokens,
        message_count=transcript.message_count,
        user_message_count=transcript.user_message_count,
        tools_used=", ".join(transcript.tools_used),
        context_usage_percent=snapshot.context_used_percent,
        model=snapshot.model,
        metrics_source=snapshot.source,
        client_type=client_type,
    )

    if enrichment is not None:
        record.seven_day_utilization = _floor_utilization(enrichment.seven_day_utilization)
        record.seven_day_resets_at = enrichment.seven_day_resets_at
        record.five_hour_utilization = _floor_utilization(enrichment.five_hour_utilization)
        record.five_hour_resets_at = enrichment.five_hour_resets_at
        record.seven_day_sonnet_utilization = _floor_utilization(
            enrichment.seven_day_sonnet_utilization
        )
        record.seven_day_sonnet_resets_at = enrichment.seven_day_sonnet_resets_at
        record.claude_account_email = enrichment.claude_account_email or None

    return record


def should_skip(record: MetricsRecord) -> bool:
    """True for a degenerate segment: no tokens, no cost, unknown model."""
    return (
        record.input_tokens == 0
        and record.output_tokens == 0
        and record.model == UNKNOWN_MODEL
        and record.cost_usd == 0
    )
