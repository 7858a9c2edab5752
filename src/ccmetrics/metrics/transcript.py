"""Transcript scanning.

The host writes each conversation as a JSONL transcript. Only entry types,
the assistant model, usage counters and tool names are read; message
content is never inspected.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

INPUT_USAGE_FIELDS = (
    "input_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(int(value), 0)


@dataclass
class TranscriptSummary:
    """Counts derived from a transcript.

    Attributes:
        model: Model of the first assistant turn, if any.
        input_tokens: Input tokens including cache creation and cache reads.
        output_tokens: Output tokens.
        message_count: User plus assistant entries.
        user_message_count: User entries.
        tools_used: Sorted unique tool names invoked by the assistant.
    """

    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    message_count: int = 0
    user_message_count: int = 0
    tools_used: list[str] = field(default_factory=list)

    @property
    def has_usage(self) -> bool:
        return bool(self.model) or self.input_tokens > 0 or self.output_tokens > 0


def _scan_assistant(entry: dict[str, Any], summary: TranscriptSummary, tools: set[str]) -> None:
    message = entry.get("message")
    if not isinstance(message, dict):
        return

    model = message.get("model")
    if summary.model is None and isinstance(model, str) and model:
        summary.model = model

    usage = message.get("usage")
    if isinstance(usage, dict):
        summary.input_tokens += sum(_count(usage.get(name)) for name in INPUT_USAGE_FIELDS)
        summary.output_tokens += _count(usage.get("output_tokens"))

    content = message.get("content")
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "tool_use":
                name = item.get("name")
                if isinstance(name, str) and name:
                    tools.add(name)


def scan_transcript(path: str | Path | None) -> TranscriptSummary:
    """Scan a JSONL transcript.

    Malformed lines are skipped. A missing or unreadable file yields an
    empty summary.

    Args:
        path: Transcript path from the hook payload.

    Returns:
        TranscriptSummary of the whole file.
    """
    summary = TranscriptSummary()
    if not path:
        return summary

    tools: set[str] = set()
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(entry, dict):
                    continue

                entry_type = entry.get("type")
                if entry_type == "user":
                    summary.message_count += 1
                    summary.user_message_count += 1
                elif entry_type == "assistant":
                    summary.message_count += 1
                    _scan_assistant(entry, summary, tools)
    except FileNotFoundError:
        logger.debug(f"Transcript not found: {path}")
        return TranscriptSummary()
    except OSError as e:
        logger.warning(f"Could not read transcript {path}: {e}")
        return TranscriptSummary()

    summary.tools_used = sorted(tools)
    return summary
