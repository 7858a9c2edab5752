"""Hook event types and payload parsing for ccmetrics.

Defines the lifecycle events the host application invokes us for and the
JSON payload it delivers on stdin.
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class HookEvent(Enum):
    """Lifecycle events handled by the orchestrator."""

    SESSION_START = "session-start"
    STATUS_TICK = "status-tick"
    SESSION_END = "session-end"


class EndReason(Enum):
    """Why the host ended a segment.

    Only CLEAR matters to the pipeline: it marks a mid-conversation reset
    that keeps cumulative counters running into the next segment.
    """

    CLEAR = "clear"
    LOGOUT = "logout"
    PROMPT_INPUT_EXIT = "prompt_input_exit"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value: object) -> EndReason:
        return cls.OTHER


class MetricsSource(Enum):
    """Where the finalized metrics came from."""

    CACHE = "cache"
    STDIN = "stdin"
    TRANSCRIPT = "transcript"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> MetricsSource:
        return cls.UNKNOWN


class ClientType(Enum):
    """Front end the session ran in."""

    CLI = "cli"
    VSCODE = "vscode"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value: object) -> ClientType:
        return cls.OTHER


def detect_client_type(environ: Mapping[str, str] | None = None) -> ClientType:
    """Detect whether the host runs inside VS Code or a plain terminal.

    Args:
        environ: Environment mapping. Defaults to os.environ.

    Returns:
        ClientType.VSCODE if any VS Code marker is present, else ClientType.CLI.
    """
    env = os.environ if environ is None else environ
    if (
        env.get("VSCODE_PID")
        or env.get("TERM_PROGRAM") == "vscode"
        or env.get("VSCODE_IPC_HOOK_CLI")
    ):
        return ClientType.VSCODE
    return ClientType.CLI


@dataclass
class HookPayload:
    """JSON payload delivered by the host on stdin.

    Attributes:
        session_id: Segment identifier.
        cwd: Workspace path the session runs in.
        transcript_path: Path to the JSONL conversation log.
        reason: Why the segment ended (session-end only).
        raw: The full decoded payload, kept for cache writes.
    """

    session_id: str = ""
    cwd: str = ""
    transcript_path: str = ""
    reason: EndReason = EndReason.OTHER
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.raw

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HookPayload:
        """Create a HookPayload from the decoded stdin JSON."""
        workspace = data.get("workspace")
        cwd = data.get("cwd") or ""
        if not cwd and isinstance(workspace, dict):
            cwd = workspace.get("project_dir") or workspace.get("current_dir") or ""

        reason = data.get("reason")
        return cls(
            session_id=str(data.get("session_id") or ""),
            cwd=str(cwd),
            transcript_path=str(data.get("transcript_path") or ""),
            reason=EndReason(reason) if reason else EndReason.OTHER,
            raw=data,
        )


def parse_stdin() -> HookPayload:
    """Read and parse the hook payload from stdin.

    Returns:
        Parsed payload; an empty payload if input is empty or invalid.
    """
    try:
        data = sys.stdin.read()
        if not data.strip():
            return HookPayload()
        decoded = json.loads(data)
    except (OSError, ValueError):
        return HookPayload()

    if not isinstance(decoded, dict):
        return HookPayload()
    return HookPayload.from_dict(decoded)
