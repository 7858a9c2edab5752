"""Delivery of session records to the remote store.

A single POST per record with a hard timeout and no retry of its own;
failed records go to the RetryQueue.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from ccmetrics.config import StoreConfig

logger = logging.getLogger(__name__)

HTTP_CREATED = 201


def _session_label(body: bytes) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return "<unreadable>"
    if isinstance(data, dict) and data.get("session_id"):
        return str(data["session_id"])
    return "<unknown>"


class Submitter:
    """POSTs serialized records to the sessions table."""

    def __init__(self, config: StoreConfig, http_client: httpx.Client | None = None):
        """Initialize the submitter.

        Args:
            config: Store URL, API key, table and timeout.
            http_client: Optional pre-built httpx client.
        """
        self.config = config
        self._client = http_client or httpx.Client()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Submitter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.config.key,
            "Authorization": f"Bearer {self.config.key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    def submit(self, payload: bytes | dict[str, Any]) -> bool:
        """Insert one record.

        Args:
            payload: Serialized record, or a dict to serialize.

        Returns:
            True only on HTTP 201. Transport errors count as failure.
        """
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        session = _session_label(body)

        try:
            response = self._client.post(
                self.config.endpoint,
                content=body,
                headers=self._headers(),
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Failed to send session {session}: {type(e).__name__}: {e}")
            return False

        if response.status_code == HTTP_CREATED:
            logger.info(f"Session {session} sent successfully (HTTP {HTTP_CREATED})")
            return True

        logger.warning(
            f"Failed to send session {session} (HTTP {response.status_code}): "
            f"{response.text[:200]}"
        )
        return False
