"""OAuth credential inspection.

The host application keeps its OAuth token in a local credentials file.
Enrichment calls are only attempted while that token is unexpired; the
guard fails closed on anything it cannot read.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def parse_expiry(value: Any) -> datetime | None:
    """Parse an expiry given as epoch milliseconds or ISO-8601.

    Args:
        value: Integer/float millis, a string of digits, or an ISO timestamp.

    Returns:
        Timezone-aware expiry, or None if the value cannot be parsed.
    """
    if isinstance(value, bool) or value is None:
        return None

    if isinstance(value, (int, float)):
        millis = value
    elif isinstance(value, str) and value.strip().isdigit():
        millis = int(value.strip())
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    else:
        return None

    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


@dataclass
class Credentials:
    """The subset of the credentials record we care about."""

    access_token: str | None
    expires_at: datetime | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credentials:
        oauth = data.get("claudeAiOauth")
        if not isinstance(oauth, dict):
            return cls(access_token=None, expires_at=None)
        token = oauth.get("accessToken")
        return cls(
            access_token=token if isinstance(token, str) and token else None,
            expires_at=parse_expiry(oauth.get("expiresAt")),
        )


class CredentialGuard:
    """Decides whether enrichment calls should be attempted."""

    def __init__(self, credentials_path: Path):
        self.credentials_path = Path(credentials_path)

    def load(self) -> Credentials | None:
        """Read the credentials file.

        Returns:
            Credentials, or None if the file is missing or malformed.
        """
        try:
            data = json.loads(self.credentials_path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.debug(f"Unreadable credentials file {self.credentials_path}: {e}")
            return None
        if not isinstance(data, dict):
            return None
        return Credentials.from_dict(data)

    def is_valid(self, now: datetime | None = None, quiet: bool = False) -> bool:
        """Check whether the stored token is present and unexpired.

        Args:
            now: Current time. Defaults to the wall clock.
            quiet: Log an expired token at debug level only.

        Returns:
            True only if the record exists, parses, and has not expired.
        """
        return self.access_token(now, quiet=quiet) is not None

    def access_token(self, now: datetime | None = None, quiet: bool = False) -> str | None:
        """Return the access token if it may be used right now."""
        now = now or datetime.now(timezone.utc)
        credentials = self.load()
        if credentials is None or credentials.expires_at is None:
            return None

        if now >= credentials.expires_at:
            stale_hours = (now - credentials.expires_at).total_seconds() / 3600
            message = (
                f"OAuth token expired {stale_hours:.1f}h ago (session was idle). "
                "Usage/profile data will use cached fallback."
            )
            if quiet:
                logger.debug(message)
            else:
                logger.warning(message)
            return None

        return credentials.access_token
