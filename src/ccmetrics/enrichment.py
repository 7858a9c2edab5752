"""Usage and account enrichment from the assistant's OAuth API.

Two read-only endpoints are queried: one returns utilization percentages and
reset timestamps for rolling windows, the other the account identity. Both
are optional extras on a session record; every failure degrades to null
fields, never to an error for the caller.

Two call sites exist:
    session-end: foreground, 3s timeout, one retry after a 1s backoff.
    status-tick: background worker, 2s timeout, single attempt, writes the
                 shared EnrichmentCache that session-end falls back to.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from ccmetrics.config import EnrichmentConfig
    from ccmetrics.credentials import CredentialGuard
    from ccmetrics.store import KeyValueStore

logger = logging.getLogger(__name__)

OAUTH_BETA_HEADER = "oauth-2025-04-20"
RETRY_BACKOFF_SECONDS = 1.0
ENRICHMENT_CACHE_KEY = "_enrichment"

# Usage windows reported by the usage endpoint, in record field order
USAGE_WINDOWS = ("seven_day", "five_hour", "seven_day_sonnet")


class FailureKind(Enum):
    """Classification of a failed enrichment call."""

    AUTH = "auth"  # 401/403, never retried
    TRANSIENT = "transient"  # timeout, connection error, other non-200
    APPLICATION = "application"  # 200 with an error envelope or bad body


@dataclass
class FetchError:
    """Why an enrichment call failed."""

    kind: FailureKind
    message: str
    status_code: int | None = None


@dataclass
class FetchResult:
    """Outcome of one endpoint fetch: exactly one of data or error is set."""

    data: dict[str, Any] | None = None
    error: FetchError | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None


@dataclass
class EnrichmentData:
    """Utilization and identity fields attached to a session record.

    Attributes:
        seven_day_utilization: Percent used in the rolling 7-day window.
        seven_day_resets_at: When the 7-day window resets (ISO).
        five_hour_utilization: Percent used in the rolling 5-hour window.
        five_hour_resets_at: When the 5-hour window resets (ISO).
        seven_day_sonnet_utilization: Percent used of the model-specific window.
        seven_day_sonnet_resets_at: When that window resets (ISO).
        claude_account_email: Account identity from the profile endpoint.
        fetched_at: Epoch seconds of the fetch (cache entries only).
    """

    seven_day_utilization: float | None = None
    seven_day_resets_at: str | None = None
    five_hour_utilization: float | None = None
    five_hour_resets_at: str | None = None
    seven_day_sonnet_utilization: float | None = None
    seven_day_sonnet_resets_at: str | None = None
    claude_account_email: str | None = None
    fetched_at: int | None = None
    usage_ok: bool = field(default=False, compare=False, repr=False)
    profile_ok: bool = field(default=False, compare=False, repr=False)

    def apply_usage(self, data: dict[str, Any]) -> None:
        """Copy window fields out of a usage endpoint response."""
        for window in USAGE_WINDOWS:
            section = data.get(window)
            if not isinstance(section, dict):
                section = {}
            utilization = section.get("utilization")
            if isinstance(utilization, bool) or not isinstance(utilization, (int, float)):
                utilization = None
            resets_at = section.get("resets_at")
            setattr(self, f"{window}_utilization", utilization)
            setattr(self, f"{window}_resets_at", resets_at if isinstance(resets_at, str) else None)
        self.usage_ok = True

    def apply_profile(self, data: dict[str, Any]) -> None:
        """Copy the account email out of a profile endpoint response."""
        account = data.get("account")
        email = account.get("email") if isinstance(account, dict) else None
        self.claude_account_email = email if isinstance(email, str) and email else None
        self.profile_ok = True

    def merged_with(self, fallback: EnrichmentData | None) -> EnrichmentData:
        """Fill null field groups from a fallback (e.g. the shared cache).

        Each usage window (utilization + reset time) and the account email
        are filled independently, only where this instance has nothing.
        """
        if fallback is None:
            return replace(self)

        merged = replace(self)
        for window in USAGE_WINDOWS:
            util_field = f"{window}_utilization"
            if getattr(merged, util_field) is None:
                setattr(merged, util_field, getattr(fallback, util_field))
                resets_field = f"{window}_resets_at"
                setattr(merged, resets_field, getattr(fallback, resets_field))
        if not merged.claude_account_email:
            merged.claude_account_email = fallback.claude_account_email
        return merged

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data.pop("usage_ok")
        data.pop("profile_ok")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnrichmentData:
        """Create from a cached dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)} - {"usage_ok", "profile_ok"}
        return cls(**{k: v for k, v in data.items() if k in known})


class EnrichmentClient:
    """Fetches usage and profile data with bounded timeouts."""

    def __init__(
        self,
        config: EnrichmentConfig,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the client.

        Args:
            config: Endpoint URLs and timeouts.
            http_client: Optional pre-built httpx client (tests inject a
                         MockTransport here).
            sleep: Backoff sleep function.
        """
        self.config = config
        self._client = http_client or httpx.Client()
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> EnrichmentClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @staticmethod
    def _headers(token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "anthropic-beta": OAUTH_BETA_HEADER,
        }

    def fetch_with_retry(
        self, url: str, token: str, timeout: float, retry: bool = True
    ) -> FetchResult:
        """GET an endpoint, retrying once on transient failure.

        Args:
            url: Endpoint URL.
            token: OAuth bearer token.
            timeout: Per-attempt timeout in seconds.
            retry: Allow one extra attempt after a transient failure.

        Returns:
            FetchResult with the decoded body or a classified error.
        """
        max_attempts = 2 if retry else 1
        error: FetchError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = self._client.get(
                    url, headers=self._headers(token), timeout=timeout
                )
            except httpx.HTTPError as e:
                error = FetchError(FailureKind.TRANSIENT, f"{type(e).__name__}: {e}")
            else:
                if response.status_code in (401, 403):
                    return FetchResult(
                        error=FetchError(
                            FailureKind.AUTH,
                            "auth error, skipping retry",
                            response.status_code,
                        ),
                        attempts=attempt,
                    )

                if response.status_code == 200:
                    return self._decode(response, attempt)

                error = FetchError(
                    FailureKind.TRANSIENT,
                    f"HTTP {response.status_code}",
                    response.status_code,
                )

            if attempt < max_attempts:
                logger.debug(f"Retrying {url} after {error.message}...")
                self._sleep(RETRY_BACKOFF_SECONDS)

        return FetchResult(error=error, attempts=max_attempts)

    @staticmethod
    def _decode(response: httpx.Response, attempt: int) -> FetchResult:
        """Decode a 200 body, treating an error envelope as terminal."""
        try:
            body = response.json()
        except ValueError as e:
            return FetchResult(
                error=FetchError(FailureKind.APPLICATION, f"invalid JSON body: {e}", 200),
                attempts=attempt,
            )

        if not isinstance(body, dict):
            return FetchResult(
                error=FetchError(FailureKind.APPLICATION, "unexpected response body", 200),
                attempts=attempt,
            )

        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else None
            return FetchResult(
                error=FetchError(
                    FailureKind.APPLICATION, str(message or err or "unknown error"), 200
                ),
                attempts=attempt,
            )

        return FetchResult(data=body, attempts=attempt)

    def fetch(self, token: str, background: bool = False) -> EnrichmentData:
        """Fetch both endpoints independently.

        A failure on one endpoint leaves its fields null without affecting
        the other.

        Args:
            token: OAuth bearer token.
            background: Use the short timeout and no retry.

        Returns:
            EnrichmentData with whatever could be fetched.
        """
        timeout = self.config.background_timeout if background else self.config.timeout
        retry = not background
        data = EnrichmentData()

        usage = self.fetch_with_retry(self.config.usage_url, token, timeout, retry=retry)
        if usage.ok:
            data.apply_usage(usage.data)
            logger.info(f"Usage fetched: 7-day utilization {data.seven_day_utilization}%")
            logger.debug(f"Full usage API response: {usage.data}")
        else:
            self._log_failure("usage data", usage.error)

        profile = self.fetch_with_retry(self.config.profile_url, token, timeout, retry=retry)
        if profile.ok:
            data.apply_profile(profile.data)
            logger.info(f"Claude account: {data.claude_account_email}")
        else:
            self._log_failure("profile data", profile.error)

        return data

    @staticmethod
    def _log_failure(description: str, error: FetchError | None) -> None:
        if error is None:
            return
        status = f" (HTTP {error.status_code})" if error.status_code else ""
        logger.warning(
            f"Failed to fetch {description}: {error.message}{status} [{error.kind.value}]"
        )


class EnrichmentCache:
    """Shared, cross-session cache of the latest enrichment fetch."""

    def __init__(self, store: KeyValueStore, key: str = ENRICHMENT_CACHE_KEY):
        self.store = store
        self.key = key

    def load(self) -> EnrichmentData | None:
        """Return the cached data, or None if absent or unreadable."""
        raw = self.store.get(self.key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable enrichment cache")
            return None
        if not isinstance(data, dict):
            return None
        try:
            return EnrichmentData.from_dict(data)
        except TypeError:
            return None

    def save(self, data: EnrichmentData) -> None:
        self.store.put(self.key, json.dumps(data.to_dict()).encode())

    def is_stale(self, now: float, max_age: int) -> bool:
        """True if the cache is missing or older than max_age seconds."""
        cached = self.load()
        if cached is None or not isinstance(cached.fetched_at, (int, float)):
            return True
        return now - cached.fetched_at >= max_age

    def age_seconds(self, now: float) -> float | None:
        cached = self.load()
        if cached is None or not isinstance(cached.fetched_at, (int, float)):
            return None
        return now - cached.fetched_at


def refresh_enrichment_cache(
    cache: EnrichmentCache,
    guard: CredentialGuard,
    client: EnrichmentClient,
    refresh_interval: int,
    now: float | None = None,
) -> bool:
    """Background refresh of the shared enrichment cache.

    Only fetches when the cache is stale and the credentials are valid.
    Endpoints that fail keep their previously cached values; fetched_at is
    always bumped so a failing API is retried at most once per interval.

    Returns:
        True if the cache was rewritten.
    """
    now = time.time() if now is None else now
    if not cache.is_stale(now, refresh_interval):
        return False

    token = guard.access_token()
    if token is None:
        logger.debug("Skipping enrichment refresh: no valid credentials")
        return False

    fetched = client.fetch(token, background=True)
    previous = cache.load()
    if previous is not None:
        if not fetched.usage_ok:
            for window in USAGE_WINDOWS:
                for suffix in ("utilization", "resets_at"):
                    name = f"{window}_{suffix}"
                    setattr(fetched, name, getattr(previous, name))
        if not fetched.profile_ok:
            fetched.claude_account_email = previous.claude_account_email

    fetched.fetched_at = int(now)
    cache.save(fetched)
    logger.debug("Enrichment cache refreshed")
    return True
