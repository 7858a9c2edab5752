"""Per-invocation dispatch of host lifecycle events.

Each hook runs in a fresh process; nothing survives between invocations
except what the stores persist.

    session-start  cache GC, then drain the retry queue
    status-tick    cache the payload, maybe spawn an enrichment refresh,
                   print the status line
    session-end    resolve metrics, apply baseline, enrich, submit or queue
"""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import sys
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ccmetrics.config import CONFIG_ENV_VAR
from ccmetrics.credentials import CredentialGuard
from ccmetrics.enrichment import (
    EnrichmentCache,
    EnrichmentClient,
    EnrichmentData,
    refresh_enrichment_cache,
)
from ccmetrics.events import MetricsSource, detect_client_type
from ccmetrics.metrics import (
    BaselineTracker,
    MetricsCache,
    MetricsRecord,
    SessionMetricsSnapshot,
    build_record,
    checkpoint_key,
    resolve_snapshot,
    scan_transcript,
    should_skip,
)
from ccmetrics.retry_queue import DrainResult, RetryQueue
from ccmetrics.store import FileStore
from ccmetrics.submission import Submitter

if TYPE_CHECKING:
    from ccmetrics.config import Config
    from ccmetrics.events import HookPayload
    from ccmetrics.store import KeyValueStore

logger = logging.getLogger(__name__)


def spawn_background_refresh(config_path: Path | None = None) -> bool:
    """Start a detached `ccmetrics enrichment refresh` process.

    The child is never waited on; it may outlive the status tick that
    started it.

    Returns:
        True if the process was started.
    """
    env = dict(os.environ)
    if config_path is not None:
        env[CONFIG_ENV_VAR] = str(config_path)

    try:
        subprocess.Popen(
            [sys.executable, "-m", "ccmetrics", "enrichment", "refresh"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
            env=env,
        )
    except OSError as e:
        logger.warning(f"Could not start enrichment refresh: {e}")
        return False
    return True


def _kilo(tokens: int) -> str:
    return f"{tokens / 1000:.1f}K"


def render_status_line(snapshot: SessionMetricsSnapshot, cwd: str = "") -> str:
    """Plain one-line summary printed by the status tick."""
    total = snapshot.input_tokens + snapshot.output_tokens
    line = (
        f"[{snapshot.model}] {snapshot.context_used_percent:.0f}%"
        f"/{snapshot.duration_ms / 60000:.1f}min"
        f"/${snapshot.cost_usd:.2f}"
        f"/{_kilo(snapshot.input_tokens)}/{_kilo(snapshot.output_tokens)}/{_kilo(total)}"
    )
    if cwd:
        line += f" {cwd}"
    return line


@dataclass
class SessionEndResult:
    """What happened to a finished segment."""

    record: MetricsRecord
    skipped: bool = False
    submitted: bool = False
    queued_key: str | None = None
    drain: DrainResult | None = None


class Orchestrator:
    """Handles one host lifecycle event per process."""

    def __init__(
        self,
        config: Config,
        cache_store: KeyValueStore | None = None,
        queue_store: KeyValueStore | None = None,
        submitter: Submitter | None = None,
        enrichment_client: EnrichmentClient | None = None,
        guard: CredentialGuard | None = None,
        spawn_refresh: Callable[[Path | None], object] = spawn_background_refresh,
        sleep: Callable[[float], None] = time.sleep,
        hostname: str | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the orchestrator.

        Args:
            config: Loaded configuration.
            cache_store: Store for metrics cache, baselines and the
                         enrichment cache. Defaults to config.cache_dir.
            queue_store: Store for the retry queue. Defaults to config.queue_dir.
            submitter: Record submitter. Created from config.store on first use.
            enrichment_client: Enrichment client. Created on first use.
            guard: Credential guard. Defaults to config.enrichment.credentials_path.
            spawn_refresh: Starts the background enrichment refresh; called
                           with the config path and never awaited.
            sleep: Pause function used between queue sends.
            hostname: Machine name recorded with each session.
            environ: Environment used for client type detection.
            clock: Wall clock in epoch seconds.
        """
        self.config = config
        cache_store = cache_store or FileStore(config.cache_dir)
        queue_store = queue_store or FileStore(config.queue_dir)

        self.metrics_cache = MetricsCache(cache_store)
        self.baselines = BaselineTracker(cache_store)
        self.enrichment_cache = EnrichmentCache(cache_store)
        self.guard = guard or CredentialGuard(config.enrichment.credentials_path)

        self._queue_store = queue_store
        self._submitter = submitter
        self._enrichment_client = enrichment_client
        self._owned_clients: list[Submitter | EnrichmentClient] = []
        self._spawn_refresh = spawn_refresh
        self._sleep = sleep
        self._hostname = hostname
        self._environ = environ
        self._clock = clock
        self._queue: RetryQueue | None = None

    @property
    def submitter(self) -> Submitter:
        if self._submitter is None:
            self._submitter = Submitter(self.config.store)
            self._owned_clients.append(self._submitter)
        return self._submitter

    @property
    def enrichment_client(self) -> EnrichmentClient:
        if self._enrichment_client is None:
            self._enrichment_client = EnrichmentClient(self.config.enrichment)
            self._owned_clients.append(self._enrichment_client)
        return self._enrichment_client

    @property
    def queue(self) -> RetryQueue:
        if self._queue is None:
            self._queue = RetryQueue(
                self._queue_store,
                self.submitter,
                max_size=self.config.queue.max_size,
                pause=self.config.queue.drain_pause,
                sleep=self._sleep,
            )
        return self._queue

    @property
    def hostname(self) -> str:
        return self._hostname or socket.gethostname()

    def close(self) -> None:
        """Close HTTP clients this orchestrator created."""
        for client in self._owned_clients:
            client.close()
        self._owned_clients.clear()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def drain_queue(self, limit: int | None = None) -> DrainResult:
        """Resend queued records, if there are any.

        Raises:
            ConfigError: If records are queued but store credentials are missing.
        """
        if self.queue.count() == 0:
            logger.debug("Retry queue is empty")
            return DrainResult()
        self.config.store.validate()
        return self.queue.drain_up_to(limit or self.config.queue.drain_batch)

    def on_session_start(self) -> DrainResult:
        """Garbage-collect the cache, then drain the retry queue."""
        self.metrics_cache.collect_garbage(
            self.config.cache.retention_days, now=self._clock()
        )
        return self.drain_queue()

    def on_status_tick(self, payload: HookPayload) -> str:
        """Cache the payload and return the status line.

        Never makes a network call; a stale enrichment cache is refreshed
        by a detached process.
        """
        if payload.session_id:
            try:
                self.metrics_cache.write(payload.session_id, payload.raw)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not cache metrics for session {payload.session_id}: {e}")

        self._maybe_spawn_refresh()

        snapshot = SessionMetricsSnapshot.from_payload(payload.raw, payload.session_id)
        return render_status_line(snapshot, payload.cwd)

    def _maybe_spawn_refresh(self) -> bool:
        enrichment = self.config.enrichment
        if not enrichment.enabled:
            return False
        if not self.enrichment_cache.is_stale(self._clock(), enrichment.refresh_interval):
            return False
        if not self.guard.is_valid(quiet=True):
            return False

        logger.debug("Enrichment cache stale, spawning background refresh")
        self._spawn_refresh(self.config.config_path)
        return True

    def refresh_enrichment(self) -> bool:
        """Body of the background refresh process."""
        return refresh_enrichment_cache(
            self.enrichment_cache,
            self.guard,
            self.enrichment_client,
            self.config.enrichment.refresh_interval,
            now=self._clock(),
        )

    def fetch_enrichment(self) -> EnrichmentData | None:
        """Live enrichment when credentials allow, cached values otherwise.

        Returns:
            Merged EnrichmentData, or None if enrichment is disabled.
        """
        if not self.config.enrichment.enabled:
            return None

        token = self.guard.access_token()
        live = self.enrichment_client.fetch(token) if token else EnrichmentData()

        if live.seven_day_utilization is not None and live.claude_account_email:
            return live

        cached = self.enrichment_cache.load()
        if cached is None:
            return live

        age = self.enrichment_cache.age_seconds(self._clock())
        if age is not None:
            logger.info(f"Using cached usage data (cache age: {age / 60:.1f} minutes)")
        else:
            logger.info("Using cached usage data")
        return live.merged_with(cached)

    def on_session_end(self, payload: HookPayload) -> SessionEndResult:
        """Finalize a segment and submit its record.

        Raises:
            ConfigError: If the record must be sent but store credentials
                         are missing.
        """
        transcript = scan_transcript(payload.transcript_path)
        cumulative = resolve_snapshot(self.metrics_cache, payload, transcript)
        logger.info(
            f"Resolved metrics for session {payload.session_id} "
            f"(source: {cumulative.source.value})"
        )

        snapshot = cumulative
        if cumulative.source is MetricsSource.TRANSCRIPT:
            logger.debug("Transcript-derived metrics, skipping baseline")
        elif payload.cwd:
            snapshot, _ = self.baselines.compute_delta(
                cumulative, checkpoint_key(payload.cwd), payload.reason
            )
        else:
            logger.debug("No workspace path in payload, skipping baseline")

        record = build_record(
            snapshot,
            transcript,
            self.fetch_enrichment(),
            developer=self.config.developer,
            hostname=self.hostname,
            project_path=payload.cwd,
            client_type=detect_client_type(self._environ),
        )

        if should_skip(record):
            logger.info(
                f"Skipping empty payload for session {record.session_id} "
                f"(source: {record.metrics_source.value}) - no meaningful metrics"
            )
            return SessionEndResult(record=record, skipped=True)

        self.config.store.validate()
        body = record.to_json()
        logger.info(f"Processing session: {record.session_id}")
        logger.debug(f"Payload: {body.decode()}")

        if self.submitter.submit(body):
            return SessionEndResult(record=record, submitted=True, drain=self.drain_queue())

        key = self.queue.enqueue(body)
        return SessionEndResult(record=record, queued_key=key)
