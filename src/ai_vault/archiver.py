"""Provider-agnostic archiver.

Orchestrates: list conversations -> filter -> bounded worker pool
(fetch with retry -> save -> download media) -> flush indexes -> summary.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

import httpx

from .config import StorageConfig, get_storage_config
from .core import Conversation, ConversationSummary
from .errors import IndexFlushError, RateLimitError
from .media import MediaDownloadResult, MediaStore
from .provider import AssetSource, ListOptions, Provider, WorkspaceSource
from .rate_limiter import RateLimiter
from .storage import ContentStore

logger = logging.getLogger(__name__)

MAX_FETCH_ATTEMPTS = 3
STALENESS_TOLERANCE = timedelta(seconds=1)


@dataclass
class ArchiveOptions:
    provider: str | None = None
    conversation_ids: list[str] = field(default_factory=list)
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None
    search_query: str | None = None  # matched against title and preview
    download_media: bool = True
    skip_existing: bool = False
    dry_run: bool = False
    concurrency: int | None = None


@dataclass
class ArchiveError:
    id: str
    type: str  # "conversation" | "media"
    message: str


@dataclass
class ArchiveResult:
    conversations_archived: int = 0
    conversations_skipped: int = 0
    conversations_rate_limited: int = 0
    conversations_failed: int = 0
    media_downloaded: int = 0
    media_skipped: int = 0
    media_failed: int = 0
    bytes_downloaded: int = 0
    assets_archived: int = 0
    workspaces_archived: int = 0
    duration: float = 0.0  # seconds
    errors: list[ArchiveError] = field(default_factory=list)


@dataclass
class _TaskOutcome:
    status: str  # "archived" | "skipped" | "rate-limited" | "failed"
    summary: ConversationSummary
    media: MediaDownloadResult | None = None
    error: Exception | None = None


def compute_concurrency(provider: Provider, override: int | None = None) -> int:
    """Pick the worker pool size for a run.

    An explicit override is clamped to 1-20. Otherwise half the CPU count,
    clamped to 2-10 and to the provider's advertised limit.
    """
    if override is not None:
        return max(1, min(override, 20))

    concurrency = min(max(2, (os.cpu_count() or 1) // 2), 10)
    if provider.rate_limit and provider.rate_limit.max_concurrent is not None:
        concurrency = min(concurrency, provider.rate_limit.max_concurrent)
    return concurrency


def is_timeout(error: Exception) -> bool:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return True
    return "timeout" in str(error).lower()


class Archiver:
    """Archives conversations from any Provider into a ContentStore and MediaStore."""

    def __init__(self, storage: ContentStore, media: MediaStore):
        self.storage = storage
        self.media = media
        # Seconds; instance attributes so callers (and tests) can tune them.
        self.retry_delays = (1.0, 2.0, 4.0)
        self.base_delay = 2.0
        self.max_delay = 60.0
        self.circuit_poll_interval = 5.0
        self.clock = time.monotonic

    async def archive(self, provider: Provider, options: ArchiveOptions | None = None) -> ArchiveResult:
        """Archive conversations from ``provider``.

        Never raises for per-conversation or per-media failures; those land in
        ``result.errors``. A listing failure ends the run early but the result
        (with its duration) is still returned.
        """
        options = options or ArchiveOptions()
        started = time.monotonic()
        result = ArchiveResult()

        try:
            await self._archive_provider_extras(provider, options, result)

            try:
                summaries = await provider.list_conversations(
                    ListOptions(since=options.since, until=options.until, limit=options.limit)
                )
            except Exception:
                logger.error("Failed to fetch conversation list from %s", provider.name)
                raise
            logger.info("Found %d conversations", len(summaries))

            candidates = self._select(summaries, options)
            logger.info("Archiving %d conversations...", len(candidates))

            await self._dispatch(provider, candidates, options, result)
        except Exception as e:
            result.errors.append(ArchiveError(id="archive", type="conversation",
                                              message=f"Archive process failed: {e}"))

        result.duration = time.monotonic() - started
        return result

    def get_stats(self, provider: str) -> dict:
        storage_stats = self.storage.get_stats(provider)
        media_stats = self.media.get_stats(provider)
        return {
            "conversations": storage_stats["total_conversations"],
            "messages": storage_stats["total_messages"],
            "media": media_stats["total_files"],
            "size": media_stats["total_size"],
        }

    # ── Private helpers ──────────────────────────────────────────────

    def _select(self, summaries: list[ConversationSummary], options: ArchiveOptions) -> list[ConversationSummary]:
        """Apply the id filter, then the text filter, then the limit."""
        selected = summaries
        if options.conversation_ids:
            wanted = set(options.conversation_ids)
            selected = [s for s in selected if s.id in wanted]

        if options.search_query:
            needle = options.search_query.lower()
            selected = [
                s for s in selected
                if needle in s.title.lower() or needle in (s.preview or "").lower()
            ]

        if options.limit is not None and len(selected) > options.limit:
            selected = selected[:options.limit]
        return selected

    async def _archive_provider_extras(self, provider: Provider, options: ArchiveOptions,
                                       result: ArchiveResult) -> None:
        if isinstance(provider, AssetSource):
            try:
                assets = await provider.list_assets()
                logger.info("Found %d assets", len(assets))
                if assets and not options.dry_run:
                    self.storage.save_assets(provider.name, assets)
                    result.assets_archived = len(assets)
            except Exception as e:
                logger.warning("Failed to fetch assets: %s", e)

        if isinstance(provider, WorkspaceSource):
            try:
                workspaces = await provider.list_workspaces()
                logger.info("Found %d workspaces", len(workspaces))
                if workspaces and not options.dry_run:
                    self.storage.save_workspaces(provider.name, workspaces)
                    result.workspaces_archived = len(workspaces)
            except Exception as e:
                logger.warning("Failed to fetch workspaces: %s", e)

    async def _dispatch(self, provider: Provider, candidates: list[ConversationSummary],
                        options: ArchiveOptions, result: ArchiveResult) -> None:
        if not options.dry_run:
            self.storage.enable_batch_mode()

        initial = compute_concurrency(provider, options.concurrency)
        limiter = RateLimiter(
            initial_concurrency=initial,
            min_concurrency=1,
            max_concurrency=initial,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            clock=self.clock,
        )
        pool = asyncio.Semaphore(initial)
        logger.info("Processing with concurrency: %d", initial)

        progress = {"completed": 0, "total": len(candidates)}

        async def run(summary: ConversationSummary) -> _TaskOutcome:
            async with pool:
                return await self._archive_one(provider, summary, options, limiter, progress)

        try:
            outcomes = await asyncio.gather(*(run(s) for s in candidates))
        finally:
            if not options.dry_run:
                try:
                    self.storage.disable_batch_mode()
                except IndexFlushError as e:
                    result.errors.append(ArchiveError(id="index", type="conversation", message=str(e)))

        for outcome in outcomes:
            self._collect(outcome, result)

        state = limiter.get_state()
        if state["rate_limit_count"] > 0:
            logger.warning("Rate limiting summary: %d rate limit(s), final concurrency %d (started at %d)",
                           state["rate_limit_count"], state["current_concurrency"], initial)

    async def _archive_one(self, provider: Provider, summary: ConversationSummary, options: ArchiveOptions,
                           limiter: RateLimiter, progress: dict) -> _TaskOutcome:
        while limiter.is_circuit_open():
            logger.info("[PAUSED] Rate limit circuit breaker active, waiting...")
            await limiter.wait_for_backoff(self.circuit_poll_interval)

        try:
            if options.skip_existing and self.storage.conversation_exists(provider.name, summary.id):
                local = self.storage.get_conversation(provider.name, summary.id)
                if local is not None and not self._is_newer(summary, local):
                    self._tick(progress, "Skipped (up-to-date)", summary.title)
                    return _TaskOutcome(status="skipped", summary=summary)
                if local is not None:
                    logger.info("Re-archiving %s (updated remotely)", summary.title)

            conversation = await self._fetch_with_retry(provider, summary)
            limiter.record_success()

            if options.dry_run:
                self._tick(progress, "[DRY RUN] Would archive", conversation.title)
                return _TaskOutcome(status="archived", summary=summary)

            self.storage.save_conversation(conversation)

            media = None
            if options.download_media and conversation.attachments():
                media = await self.media.download_conversation_media(
                    conversation,
                    on_progress=lambda current, total: logger.debug(
                        "Downloading media for %s: %d/%d", summary.id, current, total),
                    headers=provider.media_headers or None,
                )
                if media.failed:
                    logger.warning("Downloaded %d media files for %s (%d failed)",
                                   media.downloaded, summary.title, media.failed)

            self._tick(progress, "Archived", conversation.title)
            return _TaskOutcome(status="archived", summary=summary, media=media)

        except RateLimitError as e:
            decision = limiter.record_rate_limit(e)
            self._tick(progress, "Rate limited", summary.title)
            logger.warning("Reducing concurrency to %d, waiting %.0fs...", limiter.concurrency, decision.delay)
            if decision.should_pause:
                logger.warning("Circuit breaker activated! Pausing all operations for %.0fs", decision.delay)
            await limiter.wait_for_backoff(decision.delay)
            return _TaskOutcome(status="rate-limited", summary=summary, error=e)

        except Exception as e:
            self._tick(progress, "Failed", f"{summary.title} - {e}", level=logging.WARNING)
            return _TaskOutcome(status="failed", summary=summary, error=e)

    async def _fetch_with_retry(self, provider: Provider, summary: ConversationSummary) -> Conversation:
        """Fetch a conversation, retrying only timeouts."""
        for attempt in range(1, MAX_FETCH_ATTEMPTS + 1):
            try:
                return await provider.fetch_conversation(summary.id)
            except Exception as e:
                if not is_timeout(e) or attempt == MAX_FETCH_ATTEMPTS:
                    raise
                delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]
                logger.info("Timeout fetching %s, retrying (%d/%d) in %.0fs",
                            summary.title, attempt + 1, MAX_FETCH_ATTEMPTS, delay)
                await asyncio.sleep(delay)

    @staticmethod
    def _is_newer(summary: ConversationSummary, local: Conversation) -> bool:
        if summary.updated_at is None or local.updated_at is None:
            return True
        return summary.updated_at > local.updated_at + STALENESS_TOLERANCE

    @staticmethod
    def _tick(progress: dict, label: str, title: str, level: int = logging.INFO) -> None:
        progress["completed"] += 1
        logger.log(level, "[%d/%d] %s: %s", progress["completed"], progress["total"], label, title)

    @staticmethod
    def _collect(outcome: _TaskOutcome, result: ArchiveResult) -> None:
        conversation_id = outcome.summary.id
        if outcome.status == "archived":
            result.conversations_archived += 1
            if outcome.media:
                result.media_downloaded += outcome.media.downloaded
                result.media_skipped += outcome.media.skipped
                result.media_failed += outcome.media.failed
                result.bytes_downloaded += outcome.media.bytes
                for err in outcome.media.errors:
                    result.errors.append(ArchiveError(
                        id=conversation_id, type="media",
                        message=f"Failed to download {err.url}: {err.error}",
                    ))
        elif outcome.status == "skipped":
            result.conversations_skipped += 1
        elif outcome.status == "rate-limited":
            result.conversations_rate_limited += 1
            result.errors.append(ArchiveError(id=conversation_id, type="conversation",
                                              message=f"Rate limited: {outcome.error}"))
        else:
            result.conversations_failed += 1
            result.errors.append(ArchiveError(id=conversation_id, type="conversation",
                                              message=str(outcome.error) or type(outcome.error).__name__))


def create_archiver(base_dir: Path | None = None, config: StorageConfig | None = None) -> Archiver:
    """Build an Archiver over the configured (or given) archive directory."""
    config = config or get_storage_config()
    if base_dir is not None:
        config.base_dir = Path(base_dir)
    return Archiver(ContentStore(config), MediaStore(config.base_dir))
