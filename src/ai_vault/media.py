"""Content-addressable media store.

Downloads are streamed into a staging file under ``<base_dir>/.temp`` while
being hashed with SHA-256. Bytes whose hash is already registered are
discarded and the existing blob gains a reference; new hashes are moved to
``<provider>/media/<category>/<hash><ext>``. Each provider keeps its registry
in ``<provider>/media-registry.json``.
"""

import asyncio
import hashlib
import logging
import os
import re
import secrets
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import httpx

from .core import Conversation
from .files import read_json, sanitize_filename, write_json

logger = logging.getLogger(__name__)

REGISTRY_FILE = "media-registry.json"
USER_AGENT = "ai-vault/0.1.0"

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/ogg": ".ogg",
    "application/pdf": ".pdf",
}

CATEGORY_DEFAULT_EXTENSIONS = {
    "images": ".jpg",
    "videos": ".mp4",
    "audio": ".mp3",
    "documents": ".bin",
}

_URL_EXTENSION = re.compile(r"\.[a-z0-9]+$", re.IGNORECASE)

ProgressCallback = Callable[[int, int], None]


@dataclass
class MediaRegistryEntry:
    path: str  # relative to the archive base directory
    size: int
    mime_type: str
    first_seen: str
    references: set[str] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "size": self.size,
            "mime_type": self.mime_type,
            "first_seen": self.first_seen,
            "references": sorted(self.references),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MediaRegistryEntry":
        return cls(
            path=data["path"],
            size=data.get("size", 0),
            mime_type=data.get("mime_type", "application/octet-stream"),
            first_seen=data.get("first_seen", ""),
            references=set(data.get("references", [])),
        )


@dataclass
class StoredMedia:
    path: Path
    size: int
    hash: str
    skipped: bool  # True when the bytes matched an existing blob


@dataclass
class MediaError:
    url: str
    error: str


@dataclass
class MediaDownloadResult:
    downloaded: int = 0
    skipped: int = 0
    failed: int = 0
    bytes: int = 0
    errors: list[MediaError] = field(default_factory=list)


@dataclass
class CleanupResult:
    files_removed: int = 0
    bytes_freed: int = 0


def media_category(attachment_type: str, mime_type: str) -> str:
    """Map an attachment type / MIME type onto a media subdirectory."""
    if attachment_type == "image" or mime_type.startswith("image/"):
        return "images"
    if attachment_type == "video" or mime_type.startswith("video/"):
        return "videos"
    if attachment_type == "audio" or mime_type.startswith("audio/"):
        return "audio"
    return "documents"


def file_extension(mime_type: str, url: str, category: str) -> str:
    """Pick an extension from the MIME type, then the URL path, then the category."""
    if mime_type in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[mime_type]

    match = _URL_EXTENSION.search(urlparse(url).path) if url else None
    if match:
        return match.group(0).lower()

    return CATEGORY_DEFAULT_EXTENSIONS[category]


def default_media_concurrency() -> int:
    return max(2, min((os.cpu_count() or 2) // 2, 5))


class MediaStore:
    """Downloads, deduplicates and garbage-collects conversation media."""

    def __init__(self, base_dir: Path, client: httpx.AsyncClient | None = None, timeout: float = 60.0):
        self.base_dir = Path(base_dir)
        self.temp_dir = self.base_dir / ".temp"
        self.timeout = timeout
        self.max_retries = 3
        self.retry_base_delay = 5.0
        self._client = client
        self._owns_client = client is None
        self._registries: dict[str, dict[str, MediaRegistryEntry]] = {}
        self._registry_locks: dict[str, asyncio.Lock] = {}

    # ── Registry ─────────────────────────────────────────────────────

    def registry(self, provider: str) -> dict[str, MediaRegistryEntry]:
        """Return the live registry for a provider, loading it on first use."""
        if provider not in self._registries:
            data = read_json(self._registry_path(provider), default={})
            self._registries[provider] = {h: MediaRegistryEntry.from_dict(e) for h, e in data.items()}
        return self._registries[provider]

    def save_registry(self, provider: str) -> None:
        entries = self.registry(provider)
        write_json(self._registry_path(provider), {h: e.to_dict() for h, e in entries.items()})

    def known_providers(self) -> list[str]:
        found = set(self._registries)
        if self.base_dir.is_dir():
            found.update(d.name for d in self.base_dir.iterdir() if (d / REGISTRY_FILE).exists())
        return sorted(found)

    # ── Downloads ────────────────────────────────────────────────────

    async def download_conversation_media(
        self,
        conversation: Conversation,
        on_progress: ProgressCallback | None = None,
        headers: dict[str, str] | None = None,
    ) -> MediaDownloadResult:
        """Download every attachment of a conversation.

        Each attachment is attempted independently; failures are collected in
        the result instead of aborting the batch. Attachments without an
        HTTP(S) URL (inline artifacts, provider-internal schemes) count as
        skipped.
        """
        result = MediaDownloadResult()
        attachments = conversation.attachments()
        total = len(attachments)
        if total == 0:
            return result

        semaphore = asyncio.Semaphore(default_media_concurrency())
        completed = 0

        async def fetch_one(attachment):
            nonlocal completed
            async with semaphore:
                url = (attachment.url or "").strip()
                try:
                    if attachment.content is not None or not url.startswith(("http://", "https://")):
                        status, size, error = "skipped", 0, None
                    else:
                        stored = await self.download_media(
                            url,
                            attachment.type,
                            conversation.provider,
                            conversation.id,
                            headers=headers,
                            mime_type=attachment.mime_type,
                            persist=False,
                        )
                        status = "skipped" if stored.skipped else "downloaded"
                        size, error = stored.size, None
                except Exception as e:
                    logger.debug("Media download failed for %s (%s): %s", url or "(empty)", attachment.type, e)
                    status, size, error = "failed", 0, str(e) or type(e).__name__
                completed += 1
                if on_progress:
                    on_progress(completed, total)
                return url, status, size, error

        outcomes = await asyncio.gather(*(fetch_one(a) for a in attachments))

        for url, status, size, error in outcomes:
            if status == "downloaded":
                result.downloaded += 1
                result.bytes += size
            elif status == "skipped":
                result.skipped += 1
            else:
                result.failed += 1
                result.errors.append(MediaError(url=url or "(empty URL)", error=error))

        self.save_registry(conversation.provider)
        return result

    async def download_media(
        self,
        url: str,
        attachment_type: str,
        provider: str,
        conversation_id: str,
        headers: dict[str, str] | None = None,
        mime_type: str | None = None,
        persist: bool = True,
    ) -> StoredMedia:
        """Download one file and store it by content hash.

        With ``persist=False`` the registry is left for the caller to save.
        """
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self.temp_dir / f"download-{int(time.time() * 1000)}-{secrets.token_hex(8)}"

        try:
            digest, size, served_type = await self._download_with_retry(url, temp_path, headers)
            content_type = served_type or mime_type or "application/octet-stream"

            async with self._lock_for(provider):
                stored = self._register(provider, conversation_id, temp_path, digest, size,
                                        content_type, attachment_type, url)
        finally:
            temp_path.unlink(missing_ok=True)

        if persist:
            self.save_registry(provider)
        return stored

    async def save_media_from_bytes(
        self,
        data: bytes,
        mime_type: str,
        attachment_type: str,
        provider: str,
        conversation_id: str,
        persist: bool = True,
    ) -> StoredMedia:
        """Store bytes a provider already holds (e.g. fetched inside a browser session).

        Goes through the same hash, dedup and reference bookkeeping as
        download_media(); the extension comes from the MIME type alone.
        """
        digest = hashlib.sha256(data).hexdigest()
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self.temp_dir / f"buffer-{int(time.time() * 1000)}-{secrets.token_hex(8)}"

        try:
            temp_path.write_bytes(data)
            async with self._lock_for(provider):
                stored = self._register(provider, conversation_id, temp_path, digest, len(data),
                                        mime_type or "application/octet-stream", attachment_type, "")
        finally:
            temp_path.unlink(missing_ok=True)

        if persist:
            self.save_registry(provider)
        return stored

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── Statistics & garbage collection ──────────────────────────────

    def get_stats(self, provider: str | None = None) -> dict:
        """Summarize stored media.

        ``total_files`` counts references, ``unique_files`` counts blobs.
        """
        providers = [provider] if provider else self.known_providers()
        total_size = total_refs = unique = 0
        for name in providers:
            for entry in self.registry(name).values():
                total_size += entry.size
                total_refs += len(entry.references)
                unique += 1

        return {
            "total_files": total_refs,
            "total_size": total_size,
            "unique_files": unique,
            "dedup_savings": total_size * (total_refs - unique),
        }

    def cleanup(self, existing_conversation_ids, provider: str | None = None) -> CleanupResult:
        """Drop references to conversations that no longer exist.

        Blobs left with no references are deleted along with their registry
        entry. Missing files are not an error.
        """
        keep = set(existing_conversation_ids)
        result = CleanupResult()
        providers = [provider] if provider else self.known_providers()

        for name in providers:
            registry = self.registry(name)
            changed = False
            for digest, entry in list(registry.items()):
                valid = entry.references & keep
                if not valid:
                    (self.base_dir / entry.path).unlink(missing_ok=True)
                    del registry[digest]
                    result.files_removed += 1
                    result.bytes_freed += entry.size
                    changed = True
                elif valid != entry.references:
                    entry.references = valid
                    changed = True

            if changed:
                self.save_registry(name)
                logger.info("Media cleanup for %s: %d registry entries remain", name, len(registry))

        return result

    # ── Private helpers ──────────────────────────────────────────────

    def _registry_path(self, provider: str) -> Path:
        return self.base_dir / sanitize_filename(provider) / REGISTRY_FILE

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
            )
        return self._client

    def _lock_for(self, provider: str) -> asyncio.Lock:
        return self._registry_locks.setdefault(provider, asyncio.Lock())

    def _register(
        self,
        provider: str,
        conversation_id: str,
        temp_path: Path,
        digest: str,
        size: int,
        mime_type: str,
        attachment_type: str,
        url: str,
    ) -> StoredMedia:
        registry = self.registry(provider)
        existing = registry.get(digest)
        if existing is not None:
            existing.references.add(conversation_id)
            return StoredMedia(path=self.base_dir / existing.path, size=existing.size, hash=digest, skipped=True)

        category = media_category(attachment_type, mime_type)
        rel_path = Path(sanitize_filename(provider)) / "media" / category / f"{digest}{file_extension(mime_type, url, category)}"
        permanent = self.base_dir / rel_path
        permanent.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(temp_path), str(permanent))

        registry[digest] = MediaRegistryEntry(
            path=rel_path.as_posix(),
            size=size,
            mime_type=mime_type,
            first_seen=datetime.now(timezone.utc).isoformat(),
            references={conversation_id},
        )
        return StoredMedia(path=permanent, size=size, hash=digest, skipped=False)

    async def _download_with_retry(self, url: str, dest: Path, headers: dict[str, str] | None):
        """Retry only on HTTP 429, with exponential backoff."""
        for attempt in range(self.max_retries + 1):
            try:
                return await self._download_to_file(url, dest, headers)
            except httpx.HTTPStatusError as e:
                if e.response.status_code != 429 or attempt == self.max_retries:
                    raise
                delay = self.retry_base_delay * 2 ** attempt
                logger.info("Rate limit hit (429) for media, retrying in %.1fs (attempt %d/%d)",
                            delay, attempt + 1, self.max_retries)
                await asyncio.sleep(delay)

    async def _download_to_file(self, url: str, dest: Path, headers: dict[str, str] | None):
        """Stream ``url`` into ``dest``, hashing as it goes. Returns (hash, size, mime)."""
        hasher = hashlib.sha256()
        size = 0
        async with self._get_client().stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            mime_type = response.headers.get("content-type", "").split(";")[0].strip()
            with dest.open("wb") as f:
                async for chunk in response.aiter_bytes():
                    hasher.update(chunk)
                    size += len(chunk)
                    f.write(chunk)
        return hasher.hexdigest(), size, mime_type
