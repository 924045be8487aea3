"""Tests for the content-addressable media store."""

import hashlib
import json

import httpx
import pytest

from ai_vault.core import Attachment
from ai_vault.media import MediaRegistryEntry, MediaStore, file_extension, media_category

from conftest import make_conversation

HOST = "https://media.example.com"


def _temp_files(store: MediaStore):
    return list(store.temp_dir.iterdir()) if store.temp_dir.exists() else []


class TestDownloadMedia:
    @pytest.mark.asyncio
    async def test_stores_new_file_by_hash(self, media_store, storage_config):
        stored = await media_store.download_media(f"{HOST}/img/cat.png", "image", "chatgpt", "conv-1")

        digest = hashlib.sha256(b"\x89PNG cat pixels").hexdigest()
        assert stored.skipped is False
        assert stored.hash == digest
        assert stored.size == len(b"\x89PNG cat pixels")
        assert stored.path == storage_config.base_dir / "chatgpt" / "media" / "images" / f"{digest}.png"
        assert stored.path.read_bytes() == b"\x89PNG cat pixels"
        assert _temp_files(media_store) == []

    @pytest.mark.asyncio
    async def test_persists_registry(self, media_store, storage_config):
        stored = await media_store.download_media(f"{HOST}/img/dog.jpg", "image", "chatgpt", "conv-1")

        registry = json.loads((storage_config.base_dir / "chatgpt" / "media-registry.json").read_text(encoding="utf-8"))
        entry = registry[stored.hash]
        assert entry["references"] == ["conv-1"]
        assert entry["mime_type"] == "image/jpeg"
        assert entry["path"] == f"chatgpt/media/images/{stored.hash}.jpg"

    @pytest.mark.asyncio
    async def test_identical_bytes_from_different_urls_are_deduplicated(self, media_store, storage_config):
        first = await media_store.download_media(f"{HOST}/img/cat.png", "image", "chatgpt", "conv-1")
        second = await media_store.download_media(f"{HOST}/img/cat-copy.png", "image", "chatgpt", "conv-2")

        assert second.skipped is True
        assert second.path == first.path
        assert second.size == first.size
        assert media_store.registry("chatgpt")[first.hash].references == {"conv-1", "conv-2"}

        images = list((storage_config.base_dir / "chatgpt" / "media" / "images").iterdir())
        assert len(images) == 1
        assert _temp_files(media_store) == []

    @pytest.mark.asyncio
    async def test_repeat_reference_is_idempotent(self, media_store):
        first = await media_store.download_media(f"{HOST}/img/cat.png", "image", "chatgpt", "conv-1")
        await media_store.download_media(f"{HOST}/img/cat.png", "image", "chatgpt", "conv-1")
        assert media_store.registry("chatgpt")[first.hash].references == {"conv-1"}

    @pytest.mark.asyncio
    async def test_failed_download_leaves_no_temp_file(self, media_store):
        with pytest.raises(httpx.HTTPStatusError):
            await media_store.download_media(f"{HOST}/missing.png", "image", "chatgpt", "conv-1")
        assert _temp_files(media_store) == []
        assert media_store.registry("chatgpt") == {}

    @pytest.mark.asyncio
    async def test_timeout_leaves_no_temp_file(self, media_store):
        with pytest.raises(httpx.ReadTimeout):
            await media_store.download_media(f"{HOST}/slow", "image", "chatgpt", "conv-1")
        assert _temp_files(media_store) == []

    @pytest.mark.asyncio
    async def test_retries_rate_limited_downloads(self, storage_config):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(429, request=request)
            return httpx.Response(200, content=b"finally", headers={"content-type": "image/png"}, request=request)

        store = MediaStore(storage_config.base_dir, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        store.retry_base_delay = 0
        stored = await store.download_media(f"{HOST}/busy.png", "image", "chatgpt", "conv-1")

        assert len(calls) == 3
        assert stored.path.read_bytes() == b"finally"

    @pytest.mark.asyncio
    async def test_sends_provider_headers(self, media_store, media_requests):
        await media_store.download_media(f"{HOST}/img/cat.png", "image", "chatgpt", "conv-1",
                                         headers={"Cookie": "session=abc"})
        assert media_requests[0].headers["cookie"] == "session=abc"


class TestSaveMediaFromBytes:
    @pytest.mark.asyncio
    async def test_stores_new_bytes(self, media_store, storage_config):
        stored = await media_store.save_media_from_bytes(b"rendered chart", "image/png", "image", "chatgpt", "conv-1")

        digest = hashlib.sha256(b"rendered chart").hexdigest()
        assert stored.skipped is False
        assert stored.path == storage_config.base_dir / "chatgpt" / "media" / "images" / f"{digest}.png"
        assert stored.path.read_bytes() == b"rendered chart"
        assert _temp_files(media_store) == []
        assert (storage_config.base_dir / "chatgpt" / "media-registry.json").exists()

    @pytest.mark.asyncio
    async def test_bytes_matching_a_download_are_deduplicated(self, media_store, storage_config):
        downloaded = await media_store.download_media(f"{HOST}/img/cat.png", "image", "chatgpt", "conv-1")
        saved = await media_store.save_media_from_bytes(b"\x89PNG cat pixels", "image/png", "image", "chatgpt", "conv-2")

        assert saved.skipped is True
        assert saved.path == downloaded.path
        assert saved.hash == downloaded.hash
        assert media_store.registry("chatgpt")[saved.hash].references == {"conv-1", "conv-2"}
        assert len(list((storage_config.base_dir / "chatgpt" / "media" / "images").iterdir())) == 1
        assert _temp_files(media_store) == []

    @pytest.mark.asyncio
    async def test_extension_comes_from_mime_type(self, media_store):
        stored = await media_store.save_media_from_bytes(b"%PDF", "application/pdf", "document", "claude", "conv-1")
        assert stored.path.suffix == ".pdf"
        assert stored.path.parent.name == "documents"


class TestRegistryLocks:
    @pytest.mark.asyncio
    async def test_one_lock_per_provider(self, media_store):
        for path in ("/img/cat.png", "/img/dog.jpg", "/docs/report"):
            await media_store.download_media(f"{HOST}{path}", "image", "chatgpt", "conv-1")
        await media_store.save_media_from_bytes(b"other", "image/png", "image", "chatgpt", "conv-1")
        assert list(media_store._registry_locks) == ["chatgpt"]


class TestDownloadConversationMedia:
    @pytest.mark.asyncio
    async def test_downloads_all_attachments(self, media_store):
        conversation = make_conversation("conv-1", attachments=[
            Attachment(id="a", type="image", url=f"{HOST}/img/cat.png"),
            Attachment(id="b", type="image", url=f"{HOST}/img/dog.jpg"),
            Attachment(id="c", type="document", url=f"{HOST}/docs/report"),
        ])
        result = await media_store.download_conversation_media(conversation)

        assert result.downloaded == 3
        assert result.failed == 0
        assert result.bytes == sum(len(b) for b in (b"\x89PNG cat pixels", b"\xff\xd8 dog pixels", b"%PDF-1.7 report"))

    @pytest.mark.asyncio
    async def test_continues_past_failures(self, media_store):
        conversation = make_conversation("conv-1", attachments=[
            Attachment(id="a", type="image", url=f"{HOST}/img/cat.png"),
            Attachment(id="b", type="image", url=f"{HOST}/gone.png"),
            Attachment(id="c", type="image", url=f"{HOST}/img/dog.jpg"),
        ])
        result = await media_store.download_conversation_media(conversation)

        assert result.downloaded == 2
        assert result.failed == 1
        assert result.errors[0].url == f"{HOST}/gone.png"
        assert "404" in result.errors[0].error

    @pytest.mark.asyncio
    async def test_reports_progress(self, media_store):
        conversation = make_conversation("conv-1", attachments=[
            Attachment(id="a", type="image", url=f"{HOST}/img/cat.png"),
            Attachment(id="b", type="image", url=f"{HOST}/gone.png"),
        ])
        calls = []
        await media_store.download_conversation_media(conversation, on_progress=lambda c, t: calls.append((c, t)))
        assert sorted(calls) == [(1, 2), (2, 2)]

    @pytest.mark.asyncio
    async def test_skips_inline_and_non_http_attachments(self, media_store, media_requests):
        conversation = make_conversation("conv-1", attachments=[
            Attachment(id="a", type="artifact", content="<svg/>"),
            Attachment(id="b", type="image", url="file-service://file-123"),
            Attachment(id="c", type="image", url=""),
        ])
        result = await media_store.download_conversation_media(conversation)

        assert result.skipped == 3
        assert result.failed == 0
        assert media_requests == []

    @pytest.mark.asyncio
    async def test_counts_duplicates_as_skipped(self, media_store, storage_config):
        conversation = make_conversation("conv-1", attachments=[
            Attachment(id="a", type="image", url=f"{HOST}/img/cat.png"),
            Attachment(id="b", type="image", url=f"{HOST}/img/cat-copy.png"),
        ])
        result = await media_store.download_conversation_media(conversation)

        assert result.downloaded == 1
        assert result.skipped == 1
        assert (storage_config.base_dir / "chatgpt" / "media-registry.json").exists()

    @pytest.mark.asyncio
    async def test_no_attachments(self, media_store):
        result = await media_store.download_conversation_media(make_conversation("conv-1"))
        assert result.downloaded == result.skipped == result.failed == 0


class TestStatsAndCleanup:
    def _seed(self, store: MediaStore, base_dir):
        media_dir = base_dir / "chatgpt" / "media" / "images"
        media_dir.mkdir(parents=True)
        registry = store.registry("chatgpt")
        for digest, size, refs in [("aaa", 100, {"c1", "c2"}), ("bbb", 50, {"c2"}), ("ccc", 25, {"c3"})]:
            (media_dir / f"{digest}.png").write_bytes(b"x" * size)
            registry[digest] = MediaRegistryEntry(
                path=f"chatgpt/media/images/{digest}.png", size=size, mime_type="image/png",
                first_seen="2025-01-15T10:00:00+00:00", references=refs,
            )
        store.save_registry("chatgpt")
        return media_dir

    def test_get_stats(self, media_store, storage_config):
        self._seed(media_store, storage_config.base_dir)
        stats = MediaStore(storage_config.base_dir).get_stats()
        assert stats == {
            "total_files": 4,
            "total_size": 175,
            "unique_files": 3,
            "dedup_savings": 175 * (4 - 3),
        }

    def test_get_stats_empty(self, media_store):
        assert media_store.get_stats() == {"total_files": 0, "total_size": 0, "unique_files": 0, "dedup_savings": 0}

    def test_cleanup_removes_unreferenced_blobs(self, media_store, storage_config):
        media_dir = self._seed(media_store, storage_config.base_dir)

        result = media_store.cleanup(["c1"])

        assert result.files_removed == 2
        assert result.bytes_freed == 75
        assert not (media_dir / "bbb.png").exists()
        assert not (media_dir / "ccc.png").exists()
        assert (media_dir / "aaa.png").exists()

        reloaded = MediaStore(storage_config.base_dir).registry("chatgpt")
        assert set(reloaded) == {"aaa"}
        assert reloaded["aaa"].references == {"c1"}

    def test_cleanup_references_are_subset_of_existing(self, media_store, storage_config):
        self._seed(media_store, storage_config.base_dir)
        existing = {"c2", "c3"}
        media_store.cleanup(existing)
        for entry in media_store.registry("chatgpt").values():
            assert entry.references <= existing

    def test_cleanup_tolerates_missing_files(self, media_store, storage_config):
        media_dir = self._seed(media_store, storage_config.base_dir)
        (media_dir / "ccc.png").unlink()

        result = media_store.cleanup(["c1", "c2"])
        assert result.files_removed == 1
        assert result.bytes_freed == 25


@pytest.mark.parametrize("mime, url, category, expected", [
    ("image/png", "https://e/x.jpg", "images", ".png"),
    ("application/octet-stream", "https://e/clip.WEBM?sig=1", "videos", ".webm"),
    ("application/octet-stream", "https://e/download", "audio", ".mp3"),
    ("", "", "documents", ".bin"),
])
def test_file_extension(mime, url, category, expected):
    assert file_extension(mime, url, category) == expected


@pytest.mark.parametrize("attachment_type, mime, expected", [
    ("image", "", "images"),
    ("document", "video/mp4", "videos"),
    ("audio", "application/octet-stream", "audio"),
    ("code", "text/plain", "documents"),
])
def test_media_category(attachment_type, mime, expected):
    assert media_category(attachment_type, mime) == expected
