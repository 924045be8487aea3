"""Shared test fixtures for ai-vault."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from ai_vault.config import StorageConfig
from ai_vault.core import (
    Attachment,
    Conversation,
    ConversationMetadata,
    ConversationSummary,
    Hierarchy,
    Message,
)
from ai_vault.media import MediaStore
from ai_vault.provider import Provider
from ai_vault.storage import ContentStore

BASE_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def make_conversation(
    conversation_id: str,
    title: str = "",
    updated_at: datetime = BASE_TIME,
    provider: str = "chatgpt",
    attachments: list[Attachment] | None = None,
    hierarchy: Hierarchy | None = None,
    last_message: str = "Glad to help!",
) -> Conversation:
    """Build a small three-message conversation."""
    attachments = attachments or []
    messages = [
        Message(id=f"{conversation_id}-m1", role="user", content="How do I parse JSON in Python?",
                timestamp=BASE_TIME),
        Message(id=f"{conversation_id}-m2", role="assistant", content="Use `json.loads(text)`.",
                timestamp=BASE_TIME + timedelta(seconds=30), attachments=attachments),
        Message(id=f"{conversation_id}-m3", role="user", content=last_message,
                timestamp=BASE_TIME + timedelta(minutes=1)),
    ]
    return Conversation(
        id=conversation_id,
        provider=provider,
        title=title or f"Conversation {conversation_id}",
        messages=messages,
        created_at=BASE_TIME,
        updated_at=updated_at,
        metadata=ConversationMetadata(
            message_count=len(messages),
            character_count=sum(len(m.content) for m in messages),
            media_count=len(attachments),
        ),
        hierarchy=hierarchy,
    )


def summary_of(conversation: Conversation, preview: str = "") -> ConversationSummary:
    return ConversationSummary(
        id=conversation.id,
        title=conversation.title,
        message_count=len(conversation.messages),
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        has_media=bool(conversation.attachments()),
        preview=preview,
    )


class FakeProvider(Provider):
    """Scripted provider: serves fixed conversations, raises queued errors per id."""

    name = "chatgpt"

    def __init__(self, conversations: list[Conversation], summaries: list[ConversationSummary] | None = None):
        self.conversations = {c.id: c for c in conversations}
        self.summaries = summaries if summaries is not None else [summary_of(c) for c in conversations]
        self.errors: dict[str, list[Exception]] = {}
        self.list_error: Exception | None = None
        self.fetch_calls: list[str] = []
        self.list_calls = []
        self.cleaned_up = False

    def fail(self, conversation_id: str, *errors: Exception) -> None:
        """Queue errors to raise on the next fetches of ``conversation_id``."""
        self.errors.setdefault(conversation_id, []).extend(errors)

    async def list_conversations(self, options=None):
        self.list_calls.append(options)
        if self.list_error:
            raise self.list_error
        return list(self.summaries)

    async def fetch_conversation(self, conversation_id):
        self.fetch_calls.append(conversation_id)
        queued = self.errors.get(conversation_id)
        if queued:
            raise queued.pop(0)
        return self.conversations[conversation_id]

    async def cleanup(self):
        self.cleaned_up = True


@pytest.fixture
def storage_config(tmp_path):
    return StorageConfig(base_dir=tmp_path / "vault")


@pytest.fixture
def store(storage_config):
    return ContentStore(storage_config)


@pytest.fixture
def media_files():
    """Map of URL path -> (body, content-type) served by the fake media host."""
    return {
        "/img/cat.png": (b"\x89PNG cat pixels", "image/png"),
        "/img/cat-copy.png": (b"\x89PNG cat pixels", "image/png"),
        "/img/dog.jpg": (b"\xff\xd8 dog pixels", "image/jpeg"),
        "/docs/report": (b"%PDF-1.7 report", "application/pdf"),
        "/clips/intro.webm": (b"webm bytes", "application/octet-stream"),
    }


@pytest.fixture
def media_requests():
    return []


@pytest.fixture
def media_client(media_files, media_requests):
    """httpx client backed by an in-process fake media host."""

    def handler(request: httpx.Request) -> httpx.Response:
        media_requests.append(request)
        if request.url.path == "/slow":
            raise httpx.ReadTimeout("timed out", request=request)
        if request.url.path not in media_files:
            return httpx.Response(404, request=request)
        body, content_type = media_files[request.url.path]
        return httpx.Response(200, content=body, headers={"content-type": content_type}, request=request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def media_store(storage_config, media_client):
    return MediaStore(storage_config.base_dir, client=media_client)
