"""Core data models for ai-vault."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class Attachment:
    """A media file or generated artifact attached to a message."""

    id: str
    type: str  # "image" | "video" | "audio" | "document" | "code" | "artifact"
    url: str = ""
    content: Optional[str] = None  # inline body for generated artifacts
    mime_type: Optional[str] = None
    size: Optional[int] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class Message:
    """A single message within a conversation."""

    id: str
    role: str  # open label, providers invent their own
    content: str
    timestamp: Optional[datetime] = None
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)  # model, token count, citations, etc.


@dataclass
class Hierarchy:
    """Where a conversation lives in a provider's workspace/project tree."""

    workspace_id: Optional[str] = None
    workspace_name: Optional[str] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    folder: Optional[str] = None


@dataclass
class ConversationMetadata:
    message_count: int = 0
    character_count: int = 0
    media_count: int = 0
    extra: dict = field(default_factory=dict)  # provider-specific fields


@dataclass
class Conversation:
    """A complete conversation fetched from a provider."""

    id: str
    provider: str
    title: str
    messages: list[Message] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: ConversationMetadata = field(default_factory=ConversationMetadata)
    hierarchy: Optional[Hierarchy] = None

    def attachments(self) -> list[Attachment]:
        """Return every attachment across all messages, in message order."""
        return [a for m in self.messages for a in m.attachments]


@dataclass
class ConversationSummary:
    """Lightweight listing entry returned by Provider.list_conversations."""

    id: str
    title: str
    message_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    has_media: bool = False
    preview: str = ""  # first message preview


@dataclass
class ProjectFile:
    name: str
    content: str
    path: str = ""
    language: str = ""


@dataclass
class Project:
    """A project inside a provider workspace."""

    id: str
    name: str
    description: str = ""
    type: str = ""
    content: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    files: list[ProjectFile] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


@dataclass
class Workspace:
    """A provider-side workspace grouping projects and conversations."""

    id: str
    provider: str
    name: str
    description: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    projects: list[Project] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)


@dataclass
class Asset:
    """An item from a provider's asset library (uploads, generated images)."""

    id: str
    name: str
    type: str
    url: str = ""
    mime_type: Optional[str] = None
    size: Optional[int] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
