"""Conversation index entries, the hierarchy index and batched index updates."""

import hashlib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone

from .core import Conversation


def content_hash(conversation: Conversation) -> str:
    """Cheap change fingerprint: message count plus the last message's text."""
    last = conversation.messages[-1].content if conversation.messages else ""
    digest = hashlib.sha256(f"{len(conversation.messages)}:{last}".encode("utf-8"))
    return digest.hexdigest()[:16]


@dataclass
class IndexEntry:
    """Lightweight per-conversation metadata stored in ``<provider>/index.json``."""

    title: str
    provider: str
    message_count: int
    created_at: str | None
    updated_at: str | None
    archived_at: str
    has_media: bool
    media_count: int
    path: str  # relative to the provider directory
    content_hash: str
    workspace_id: str | None = None
    workspace_name: str | None = None
    project_id: str | None = None
    project_name: str | None = None
    folder: str | None = None

    @classmethod
    def from_conversation(cls, conversation: Conversation, path: str) -> "IndexEntry":
        attachments = conversation.attachments()
        hierarchy = conversation.hierarchy
        return cls(
            title=conversation.title,
            provider=conversation.provider,
            message_count=len(conversation.messages),
            created_at=conversation.created_at.isoformat() if conversation.created_at else None,
            updated_at=conversation.updated_at.isoformat() if conversation.updated_at else None,
            archived_at=datetime.now(timezone.utc).isoformat(),
            has_media=bool(attachments),
            media_count=len(attachments),
            path=path,
            content_hash=content_hash(conversation),
            workspace_id=hierarchy.workspace_id if hierarchy else None,
            workspace_name=hierarchy.workspace_name if hierarchy else None,
            project_id=hierarchy.project_id if hierarchy else None,
            project_name=hierarchy.project_name if hierarchy else None,
            folder=hierarchy.folder if hierarchy else None,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "IndexEntry":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProjectGroup:
    name: str = ""
    conversation_ids: set[str] = field(default_factory=set)


@dataclass
class WorkspaceGroup:
    name: str = ""
    conversation_ids: set[str] = field(default_factory=set)
    projects: dict[str, ProjectGroup] = field(default_factory=dict)


@dataclass
class HierarchyIndex:
    """Groups a provider's conversations by workspace and project.

    A conversation id lives in exactly one bucket: directly under a
    workspace, under one of its projects, or in ``unorganized``.
    """

    workspaces: dict[str, WorkspaceGroup] = field(default_factory=dict)
    unorganized: set[str] = field(default_factory=set)

    def place(self, conversation_id: str, entry: IndexEntry) -> None:
        """Move ``conversation_id`` into the bucket described by ``entry``."""
        self.remove(conversation_id)

        if not entry.workspace_id:
            self.unorganized.add(conversation_id)
            return

        workspace = self.workspaces.setdefault(entry.workspace_id, WorkspaceGroup())
        if entry.workspace_name:
            workspace.name = entry.workspace_name

        if entry.project_id:
            project = workspace.projects.setdefault(entry.project_id, ProjectGroup())
            if entry.project_name:
                project.name = entry.project_name
            project.conversation_ids.add(conversation_id)
        else:
            workspace.conversation_ids.add(conversation_id)

    def remove(self, conversation_id: str) -> None:
        self.unorganized.discard(conversation_id)
        for workspace in self.workspaces.values():
            workspace.conversation_ids.discard(conversation_id)
            for project in workspace.projects.values():
                project.conversation_ids.discard(conversation_id)

    def locate(self, conversation_id: str) -> tuple[str | None, str | None] | None:
        """Return ``(workspace_id, project_id)`` for a conversation, or None if absent.

        Unorganized conversations return ``(None, None)``.
        """
        if conversation_id in self.unorganized:
            return (None, None)
        for ws_id, workspace in self.workspaces.items():
            if conversation_id in workspace.conversation_ids:
                return (ws_id, None)
            for proj_id, project in workspace.projects.items():
                if conversation_id in project.conversation_ids:
                    return (ws_id, proj_id)
        return None

    def to_dict(self) -> dict:
        return {
            "workspaces": {
                ws_id: {
                    "name": ws.name,
                    "conversation_ids": sorted(ws.conversation_ids),
                    "projects": {
                        proj_id: {"name": proj.name, "conversation_ids": sorted(proj.conversation_ids)}
                        for proj_id, proj in ws.projects.items()
                    },
                }
                for ws_id, ws in self.workspaces.items()
            },
            "unorganized": sorted(self.unorganized),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "HierarchyIndex":
        if not data:
            return cls()
        workspaces = {}
        for ws_id, ws in data.get("workspaces", {}).items():
            workspaces[ws_id] = WorkspaceGroup(
                name=ws.get("name", ""),
                conversation_ids=set(ws.get("conversation_ids", [])),
                projects={
                    proj_id: ProjectGroup(
                        name=proj.get("name", ""),
                        conversation_ids=set(proj.get("conversation_ids", [])),
                    )
                    for proj_id, proj in ws.get("projects", {}).items()
                },
            )
        return cls(workspaces=workspaces, unorganized=set(data.get("unorganized", [])))


@dataclass
class IndexBatch:
    """Index updates deferred for one archive run, keyed by provider then conversation id."""

    pending: dict[str, dict[str, IndexEntry]] = field(default_factory=dict)

    def add(self, conversation_id: str, entry: IndexEntry) -> None:
        self.pending.setdefault(entry.provider, {})[conversation_id] = entry

    def get(self, provider: str, conversation_id: str) -> IndexEntry | None:
        return self.pending.get(provider, {}).get(conversation_id)

    def providers(self) -> list[str]:
        return list(self.pending)

    def discard(self, provider: str) -> None:
        self.pending.pop(provider, None)

    def __len__(self) -> int:
        return sum(len(entries) for entries in self.pending.values())
