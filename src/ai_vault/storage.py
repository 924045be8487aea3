"""Content store for archived conversations.

Layout under ``<base_dir>/<provider>/``::

    conversations/<id>/conversation.{json,md}          flat (or YYYY/MM/<id>)
    workspaces/<ws>/conversations/<id>/...              workspace-level
    workspaces/<ws>/projects/<proj>/conversations/<id>/ project-level
    index.json[.gz]                                     id -> IndexEntry
    hierarchy-index.json[.gz]                           workspace/project grouping
    assets/...  workspaces/<ws>/workspace.{json,md}     provider-level extras

JSON artifacts gain a ``.gz`` suffix when compression is on. Readers always
try the compressed file first, so archives written either way stay readable.
"""

import logging
import shutil
from pathlib import Path

from .config import StorageConfig
from .core import Asset, Conversation, Project, Workspace
from .errors import IndexFlushError
from .export import (
    asset_to_dict,
    conversation_from_dict,
    conversation_to_dict,
    conversation_to_markdown,
    project_to_dict,
    project_to_markdown,
    workspace_to_dict,
    workspace_to_markdown,
)
from .files import existing_json_path, read_json, sanitize_filename, write_json, write_text
from .index import HierarchyIndex, IndexBatch, IndexEntry

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
HIERARCHY_FILE = "hierarchy-index.json"
CONVERSATION_JSON = "conversation.json"
CONVERSATION_MD = "conversation.md"

ARTIFACT_EXTENSIONS = {
    "text/markdown": ".md",
    "text/html": ".html",
    "text/css": ".css",
    "text/csv": ".csv",
    "application/json": ".json",
    "image/svg+xml": ".svg",
    "application/javascript": ".js",
    "text/javascript": ".js",
    "text/x-python": ".py",
}


class ContentStore:
    """Reads and writes conversations plus the per-provider indexes."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self.batch: IndexBatch | None = None
        self._indexes: dict[str, dict[str, IndexEntry]] = {}
        self._index_stamps: dict[str, tuple | None] = {}

    @property
    def base_dir(self) -> Path:
        return self.config.base_dir

    def provider_dir(self, provider: str) -> Path:
        return self.base_dir / sanitize_filename(provider)

    def list_providers(self) -> list[str]:
        """Return providers that have an index on disk."""
        if not self.base_dir.is_dir():
            return []
        return sorted(
            d.name for d in self.base_dir.iterdir()
            if d.is_dir() and existing_json_path(d / INDEX_FILE) is not None
        )

    # ── Batch mode ───────────────────────────────────────────────────

    def enable_batch_mode(self) -> IndexBatch:
        """Defer index and hierarchy-index writes until disable_batch_mode()."""
        if self.batch is None:
            self.batch = IndexBatch()
        return self.batch

    def disable_batch_mode(self) -> None:
        """Flush every pending provider once and leave batch mode.

        Entries for providers whose flush failed stay in the batch object
        returned by enable_batch_mode() and IndexFlushError is raised.
        """
        batch, self.batch = self.batch, None
        if batch is not None:
            self.flush(batch)

    def flush(self, batch: IndexBatch) -> None:
        """Merge pending entries into each provider's on-disk indexes.

        Providers are flushed independently; one failing does not undo or
        block the others.
        """
        failures: dict[str, Exception] = {}
        for provider in batch.providers():
            entries = batch.pending[provider]
            try:
                self._write_entries(provider, entries)
            except (OSError, ValueError) as e:
                logger.error("Failed to flush index for %s: %s", provider, e)
                failures[provider] = e
                continue
            batch.discard(provider)
            logger.debug("Flushed %d index entries for %s", len(entries), provider)

        if failures:
            raise IndexFlushError(failures)

    # ── Conversations ────────────────────────────────────────────────

    def get_conversation_path(self, conversation: Conversation) -> Path:
        """Return the directory a conversation is stored in."""
        root = self.provider_dir(conversation.provider)
        hierarchy = conversation.hierarchy

        if hierarchy and hierarchy.workspace_id:
            root = root / "workspaces" / sanitize_filename(hierarchy.workspace_id)
            if hierarchy.project_id:
                root = root / "projects" / sanitize_filename(hierarchy.project_id)
            return root / "conversations" / sanitize_filename(conversation.id)

        conversations_dir = root / "conversations"
        if self.config.organize_by_date and conversation.created_at:
            created = conversation.created_at
            conversations_dir = conversations_dir / f"{created.year}" / f"{created.month:02d}"
        return conversations_dir / sanitize_filename(conversation.id)

    def save_conversation(self, conversation: Conversation) -> Path:
        """Write a conversation in every configured format and index it.

        Safe to repeat for the same id: files are overwritten, and a
        conversation that moved to another workspace/project has its old
        directory removed.
        """
        conv_dir = self.get_conversation_path(conversation)
        conv_dir.mkdir(parents=True, exist_ok=True)

        for fmt in self.config.formats:
            if fmt == "json":
                write_json(conv_dir / CONVERSATION_JSON, conversation_to_dict(conversation),
                           compress=self.config.compression)
            elif fmt == "markdown":
                write_text(conv_dir / CONVERSATION_MD, conversation_to_markdown(conversation))

        for attachment in conversation.attachments():
            if attachment.content is None:
                continue
            ext = ARTIFACT_EXTENSIONS.get(attachment.mime_type or "", ".txt")
            write_text(conv_dir / f"{sanitize_filename(attachment.id)}{ext}", attachment.content)

        provider_dir = self.provider_dir(conversation.provider)
        rel_path = conv_dir.relative_to(provider_dir).as_posix()

        previous = self._lookup_entry(conversation.provider, conversation.id)
        if previous and previous.path != rel_path:
            old_dir = provider_dir / previous.path
            if old_dir.is_dir():
                logger.info("Conversation %s moved from %s to %s", conversation.id, previous.path, rel_path)
                shutil.rmtree(old_dir)

        entry = IndexEntry.from_conversation(conversation, rel_path)
        if self.batch is not None:
            self.batch.add(conversation.id, entry)
        else:
            self._write_entries(conversation.provider, {conversation.id: entry})

        return conv_dir

    def conversation_exists(self, provider: str, conversation_id: str) -> bool:
        """Path-existence check only; the stored content is not validated."""
        return self._find_conversation_dir(provider, conversation_id) is not None

    def get_conversation(self, provider: str, conversation_id: str) -> Conversation | None:
        conv_dir = self._find_conversation_dir(provider, conversation_id)
        if conv_dir is None:
            return None

        data = read_json(conv_dir / CONVERSATION_JSON)
        if data is None:
            return None
        return conversation_from_dict(data)

    # ── Indexes ──────────────────────────────────────────────────────

    def get_index(self, provider: str) -> dict[str, IndexEntry]:
        """Return the on-disk conversation index for a provider.

        The cached copy is re-read whenever the index file changes on disk,
        so a long-lived store sees writes made by other processes.
        """
        return dict(self._current_index(provider))

    def get_hierarchy_index(self, provider: str) -> HierarchyIndex:
        return HierarchyIndex.from_dict(read_json(self.provider_dir(provider) / HIERARCHY_FILE))

    def get_stats(self, provider: str) -> dict:
        entries = self.get_index(provider).values()
        return {
            "total_conversations": len(entries),
            "total_messages": sum(e.message_count for e in entries),
            "total_media": sum(e.media_count for e in entries),
        }

    # ── Provider-level extras ────────────────────────────────────────

    def save_assets(self, provider: str, assets: list[Asset]) -> None:
        assets_dir = self.provider_dir(provider) / "assets"
        write_json(assets_dir / "assets-index.json", [asset_to_dict(a) for a in assets])

        for asset in assets:
            type_dir = assets_dir / "by-type" / sanitize_filename(asset.type)
            write_json(type_dir / f"{sanitize_filename(asset.id)}.json", asset_to_dict(asset))

    def save_workspaces(self, provider: str, workspaces: list[Workspace]) -> None:
        workspaces_dir = self.provider_dir(provider) / "workspaces"
        write_json(workspaces_dir / "workspaces-index.json", [workspace_to_dict(ws) for ws in workspaces])

        for workspace in workspaces:
            ws_dir = workspaces_dir / sanitize_filename(workspace.id)
            write_json(ws_dir / "workspace.json", workspace_to_dict(workspace))
            write_text(ws_dir / "workspace.md", workspace_to_markdown(workspace))

            for project in workspace.projects:
                self._save_project(ws_dir / "projects", project)

    # ── Private helpers ──────────────────────────────────────────────

    def _save_project(self, projects_dir: Path, project: Project) -> None:
        project_dir = projects_dir / sanitize_filename(project.id)
        write_json(project_dir / "project.json", project_to_dict(project))
        write_text(project_dir / "project.md", project_to_markdown(project))

        for f in project.files:
            write_text(project_dir / "files" / sanitize_filename(f.name), f.content)

    def _read_index(self, provider: str) -> dict[str, IndexEntry]:
        data = read_json(self.provider_dir(provider) / INDEX_FILE, default={})
        return {cid: IndexEntry.from_dict(raw) for cid, raw in data.items()}

    def _write_entries(self, provider: str, entries: dict[str, IndexEntry]) -> None:
        """Read-modify-write the index and hierarchy index for one provider."""
        provider_dir = self.provider_dir(provider)

        index = self._read_index(provider)
        index.update(entries)
        write_json(provider_dir / INDEX_FILE, {cid: e.to_dict() for cid, e in index.items()},
                   compress=self.config.compression)
        self._indexes[provider] = index
        self._index_stamps[provider] = self._index_stamp(provider)

        hierarchy = self.get_hierarchy_index(provider)
        for cid, entry in entries.items():
            hierarchy.place(cid, entry)
        write_json(provider_dir / HIERARCHY_FILE, hierarchy.to_dict(), compress=self.config.compression)

    def _lookup_entry(self, provider: str, conversation_id: str) -> IndexEntry | None:
        if self.batch is not None:
            pending = self.batch.get(provider, conversation_id)
            if pending is not None:
                return pending
        return self._current_index(provider).get(conversation_id)

    def _current_index(self, provider: str) -> dict[str, IndexEntry]:
        stamp = self._index_stamp(provider)
        if provider not in self._indexes or self._index_stamps.get(provider) != stamp:
            self._indexes[provider] = self._read_index(provider)
            self._index_stamps[provider] = stamp
        return self._indexes[provider]

    def _index_stamp(self, provider: str) -> tuple | None:
        """Identity (name, inode, mtime, size) of whichever index file is on disk, or None."""
        path = existing_json_path(self.provider_dir(provider) / INDEX_FILE)
        if path is None:
            return None
        st = path.stat()
        return (path.name, st.st_ino, st.st_mtime_ns, st.st_size)

    def _find_conversation_dir(self, provider: str, conversation_id: str) -> Path | None:
        provider_dir = self.provider_dir(provider)
        entry = self._lookup_entry(provider, conversation_id)
        if entry is not None and (provider_dir / entry.path).is_dir():
            return provider_dir / entry.path

        flat = provider_dir / "conversations" / sanitize_filename(conversation_id)
        if flat.is_dir():
            return flat
        return None
