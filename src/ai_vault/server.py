"""FastAPI read-only browser over the local archive."""

import logging

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import Response

from .config import get_storage_config
from .export import conversation_to_json, conversation_to_markdown
from .media import MediaStore
from .storage import ContentStore

logger = logging.getLogger(__name__)

app = FastAPI(title="ai-vault", version="0.1.0")

# Store cache (populated on first request)
_store: ContentStore | None = None


def _get_store() -> ContentStore:
    """Lazily open and cache the content store."""
    global _store
    if _store is None:
        _store = ContentStore(get_storage_config())
        logger.info("Serving archive at %s", _store.base_dir)
    return _store


def _load_conversation(provider: str, conversation_id: str):
    conversation = _get_store().get_conversation(provider, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/providers")
async def get_providers():
    """Return providers that have archived conversations."""
    return _get_store().list_providers()


@app.get("/api/conversations")
async def get_conversations(
    provider: str = Query(..., description="Provider to list"),
    search: str | None = Query(None, description="Search in titles"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return index entries for a provider, newest first."""
    index = _get_store().get_index(provider)
    items = [{"id": cid, **entry.to_dict()} for cid, entry in index.items()]

    if search:
        search_lower = search.lower()
        items = [item for item in items if search_lower in item["title"].lower()]

    items.sort(key=lambda item: item["updated_at"] or "", reverse=True)

    return {
        "total": len(items),
        "conversations": items[offset: offset + limit],
    }


@app.get("/api/conversations/{provider}/{conversation_id}")
async def get_conversation(provider: str, conversation_id: str):
    """Return a full archived conversation."""
    return Response(
        content=conversation_to_json(_load_conversation(provider, conversation_id)),
        media_type="application/json",
    )


@app.get("/api/hierarchy/{provider}")
async def get_hierarchy(provider: str):
    return _get_store().get_hierarchy_index(provider).to_dict()


@app.get("/api/media/stats")
async def get_media_stats(provider: str | None = Query(None)):
    return MediaStore(_get_store().base_dir).get_stats(provider)


@app.get("/api/export/{provider}/{conversation_id}")
async def export_conversation(
    provider: str,
    conversation_id: str,
    format: str = Query("md", description="Export format: md or json"),
):
    """Export an archived conversation as Markdown or JSON."""
    conversation = _load_conversation(provider, conversation_id)
    safe_title = "".join(c if c.isalnum() or c in "-_ " else "" for c in conversation.title)[:50] or "conversation"

    if format == "json":
        return Response(
            content=conversation_to_json(conversation),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.json"'},
        )
    return Response(
        content=conversation_to_markdown(conversation),
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{safe_title}.md"'},
    )
