"""Export conversations, workspaces and projects to JSON and Markdown."""

import json
from dataclasses import asdict
from datetime import datetime

from .core import (
    Asset,
    Attachment,
    Conversation,
    ConversationMetadata,
    Hierarchy,
    Message,
    Project,
    Workspace,
)


def conversation_to_dict(conversation: Conversation) -> dict:
    """Convert a Conversation into a JSON-serializable dict."""
    return {
        "id": conversation.id,
        "provider": conversation.provider,
        "title": conversation.title,
        "created_at": _iso(conversation.created_at),
        "updated_at": _iso(conversation.updated_at),
        "metadata": asdict(conversation.metadata),
        "hierarchy": asdict(conversation.hierarchy) if conversation.hierarchy else None,
        "messages": [
            {
                "id": msg.id,
                "role": msg.role,
                "content": msg.content,
                "timestamp": _iso(msg.timestamp),
                "attachments": [asdict(a) for a in msg.attachments],
                "metadata": msg.metadata,
            }
            for msg in conversation.messages
        ],
    }


def conversation_from_dict(data: dict) -> Conversation:
    """Rebuild a Conversation from the dict produced by conversation_to_dict."""
    hierarchy = data.get("hierarchy")
    return Conversation(
        id=data["id"],
        provider=data["provider"],
        title=data.get("title", ""),
        created_at=_parse_iso(data.get("created_at")),
        updated_at=_parse_iso(data.get("updated_at")),
        metadata=ConversationMetadata(**data.get("metadata", {})),
        hierarchy=Hierarchy(**hierarchy) if hierarchy else None,
        messages=[
            Message(
                id=msg["id"],
                role=msg["role"],
                content=msg.get("content", ""),
                timestamp=_parse_iso(msg.get("timestamp")),
                attachments=[Attachment(**a) for a in msg.get("attachments", [])],
                metadata=msg.get("metadata", {}),
            )
            for msg in data.get("messages", [])
        ],
    )


def conversation_to_json(conversation: Conversation) -> str:
    return json.dumps(conversation_to_dict(conversation), indent=2, ensure_ascii=False)


def conversation_to_markdown(conversation: Conversation) -> str:
    """Export a conversation as clean Markdown."""
    lines = [f"# {conversation.title}", ""]

    lines.append(f"**Provider:** {conversation.provider}")
    if conversation.hierarchy and conversation.hierarchy.workspace_name:
        lines.append(f"**Workspace:** {conversation.hierarchy.workspace_name}")
    if conversation.hierarchy and conversation.hierarchy.project_name:
        lines.append(f"**Project:** {conversation.hierarchy.project_name}")
    if conversation.created_at:
        lines.append(f"**Created:** {conversation.created_at.isoformat()}")
    if conversation.updated_at:
        lines.append(f"**Updated:** {conversation.updated_at.isoformat()}")
    lines.append(f"**Messages:** {len(conversation.messages)}")
    lines.extend(["", "---", ""])

    for msg in conversation.messages:
        lines.append(f"## {msg.role[:1].upper()}{msg.role[1:]}")
        if msg.timestamp:
            lines.append(f"*{msg.timestamp.isoformat()}*")
        lines.append("")
        lines.append(msg.content)

        if msg.attachments:
            lines.extend(["", "**Attachments:**"])
            for attachment in msg.attachments:
                target = attachment.url or attachment.id
                if attachment.type == "image":
                    lines.append(f"- ![{attachment.id}]({target})")
                else:
                    lines.append(f"- [{attachment.type}: {attachment.id}]({target})")

        lines.extend(["", "---", ""])

    lines.extend(["## Metadata", "", "```json"])
    lines.append(json.dumps(asdict(conversation.metadata), indent=2, ensure_ascii=False))
    lines.append("```")

    return "\n".join(lines)


def project_to_dict(project: Project) -> dict:
    data = asdict(project)
    for key in ("created_at", "updated_at", "last_used_at"):
        data[key] = _iso(getattr(project, key))
    return data


def workspace_to_dict(workspace: Workspace) -> dict:
    """Workspace metadata without its projects (those are written separately)."""
    return {
        "id": workspace.id,
        "provider": workspace.provider,
        "name": workspace.name,
        "description": workspace.description,
        "created_at": _iso(workspace.created_at),
        "updated_at": _iso(workspace.updated_at),
        "last_used_at": _iso(workspace.last_used_at),
        "project_count": len(workspace.projects),
        "metadata": workspace.metadata,
    }


def asset_to_dict(asset: Asset) -> dict:
    data = asdict(asset)
    data["created_at"] = _iso(asset.created_at)
    data["last_used_at"] = _iso(asset.last_used_at)
    return data


def workspace_to_markdown(workspace: Workspace) -> str:
    lines = [f"# {workspace.name}", ""]
    if workspace.description:
        lines.extend([workspace.description, ""])

    if workspace.created_at:
        lines.append(f"**Created:** {workspace.created_at.isoformat()}")
    if workspace.updated_at:
        lines.append(f"**Updated:** {workspace.updated_at.isoformat()}")
    if workspace.last_used_at:
        lines.append(f"**Last Used:** {workspace.last_used_at.isoformat()}")
    lines.append(f"**Projects:** {len(workspace.projects)}")
    lines.extend(["", "---", ""])

    if workspace.projects:
        lines.extend(["## Projects", ""])
        for project in workspace.projects:
            lines.append(f"### {project.name}")
            if project.description:
                lines.extend([project.description, ""])
            if project.type:
                lines.append(f"**Type:** {project.type}")
            lines.append(f"**Files:** {len(project.files)}")
            lines.append("")

    return "\n".join(lines)


def project_to_markdown(project: Project) -> str:
    lines = [f"# {project.name}", ""]
    if project.description:
        lines.extend([project.description, ""])
    if project.type:
        lines.append(f"**Type:** {project.type}")
    if project.created_at:
        lines.append(f"**Created:** {project.created_at.isoformat()}")
    if project.updated_at:
        lines.append(f"**Updated:** {project.updated_at.isoformat()}")
    lines.append(f"**Files:** {len(project.files)}")
    lines.extend(["", "---", ""])

    if project.content:
        lines.extend(["## Content", "", "```", project.content, "```", ""])

    if project.files:
        lines.extend(["## Files", ""])
        for f in project.files:
            lines.append(f"### {f.name}")
            if f.path:
                lines.append(f"**Path:** `{f.path}`")
            lines.extend(["", f"```{f.language}", f.content, "```", ""])

    return "\n".join(lines)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string."""
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
