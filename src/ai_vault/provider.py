"""Abstract base classes for AI platform providers."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from importlib import import_module
from importlib.metadata import entry_points

from .core import Asset, Conversation, ConversationSummary, Workspace

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "ai_vault.providers"


@dataclass
class ListOptions:
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None


@dataclass
class RateLimitHint:
    """Provider-advertised request limits."""

    max_concurrent: int | None = None
    requests_per_minute: int | None = None


class Provider(ABC):
    """Base class for AI platform data sources.

    Each platform (ChatGPT, Claude, Grok, ...) implements this interface to
    turn a remote service into conversations the archiver can store. All
    methods may be slow and may fail; the archiver treats them as such.
    """

    name: str  # "chatgpt", "claude", "grok-web", ...
    rate_limit: RateLimitHint | None = None
    media_headers: dict[str, str] | None = None  # cookies/authorization for media URLs

    @abstractmethod
    async def list_conversations(self, options: ListOptions | None = None) -> list[ConversationSummary]:
        """Return summaries of conversations visible to the authenticated user."""
        ...

    @abstractmethod
    async def fetch_conversation(self, conversation_id: str) -> Conversation:
        """Return a complete conversation.

        Raises NotFoundError, RateLimitError or AuthenticationError.
        """
        ...

    async def cleanup(self) -> None:
        """Release provider resources (browser sessions, HTTP clients)."""
        return None


class AssetSource(ABC):
    """Capability: the provider exposes an asset library."""

    @abstractmethod
    async def list_assets(self) -> list[Asset]:
        ...


class WorkspaceSource(ABC):
    """Capability: the provider organizes conversations into workspaces."""

    @abstractmethod
    async def list_workspaces(self) -> list[Workspace]:
        ...


def load_provider(ref: str) -> Provider:
    """Instantiate a provider from an entry-point name or ``module:attribute``."""
    if ":" in ref:
        module_name, _, attr = ref.partition(":")
        target = getattr(import_module(module_name), attr)
    else:
        matches = [ep for ep in entry_points(group=ENTRY_POINT_GROUP) if ep.name == ref]
        if not matches:
            raise LookupError(f"No provider registered under '{ref}'")
        target = matches[0].load()

    provider = target() if isinstance(target, type) else target
    if not isinstance(provider, Provider):
        raise TypeError(f"{ref} does not resolve to a Provider")
    logger.debug("Loaded provider %s from %s", provider.name, ref)
    return provider
