"""Environment-driven settings for the archive location and formats."""

import os
from dataclasses import dataclass, field
from pathlib import Path

EXPORT_FORMATS = ("json", "markdown")


@dataclass
class StorageConfig:
    """Configuration for the local archive.

    Attributes:
        base_dir: Root directory; each provider gets its own subdirectory.
        formats: Export formats written for every conversation.
        organize_by_date: Bucket flat conversations under YYYY/MM.
        compression: Gzip JSON artifacts (written with a ``.gz`` suffix).
    """

    base_dir: Path
    formats: list[str] = field(default_factory=lambda: list(EXPORT_FORMATS))
    organize_by_date: bool = False
    compression: bool = False

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        for fmt in self.formats:
            if fmt not in EXPORT_FORMATS:
                raise ValueError(f"Invalid format: {fmt}. Must be one of {', '.join(EXPORT_FORMATS)}")


def get_archive_dir() -> Path:
    """Return the archive base directory."""
    env = os.environ.get("AI_VAULT_DIR")
    if env:
        return Path(env).expanduser()

    return Path.home() / "ai-vault-data"


def get_export_formats() -> list[str]:
    env = os.environ.get("AI_VAULT_FORMATS")
    if not env:
        return list(EXPORT_FORMATS)
    return [f.strip() for f in env.split(",") if f.strip()]


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def get_storage_config() -> StorageConfig:
    """Build a StorageConfig from the environment."""
    return StorageConfig(
        base_dir=get_archive_dir(),
        formats=get_export_formats(),
        organize_by_date=_env_flag("AI_VAULT_ORGANIZE_BY_DATE"),
        compression=_env_flag("AI_VAULT_COMPRESS"),
    )
