"""CLI entry point for ai-vault."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path

import click
import uvicorn

from .archiver import ArchiveOptions, ArchiveResult, create_archiver
from .config import get_storage_config
from .media import MediaStore
from .provider import load_provider
from .storage import ContentStore

MAX_ERRORS_SHOWN = 5


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Archive AI platform conversations into a local, deduplicated store."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.argument("provider_ref")
@click.option("--since", type=click.DateTime(), help="Only conversations updated after this date.")
@click.option("--until", type=click.DateTime(), help="Only conversations updated before this date.")
@click.option("--limit", type=int, help="Maximum number of conversations to archive.")
@click.option("--id", "conversation_ids", multiple=True, help="Archive only this conversation id (repeatable).")
@click.option("--search", help="Case-insensitive filter on title and preview.")
@click.option("--dry-run", is_flag=True, help="Fetch but do not save anything.")
@click.option("--no-media", is_flag=True, help="Skip attachment downloads.")
@click.option("--skip-existing", is_flag=True, help="Skip conversations that are up to date locally.")
@click.option("--concurrency", type=click.IntRange(1, 20), help="Override the worker pool size.")
@click.option("--archive-dir", type=click.Path(file_okay=False, path_type=Path), help="Archive base directory.")
@click.option("--compress", is_flag=True, help="Gzip JSON artifacts.")
def archive(provider_ref: str, since: datetime | None, until: datetime | None, limit: int | None,
            conversation_ids: tuple[str, ...], search: str | None, dry_run: bool, no_media: bool,
            skip_existing: bool, concurrency: int | None, archive_dir: Path | None, compress: bool):
    """Archive conversations from PROVIDER_REF (entry-point name or module:attr)."""
    try:
        provider = load_provider(provider_ref)
    except (LookupError, ImportError, AttributeError, TypeError) as e:
        raise click.ClickException(str(e))

    config = get_storage_config()
    if archive_dir:
        config.base_dir = archive_dir
    if compress:
        config.compression = True

    options = ArchiveOptions(
        provider=provider.name,
        conversation_ids=list(conversation_ids),
        since=since,
        until=until,
        limit=limit,
        search_query=search,
        download_media=not no_media,
        skip_existing=skip_existing,
        dry_run=dry_run,
        concurrency=concurrency,
    )

    archiver = create_archiver(config=config)
    result = asyncio.run(_run_archive(archiver, provider, options))

    for line in format_summary(result, dry_run):
        click.echo(line)

    if any(e.id == "archive" for e in result.errors):
        raise SystemExit(1)


async def _run_archive(archiver, provider, options: ArchiveOptions) -> ArchiveResult:
    try:
        return await archiver.archive(provider, options)
    finally:
        await provider.cleanup()
        await archiver.media.aclose()


@main.command()
@click.option("--archive-dir", type=click.Path(file_okay=False, path_type=Path), help="Archive base directory.")
def status(archive_dir: Path | None):
    """Show what is in the archive."""
    config = get_storage_config()
    if archive_dir:
        config.base_dir = archive_dir
    storage = ContentStore(config)
    media = MediaStore(config.base_dir)

    providers = storage.list_providers()
    if not providers:
        click.echo(f"No archived conversations in {config.base_dir}")
        return

    for name in providers:
        stats = storage.get_stats(name)
        click.echo(click.style(name, bold=True))
        click.echo(f"  Conversations: {stats['total_conversations']}")
        click.echo(f"  Messages:      {stats['total_messages']}")
        click.echo(f"  Attachments:   {stats['total_media']}")

    media_stats = media.get_stats()
    click.echo(click.style("Media", bold=True))
    click.echo(f"  Files:   {media_stats['unique_files']} unique / {media_stats['total_files']} referenced")
    click.echo(f"  Size:    {_megabytes(media_stats['total_size'])} MB")
    click.echo(f"  Saved by dedup: {_megabytes(media_stats['dedup_savings'])} MB")


@main.command()
@click.argument("provider")
@click.option("--archive-dir", type=click.Path(file_okay=False, path_type=Path), help="Archive base directory.")
def cleanup(provider: str, archive_dir: Path | None):
    """Delete media no longer referenced by any archived PROVIDER conversation."""
    config = get_storage_config()
    if archive_dir:
        config.base_dir = archive_dir
    storage = ContentStore(config)
    media = MediaStore(config.base_dir)

    result = media.cleanup(storage.get_index(provider).keys(), provider=provider)
    click.echo(f"Removed {result.files_removed} files, freed {_megabytes(result.bytes_freed)} MB")


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the read-only archive browser."""
    click.echo(f"Starting ai-vault on http://{host}:{port}")
    uvicorn.run("ai_vault.server:app", host=host, port=port, reload=False)


def format_summary(result: ArchiveResult, dry_run: bool = False) -> list[str]:
    """Render an archive result for the terminal."""
    rule = click.style("═" * 39, bold=True)
    lines = [rule, click.style("Archive Summary", bold=True), rule, ""]

    if dry_run:
        lines.extend([click.style("DRY RUN - No files were actually saved", fg="yellow"), ""])

    lines.append(click.style("Conversations:", fg="cyan"))
    lines.append(f"  Archived:     {click.style(str(result.conversations_archived), fg='green')}")
    if result.conversations_skipped:
        lines.append(f"  Skipped:      {result.conversations_skipped}")
    if result.conversations_rate_limited:
        lines.append(f"  Rate limited: {click.style(str(result.conversations_rate_limited), fg='yellow')}")
    if result.conversations_failed:
        lines.append(f"  Failed:       {click.style(str(result.conversations_failed), fg='red')}")

    if result.assets_archived:
        lines.append(f"Assets archived: {result.assets_archived}")
    if result.workspaces_archived:
        lines.append(f"Workspaces archived: {result.workspaces_archived}")

    if result.media_downloaded or result.media_skipped:
        lines.extend(["", click.style("Media:", fg="cyan")])
        lines.append(f"  Downloaded: {result.media_downloaded}")
        if result.media_skipped:
            lines.append(f"  Skipped:    {result.media_skipped} (already existed)")
        lines.append(f"  Size:       {_megabytes(result.bytes_downloaded)} MB")

    if result.errors:
        lines.extend(["", click.style(f"Errors: {len(result.errors)}", fg="red")])
        for error in result.errors[:MAX_ERRORS_SHOWN]:
            lines.append(click.style(f"  • {error.message}", fg="red"))
        if len(result.errors) > MAX_ERRORS_SHOWN:
            lines.append(f"  ... and {len(result.errors) - MAX_ERRORS_SHOWN} more")

    lines.extend(["", f"Completed in {result.duration:.1f}s", rule])
    return lines


def _megabytes(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}"
