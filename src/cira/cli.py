"""Typer-based CLI for the Cira sync engine."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .capture import (
    create_capture,
    create_collection,
    delete_capture,
    delete_collection,
    rename_collection,
    retry_failed,
)
from .config import CiraConfig, _find_repo_root
from .errors import CiraSyncError
from .ledger import LedgerWriter, read_ledger_tail
from .models.entities import SyncState
from .paths import DataPaths
from .store.blobs import BlobCache
from .store.db import LocalStore
from .sync.connectivity import http_probe
from .sync.events import SyncEventKind
from .sync.service import SyncService

app = typer.Typer(
    name="cira",
    help="Cira - offline-first sync for a photo and voice journal",
    add_completion=False,
)

console = Console()


@app.callback()
def main_options(
    ctx: typer.Context,
    data_root: str = typer.Option(
        None,
        "--data",
        "-d",
        help="Local data directory (default: .cira/config.toml, CIRA_DATA_ROOT or ~/.cira)",
    ),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging"),
):
    """Global options."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=debug)],
    )
    ctx.obj = {"config": CiraConfig.from_env(data_root)}


def _config(ctx: typer.Context) -> CiraConfig:
    return ctx.obj["config"]


def _open_local(config: CiraConfig) -> tuple[DataPaths, LocalStore, BlobCache, LedgerWriter]:
    paths = DataPaths.from_config(config)
    if not paths.db_file.exists():
        console.print(f"[red]Error: Data root not initialized at {config.data_root}[/red]")
        console.print("[yellow]Run 'cira init' first[/yellow]")
        raise typer.Exit(code=1)
    paths.ensure()
    return paths, LocalStore(paths.db_file), BlobCache(paths), LedgerWriter(paths.ledger_file)


def _build_service(config: CiraConfig) -> SyncService:
    if not config.backend.is_configured:
        console.print("[red]Error: backend not configured[/red]")
        console.print("[yellow]Set CIRA_API_URL and CIRA_API_KEY or edit .cira/config.toml[/yellow]")
        raise typer.Exit(code=1)
    if not DataPaths.from_config(config).db_file.exists():
        console.print(f"[red]Error: Data root not initialized at {config.data_root}[/red]")
        raise typer.Exit(code=1)

    probe = http_probe(f"{config.backend.api_url.rstrip('/')}/auth/v1/health")
    online = probe()
    if not online:
        console.print("[yellow]Backend unreachable; working offline[/yellow]")
    return SyncService(config, probe=probe, assume_online=online).configure()


@app.command()
def init(
    ctx: typer.Context,
    write_config: bool = typer.Option(
        True,
        "--write-config/--no-write-config",
        help="Create .cira/config.toml in the current repository if missing",
    ),
):
    """Initialize the local data root (database, blob cache, ledger).

    Idempotent: existing data is never overwritten.
    """
    config = _config(ctx)
    paths = DataPaths.from_config(config)

    created = [d for d in paths.get_all_directories() if not d.exists()]
    paths.ensure()
    if created:
        console.print(f"[green]+[/green] Created {len(created)} directories under {paths.root}")
    else:
        console.print("[dim]All directories already exist[/dim]")

    db_existed = paths.db_file.exists()
    store = LocalStore(paths.db_file)
    if db_existed:
        console.print(f"[dim]Database already exists: {paths.db_file}[/dim]")
        if store.recovered:
            console.print(f"[yellow]Reset {store.recovered} interrupted upload(s) to failed[/yellow]")
    else:
        console.print(f"[green]+[/green] Created database: {paths.db_file}")

    if not paths.ledger_file.exists():
        paths.ledger_file.touch()
        console.print(f"[green]+[/green] Created ledger: {paths.ledger_file}")

    if write_config:
        config_file = _find_repo_root(Path.cwd()) / ".cira" / "config.toml"
        if not config_file.exists():
            config_file.parent.mkdir(parents=True, exist_ok=True)
            config_file.write_text(config.to_toml_str(), encoding="utf-8")
            console.print(f"[green]+[/green] Created config: {config_file}")

    console.print()
    console.print("[bold green]Initialization complete![/bold green]")
    console.print(f"[dim]Data location:[/dim] {paths.root.absolute()}")


@app.command()
def capture(
    ctx: typer.Context,
    image: Path = typer.Argument(..., help="Photo to capture"),
    caption: Optional[str] = typer.Option(None, "--caption", "-c", help="Caption text"),
    album: Optional[str] = typer.Option(None, "--album", "-a", help="Album (collection) ID"),
    visibility: str = typer.Option("private", "--visibility", help="private, friends, family or public"),
    video: Optional[Path] = typer.Option(None, "--video", help="Paired live-photo movie"),
    voice: Optional[Path] = typer.Option(None, "--voice", help="Voice note file"),
    voice_duration: Optional[float] = typer.Option(None, "--voice-duration", help="Voice note length (seconds)"),
):
    """Capture a photo locally; it is uploaded on the next sync."""
    if visibility not in ("private", "friends", "family", "public"):
        console.print(f"[red]Error: invalid visibility '{visibility}'[/red]")
        raise typer.Exit(code=1)

    _, store, blobs, ledger = _open_local(_config(ctx))
    try:
        item = create_capture(
            store,
            blobs,
            ledger,
            image,
            caption=caption,
            collection_id=album,
            visibility=visibility,
            video_source=video,
            voice_source=voice,
            voice_duration=voice_duration,
        )
    except (FileNotFoundError, ValueError, CiraSyncError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]+[/green] Captured {item.id} [dim](pending)[/dim]")


@app.command()
def delete(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Capture ID"),
):
    """Delete a capture locally (and remotely on the next sync)."""
    _, store, blobs, ledger = _open_local(_config(ctx))
    try:
        delete_capture(store, blobs, ledger, item_id)
    except CiraSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]-[/green] Deleted {item_id}")


@app.command()
def retry(
    ctx: typer.Context,
    entity_id: Optional[str] = typer.Argument(None, help="Capture or album ID (default: all failed)"),
):
    """Re-queue failed uploads and clear their retry backoff."""
    _, store, _, ledger = _open_local(_config(ctx))
    try:
        requeued = retry_failed(store, ledger, entity_id)
    except CiraSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    if requeued:
        console.print(f"[green]Re-queued {len(requeued)} item(s)[/green]")
    else:
        console.print("[dim]Nothing to retry[/dim]")


album_app = typer.Typer(help="Album (collection) commands")
app.add_typer(album_app, name="album")


@album_app.command("create")
def album_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Album name"),
    description: Optional[str] = typer.Option(None, "--description", help="Album description"),
):
    """Create an album."""
    _, store, _, ledger = _open_local(_config(ctx))
    try:
        collection = create_collection(store, ledger, name, description)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]+[/green] Album {collection.id} [bold]{collection.name}[/bold]")


@album_app.command("rename")
def album_rename(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Album ID"),
    name: str = typer.Argument(..., help="New name"),
    description: Optional[str] = typer.Option(None, "--description", help="New description"),
):
    """Rename an album."""
    _, store, _, ledger = _open_local(_config(ctx))
    try:
        rename_collection(store, ledger, collection_id, name, description)
    except (ValueError, CiraSyncError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Renamed[/green] {collection_id} -> {name}")


@album_app.command("delete")
def album_delete(
    ctx: typer.Context,
    collection_id: str = typer.Argument(..., help="Album ID"),
):
    """Delete an album; its captures are kept."""
    _, store, blobs, ledger = _open_local(_config(ctx))
    try:
        delete_collection(store, blobs, ledger, collection_id)
    except CiraSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]-[/green] Deleted album {collection_id}")


@album_app.command("list")
def album_list(ctx: typer.Context):
    """List albums with their capture counts."""
    _, store, _, _ = _open_local(_config(ctx))
    collections = store.list_collections()
    if not collections:
        console.print("[dim]No albums[/dim]")
        return

    table = Table(title=f"{len(collections)} Album(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Items", justify="right")
    table.add_column("State", style="magenta")
    for collection in collections:
        table.add_row(
            collection.id[:8] + "...",
            collection.name,
            str(store.count_items(collection.id)),
            collection.sync_state.value,
        )
    console.print(table)


@app.command()
def status(ctx: typer.Context):
    """Show local sync state: counts per state, checkpoints and recent failures."""
    _, store, _, _ = _open_local(_config(ctx))
    counts = store.count_by_state()

    table = Table(title="Sync State")
    table.add_column("Entity", style="cyan")
    for state in ("pending", "syncing", "synced", "failed"):
        table.add_column(state.capitalize(), justify="right")
    table.add_column("Last pull (UTC)", style="dim")
    for entity_type, per_state in counts.items():
        checkpoint = store.get_checkpoint(entity_type)
        table.add_row(
            entity_type,
            *(str(per_state[state]) for state in ("pending", "syncing", "synced", "failed")),
            checkpoint.strftime("%Y-%m-%d %H:%M:%S") if checkpoint else "-",
        )
    console.print(table)

    deletes = store.list_pending_deletes()
    console.print(f"[dim]Queued remote deletions:[/dim] {len(deletes)}")
    console.print(f"[dim]Total pending:[/dim] {store.pending_count()}")

    failed = store.list_items(states=[SyncState.FAILED], limit=10)
    for item in failed:
        console.print(f"  [red]x[/red] {item.id} attempts={item.sync_attempts} {item.last_error or ''}")


@app.command()
def sync(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", "-f", help="Ignore retry backoff"),
):
    """Repair, upload pending changes, then pull remote changes."""
    service = _build_service(_config(ctx))
    try:
        result = asyncio.run(service.sync_now(force=force))
    except CiraSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    if result.skipped:
        console.print(f"[yellow]Sync skipped: {result.reason}[/yellow]")
        raise typer.Exit(code=1)

    if result.repaired:
        console.print(f"[yellow]Repaired {len(result.repaired)} incomplete upload(s)[/yellow]")
    if result.drain is not None:
        drain = result.drain
        console.print(
            f"[green]Uploaded[/green] {drain.synced_count}  "
            f"[red]failed[/red] {drain.failed_count}  [dim]skipped {drain.skipped_count}[/dim]"
        )
        for outcome in drain.failures:
            console.print(f"  [red]x[/red] {outcome.entity_type} {outcome.entity_id}: {outcome.error}")
    for pull_report in result.pulls:
        console.print(
            f"[cyan]Pulled {pull_report.entity_type}[/cyan]: {pull_report.fetched} fetched, "
            f"{pull_report.applied} applied, {pull_report.failed} failed"
        )


@app.command()
def pull(
    ctx: typer.Context,
    entity_type: str = typer.Option("all", "--type", "-t", help="captures, collections or all"),
):
    """Pull remote changes since the last checkpoint."""
    if entity_type not in ("captures", "collections", "all"):
        console.print(f"[red]Error: invalid type '{entity_type}'[/red]")
        raise typer.Exit(code=1)
    types = ["collections", "captures"] if entity_type == "all" else [entity_type]
    service = _build_service(_config(ctx))

    async def run():
        return [await service.pull_engine.pull(t) for t in types]

    try:
        reports = asyncio.run(run())
    except CiraSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title="Pull")
    for column in ("Type", "Fetched", "Created", "Updated", "Unchanged", "Skipped", "Failed"):
        table.add_column(column, justify="right" if column != "Type" else "left")
    for report in reports:
        table.add_row(
            report.entity_type,
            str(report.fetched),
            str(report.created),
            str(report.updated),
            str(report.unchanged),
            str(report.skipped),
            str(report.failed),
        )
    console.print(table)


@app.command()
def listen(
    ctx: typer.Context,
    seconds: float = typer.Option(0, "--seconds", "-s", help="Stop after N seconds (0 = until Ctrl-C)"),
):
    """Stay connected: probe connectivity, drain on reconnect and apply live changes."""
    service = _build_service(_config(ctx))

    async def run():
        await service.start()
        console.print(f"[green]Listening[/green] [dim]({service.listener_state.value})[/dim]")
        try:
            async with service.bus.listen() as queue:
                loop = asyncio.get_running_loop()
                deadline = loop.time() + seconds if seconds > 0 else None
                while deadline is None or loop.time() < deadline:
                    timeout = None if deadline is None else max(deadline - loop.time(), 0)
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=timeout)
                    except asyncio.TimeoutError:
                        break
                    style = "red" if event.kind is SyncEventKind.ENTITY_SYNC_FAILED else "cyan"
                    target = f"{event.entity_type} {event.entity_id}" if event.entity_id else ""
                    console.print(f"[{style}]{event.kind.value}[/{style}] {target} [dim]{event.detail}[/dim]")
        finally:
            await service.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")


@app.command()
def feed(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of posts"),
    use_rpc: bool = typer.Option(False, "--rpc", help="Use the server-side feed function"),
):
    """Show the social feed."""
    service = _build_service(_config(ctx))
    reader = service.feed_reader
    try:
        posts = asyncio.run(reader.fetch_social_feed(limit) if use_rpc else reader.fetch_feed(limit))
    except CiraSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)

    if not posts:
        console.print("[dim]Feed is empty[/dim]")
        return

    table = Table(title=f"Feed ({len(posts)})")
    table.add_column("Created (UTC)", style="cyan", no_wrap=True)
    table.add_column("Author", style="magenta")
    table.add_column("Message")
    table.add_column("Voice", justify="right", style="dim")
    for post in posts:
        message = post.message or ""
        if len(message) > 50:
            message = message[:47] + "..."
        table.add_row(
            post.created_at.strftime("%Y-%m-%d %H:%M"),
            post.author.username or post.owner_id[:8],
            message,
            f"{post.voice_duration:.0f}s" if post.voice_duration else "-",
        )
    console.print(table)


ledger_app = typer.Typer(help="Ledger commands")
app.add_typer(ledger_app, name="ledger")


@ledger_app.command("tail")
def ledger_tail(
    ctx: typer.Context,
    n: int = typer.Option(20, "--n", help="Number of recent events to display"),
    full: bool = typer.Option(False, "--full", help="Show full payloads with JSON pretty-print"),
    entity: Optional[str] = typer.Option(None, "--entity", "-e", help="Only events for this capture or album"),
):
    """Display the last N events from the sync ledger."""
    paths = DataPaths.from_config(_config(ctx))
    events = read_ledger_tail(paths.ledger_file, n=n, entity_id=entity.lower() if entity else None)

    if not events:
        console.print("[dim]No events in ledger[/dim]")
        return

    if full:
        console.print(f"[bold]Last {len(events)} Ledger Event(s)[/bold]\n")
        for i, event in enumerate(events, 1):
            console.print(f"[cyan]Event {i}/{len(events)}[/cyan]")
            console.print(f"  [dim]Timestamp:[/dim]   {event.ts.strftime('%Y-%m-%d %H:%M:%S')} UTC")
            console.print(f"  [dim]Event Type:[/dim]  [magenta]{event.event_type}[/magenta]")
            console.print(f"  [dim]Entity ID:[/dim]   {event.entity_id or '-'}")
            console.print("  [dim]Payload:[/dim]")
            for line in json.dumps(event.payload, indent=2).split("\n"):
                console.print(f"    {line}")
            console.print()
        return

    table = Table(title=f"Last {len(events)} Ledger Event(s)")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Event Type", style="magenta")
    table.add_column("Entity ID", style="yellow")
    table.add_column("Payload", style="dim")
    for event in events:
        payload_str = str(event.payload)
        if len(payload_str) > 60:
            payload_str = payload_str[:57] + "..."
        table.add_row(
            event.ts.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            event.entity_id[:8] + "..." if event.entity_id else "-",
            payload_str,
        )
    console.print(table)


@app.command()
def version():
    """Show Cira version."""
    from . import __version__

    console.print(f"Cira sync v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
