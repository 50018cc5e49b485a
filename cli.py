"""
DriveShelf CLI
Commands: ls, cat, write, mkdir, mv, rm, tag, search, sync, status, reset-sync, factory-reset, server
"""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

app = typer.Typer(
    name="driveshelf",
    help="DriveShelf — local-first files synced to Google Drive",
    add_completion=False,
)
console = Console()

# Suppress noisy loggers when running CLI
logging.getLogger("chromadb").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("pypdf").setLevel(logging.ERROR)


def _bootstrap():
    """Initialize DB and the semantic index before any command that needs them."""
    from driveshelf.config.settings import settings
    from driveshelf.storage.database import init_db
    from driveshelf.storage.records import record_store
    init_db()
    if settings.index_enabled:
        from driveshelf.storage.vector_store import vector_store
        record_store.set_indexer(vector_store)
    return record_store


def _fmt_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


# ── ls ────────────────────────────────────────────────────────────────────────

@app.command("ls")
def list_files(
    prefix: str = typer.Argument("", help="Folder to list (default: everything)"),
    deleted: bool = typer.Option(False, "--deleted", help="Include pending deletes"),
):
    """List files and folders."""
    store = _bootstrap()
    records = store.list_by_prefix(prefix, include_deleted=deleted)

    if not records:
        console.print("[dim]No files.[/]")
        return

    table = Table(title=f"Files under /{prefix}" if prefix else "Files", box=box.ROUNDED)
    table.add_column("Path", style="cyan")
    table.add_column("Type", justify="center")
    table.add_column("Updated", no_wrap=True)
    table.add_column("Tags")
    table.add_column("State", justify="center")

    for r in records:
        if r.deleted:
            state = "[red]deleted[/]"
        elif r.dirty:
            state = "[yellow]pending[/]"
        elif r.remote_id:
            state = "[green]synced[/]"
        else:
            state = "[dim]local[/]"
        path = f"[bold]{r.path}/[/]" if r.is_folder else r.path
        table.add_row(path, r.type.value, _fmt_time(r.updated_at), ", ".join(r.tags or []), state)

    console.print(table)


# ── cat ───────────────────────────────────────────────────────────────────────

@app.command()
def cat(path: str = typer.Argument(..., help="File path")):
    """Print a file's content."""
    store = _bootstrap()
    record = store.get(path)
    if record is None:
        console.print(f"[red]File not found:[/] {path}")
        raise typer.Exit(1)
    if record.is_folder:
        console.print(f"[red]{path} is a folder[/]")
        raise typer.Exit(1)
    content = record.content
    if isinstance(content, bytes):
        console.print(f"[dim]<binary, {len(content)} bytes>[/]")
        return
    console.print(content or "", markup=False, highlight=False)


# ── write ─────────────────────────────────────────────────────────────────────

@app.command()
def write(
    path: str = typer.Argument(..., help="File path"),
    text: Optional[str] = typer.Argument(None, help="Content (reads stdin when omitted)"),
    source: Optional[Path] = typer.Option(None, "--from", "-f", help="Read content from a local file"),
    append: bool = typer.Option(False, "--append", "-a", help="Append instead of overwrite"),
):
    """Write (or append to) a file."""
    store = _bootstrap()
    if source is not None:
        content = source.read_text(encoding="utf-8")
    elif text is not None:
        content = text
    else:
        content = sys.stdin.read()

    try:
        if append:
            record = store.append_file(path, content)
        else:
            record = store.save_file(path, content)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Saved[/] {record.path}")


# ── mkdir ─────────────────────────────────────────────────────────────────────

@app.command()
def mkdir(path: str = typer.Argument(..., help="Folder path")):
    """Create a folder (and any missing parents)."""
    store = _bootstrap()
    record = store.create_folder(path)
    console.print(f"[green]Created[/] {record.path}/")


# ── mv ────────────────────────────────────────────────────────────────────────

@app.command()
def mv(
    old_path: str = typer.Argument(..., help="Current path"),
    new_path: str = typer.Argument(..., help="New path"),
):
    """Move or rename a file or folder."""
    from driveshelf.storage.records import RecordNotFound
    store = _bootstrap()
    try:
        record = store.rename(old_path, new_path)
    except RecordNotFound:
        console.print(f"[red]File not found:[/] {old_path}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Moved[/] {old_path} → {record.path}")


# ── rm ────────────────────────────────────────────────────────────────────────

@app.command()
def rm(path: str = typer.Argument(..., help="File or folder path")):
    """Delete a file or folder (removed from Drive on the next sync)."""
    store = _bootstrap()
    try:
        removed = store.delete(path)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    if not removed:
        console.print(f"[red]File not found:[/] {path}")
        raise typer.Exit(1)
    console.print(f"[yellow]Deleted[/] {len(removed)} record(s)")


# ── tag ───────────────────────────────────────────────────────────────────────

@app.command()
def tag(
    path: str = typer.Argument(..., help="File path"),
    add: list[str] = typer.Option([], "--add", "-a", help="Tag to add"),
    remove: list[str] = typer.Option([], "--remove", "-r", help="Tag to remove"),
):
    """Show or edit a file's tags."""
    store = _bootstrap()
    record = store.get(path)
    if record is None:
        console.print(f"[red]File not found:[/] {path}")
        raise typer.Exit(1)

    tags = list(record.tags or [])
    if add or remove:
        for t in add:
            if t not in tags:
                tags.append(t)
        tags = [t for t in tags if t not in remove]
        record = store.update_metadata(path, tags=tags)

    console.print(f"{record.path}: " + (", ".join(f"[cyan]{t}[/]" for t in tags) or "[dim]no tags[/]"))


# ── search ────────────────────────────────────────────────────────────────────

@app.command()
def search(
    query: str = typer.Argument(..., help="Search text"),
    limit: int = typer.Option(8, "--limit", "-n"),
):
    """Semantic search across indexed notes and PDF sources."""
    _bootstrap()
    from driveshelf.storage.vector_store import vector_store

    hits = vector_store.search(query, n_results=limit)
    if not hits:
        console.print("[dim]No matches.[/]")
        return
    for hit in hits:
        console.print(f"[cyan]{hit['file_path']}[/] [dim]({hit['relevance']:.2f})[/]")
        console.print(f"  {hit['text'][:200]}", markup=False, highlight=False)


# ── sync ──────────────────────────────────────────────────────────────────────

@app.command()
def sync(token: Optional[str] = typer.Option(None, "--token", help="Google Drive access token")):
    """Run one pull+push pass against Google Drive."""
    _bootstrap()
    from driveshelf.sync.drive import DriveAuthError
    from driveshelf.sync.engine import sync_engine

    try:
        sync_engine.initialize(token)
    except RuntimeError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    async def run():
        try:
            return await sync_engine.sync(on_progress=lambda msg: console.print(f"[dim]›[/] {msg}"))
        finally:
            await sync_engine.shutdown()

    try:
        asyncio.run(run())
    except DriveAuthError:
        console.print("[red]Google Drive rejected the access token.[/] Re-authenticate and retry.")
        raise typer.Exit(2)
    except Exception as e:
        console.print(f"[red]Sync failed:[/] {e}")
        raise typer.Exit(1)


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status():
    """Show store and sync stats."""
    store = _bootstrap()
    from driveshelf.storage.records import SYNC_TOKEN_KEY, ROOT_ID_KEY

    stats = store.stats()
    console.print(Panel(
        f"Files total       : [cyan]{stats['total']}[/]\n"
        f"  Folders         : [cyan]{stats['folders']}[/]\n"
        f"  Synced          : [green]{stats['synced']}[/]\n"
        f"  Pending upload  : [yellow]{stats['dirty']}[/]\n"
        f"  Pending delete  : [red]{stats['tombstones']}[/]\n"
        f"Drive root        : {store.get_setting(ROOT_ID_KEY) or '[dim]not resolved[/]'}\n"
        f"Change token      : {'[green]yes[/]' if store.get_setting(SYNC_TOKEN_KEY) else '[dim]none (full pull next)[/]'}",
        title="DriveShelf Status",
        border_style="blue",
    ))


# ── reset-sync ────────────────────────────────────────────────────────────────

@app.command("reset-sync")
def reset_sync():
    """Forget Drive links; the next sync re-pulls everything and re-pushes all files."""
    store = _bootstrap()
    count = store.reset_sync_state()
    console.print(f"[yellow]Sync state reset.[/] {count} record(s) will be re-uploaded.")


# ── factory-reset ─────────────────────────────────────────────────────────────

@app.command("factory-reset")
def factory_reset(yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation")):
    """Delete every local file and sync setting."""
    if not yes:
        typer.confirm("This deletes all local files and sync state. Continue?", abort=True)
    from driveshelf.config.settings import settings
    store = _bootstrap()
    store.factory_reset(settings.default_folders)
    console.print("[red]Factory reset complete.[/]")


# ── server ────────────────────────────────────────────────────────────────────

@app.command()
def server(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the DriveShelf API server."""
    import uvicorn
    console.print(f"[green]Starting DriveShelf API server[/] → http://{host}:{port}")
    uvicorn.run("driveshelf.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
