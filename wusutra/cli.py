"""Command line interface for the wusutra recording client."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Dict, NoReturn, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from . import config as config_mod
from . import storage as storage_mod
from .audit import AuditReducer
from .capture import CaptureError, CaptureSession, SoundDeviceMicrophone, new_recording
from .config import ConfigError
from .identity import DeviceIdentity
from .models import DIALECTS, InvalidTransitionError, RecordingItem, UploadStatus
from .prompts import PromptsError, PromptsService
from .storage import RecordingStore, StoreError, count_by_status
from .upload_client import Endpoint, UploadClient, UploadFailure, UploadOutcome
from .uploader import DispatchError, UploadOrchestrator

app = typer.Typer(add_completion=False, help="Record, annotate and upload dialect speech clips.")
console = Console()

_STATUS_COLOURS = {
    UploadStatus.PENDING: "yellow",
    UploadStatus.UPLOADING: "cyan",
    UploadStatus.UPLOADED: "blue",
    UploadStatus.FAILED: "red",
    UploadStatus.AUDITING: "magenta",
    UploadStatus.APPROVED: "green",
    UploadStatus.REJECTED: "red",
}


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load_config() -> config_mod.Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        _fail(str(exc))


def _open_store(cfg: config_mod.Config) -> RecordingStore:
    root = Path(cfg.data_dir).expanduser() if cfg.data_dir else storage_mod.RECORDINGS_DIR
    return RecordingStore(root)


def _orchestrator(cfg: config_mod.Config, store: RecordingStore) -> UploadOrchestrator:
    if not cfg.api_base_url:
        _fail("No API server configured. Run `wusutra config --api-base-url https://host` first.")
    client = UploadClient(lenient_success=cfg.lenient_responses, identity=DeviceIdentity())
    return UploadOrchestrator(store, client)


def _get(store: RecordingStore, item_id: str) -> RecordingItem:
    try:
        return store.get(item_id)
    except StoreError as exc:
        _fail(str(exc))


def _report_outcome(item_id: str, outcome: UploadOutcome) -> bool:
    if isinstance(outcome, UploadFailure):
        typer.secho(f"Upload of {item_id} failed: {outcome.message}", fg=typer.colors.RED, err=True)
        return False
    server_id = outcome.response.recording_id
    suffix = f" (server id {server_id})" if server_id else ""
    typer.secho(f"Uploaded {item_id}{suffix}.", fg=typer.colors.GREEN)
    return True


def _status_text(status: UploadStatus) -> str:
    return f"[{_STATUS_COLOURS[status]}]{status.value}[/]"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Log debug output to stderr."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if version:
        typer.echo(f"wusutra v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def record(
    dialect: Optional[str] = typer.Option(None, "--dialect", help="Dialect code of the recording."),
    text: Optional[str] = typer.Option(None, "--text", help="Transcription of what will be said."),
) -> None:
    """Record a clip from the microphone until Enter is pressed."""

    cfg = _load_config()
    dialect = dialect or cfg.default_dialect
    if dialect not in DIALECTS:
        _fail(f"Unsupported dialect: {dialect}. Run `wusutra dialects` for the list.")

    store = _open_store(cfg)
    try:
        session = CaptureSession(SoundDeviceMicrophone(), store.root, audio_format=cfg.audio_format)
        session.start()
    except RuntimeError as exc:
        _fail(str(exc))

    typer.secho("Recording… press Enter to stop.", fg=typer.colors.BLUE)
    try:
        input()
    except (KeyboardInterrupt, EOFError):
        session.abort()
        _fail("Recording discarded.")

    try:
        result = session.stop()
    except CaptureError as exc:
        _fail(str(exc))

    item = new_recording(result, dialect=dialect, user_id=DeviceIdentity().user_id, text=text or "")
    try:
        store.create(item)
    except StoreError as exc:
        result.path.unlink(missing_ok=True)
        _fail(str(exc))
    typer.secho(
        f"Saved recording {item.id} ({item.formatted_duration}, {item.filename}).",
        fg=typer.colors.BLUE,
    )


@app.command("list")
def list_command(
    status: Optional[UploadStatus] = typer.Option(None, "--status", help="Only show this status."),
) -> None:
    """List local recordings, newest first."""

    store = _open_store(_load_config())
    items = store.by_status(status) if status else store.list()
    if not items:
        typer.echo("No recordings found. Use `wusutra record` to create one.")
        return

    table = Table(show_lines=False)
    table.add_column("ID", overflow="fold")
    table.add_column("Created")
    table.add_column("Length")
    table.add_column("Dialect")
    table.add_column("Status")
    table.add_column("Text")
    for item in sorted(items, key=lambda i: i.created_at, reverse=True):
        table.add_row(
            item.id,
            item.created_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            item.formatted_duration,
            item.dialect or "-",
            _status_text(item.status),
            item.text or "-",
        )
    console.print(table)

    counts = count_by_status(store.list())
    summary = ", ".join(f"{s.value}: {n}" for s, n in counts.items() if n)
    console.print(summary)


@app.command()
def show(item_id: str = typer.Argument(..., help="Identifier of the recording.")) -> None:
    """Show every field of a recording."""

    store = _open_store(_load_config())
    item = _get(store, item_id)
    typer.echo(json.dumps(item.to_dict(), indent=2, ensure_ascii=False))
    typer.echo(f"Audio: {store.resolve_blob_path(item)}")


@app.command()
def edit(
    item_id: str = typer.Argument(..., help="Identifier of the recording."),
    text: Optional[str] = typer.Option(None, "--text", help="New transcription."),
    dialect: Optional[str] = typer.Option(None, "--dialect", help="New dialect code."),
    phonetic: Optional[str] = typer.Option(None, "--phonetic", help="Phonetic notes."),
) -> None:
    """Change the transcription, dialect or phonetic notes of a recording."""

    if text is None and dialect is None and phonetic is None:
        _fail("Nothing to change. Pass --text, --dialect or --phonetic.")
    store = _open_store(_load_config())
    try:
        store.edit(item_id, text=text, dialect=dialect, phonetic_transcription=phonetic)
    except StoreError as exc:
        _fail(str(exc))
    typer.secho(f"Recording {item_id} updated.", fg=typer.colors.BLUE)


@app.command()
def upload(
    item_id: Optional[str] = typer.Argument(None, help="Identifier of the recording."),
    all_items: bool = typer.Option(False, "--all", help="Upload every pending or failed recording."),
) -> None:
    """Upload a recording to the collection server."""

    cfg = _load_config()
    store = _open_store(cfg)
    orchestrator = _orchestrator(cfg, store)

    if all_items:
        results = orchestrator.upload_pending()
        if not results:
            typer.echo("Nothing to upload.")
            return
        ok = [_report_outcome(item, outcome) for item, outcome in results]
        if not all(ok):
            raise typer.Exit(code=1)
        return

    if item_id is None:
        _fail("Pass a recording id or --all.")
    try:
        outcome = orchestrator.upload(item_id)
    except (DispatchError, InvalidTransitionError, StoreError) as exc:
        _fail(str(exc))
    if not _report_outcome(item_id, outcome):
        raise typer.Exit(code=1)


@app.command()
def retry(item_id: str = typer.Argument(..., help="Identifier of the recording.")) -> None:
    """Reset the attempt counter of a failed recording and upload it again."""

    cfg = _load_config()
    store = _open_store(cfg)
    orchestrator = _orchestrator(cfg, store)
    try:
        outcome = orchestrator.retry(item_id)
    except (DispatchError, InvalidTransitionError, StoreError) as exc:
        _fail(str(exc))
    if not _report_outcome(item_id, outcome):
        raise typer.Exit(code=1)


@app.command()
def delete(item_id: str = typer.Argument(..., help="Identifier of the recording.")) -> None:
    """Delete a recording and its audio file."""

    store = _open_store(_load_config())
    try:
        removed = store.delete(item_id)
    except StoreError as exc:
        _fail(str(exc))
    if removed:
        typer.secho(f"Recording {item_id} deleted.", fg=typer.colors.BLUE)
    else:
        typer.echo(f"Recording {item_id} was already gone.")


def _audit(action: str, item_id: str, reviewer: str, notes: Optional[str]) -> None:
    store = _open_store(_load_config())
    reducer = AuditReducer(store)
    try:
        if action == "approve":
            item = reducer.approve(item_id, reviewer, notes)
        elif action == "reject":
            item = reducer.reject(item_id, reviewer, notes)
        else:
            item = reducer.begin_review(item_id)
    except (InvalidTransitionError, StoreError) as exc:
        _fail(str(exc))
    typer.secho(f"Recording {item_id} is now {item.status.value}.", fg=typer.colors.BLUE)


@app.command()
def review(item_id: str = typer.Argument(..., help="Identifier of the recording.")) -> None:
    """Mark an uploaded recording as under review."""

    _audit("review", item_id, "", None)


@app.command()
def approve(
    item_id: str = typer.Argument(..., help="Identifier of the recording."),
    reviewer: str = typer.Option(..., "--reviewer", help="Who made the decision."),
    notes: Optional[str] = typer.Option(None, "--notes", help="Reviewer notes."),
) -> None:
    """Approve an uploaded recording."""

    _audit("approve", item_id, reviewer, notes)


@app.command()
def reject(
    item_id: str = typer.Argument(..., help="Identifier of the recording."),
    reviewer: str = typer.Option(..., "--reviewer", help="Who made the decision."),
    notes: Optional[str] = typer.Option(None, "--notes", help="Reason for rejecting."),
) -> None:
    """Reject an uploaded recording."""

    _audit("reject", item_id, reviewer, notes)


@app.command()
def prompts(
    dialect: Optional[str] = typer.Option(None, "--dialect", help="Only prompts for this dialect."),
) -> None:
    """Show example sentences suggested by the server."""

    cfg = _load_config()
    try:
        rows = PromptsService().fetch(Endpoint.from_config(cfg), dialect=dialect)
    except PromptsError as exc:
        _fail(str(exc))
    if not rows:
        typer.echo("No prompts available.")
        return
    for prompt in rows:
        line = f"[{prompt.dialect}] {prompt.text}"
        if prompt.phonetic:
            line += f"  ({prompt.phonetic})"
        typer.echo(line)


@app.command()
def dialects() -> None:
    """List the supported dialect codes."""

    for code, name in DIALECTS.items():
        typer.echo(f"{code:<10} {name}")


@app.command()
def config(
    api_base_url: Optional[str] = typer.Option(None, help="Base URL of the collection server."),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP timeout (seconds) for uploads."),
    verify_ssl: Optional[bool] = typer.Option(
        None,
        "--verify-ssl/--no-verify-ssl",
        help="Toggle TLS certificate verification.",
    ),
    lenient_responses: Optional[bool] = typer.Option(
        None,
        "--lenient-responses/--strict-responses",
        help="Accept 200/201 replies whose body cannot be decoded.",
    ),
    default_dialect: Optional[str] = typer.Option(None, help="Dialect used for new recordings."),
    audio_format: Optional[str] = typer.Option(None, help="Audio container for new recordings (wav, flac)."),
    data_dir: Optional[str] = typer.Option(None, help="Directory holding recordings and metadata."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "api_base_url": api_base_url,
            "api_timeout": api_timeout,
            "verify_ssl": verify_ssl,
            "lenient_responses": lenient_responses,
            "default_dialect": default_dialect,
            "audio_format": audio_format,
            "data_dir": data_dir,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        typer.echo(json.dumps(asdict(cfg), indent=2, default=str, ensure_ascii=False))
        return

    if default_dialect is not None and default_dialect not in DIALECTS:
        _fail(f"Unsupported dialect: {default_dialect}")

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _fail(str(exc))
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


if __name__ == "__main__":  # pragma: no cover
    app()
