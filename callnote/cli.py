"""Command line interface for callnote."""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, NoReturn, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from . import config as config_mod
from .asr import PollProgress
from .audio import probe_duration_ms
from .config import ConfigError
from .demo import DemoProvider, is_demo_transcript
from .models import NOT_MENTIONED, AnalysisSource, AudioBlob, Config, Recording, RecordingStatus
from .pipeline import Orchestrator, PipelineContext, PipelineStage
from .relay import NoRelayAvailableError
from .storage import RecordingStore, StorageError

app = typer.Typer(add_completion=False, help="Transcribe and analyse sales-call voice memos.")
console = Console()

T = TypeVar("T")

_EXTRA_MIME_TYPES = {
    ".webm": "audio/webm;codecs=opus",
    ".opus": "audio/ogg;codecs=opus",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
}
_SECRET_KEYS = {"dashscope_api_key", "llm_api_key", "feishu_access_token"}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load_config() -> Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        _fail(str(exc))


def _run_pipeline(cfg: Config, action: Callable[[Orchestrator], Awaitable[T]]) -> T:
    async def runner() -> T:
        context = PipelineContext.create(cfg)
        try:
            return await action(Orchestrator(context))
        finally:
            await context.aclose()

    return asyncio.run(runner())


def _guess_mime_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _provenance_label(recording: Recording) -> str:
    if recording.analysis is None:
        return "-"
    labels = {
        AnalysisSource.REAL: "LLM",
        AnalysisSource.FALLBACK: "placeholder",
        AnalysisSource.DEMO: "demo",
    }
    return labels[recording.analysis.provenance]


def _print_recording(recording: Recording) -> None:
    status_colour = {
        RecordingStatus.COMPLETED: "green",
        RecordingStatus.PROCESSING: "yellow",
        RecordingStatus.FAILED: "red",
    }[recording.status]
    console.print(
        Panel.fit(
            f"[bold]{recording.title}[/bold]\n"
            f"[dim]{recording.id} · {recording.created_at:%Y-%m-%d %H:%M} · "
            f"{recording.duration_ms / 1000:.0f}s[/dim]\n"
            f"[{status_colour}]{recording.status.value}[/{status_colour}]",
            border_style="dim",
        )
    )
    if recording.transcription is not None:
        source = " (demo)" if is_demo_transcript(recording.transcription) else ""
        console.print(f"\n[bold]Transcript{source}:[/bold]\n{recording.transcription.text}")

    analysis = recording.analysis
    if analysis is None:
        return
    table = Table(title=f"Analysis ({_provenance_label(recording)})", show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    optional = analysis.optional_fields
    rows = [
        ("业务类别", analysis.business_type),
        ("客户姓名", analysis.customer_info.name),
        ("客户画像", "｜".join(analysis.customer_profile) or NOT_MENTIONED),
        ("跟进计划", analysis.follow_up_plan),
        ("需求激发", optional.demand_stimulation),
        ("异议处理", optional.objection_handling),
        ("打动客户的点", optional.customer_touch_point),
        ("失败复盘", optional.failure_review),
        ("延伸思考", optional.extended_thinking),
    ]
    for name, value in rows:
        table.add_row(name, value)
    console.print(table)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo(f"callnote v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()

    level = "DEBUG" if verbose else "WARNING"
    if not verbose:
        try:
            level = config_mod.load_config().log_level
        except ConfigError:
            pass  # the command reports a broken config itself
    _configure_logging(level)


@app.command()
def process(
    audio: Path = typer.Argument(..., exists=True, readable=True, dir_okay=False, help="Path to the audio file."),
    title: Optional[str] = typer.Option(None, "--title", help="Optional display title."),
    mime_type: Optional[str] = typer.Option(None, "--mime-type", help="Override the detected MIME type."),
    duration_ms: Optional[int] = typer.Option(None, "--duration-ms", help="Recording length if it cannot be probed."),
) -> None:
    """Transcribe and analyse a recorded call."""

    cfg = _load_config()
    data = audio.read_bytes()
    blob = AudioBlob(data=data, mime_type=mime_type or _guess_mime_type(audio))
    duration = duration_ms if duration_ms is not None else probe_duration_ms(data)

    def on_stage(stage: PipelineStage) -> None:
        console.print(f"[dim]→ {stage.value}[/dim]")

    def on_progress(progress: PollProgress) -> None:
        state = progress.status.value if progress.status else f"error: {progress.error}"
        console.print(f"[dim]  poll {progress.attempt}/{progress.max_attempts}: {state}[/dim]")

    outcome = _run_pipeline(
        cfg,
        lambda orchestrator: orchestrator.process(
            blob, duration, title=title or audio.stem, on_stage=on_stage, on_progress=on_progress
        ),
    )
    for notice in outcome.notices:
        typer.secho(notice, fg=typer.colors.YELLOW, err=True)
    _print_recording(outcome.recording)
    if outcome.recording.status is RecordingStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("list")
def list_command() -> None:
    """List stored recordings."""

    try:
        recordings = asyncio.run(RecordingStore().list())
    except StorageError as exc:
        _fail(str(exc))
    if not recordings:
        typer.echo("No recordings found. Use `callnote process` to add one.")
        return

    table = Table()
    table.add_column("ID", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Type")
    table.add_column("Customer")
    table.add_column("Analysis")
    table.add_column("Created", no_wrap=True)
    for recording in recordings:
        analysis = recording.analysis
        table.add_row(
            recording.id,
            recording.title,
            recording.status.value,
            analysis.business_type if analysis else "-",
            analysis.customer_info.name if analysis else "-",
            _provenance_label(recording),
            f"{recording.created_at:%Y-%m-%d %H:%M}",
        )
    console.print(table)


@app.command()
def show(
    recording_id: str = typer.Argument(..., help="Identifier of the recording to display."),
    as_json: bool = typer.Option(False, "--json", help="Print the stored JSON document."),
) -> None:
    """Show a stored recording with its transcript and analysis."""

    try:
        recording = asyncio.run(RecordingStore().get(recording_id))
    except StorageError as exc:
        _fail(str(exc))
    if as_json:
        typer.echo(json.dumps(recording.to_dict(), indent=2, ensure_ascii=False))
        return
    _print_recording(recording)


@app.command()
def delete(recording_id: str = typer.Argument(..., help="Identifier of the recording to delete.")) -> None:
    """Delete a recording and its audio."""

    cfg = _load_config()
    try:
        _run_pipeline(cfg, lambda orchestrator: orchestrator.delete_recording(recording_id))
    except StorageError as exc:
        _fail(str(exc))
    typer.secho(f"Recording {recording_id} deleted.", fg=typer.colors.BLUE)


@app.command("retry-uploads")
def retry_uploads() -> None:
    """Retry uploads that were cached after every host failed."""

    cfg = _load_config()
    results, notices = _run_pipeline(cfg, lambda orchestrator: orchestrator.retry_pending_uploads())
    for notice in notices:
        typer.echo(notice)
    if any(not result.success for result in results):
        raise typer.Exit(code=1)


@app.command()
def sync(recording_id: str = typer.Argument(..., help="Identifier of the recording to export.")) -> None:
    """Export a recording to the configured Bitable table."""

    cfg = _load_config()
    result = _run_pipeline(cfg, lambda orchestrator: orchestrator.sync_recording(recording_id))
    if not result.success:
        _fail(result.message)
    typer.secho(result.message, fg=typer.colors.GREEN)


@app.command()
def demo(force: bool = typer.Option(False, "--force", help="Add demo data even if recordings exist.")) -> None:
    """Populate the library with demo recordings."""

    async def seed() -> int:
        store = RecordingStore()
        if not force and await store.list():
            return 0
        recordings = DemoProvider().recordings()
        for recording in recordings:
            await store.save(recording)
        return len(recordings)

    try:
        added = asyncio.run(seed())
    except StorageError as exc:
        _fail(str(exc))
    if added:
        typer.secho(f"Added {added} demo recordings.", fg=typer.colors.BLUE)
    else:
        typer.echo("Library is not empty; use --force to add demo recordings anyway.")


@app.command()
def status() -> None:
    """Probe the relays and show upload host availability."""

    cfg = _load_config()

    async def probe(orchestrator: Orchestrator) -> Dict[str, Any]:
        context = orchestrator.context
        relay: Dict[str, Any] = {"enabled": context.relay is not None}
        if context.relay is not None:
            try:
                relay["base"] = await context.relay.get_relay_base()
            except NoRelayAvailableError as exc:
                relay["error"] = str(exc)
            relay.update(context.relay.status())
        return {"relay": relay, "uploads": context.broker.status()}

    report = _run_pipeline(cfg, probe)
    relay = report["relay"]
    if not relay["enabled"]:
        typer.echo("Relay: disabled")
    elif "error" in relay:
        typer.secho(f"Relay: {relay['error']}", fg=typer.colors.RED)
    else:
        typer.secho(f"Relay: {relay['base']} ({relay['environment']})", fg=typer.colors.GREEN)

    table = Table(title="Upload hosts")
    table.add_column("Host")
    table.add_column("Max size", justify="right")
    table.add_column("Available")
    for service in report["uploads"]["services"]:
        marker = " *" if service["current"] else ""
        table.add_row(
            service["name"] + marker,
            f"{service['max_size'] // (1024 * 1024)} MB",
            "yes" if service["available"] else "no",
        )
    console.print(table)


@app.command()
def config(
    dashscope_api_key: Optional[str] = typer.Option(None, help="DashScope API key for speech recognition."),
    asr_model: Optional[str] = typer.Option(None, help="Paraformer model name."),
    llm_api_key: Optional[str] = typer.Option(None, help="API key for the chat-completions gateway."),
    llm_endpoint: Optional[str] = typer.Option(None, help="Chat-completions endpoint URL."),
    llm_model: Optional[str] = typer.Option(None, help="Model used for analysis."),
    feishu_app_token: Optional[str] = typer.Option(None, help="Bitable app token."),
    feishu_table_id: Optional[str] = typer.Option(None, help="Bitable table id."),
    feishu_access_token: Optional[str] = typer.Option(None, help="Bitable access token."),
    app_hostname: Optional[str] = typer.Option(None, help="Hostname used to choose dev or prod relays."),
    use_relay: Optional[bool] = typer.Option(None, "--use-relay/--no-relay", help="Route API calls through a relay."),
    demo_fallback: Optional[bool] = typer.Option(
        None, "--demo-fallback/--no-demo-fallback", help="Use demo data when a stage fails."
    ),
    poll_max_attempts: Optional[int] = typer.Option(None, help="Maximum ASR status polls."),
    poll_interval: Optional[float] = typer.Option(None, help="Seconds between ASR status polls."),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP client timeout (seconds)."),
    log_level: Optional[str] = typer.Option(None, help="Logging level (DEBUG, INFO, WARNING)."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "dashscope_api_key": dashscope_api_key,
            "asr_model": asr_model,
            "llm_api_key": llm_api_key,
            "llm_endpoint": llm_endpoint,
            "llm_model": llm_model,
            "feishu_app_token": feishu_app_token,
            "feishu_table_id": feishu_table_id,
            "feishu_access_token": feishu_access_token,
            "app_hostname": app_hostname,
            "use_relay": use_relay,
            "demo_fallback": demo_fallback,
            "poll_max_attempts": poll_max_attempts,
            "poll_interval": poll_interval,
            "api_timeout": api_timeout,
            "log_level": log_level,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        data = {k: ("***" if k in _SECRET_KEYS and v else v) for k, v in asdict(cfg).items()}
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _fail(str(exc))
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def relay(
    host: str = typer.Option("127.0.0.1", help="Interface to bind."),
    port: int = typer.Option(3001, help="Port to listen on."),
) -> None:  # pragma: no cover - starts a server
    """Run the forwarding relay server."""

    import uvicorn

    uvicorn.run("callnote.api:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    app()
