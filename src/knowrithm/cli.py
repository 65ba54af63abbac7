"""CLI interface for Knowrithm."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from knowrithm import __version__
from knowrithm.client import KnowrithmClient
from knowrithm.codec import FileDescriptor
from knowrithm.config import KnowrithmConfig, configure_logging
from knowrithm.exceptions import KnowrithmError
from knowrithm.streaming import MessageStream, StreamEvent

app = typer.Typer(
    name="knowrithm",
    help="Knowrithm API client - requests with retry, task polling and event streams.",
    no_args_is_help=True,
)
console = Console()

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="Config file path")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output machine-readable JSON")]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"knowrithm version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
    log_level: Annotated[
        str | None, typer.Option("--log-level", "-l", help="Log level (debug, info, warning, ...)")
    ] = None,
) -> None:
    """Knowrithm API client - requests with retry, task polling and event streams."""
    ctx.obj = {"log_level": log_level}


def _load_config(ctx: typer.Context, config_file: Path | None) -> KnowrithmConfig:
    path = config_file or KnowrithmConfig.default_path()
    try:
        config = KnowrithmConfig.from_file(path)
        log_level = (ctx.obj or {}).get("log_level")
        if log_level:
            config = KnowrithmConfig.model_validate({**config.model_dump(), "log_level": log_level})
    except (OSError, ValueError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from None
    configure_logging(config)
    return config


def _make_client(config: KnowrithmConfig, **overrides: Any) -> KnowrithmClient:
    try:
        return KnowrithmClient.from_env(config, **overrides)
    except KnowrithmError as e:
        console.print(f"[red]{escape(e.message)}[/red]")
        console.print("Set KNOWRITHM_API_KEY and KNOWRITHM_API_SECRET, or KNOWRITHM_BEARER_TOKEN.")
        raise typer.Exit(1) from None


def _print_error(error: KnowrithmError, json_output: bool) -> None:
    if json_output:
        console.print_json(data=error.to_dict(), default=str)
    else:
        console.print(f"[red]Error:[/red] {escape(str(error))}")


def _print_payload(payload: Any, json_output: bool) -> None:
    if isinstance(payload, str) and not json_output:
        console.print(escape(payload))
        return
    console.print_json(data=payload, default=str)


def _parse_pairs(values: list[str] | None, option: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for value in values or []:
        key, sep, item = value.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {value!r}", param_hint=option)
        pairs[key] = item
    return pairs


def _load_files(values: list[str] | None) -> list[FileDescriptor]:
    files = []
    for field_name, file_path in _parse_pairs(values, "--file").items():
        path = Path(file_path)
        if not path.is_file():
            console.print(f"[red]File not found: {path}[/red]")
            raise typer.Exit(1)
        files.append(FileDescriptor(field_name, path.read_bytes(), filename=path.name))
    return files


@app.command()
def request(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="HTTP method (GET, POST, ...)")],
    path: Annotated[str, typer.Argument(help="API path, e.g. /agent, or an absolute URL")],
    data: Annotated[str | None, typer.Option("--data", "-d", help="JSON request body")] = None,
    param: Annotated[
        list[str] | None, typer.Option("--param", "-P", help="Query parameter key=value (can be repeated)")
    ] = None,
    file: Annotated[
        list[str] | None, typer.Option("--file", "-f", help="Upload field=path (can be repeated)")
    ] = None,
    retries: Annotated[int | None, typer.Option("--retries", help="Total attempts for this call")] = None,
    timeout: Annotated[float | None, typer.Option("--timeout", "-t", help="Request timeout (seconds)")] = None,
    json_output: JsonOption = False,
    config_file: ConfigOption = None,
) -> None:
    """Execute one API call and print the decoded payload."""
    body: Any = None
    if data is not None:
        try:
            body = json.loads(data)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"Invalid JSON: {e}", param_hint="--data") from None
    params = _parse_pairs(param, "--param")
    files = _load_files(file)

    config = _load_config(ctx, config_file)
    client = _make_client(config)

    async def run() -> Any:
        async with client:
            return await client.request(
                method,
                path,
                data=body,
                params=params or None,
                files=files or None,
                timeout=timeout,
                max_retries=retries,
            )

    try:
        payload = asyncio.run(run())
    except KnowrithmError as e:
        _print_error(e, json_output)
        raise typer.Exit(1) from None
    _print_payload(payload, json_output)


def _print_event(event: StreamEvent, json_output: bool) -> None:
    if json_output:
        console.print_json(
            data={"event": event.event, "data": event.data, "id": event.id, "retry": event.retry},
            default=str,
        )
        return
    data = event.data if isinstance(event.data, str) else json.dumps(event.data, default=str)
    console.print(f"[bold cyan]{escape(event.event)}[/bold cyan] {escape(data)}")


@app.command()
def stream(
    ctx: typer.Context,
    url: Annotated[str, typer.Argument(help="Stream URL or path relative to the API base")],
    event: Annotated[
        list[str] | None, typer.Option("--event", "-e", help="Only show these event names (can be repeated)")
    ] = None,
    raw: Annotated[bool, typer.Option("--raw", help="Do not parse event data as JSON")] = False,
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Connection timeout (seconds)")
    ] = None,
    json_output: JsonOption = False,
    config_file: ConfigOption = None,
) -> None:
    """Print events from a server-sent event stream until it ends."""
    config = _load_config(ctx, config_file)
    client = _make_client(config)

    async def run() -> MessageStream:
        async with client:
            message_stream = await client.open_stream(
                client.normalize_stream_url(url),
                timeout=timeout,
                event_types=event or None,
                parse_json=not raw,
            )
            async with message_stream:
                async for item in message_stream:
                    _print_event(item, json_output)
            return message_stream

    try:
        finished = asyncio.run(run())
    except KnowrithmError as e:
        _print_error(e, json_output)
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("\n[yellow]Stream interrupted[/yellow]")
        raise typer.Exit(130) from None

    if not json_output:
        metrics = finished.metrics
        summary = (
            f"{metrics.total_events} events in {metrics.total_chunks} chunks "
            f"({metrics.total_bytes} bytes), {metrics.dropped_events} filtered"
        )
        if metrics.time_to_first_chunk_ms is not None:
            summary += f", first chunk after {metrics.time_to_first_chunk_ms:.0f}ms"
        console.print(f"[dim]{summary}[/dim]")


@app.command()
def task(
    ctx: typer.Context,
    status_url: Annotated[str, typer.Argument(help="Task status URL or path")],
    timeout: Annotated[
        float | None, typer.Option("--timeout", "-t", help="Per-poll request timeout (seconds)")
    ] = None,
    json_output: JsonOption = False,
    config_file: ConfigOption = None,
) -> None:
    """Poll an asynchronous task until it completes and print its result."""
    config = _load_config(ctx, config_file)
    client = _make_client(config)

    async def run() -> Any:
        async with client:
            return await client.wait_for_task(status_url, timeout=timeout)

    try:
        payload = asyncio.run(run())
    except KnowrithmError as e:
        _print_error(e, json_output)
        raise typer.Exit(1) from None
    _print_payload(payload, json_output)


@app.command()
def init(
    path: Annotated[Path | None, typer.Option("--path", "-p", help="Config file path")] = None,
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing file")] = False,
) -> None:
    """Create a default config file."""
    import tomli_w

    if path is None:
        path = KnowrithmConfig.default_path()
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {path} (use --force to overwrite)")
        raise typer.Exit(1)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "wb") as f:
        tomli_w.dump(KnowrithmConfig().to_toml_dict(), f)

    console.print(f"[green]Created config at:[/green] {path}")


@app.command("config")
def config_cmd(config_file: ConfigOption = None) -> None:
    """Validate and display the current configuration."""
    config_path = Path(config_file) if config_file else KnowrithmConfig.default_path()
    source = str(config_path) if config_path.exists() else "defaults"

    try:
        config = KnowrithmConfig.from_file(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1) from None

    credentials = "none"
    if os.environ.get("KNOWRITHM_API_KEY") and os.environ.get("KNOWRITHM_API_SECRET"):
        credentials = "API key"
    elif os.environ.get("KNOWRITHM_BEARER_TOKEN"):
        credentials = "bearer token"

    console.print(
        Panel(
            f"[bold]Source:[/bold] {source}\n"
            f"[bold]API:[/bold] {config.api_base_url}\n"
            f"[bold]Timeout:[/bold] {config.timeout}s\n"
            f"[bold]Max Retries:[/bold] {config.retry.max_retries}\n"
            f"[bold]Retry Delay:[/bold] {config.retry.retry_delay_ms}ms x{config.retry.backoff_multiplier}\n"
            f"[bold]Retryable Statuses:[/bold] {', '.join(map(str, config.retry.retryable_status_codes))}\n"
            f"[bold]Task Polling:[/bold] every {config.tasks.polling_interval}s, "
            f"up to {config.tasks.polling_timeout}s\n"
            f"[bold]Stream Template:[/bold] {config.stream_path_template or '-'}\n"
            f"[bold]Credentials:[/bold] {credentials}",
            title="Knowrithm Configuration",
            border_style="green",
        )
    )
    console.print("\n[green]✓ Configuration is valid[/green]")


if __name__ == "__main__":
    app()
