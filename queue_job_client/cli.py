"""queue-job CLI - submit and follow queued model requests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import aiohttp
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from queue_job_client.config import Settings, load_settings
from queue_job_client.errors import ApiError, ConfigValidationError, JobPollingError
from queue_job_client.logging_config import setup_logging
from queue_job_client.models import TerminalOutcome
from queue_job_client.queue_job_client import QueueJobClient
from queue_job_client.tools import model_list, outcome_to_dict, to_text

EXIT_TIMED_OUT = 2
EXIT_JOB_UNSUCCESSFUL = 3

app = typer.Typer(
    name="queue-job",
    help="Submit model requests to a queue API and poll them to completion",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

ApiKeyOption = typer.Option(None, "--api-key", "-k", help="Queue API key")
BaseUrlOption = typer.Option(None, "--base-url", "-u", help="Queue API base URL")
LogLevelOption = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, ...)")


def _settings(**cli_values: Any) -> Settings:
    try:
        settings = load_settings(cli_values)
    except ConfigValidationError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    setup_logging(settings.log_level, settings.json_logs)
    return settings


def _parse_input(raw: Optional[str]) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        err_console.print(f"[red]--input is not valid JSON:[/red] {exc}")
        raise typer.Exit(1)


def _call(settings: Settings, method: str, *args: Any) -> Any:
    async def _run() -> Any:
        async with QueueJobClient(
            settings.api_key,
            settings.base_url,
            models_url=settings.models_url,
            sync_url=settings.sync_url,
        ) as client:
            return await getattr(client, method)(*args)

    try:
        return asyncio.run(_run())
    except (
        ApiError,
        JobPollingError,
        aiohttp.ClientError,
        asyncio.TimeoutError,
        ValueError,
    ) as exc:
        err_console.print(f"[red]Request failed:[/red] {exc}")
        raise typer.Exit(1)


@app.command()
def run(
    model_id: str = typer.Argument(..., help="Model to run, e.g. fal-ai/flux/dev"),
    input_json: Optional[str] = typer.Option(
        None, "--input", "-i", help="Model input as a JSON object"
    ),
    timeout_ms: Optional[float] = typer.Option(
        None, "--timeout-ms", "-t", help="Give up polling after this many ms"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON"),
    api_key: Optional[str] = ApiKeyOption,
    base_url: Optional[str] = BaseUrlOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Enqueue a request and wait for it to finish."""
    settings = _settings(
        api_key=api_key, base_url=base_url, timeout_ms=timeout_ms, log_level=log_level
    )
    job_input = _parse_input(input_json)
    outcome = _call(
        settings, "enqueue_and_wait", model_id, job_input, settings.polling_config()
    )
    data = outcome_to_dict(outcome)

    if json_output:
        typer.echo(to_text(data))
    elif isinstance(outcome, TerminalOutcome):
        color = "green" if outcome.job_succeeded else "red"
        console.print(
            Panel(
                to_text(outcome.result),
                title=f"[{color}]{outcome.status.value}[/{color}] {outcome.handle}",
                subtitle=f"{outcome.elapsed_ms}ms",
            )
        )
    else:
        console.print(f"[yellow]{data['message']}[/yellow]")
        console.print(f"Request ID: {outcome.handle}")

    if not isinstance(outcome, TerminalOutcome):
        raise typer.Exit(EXIT_TIMED_OUT)
    if not outcome.job_succeeded:
        raise typer.Exit(EXIT_JOB_UNSUCCESSFUL)


@app.command()
def enqueue(
    model_id: str = typer.Argument(..., help="Model to run"),
    input_json: Optional[str] = typer.Option(None, "--input", "-i"),
    api_key: Optional[str] = ApiKeyOption,
    base_url: Optional[str] = BaseUrlOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Enqueue a request without waiting."""
    settings = _settings(api_key=api_key, base_url=base_url, log_level=log_level)
    typer.echo(to_text(_call(settings, "enqueue", model_id, _parse_input(input_json))))


@app.command()
def status(
    request_id: str = typer.Argument(...),
    api_key: Optional[str] = ApiKeyOption,
    base_url: Optional[str] = BaseUrlOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Show the status of a request."""
    settings = _settings(api_key=api_key, base_url=base_url, log_level=log_level)
    report = _call(settings, "get_status", request_id)
    typer.echo(to_text(report.raw_response))


@app.command()
def result(
    request_id: str = typer.Argument(...),
    api_key: Optional[str] = ApiKeyOption,
    base_url: Optional[str] = BaseUrlOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Fetch the result of a finished request."""
    settings = _settings(api_key=api_key, base_url=base_url, log_level=log_level)
    typer.echo(to_text(_call(settings, "get_result", request_id)))


@app.command()
def cancel(
    request_id: str = typer.Argument(...),
    api_key: Optional[str] = ApiKeyOption,
    base_url: Optional[str] = BaseUrlOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Cancel a queued or running request."""
    settings = _settings(api_key=api_key, base_url=base_url, log_level=log_level)
    typer.echo(to_text(_call(settings, "cancel", request_id)))


def _print_models(models: Any, json_output: bool) -> None:
    if json_output or not isinstance(models, list):
        typer.echo(to_text(models))
        return
    table = Table(title="Models")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Category", style="magenta")
    for model in models:
        if isinstance(model, dict):
            table.add_row(
                str(model.get("id", "")),
                str(model.get("name", "")),
                str(model.get("category", "")),
            )
    console.print(table)


@app.command()
def models(
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Page size"),
    page: Optional[int] = typer.Option(None, "--page", "-p", help="Page number"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON"),
    api_key: Optional[str] = ApiKeyOption,
    log_level: Optional[str] = LogLevelOption,
):
    """List available models, one page at a time."""
    settings = _settings(api_key=api_key, log_level=log_level)
    _print_models(model_list(_call(settings, "list_models", limit, page)), json_output)


@app.command()
def search(
    keyword: str = typer.Argument(..., help="Keywords to match"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output JSON"),
    api_key: Optional[str] = ApiKeyOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Search models by keyword."""
    settings = _settings(api_key=api_key, log_level=log_level)
    found = _call(settings, "search_models", keyword, limit, category)
    _print_models(model_list(found), json_output)


@app.command()
def schema(
    model_id: str = typer.Argument(...),
    api_key: Optional[str] = ApiKeyOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Show the input and output schema of a model."""
    settings = _settings(api_key=api_key, log_level=log_level)
    typer.echo(to_text(_call(settings, "get_model_schema", model_id)))


@app.command("run-sync")
def run_sync(
    model_id: str = typer.Argument(..., help="Model to run"),
    input_json: Optional[str] = typer.Option(None, "--input", "-i"),
    api_key: Optional[str] = ApiKeyOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Run a model in one request, skipping the queue."""
    settings = _settings(api_key=api_key, log_level=log_level)
    typer.echo(to_text(_call(settings, "run_sync", model_id, _parse_input(input_json))))


if __name__ == "__main__":
    app()
