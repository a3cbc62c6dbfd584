"""CLI entry point for Realm."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from dataclasses import asdict
from pathlib import Path

import click

from realm import __version__
from realm.config import ROLE_NAMES, Config, load_config
from realm.events.bus import Event, EventBus, EventLogWriter
from realm.events.types import (
    COMPRESSION_APPLIED,
    CYCLE_FAILED,
    CYCLE_STARTED,
    TOOL_CALL_STARTED,
)
from realm.exceptions import ConfigError, FatalModelError, RealmError
from realm.models.base import ConversationEntry
from realm.utils.tokens import estimate_tokens

EXIT_PARTIAL = 2


def _configure_logging(level: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _read_text(path: Path | None) -> str:
    if path is None:
        return ""
    return path.read_text(encoding="utf-8")


def _progress_printer(event: Event) -> None:
    data = event.data
    if event.event_type == CYCLE_STARTED:
        click.echo(
            f"[{data.get('role')}] cycle {data.get('iteration')}/{data.get('max_iterations')}",
            err=True,
        )
    elif event.event_type == TOOL_CALL_STARTED:
        click.echo(f"  -> {data.get('tool')}", err=True)
    elif event.event_type == CYCLE_FAILED:
        click.echo(
            f"  ! cycle failed ({data.get('consecutive_failures')}): {data.get('error')}",
            err=True,
        )
    elif event.event_type == COMPRESSION_APPLIED:
        click.echo(
            f"  compressed history: ~{data.get('original_tokens')} -> "
            f"~{data.get('new_tokens')} tokens",
            err=True,
        )


@click.group()
@click.version_option(version=__version__, prog_name="realm")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to realm.toml configuration file.",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Realm - long-running tool-using agents for health record reports."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    ctx.obj["config"] = config
    _configure_logging(config.logging.level, verbose)


@cli.command()
@click.argument("role", type=click.Choice(ROLE_NAMES))
@click.option(
    "--source", "source_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Extracted source record (markdown).",
)
@click.option(
    "--input", "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Analysis markdown (structurer) or structured JSON (validator, renderer).",
)
@click.option(
    "--research", "research_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Research findings markdown (structurer).",
)
@click.option(
    "--template", "template_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="HTML template (renderer). Defaults to the bundled report template.",
)
@click.option(
    "--feedback", "feedback_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Issues from a previous incomplete attempt.",
)
@click.option("--question", default=None, help="The patient's question.")
@click.option(
    "--state", "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Checkpoint external state to this JSON file (overwritten unless --resume).",
)
@click.option(
    "--output", "-o", "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the payload here instead of stdout.",
)
@click.option(
    "--resume", is_flag=True, default=False,
    help="Start from the state already in the --state file.",
)
@click.option("--quiet", "-q", is_flag=True, default=False, help="No progress output.")
@click.pass_context
def run(
    ctx: click.Context,
    role: str,
    source_path: Path | None,
    input_path: Path | None,
    research_path: Path | None,
    template_path: Path | None,
    feedback_path: Path | None,
    question: str | None,
    state_path: Path | None,
    output_path: Path | None,
    resume: bool,
    quiet: bool,
) -> None:
    """Run one agent ROLE end to end against the configured model."""
    from realm.agents import RoleInputs, run_role
    from realm.models.gemini_provider import GeminiProvider
    from realm.observability import LoggingObservability
    from realm.state.external import JsonFileState

    config: Config = ctx.obj["config"]
    if role != "renderer" and source_path is None:
        click.echo(f"--source is required for the {role} role.", err=True)
        sys.exit(1)
    if role in ("validator", "renderer") and input_path is None:
        click.echo(f"--input (structured JSON) is required for the {role} role.", err=True)
        sys.exit(1)
    if resume and state_path is None:
        click.echo("--resume needs a --state file to resume from.", err=True)
        sys.exit(1)
    if not config.model.api_key:
        click.echo("No API key configured. Set GEMINI_API_KEY or [model].api_key.", err=True)
        sys.exit(1)

    input_text = _read_text(input_path)
    inputs = RoleInputs(
        source_text=_read_text(source_path),
        analysis=input_text if role == "structurer" else "",
        research=_read_text(research_path),
        structured_json=input_text if role in ("validator", "renderer") else "",
        html_template=_read_text(template_path),
        patient_question=question,
        feedback=_read_text(feedback_path),
    )

    run_id = uuid.uuid4().hex[:12]
    bus = EventBus()
    EventLogWriter(config.log_path / f"{role}-{run_id}.jsonl").attach(bus)
    if not quiet:
        bus.subscribe_all(_progress_printer)

    async def _run():
        provider = GeminiProvider(config.model)
        try:
            return await run_role(
                role,
                inputs,
                provider=provider,
                config=config,
                event_bus=bus,
                observability=LoggingObservability(),
                state=JsonFileState(state_path, resume=resume) if state_path else None,
                run_id=run_id,
            )
        finally:
            await provider.close()

    try:
        result = asyncio.run(_run())
    except FatalModelError as e:
        click.echo(f"Fatal model error: {e}", err=True)
        if output_path and e.partial_payload:
            output_path.write_text(e.partial_payload, encoding="utf-8")
            click.echo(f"Partial output written to {output_path}", err=True)
        sys.exit(1)
    except RealmError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if output_path:
        output_path.write_text(result.payload, encoding="utf-8")
        click.echo(f"Wrote {len(result.payload)} chars to {output_path}", err=True)
    else:
        click.echo(result.payload)

    click.echo(
        f"{role}: {result.state.value} after {result.iterations} iteration(s), "
        f"{result.compressions} compression(s), {result.usage.total_tokens} tokens",
        err=True,
    )
    if result.summary:
        click.echo(f"Summary: {result.summary}", err=True)
    if not result.succeeded:
        sys.exit(EXIT_PARTIAL)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def estimate(path: Path) -> None:
    """Print the token estimate of a saved conversation JSON file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        click.echo(f"Invalid JSON in {path}: {e}", err=True)
        sys.exit(1)
    if isinstance(data, dict):
        data = data.get("conversation", data.get("contents", []))
    if not isinstance(data, list):
        click.echo("Expected a list of conversation entries.", err=True)
        sys.exit(1)
    try:
        conversation = [ConversationEntry.from_dict(entry) for entry in data]
    except (TypeError, ValueError, AttributeError) as e:
        click.echo(f"Invalid conversation entry: {e}", err=True)
        sys.exit(1)
    click.echo(f"{len(conversation)} entries, ~{estimate_tokens(conversation)} tokens")


@cli.command(name="config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration (API key redacted)."""
    config: Config = ctx.obj["config"]
    data = asdict(config)
    if data["model"]["api_key"]:
        data["model"]["api_key"] = f"***{config.model.api_key[-4:]}"
    click.echo(json.dumps(data, indent=2))


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
