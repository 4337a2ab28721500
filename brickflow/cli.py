"""
CLI interface for the brickflow pipeline engine.

Provides commands to validate and run pipeline definitions and to list the
available bricks.

Pipelines are YAML or JSON files. A PIPELINE argument is a path to a file, or a
pipeline id looked up in --definitions-dir.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click

from brickflow import __version__


def _parse_json_option(value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint=name)


def _load_pipeline(pipeline: str, definitions_dir: Optional[Path]):
    """Load a pipeline by path or id, exiting with a message on failure."""
    from brickflow.loader import PipelineLoader, PipelineNotFoundError, load_pipeline_file
    from brickflow.schemas import CompileError

    try:
        path = Path(pipeline)
        if path.exists() or definitions_dir is None:
            return load_pipeline_file(path)
        return PipelineLoader(definitions_dir).load(pipeline)
    except PipelineNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        if definitions_dir is not None:
            available = PipelineLoader(definitions_dir).list_pipelines()
            if available:
                click.echo("\nAvailable pipelines:", err=True)
                for pid in available:
                    click.echo(f"  {pid}", err=True)
        raise SystemExit(1)
    except CompileError as e:
        click.echo(f"✗ Invalid pipeline: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="brickflow")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Path to brickflow.yaml (defaults to $BRICKFLOW_CONFIG, then ./brickflow.yaml)",
)
@click.option("--log-level", help="Override the configured log level")
@click.pass_context
def main(ctx, config_path: Optional[Path], log_level: Optional[str]):
    """
    brickflow - Brick pipeline execution engine.

    Run pipelines of bricks defined as YAML or JSON.
    """
    from brickflow.config import ConfigError, load_config, setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ Config error: {e}", err=True)
        raise SystemExit(1)

    setup_logging(
        log_level=log_level or config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )
    ctx.obj["config"] = config


@main.command("run")
@click.argument("pipeline")
@click.option("--input", "input_json", help="Run input as JSON, available as @input")
@click.option("--options", "options_json", help="Mod options as JSON, available as @options")
@click.option("--headless", is_flag=True, help="No display surface: renderers hand off instead of running")
@click.option("--api-version", type=click.Choice(["v1", "v2", "v3"]), help="Override the pipeline's apiVersion")
@click.option("--mod-id", help="Mod id, scopes @mod variables")
@click.option("--deployment-id", help="Deployment id, enables onError alerts")
@click.option("--trace-dir", type=click.Path(path_type=Path), help="Write JSONL trace records to this directory")
@click.option("--definitions-dir", type=click.Path(path_type=Path), help="Directory of pipeline definitions")
@click.pass_context
def run(
    ctx,
    pipeline: str,
    input_json: Optional[str],
    options_json: Optional[str],
    headless: bool,
    api_version: Optional[str],
    mod_id: Optional[str],
    deployment_id: Optional[str],
    trace_dir: Optional[Path],
    definitions_dir: Optional[Path],
):
    """Run a pipeline and print its result as JSON."""
    from brickflow.alerts import LoggingAlertSink
    from brickflow.context import InMemoryModStateStore
    from brickflow.dispatch import TargetDispatcher
    from brickflow.frames import InMemoryFrameRegistry
    from brickflow.reducer import InitialValues, PipelineReducer, ReduceOptions, reduce_mod_component_pipeline
    from brickflow.registry import BrickRegistry
    from brickflow.schemas import RunMetadata
    from brickflow.trace import FileTraceSink, LoggingTraceSink

    config = ctx.obj["config"]
    run_input = _parse_json_option(input_json, "--input")
    options_args = _parse_json_option(options_json, "--options") or {}

    compiled = _load_pipeline(pipeline, definitions_dir)

    reducer = PipelineReducer(
        BrickRegistry.create_default(),
        dispatcher=TargetDispatcher(InMemoryFrameRegistry(), remote_allowlist=config.remote_allowlist),
        traces=FileTraceSink(trace_dir) if trace_dir else LoggingTraceSink(),
        alerts=LoggingAlertSink(),
        mod_state=InMemoryModStateStore(),
    )
    options = ReduceOptions.from_config(
        config,
        api_version or compiled.api_version,
        headless=headless,
        meta=RunMetadata(
            mod_id=mod_id,
            mod_component_id=compiled.pipeline_id,
            deployment_id=deployment_id,
        ),
    )
    result = asyncio.run(
        reduce_mod_component_pipeline(
            reducer, compiled, InitialValues(input=run_input, options_args=options_args), options
        )
    )

    click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    if result.is_failed:
        click.echo(f"✗ {result.failure.step_path or 'pipeline'} failed: {result.failure.message}", err=True)
        sys.exit(1)
    if result.is_aborted:
        click.echo("✗ Run aborted", err=True)
        sys.exit(1)


@main.command("validate")
@click.argument("pipeline")
@click.option("--definitions-dir", type=click.Path(path_type=Path), help="Directory of pipeline definitions")
def validate(pipeline: str, definitions_dir: Optional[Path]):
    """Compile a pipeline and check that its bricks exist."""
    from brickflow.registry import BrickRegistry

    compiled = _load_pipeline(pipeline, definitions_dir)
    registry = BrickRegistry.create_default()

    unknown = [step.brick_id for step in compiled.steps if not registry.has(step.brick_id)]
    if unknown:
        for brick_id in unknown:
            click.echo(f"✗ Unknown brick: {brick_id}", err=True)
        sys.exit(1)

    click.echo(f"✓ {compiled.pipeline_id or pipeline} is valid ({len(compiled)} steps, apiVersion {compiled.api_version})")


@main.command("list")
@click.argument("definitions_dir", type=click.Path(path_type=Path))
def list_pipelines(definitions_dir: Path):
    """List pipeline ids in a definitions directory."""
    from brickflow.loader import PipelineLoader

    pipeline_ids = PipelineLoader(definitions_dir).list_pipelines()
    if not pipeline_ids:
        click.echo("No pipeline definitions found.")
        return
    for pipeline_id in pipeline_ids:
        click.echo(pipeline_id)


@main.command("bricks")
def list_bricks():
    """List the built-in bricks."""
    from brickflow.registry import BrickRegistry

    for brick in BrickRegistry.create_default().list_bricks():
        click.echo(f"{brick.id:<24} {brick.kind.value:<12} {brick.name}")


if __name__ == "__main__":
    main()
