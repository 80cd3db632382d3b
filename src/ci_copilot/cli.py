"""
cli.py — `ci-copilot` command line
==================================
The entry point CI jobs call. Every command loads settings from the
environment (and .env), the pipeline file from the repository, and prints a
Rich summary; the process exit code is the pipeline's exit code.

Commands
--------
  run          all enabled stages (or --stage … to pick)
  stage NAME   a single stage, regardless of ``enabled``
  doctor       show which model tiers are configured (--ping to test one call)
  ci-config    print / write GitLab CI or GitHub Actions configuration
  init         write a default .ci-copilot.yml
  history      recent runs from the SQLite run history
"""

from __future__ import annotations

import dataclasses
import logging
import sys
from pathlib import Path
from typing import NoReturn, Optional, Sequence

import click
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ci_copilot import __version__, database
from ci_copilot.ci_templates import (
    SUPPORTED_PROVIDERS,
    default_ci_path,
    render_ci_config,
    write_ci_config,
)
from ci_copilot.config import (
    PIPELINE_FILE_NAME,
    PipelineFile,
    Settings,
    dump_pipeline_file,
    get_settings,
    load_pipeline_file,
)
from ci_copilot.errors import CiCopilotError, LLMNotConfiguredError
from ci_copilot.models import StageName, StageStatus
from ci_copilot.pipeline import PipelineRun, PipelineRunner
from ci_copilot.vcs import build_context

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

STATUS_STYLE = {
    StageStatus.SUCCESS.value:  "bold green",
    StageStatus.FALLBACK.value: "cyan",
    StageStatus.SKIPPED.value:  "dim",
    StageStatus.BLOCKED.value:  "bold yellow",
    StageStatus.FAILED.value:   "bold red",
}

STAGE_CHOICE = click.Choice([s.value for s in StageName])


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level    = level,
        format   = "%(message)s",
        datefmt  = "[%X]",
        handlers = [RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force    = True,
    )
    # openai / httpx log every request at INFO
    for noisy in ("httpx", "openai", "azure"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _fail(exc: CiCopilotError, code: int = 2) -> NoReturn:
    err_console.print(f"[bold red]✖ {exc.message}[/bold red]")
    if exc.hint:
        err_console.print(f"[yellow]💡 {exc.hint}[/yellow]")
    sys.exit(code)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


# ─── Rendering ───────────────────────────────────────────────────────────────

def print_run(run: PipelineRun) -> None:
    table = Table(box=box.ROUNDED, header_style="bold cyan", padding=(0, 1))
    table.add_column("Stage", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Mode", style="dim")
    table.add_column("ms", justify="right")
    table.add_column("Summary")
    for step, result in zip(run.trace.steps, run.results):
        style = STATUS_STYLE.get(step.status, "white")
        table.add_row(
            f"{step.icon} {step.stage_name}",
            f"[{style}]{step.status}[/{style}]",
            result.mode,
            f"{step.duration_ms:.0f}",
            step.output_summary,
        )
    console.print(table)

    for result in run.results:
        for warning in result.warnings:
            console.print(f"  [yellow]⚠ {result.stage.value}:[/yellow] {warning}")

    colour = {"success": "green", "partial": "yellow", "failed": "red"}[run.status]
    console.print(Panel(
        f"Run [bold]{run.trace.run_id}[/bold] · {run.status} · {run.trace.total_ms:.0f} ms\n"
        f"Artefacts: [cyan]{run.output_dir}[/cyan]",
        border_style=colour,
    ))


def _execute(
    ctx: click.Context,
    repo: str,
    base_ref: Optional[str],
    config: Optional[str],
    output_dir: Optional[str],
    stages: Optional[Sequence[StageName]],
) -> None:
    settings = _settings(ctx)
    try:
        pipeline_file = load_pipeline_file(config or Path(repo) / PIPELINE_FILE_NAME)
        if output_dir:
            pipeline_file = pipeline_file.model_copy(update={"output_dir": output_dir})
        repo_ctx = build_context(repo, settings, pipeline_file, base_ref=base_ref)
    except CiCopilotError as exc:
        _fail(exc)

    for warning in repo_ctx.warnings:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    console.print(
        f"[bold]ci-copilot {__version__}[/bold] · {repo_ctx.root.name}@{repo_ctx.branch or '?'} "
        f"vs {repo_ctx.base_ref} · {'live' if settings.live_mode else 'mock'} mode"
    )

    run = PipelineRunner(settings, pipeline_file).run(repo_ctx, stages)
    print_run(run)
    sys.exit(run.exit_code)


# ─── Commands ────────────────────────────────────────────────────────────────

_common_options = [
    click.option("--repo", type=click.Path(exists=True, file_okay=False), default=".",
                 show_default=True, help="Repository root."),
    click.option("--base-ref", default=None, help="Ref to diff against (default from settings)."),
    click.option("--config", "config", type=click.Path(dir_okay=False), default=None,
                 help=f"Pipeline file (default <repo>/{PIPELINE_FILE_NAME})."),
    click.option("--output-dir", default=None, help="Where artefacts are written."),
]


def common_options(func):
    for option in reversed(_common_options):
        func = option(func)
    return func


@click.group(help="🤖 AI stages for CI pipelines: docs, tests, review, changelog, release notes, PR summary.")
@click.version_option(__version__, prog_name="ci-copilot")
@click.option("--mock", is_flag=True, help="Force the rule-based generators (same as FORCE_MOCK_MODE=true).")
@click.option("--log-level", default=None, help="Override CI_COPILOT_LOG_LEVEL.")
@click.pass_context
def cli(ctx: click.Context, mock: bool, log_level: Optional[str]) -> None:
    try:
        settings = get_settings()
    except CiCopilotError as exc:
        _fail(exc)
    if mock:
        settings = dataclasses.replace(
            settings, app=dataclasses.replace(settings.app, force_mock_mode=True),
        )
    setup_logging((log_level or settings.app.log_level).upper())
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@common_options
@click.option("--stage", "stage_names", multiple=True, type=STAGE_CHOICE,
              help="Run only these stages (repeatable).")
@click.pass_context
def run(ctx, repo, base_ref, config, output_dir, stage_names):
    """Run the enabled stages in pipeline order."""
    stages = [StageName(s) for s in stage_names] or None
    _execute(ctx, repo, base_ref, config, output_dir, stages)


@cli.command()
@click.argument("name", type=STAGE_CHOICE)
@common_options
@click.pass_context
def stage(ctx, name, repo, base_ref, config, output_dir):
    """Run a single stage (one CI job per stage calls this)."""
    _execute(ctx, repo, base_ref, config, output_dir, [StageName(name)])


@cli.command()
@click.option("--ping", is_flag=True, help="Send one tiny completion to the configured deployment.")
@click.pass_context
def doctor(ctx, ping):
    """Show configuration status."""
    settings = _settings(ctx)
    table = Table(box=box.ROUNDED, show_header=False, padding=(0, 1))
    table.add_column("Service", style="bold cyan", no_wrap=True)
    table.add_column("Status")
    for service, status in settings.status_summary().items():
        table.add_row(service, status)
    table.add_row("Deployment", settings.openai.deployment)
    table.add_row("Base ref", settings.pipeline.base_ref)
    table.add_row("Output dir", settings.pipeline.output_dir)
    table.add_row("Run history", settings.pipeline.db_path)
    console.print(Panel(table, title="[bold]ci-copilot doctor[/bold]", border_style="magenta"))

    if not ping:
        return
    from ci_copilot.llm_client import ChatClient
    try:
        client = ChatClient(settings.openai, settings.llm, settings.pipeline.db_path)
        reply = client.complete("Reply with the single word OK.", "ping")
    except LLMNotConfiguredError as exc:
        _fail(exc, code=1)
    except Exception as exc:
        err_console.print(f"[bold red]✖ Ping failed:[/bold red] {type(exc).__name__}: {exc}")
        sys.exit(1)
    console.print(f"[green]✔ {settings.openai.deployment} replied:[/green] {reply.strip()[:80]}")


@cli.command("ci-config")
@click.argument("provider", type=click.Choice(SUPPORTED_PROVIDERS))
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None,
              help="Write to this file instead of stdout.")
@click.option("--write", is_flag=True, help="Write to the provider's default path.")
@click.option("--config", "config", type=click.Path(dir_okay=False), default=PIPELINE_FILE_NAME,
              show_default=True, help="Pipeline file to read stage settings from.")
@click.option("--install", default="pip install ci-copilot", show_default=True,
              help="Install command used by each job.")
def ci_config(provider, output, write, config, install):
    """Generate CI configuration with one job per enabled stage."""
    try:
        pipeline_file = load_pipeline_file(config)
    except CiCopilotError as exc:
        _fail(exc)
    if not output and not write:
        click.echo(render_ci_config(provider, pipeline_file, install=install), nl=False)
        return
    target = Path(output) if output else default_ci_path(provider)
    if not output and target.exists() and provider == "gitlab":
        err_console.print(f"[yellow]⚠ {target} exists; merge the generated jobs by hand.[/yellow]")
        target = target.with_name("ci-copilot.gitlab-ci.yml")
    target = write_ci_config(provider, pipeline_file, target, install=install)
    console.print(f"[green]✔[/green] Wrote {target}")


@cli.command()
@click.option("--path", type=click.Path(dir_okay=False), default=PIPELINE_FILE_NAME, show_default=True)
@click.option("--force", is_flag=True, help="Overwrite an existing file.")
def init(path, force):
    """Write a default pipeline file."""
    target = Path(path)
    if target.exists() and not force:
        _fail(CiCopilotError(f"{target} already exists.", hint="Use --force to overwrite it."), code=1)
    dump_pipeline_file(PipelineFile(), target)
    console.print(f"[green]✔[/green] Wrote {target} ({len(list(StageName))} stages enabled)")


@cli.command()
@click.option("--limit", default=10, show_default=True, type=click.IntRange(1, 500))
@click.option("--run-id", default=None, help="Show the stages of one run.")
@click.pass_context
def history(ctx, limit, run_id):
    """Show recent pipeline runs."""
    db_path = _settings(ctx).pipeline.db_path
    if run_id:
        record = database.get_run(run_id, db_path)
        if record is None:
            _fail(CiCopilotError(f"No run with id {run_id}.", hint="`ci-copilot history` lists run ids."),
                  code=1)
        trace = record["trace"]
        table = Table(box=box.SIMPLE, header_style="bold cyan", title=f"Run {trace.run_id}")
        for col in ("Stage", "Status", "ms", "Output", "Warnings"):
            table.add_column(col)
        for step in trace.steps:
            style = STATUS_STYLE.get(step.status, "white")
            table.add_row(f"{step.icon} {step.stage_name}", f"[{style}]{step.status}[/{style}]",
                          f"{step.duration_ms:.0f}", step.output_summary, str(len(step.warnings)))
        console.print(table)
        return

    runs = database.get_recent_runs(limit, db_path)
    if not runs:
        console.print("[dim]No runs recorded yet.[/dim]")
        return
    table = Table(box=box.SIMPLE, header_style="bold cyan")
    for col in ("Run", "When", "Repo", "Branch", "Mode", "Status", "Stages", "ms"):
        table.add_column(col)
    for r in runs:
        table.add_row(r["run_id"], r["created_at"], r["repo"], r["branch"] or "", r["mode"],
                      r["status"], str(r["stage_count"]), f"{r['total_ms']:.0f}")
    console.print(table)


def main() -> None:
    cli(prog_name="ci-copilot")


if __name__ == "__main__":
    main()
