"""CLI entrypoint for forgeloop."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from forgeloop import __version__
from forgeloop.config import ForgeloopConfig, load_config
from forgeloop.core.checkpoint import FileCheckpointStore, progress_summary
from forgeloop.core.prompt import load_style_guide
from forgeloop.core.session import AsyncSessionController
from forgeloop.core.verification import CommandVerifier
from forgeloop.core.work_loop import WorkLoopResult, WorkLoopSpec
from forgeloop.errors import ConfigurationError, ErrorKind, ForgeloopError
from forgeloop.parallel import ParallelExecutor, WorkItem, Workstream, provisioner_for
from forgeloop.providers.circuit_breaker import CircuitBreakerConfig
from forgeloop.providers.manager import ProviderManager
from forgeloop.providers.registry import ProviderRegistry, create_adapters
from forgeloop.utilities.backoff import RetryPolicy
from forgeloop.utilities.logger import setup_logging

logger = logging.getLogger(__name__)


def build_manager(config: ForgeloopConfig) -> ProviderManager:
    """Fresh adapters and manager. Each session gets its own so kills stay isolated."""
    adapters = create_adapters([p.as_spec() for p in config.providers])
    policies = {}
    if config.retry.transient:
        policies[ErrorKind.TRANSIENT] = RetryPolicy.from_dict(config.retry.transient)
    return ProviderManager(
        adapters,
        health_threshold=config.retry.health_threshold,
        retry_policies=policies,
        default_reset_seconds=config.retry.default_reset_seconds,
        max_rate_limit_wait=config.retry.max_rate_limit_wait,
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=config.retry.circuit_failure_threshold,
            reset_timeout=config.retry.circuit_reset_timeout,
            success_threshold=config.retry.circuit_success_threshold,
        ),
    )


def build_session(config: ForgeloopConfig, workspace: Path) -> AsyncSessionController:
    return AsyncSessionController(
        build_manager(config),
        CommandVerifier(),
        work_loop=config.work_loop,
        verification=config.verification,
        session=config.session,
        checkpoint_store=FileCheckpointStore(workspace),
    )


def _load_config(ctx: click.Context, config_path: str | None, workspace: str | None,
                 overrides: dict[str, Any]) -> ForgeloopConfig:
    try:
        config = load_config(
            overrides={
                "debug": ctx.obj.get("debug") or None,
                "log_json": ctx.obj.get("json_logs") or None,
                **overrides,
            },
            working_dir=str(Path(workspace).resolve()) if workspace else None,
            config_path=config_path,
        )
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    # Config files and FORGELOOP_DEBUG / FORGELOOP_LOG_JSON can turn these on too.
    if (config.debug, config.log_json) != (ctx.obj.get("debug"), ctx.obj.get("json_logs")):
        setup_logging(debug=config.debug, json_output=config.log_json)
    return config


def _echo_result(result: WorkLoopResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.as_dict(), indent=2))
        return
    click.echo(f"{result.status}: {result.message} ({result.iterations} iteration(s))")


def _exit_code(result: WorkLoopResult) -> int:
    if result.success:
        return 0
    return 130 if str(result.status) == "cancelled" else 1


async def _run_session(controller: AsyncSessionController, spec: WorkLoopSpec) -> WorkLoopResult:
    loop = asyncio.get_running_loop()
    controller.start(spec)
    cancelling: list[asyncio.Task[WorkLoopResult]] = []

    def _on_signal() -> None:
        if cancelling:
            return
        click.echo("Cancelling... (waiting for a safe point)", err=True)
        cancelling.append(loop.create_task(controller.cancel()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported", sig)
    try:
        result = await controller.wait()
        if cancelling:
            return await cancelling[0]
        return result
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not removed", sig)


@click.group()
@click.version_option(__version__, prog_name="forgeloop")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
@click.option("--json-logs", is_flag=True, help="Emit structured JSON logs.")
@click.pass_context
def main(ctx: click.Context, debug: bool, json_logs: bool) -> None:
    """Forgeloop fix-forward work loop runner."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["json_logs"] = json_logs
    setup_logging(debug=debug, json_output=json_logs)


@main.command()
@click.argument("task")
@click.option("--step", "step_name", default="implementation", show_default=True,
              help="Step name recorded in checkpoints.")
@click.option("--max-iterations", type=int, default=None, help="Iteration cap.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Explicit config file.")
@click.option("--workspace", type=click.Path(file_okay=False, exists=True), default=None,
              help="Directory the backend works in (default: cwd).")
@click.option("--context", "context_text", default=None, help="Extra context for the prompt.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    task: str,
    step_name: str,
    max_iterations: int | None,
    config_path: str | None,
    workspace: str | None,
    context_text: str | None,
    as_json: bool,
) -> None:
    """Run TASK as a fix-forward loop until checks pass."""
    config = _load_config(ctx, config_path, workspace,
                          {"work_loop.max_iterations": max_iterations})
    root = Path(config.working_directory)
    spec = WorkLoopSpec(
        task=task,
        step_name=step_name,
        workspace=root,
        style_guide=load_style_guide(config.work_loop.style_guide_path, root),
        context=context_text,
    )
    try:
        result = asyncio.run(_run_session(build_session(config, root), spec))
    except ForgeloopError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_result(result, as_json)
    sys.exit(_exit_code(result))


def _read_items(path: Path) -> list[WorkItem]:
    text = path.read_text(encoding="utf-8")
    try:
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Cannot parse work items in {path}: {exc}") from exc
    if isinstance(raw, dict):
        raw = raw.get("items") or raw.get("workstreams") or []
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError(f"No work items found in {path}")
    return [WorkItem.from_dict(entry) for entry in raw]


@main.command()
@click.argument("items_file", type=click.Path(dir_okay=False, exists=True))
@click.option("--max-concurrency", type=int, default=None, help="Concurrent workstreams.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Explicit config file.")
@click.option("--workspace", type=click.Path(file_okay=False, exists=True), default=None,
              help="Repository to fan out from (default: cwd).")
@click.option("--mode", type=click.Choice(["auto", "worktree", "copy"]), default=None,
              help="How workspaces are isolated.")
@click.option("--keep-workspaces", is_flag=True, default=None, help="Do not delete workspaces.")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON.")
@click.pass_context
def parallel(
    ctx: click.Context,
    items_file: str,
    max_concurrency: int | None,
    config_path: str | None,
    workspace: str | None,
    mode: str | None,
    keep_workspaces: bool | None,
    as_json: bool,
) -> None:
    """Run every work item in ITEMS_FILE (YAML or JSON) in its own workspace."""
    config = _load_config(ctx, config_path, workspace, {
        "parallel.max_concurrency": max_concurrency,
        "parallel.workspace_mode": mode,
        "parallel.keep_workspaces": keep_workspaces or None,
    })
    root = Path(config.working_directory)
    pcfg = config.parallel

    def _factory(ws: Workstream) -> AsyncSessionController:
        assert ws.workspace is not None
        return build_session(config, ws.workspace)

    try:
        items = _read_items(Path(items_file))
        executor = ParallelExecutor(
            provisioner=provisioner_for(
                pcfg.workspace_mode, root, config.resolve(pcfg.workspaces_root),
                delete_branches=pcfg.delete_branches,
            ),
            session_factory=_factory,
            run_dir=config.resolve(pcfg.run_dir),
            max_concurrency=pcfg.max_concurrency,
            keep_workspaces=pcfg.keep_workspaces,
        )
        for item in items:
            item.base_ref = item.base_ref or pcfg.base_ref
        results = asyncio.run(executor.run_all(items))
    except ForgeloopError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps([r.as_dict() for r in results], indent=2))
    else:
        for r in results:
            click.echo(f"{r.slug:<30} {r.status:<10} {r.outcome or '-':<15} {r.message}")
        completed = sum(1 for r in results if r.completed)
        click.echo(f"\n{completed}/{len(results)} completed. Results: {executor.recorder.root}")
    sys.exit(0 if all(r.completed for r in results) else 1)


@main.command()
@click.option("--workspace", type=click.Path(file_okay=False, exists=True), default=".",
              help="Project directory holding .forgeloop/.")
@click.option("--history", "history_limit", type=int, default=0,
              help="Also list the last N checkpoints.")
@click.option("--clear", is_flag=True, help="Delete checkpoint state.")
def checkpoint(workspace: str, history_limit: int, clear: bool) -> None:
    """Show progress recorded in checkpoints."""
    store = FileCheckpointStore(Path(workspace))
    if clear:
        store.clear()
        click.echo("Checkpoint state cleared.")
        return
    summary = progress_summary(store)
    if summary is None:
        click.echo("No checkpoint found.")
        return
    current = summary["current"]
    click.echo(f"Step:       {current['step_name']}")
    click.echo(f"Iteration:  {current['iteration']}")
    click.echo(f"Status:     {current['status']}")
    click.echo(f"Quality:    {summary['quality_score']}")
    click.echo(f"Updated:    {current['timestamp']}")
    for key, trend in summary["trends"].items():
        click.echo(f"  {key}: {trend['direction']} ({trend['change']:+}, {trend['change_percent']}%)")
    if history_limit:
        click.echo("\nHistory:")
        for cp in store.history(limit=history_limit):
            click.echo(f"  #{cp.iteration:<4} {cp.status:<16} {cp.timestamp}")


@main.command()
def providers() -> None:
    """List built-in backends and whether their CLI is installed."""
    registry = ProviderRegistry()
    found = set(registry.detect_available())
    for backend in registry.list_backends():
        mark = "available" if backend in found else "-"
        click.echo(f"{backend:<10} {mark}")


if __name__ == "__main__":
    main()
