"""CLI entrypoint for the AVS sidecar pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, BinaryIO, Optional

import click

from avs_pipeline.containers.docker_client import DockerEngineClient
from avs_pipeline.containers.manager import ContainerManager, Sidecars
from avs_pipeline.core.config import AppConfig, load_config
from avs_pipeline.core.exceptions import AvsError, ConfigError, DockerAPIError, TeardownError
from avs_pipeline.core.models import ManagedContainer
from avs_pipeline.ledger.client import load_ledger
from avs_pipeline.ledger.keystore import EnvironmentKeystore
from avs_pipeline.pipeline.checker_client import CheckerClient
from avs_pipeline.pipeline.task_runner import TaskResultPipeline
from avs_pipeline.pipeline.triggers import TaskTrigger, TaskWorker, decode_trigger

logger = logging.getLogger("avs.cli")

DEFAULT_STATE_PATH = Path(".avs_sidecars.json")

_state_option = click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_PATH,
    show_default=True,
    help="File recording the provisioned sidecars.",
)


def _setup_logging(config: Optional[AppConfig], verbose: bool = False) -> None:
    if config is not None:
        level_name = config.logging.level
        fmt = config.logging.format
    else:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def write_state(path: Path, sidecars: Sidecars) -> None:
    write_containers(path, sidecars.all())


def write_containers(path: Path, containers: list[ManagedContainer]) -> None:
    payload = {c.role or c.name: c.to_dict() for c in containers}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def read_state(path: Path) -> dict[str, ManagedContainer]:
    if not path.exists():
        raise click.ClickException(f"No sidecar state at {path}; run `avs up` first.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("expected a mapping of role to container")
        return {role: ManagedContainer.from_dict(entry) for role, entry in data.items()}
    except (ValueError, KeyError, TypeError) as e:
        raise click.ClickException(f"Corrupt sidecar state at {path}: {e}") from e


async def check_daemon(docker: DockerEngineClient) -> None:
    """Fail fast when the daemon is unreachable, before anything is pulled."""
    if not await docker.ping():
        raise DockerAPIError(f"Docker daemon at {docker.config.host} did not answer ping")


def build_pipeline(config: AppConfig, checker: Optional[CheckerClient] = None) -> TaskResultPipeline:
    return TaskResultPipeline(
        checker=checker or CheckerClient(config.checker),
        keystore=EnvironmentKeystore(scheme=config.ledger.credential_scheme),
        ledger=load_ledger(config.ledger),
        config=config.ledger,
    )


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except AvsError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding default.yaml and environment overlays.",
)
@click.option("--env", "env_name", default=None, help="Environment overlay name, e.g. 'dev'.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_dir: Optional[Path], env_name: Optional[str]) -> None:
    """Supervise the AVS sidecars and run inference tasks."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_dir=config_dir, env=env_name)
    except ConfigError as e:
        _setup_logging(None, verbose=verbose)
        raise click.ClickException(str(e)) from e
    _setup_logging(config, verbose=verbose)
    ctx.obj["config"] = config


@cli.command("up")
@_state_option
@click.pass_context
def up(ctx: click.Context, state_path: Path) -> None:
    """Provision the inference and checker sidecars."""
    config: AppConfig = ctx.obj["config"]

    async def _up() -> Sidecars:
        async with DockerEngineClient(config.docker) as docker:
            await check_daemon(docker)
            manager = ContainerManager(docker, readiness_config=config.readiness)
            try:
                return await manager.provision_sidecars(config.sidecars)
            finally:
                await manager.prober.aclose()

    sidecars = _run(_up())
    write_state(state_path, sidecars)
    host = config.readiness.service_host
    for container in sidecars.all():
        click.echo(
            f"{container.role:<10} {container.name}  {container.host_address(host)}"
            f"  (network: {container.network_address})"
        )
    click.echo(f"Wrote sidecar state to {state_path}")


@cli.command("down")
@_state_option
@click.pass_context
def down(ctx: click.Context, state_path: Path) -> None:
    """Remove every sidecar recorded in the state file."""
    config: AppConfig = ctx.obj["config"]
    containers = list(read_state(state_path).values())

    async def _down() -> None:
        async with DockerEngineClient(config.docker) as docker:
            await ContainerManager(docker).teardown_all(containers)

    try:
        asyncio.run(_down())
    except TeardownError as e:
        for container, error in e.failures:
            click.echo(click.style(f"  FAIL {container.name}: {error}", fg="red"), err=True)
        remaining = [container for container, _ in e.failures]
        write_containers(state_path, remaining)
        click.echo(f"Kept {len(remaining)} container(s) in {state_path}", err=True)
        sys.exit(1)
    state_path.unlink()
    click.echo(f"Removed {len(containers)} container(s)")


@cli.command("run-task")
@click.argument("reference", default="")
@click.option("--checker-url", default=None, help="Checker address; defaults to the one in --state.")
@_state_option
@click.pass_context
def run_task(ctx: click.Context, reference: str, checker_url: Optional[str], state_path: Path) -> None:
    """Run one task for REFERENCE through the checker and ledger."""
    config: AppConfig = ctx.obj["config"]
    if checker_url is None:
        state = read_state(state_path)
        if "checker" not in state:
            raise click.ClickException(f"No checker sidecar recorded in {state_path}")
        checker_url = state["checker"].host_address(config.readiness.service_host)

    async def _task():
        checker = CheckerClient(config.checker)
        try:
            return await build_pipeline(config, checker).run_task(reference, checker_url)
        finally:
            await checker.aclose()

    summary = _run(_task())
    click.echo(summary.describe())
    for ref, tx_id in summary.transactions:
        click.echo(f"  {ref}: {tx_id}")


async def serve_triggers(
    config: AppConfig,
    pipeline: TaskResultPipeline,
    checker_address: str,
    stream: BinaryIO,
) -> TaskWorker:
    """Feed one trigger per input line to a TaskWorker until EOF."""
    worker = TaskWorker(pipeline, checker_address)
    consumer = asyncio.create_task(worker.run())
    index = 0
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            break
        reference = decode_trigger(line.rstrip(b"\r\n"), config.trigger.default_reference)
        await worker.submit(TaskTrigger(task_index=index, file_reference=reference))
        index += 1
    await worker.stop()
    await consumer
    return worker


@cli.command("serve")
@_state_option
@click.pass_context
def serve(ctx: click.Context, state_path: Path) -> None:
    """Provision sidecars, run one task per stdin line, then tear down."""
    config: AppConfig = ctx.obj["config"]
    stdin = click.get_binary_stream("stdin")

    async def _serve() -> TaskWorker:
        async with DockerEngineClient(config.docker) as docker:
            await check_daemon(docker)
            manager = ContainerManager(docker, readiness_config=config.readiness)
            try:
                sidecars = await manager.provision_sidecars(config.sidecars)
            except AvsError:
                await manager.prober.aclose()
                raise
            write_state(state_path, sidecars)
            checker = CheckerClient(config.checker)
            try:
                address = sidecars.checker_address(config.readiness.service_host)
                return await serve_triggers(config, build_pipeline(config, checker), address, stdin)
            finally:
                await checker.aclose()
                await manager.prober.aclose()
                try:
                    await manager.teardown_all(sidecars.all())
                    state_path.unlink(missing_ok=True)
                except TeardownError as e:
                    logger.warning("Failed to cleanup Docker containers: %s", e)

    worker = _run(_serve())
    failed = sum(1 for o in worker.outcomes if not o.ok)
    click.echo(f"Ran {len(worker.outcomes)} task(s), {failed} failed")


def main() -> None:
    """Entry point used by `avs` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path.cwd() / ".env", override=False)
    cli()


if __name__ == "__main__":
    main()
