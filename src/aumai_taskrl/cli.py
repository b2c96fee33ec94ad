"""CLI entry point for aumai-taskrl.

Commands:
    run       -- run one task against the simulated grid world
    inspect   -- summarise a stored model
    versions  -- list the retained versions of a model
    rollback  -- restore a model version and make it current again
    progress  -- print the stored progress snapshot of a task
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import click

from .config import EngineSettings, configure_logging
from .core import QLearningAgent, SharedAgent
from .domains import get_domain
from .errors import PersistenceError
from .lifecycle import TaskController
from .models import AgentConfig, Position, Task, WorldConfig
from .persistence import ModelStore
from .simulation import GROUND_Y, GridWorld
from .storage import FileStorage, ProgressStore


def _settings(ctx: click.Context) -> EngineSettings:
    return ctx.obj["settings"]


@click.group()
@click.version_option()
@click.option(
    "--data-dir",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Storage root (defaults to TASKRL_DATA_DIR or ./data).",
)
@click.option("--log-level", default=None, help="Logging level (defaults to TASKRL_LOG_LEVEL).")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[Path], log_level: Optional[str]) -> None:
    """AumAI TaskRL -- fault-tolerant tasks driven by a Q-learning core."""
    settings = EngineSettings.from_env()
    updates: dict[str, Any] = {}
    if data_dir is not None:
        updates["data_dir"] = data_dir
    if log_level is not None:
        updates["log_level"] = log_level.upper()
    settings = settings.model_copy(update=updates)
    configure_logging(settings.log_level)
    ctx.obj = {"settings": settings, "storage": FileStorage(settings.data_dir)}


@main.command("run")
@click.option(
    "--domain",
    type=click.Choice(["mining", "navigation"]),
    default="mining",
    show_default=True,
)
@click.option("--quantity", default=3, show_default=True, type=int, help="Blocks to mine.")
@click.option("--width", default=8, show_default=True, type=int, help="Grid width.")
@click.option("--height", default=8, show_default=True, type=int, help="Grid height.")
@click.option("--failure-rate", default=0.0, show_default=True, type=float)
@click.option("--lr", default=0.1, show_default=True, type=float, help="Q-learning rate.")
@click.option("--gamma", default=0.95, show_default=True, type=float, help="Discount factor.")
@click.option("--epsilon-decay", default=0.995, show_default=True, type=float)
@click.option("--max-retries", default=None, type=int)
@click.option("--retry-delay", default=None, type=float)
@click.option("--timeout", default=None, type=float)
@click.option("--model-name", default=None, help="Model name (defaults to the domain).")
@click.option("--seed", default=None, type=int)
@click.option("--render", is_flag=True, default=False, help="Render the grid when done.")
@click.pass_context
def run_command(
    ctx: click.Context,
    domain: str,
    quantity: int,
    width: int,
    height: int,
    failure_rate: float,
    lr: float,
    gamma: float,
    epsilon_decay: float,
    max_retries: Optional[int],
    retry_delay: Optional[float],
    timeout: Optional[float],
    model_name: Optional[str],
    seed: Optional[int],
    render: bool,
) -> None:
    """Run one task in the simulated world and checkpoint the model.

    The latest saved version of the model is loaded first, so repeated runs
    keep learning.

    Example:

        aumai-taskrl run --domain mining --quantity 3 --seed 7
    """
    settings = _settings(ctx)
    storage = ctx.obj["storage"]
    name = model_name or domain

    overrides = {
        key: value
        for key, value in (
            ("max_retries", max_retries),
            ("retry_delay", retry_delay),
            ("timeout", timeout),
        )
        if value is not None
    }
    controller_settings = settings.controller.model_copy(update=overrides)

    world_config = WorldConfig(
        world_id=f"{domain}_world", width=width, height=height, failure_rate=failure_rate
    )
    if domain == "mining":
        parameters: dict[str, Any] = {"target_block": world_config.ore_type, "quantity": quantity}
        world = GridWorld(world_config, mode="mining", seed=seed)
    else:
        destination = Position(x=width - 1, y=GROUND_Y, z=height - 1)
        parameters = {"destination": destination.model_dump(), "tolerance": 0.0}
        world = GridWorld(world_config, mode="navigation", destination=destination, seed=seed)

    task_domain = get_domain(domain)
    agent = QLearningAgent(
        AgentConfig(
            agent_id=name,
            learning_rate=lr,
            discount_factor=gamma,
            epsilon_decay=epsilon_decay,
        ),
        plugin=task_domain,
        seed=seed,
    )
    model_store = ModelStore(storage)
    progress_store = ProgressStore(storage)

    async def _run() -> Any:
        latest = await model_store.latest_version(name)
        if latest is not None:
            await model_store.load_into(agent, latest.key)
            click.echo(f"Loaded {name} version {latest.version}")
        controller = TaskController(
            task_domain,
            SharedAgent(agent),
            world,
            world,
            progress_store=progress_store,
            settings=controller_settings,
        )
        task = Task(domain=domain, parameters=parameters)
        click.echo(f"Running {domain} task {task.task_id} on {width}x{height} grid (seed={seed})")
        outcome = await controller.execute(task)
        version = await model_store.save_version(agent, name)
        return outcome, version

    result, version = asyncio.run(_run())

    click.echo(f"\nTask {result.status.value}:")
    click.echo(f"  Task id      : {result.task_id}")
    click.echo(f"  Duration     : {result.duration:.2f}s")
    click.echo(f"  Attempts     : {result.attempts}")
    click.echo(f"  Actions      : {world.steps_taken}")
    if result.error:
        click.echo(f"  Error        : {result.error}")
    click.echo(f"  Epsilon      : {agent.epsilon:.4f}")
    click.echo(f"  Model        : {name} v{version.version} ({version.key})")
    if render:
        click.echo()
        click.echo(world.render())


@main.command("inspect")
@click.argument("key")
@click.option("--top", default=5, show_default=True, type=int, help="States to list.")
@click.pass_context
def inspect_command(ctx: click.Context, key: str, top: int) -> None:
    """Summarise the model stored at KEY."""
    store = ModelStore(ctx.obj["storage"])
    try:
        model = asyncio.run(store.load(key))
    except PersistenceError as exc:
        raise click.ClickException(str(exc)) from exc

    entries = sum(len(row.actions) for row in model.table)
    click.echo(f"Agent          : {model.config.agent_id}")
    click.echo(f"Epsilon        : {model.config.epsilon:.4f}")
    click.echo(f"States         : {len(model.table)}")
    click.echo(f"Entries        : {entries}")
    click.echo(f"Experiences    : {len(model.buffer)}/{model.config.buffer_capacity}")

    ranked = sorted(
        model.table,
        key=lambda row: max((a.value for a in row.actions), default=0.0),
        reverse=True,
    )
    for row in ranked[:top]:
        best = max(row.actions, key=lambda a: a.value, default=None)
        if best is not None:
            click.echo(f"  {row.state_key} -> {best.action_key} ({best.value:.4f})")


@main.command("versions")
@click.argument("name")
@click.pass_context
def versions_command(ctx: click.Context, name: str) -> None:
    """List the retained versions of model NAME."""
    store = ModelStore(ctx.obj["storage"])
    versions = asyncio.run(store.list_versions(name))
    if not versions:
        click.echo(f"No versions stored for {name}")
        return
    for entry in versions:
        click.echo(f"v{entry.version}  {entry.key}  saved_at={entry.saved_at:.0f}")


@main.command("rollback")
@click.argument("name")
@click.argument("version", type=int)
@click.pass_context
def rollback_command(ctx: click.Context, name: str, version: int) -> None:
    """Restore VERSION of model NAME and save it as the newest version."""
    store = ModelStore(ctx.obj["storage"])
    agent = QLearningAgent(AgentConfig(agent_id=name))

    async def _rollback() -> Any:
        await store.rollback(agent, name, version)
        return await store.save_version(agent, name)

    try:
        current = asyncio.run(_rollback())
    except PersistenceError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rolled back {name} to v{version}; now current as v{current.version}")


@main.command("progress")
@click.argument("task_id")
@click.pass_context
def progress_command(ctx: click.Context, task_id: str) -> None:
    """Print the stored progress snapshot and result of TASK_ID."""
    store = ProgressStore(ctx.obj["storage"])

    async def _fetch() -> Any:
        return await store.get_progress(task_id), await store.get_result(task_id)

    snapshot, result = asyncio.run(_fetch())
    if snapshot is None and result is None:
        raise click.ClickException(f"No progress stored for task {task_id}")
    output: dict[str, Any] = {}
    if snapshot is not None:
        output["progress"] = snapshot.model_dump(mode="json", exclude={"history"})
        output["progress"]["history_length"] = len(snapshot.history)
    if result is not None:
        output["result"] = result.model_dump(mode="json")
    click.echo(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
