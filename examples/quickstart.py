"""Quickstart examples for aumai-taskrl.

Demonstrates the core API: running a task against the simulated grid world,
retries on a flaky actuator, sharing one agent between concurrent tasks,
greedy evaluation, and model versioning with rollback.

Run directly:

    python examples/quickstart.py

All demos use fixed seeds so output is reproducible.
"""

from __future__ import annotations

import asyncio

from aumai_taskrl.core import QLearningAgent, SharedAgent
from aumai_taskrl.domains import MiningDomain, NavigationDomain
from aumai_taskrl.lifecycle import TaskController
from aumai_taskrl.models import (
    AgentConfig,
    ControllerSettings,
    Experience,
    Position,
    Task,
    TaskResult,
    WorldConfig,
)
from aumai_taskrl.persistence import ModelStore
from aumai_taskrl.simulation import GROUND_Y, GridWorld
from aumai_taskrl.storage import MemoryStorage, ProgressStore


def _print_result(result: TaskResult) -> None:
    print(f"Status          : {result.status.value}")
    print(f"Attempts        : {result.attempts}")
    print(f"Duration        : {result.duration:.3f}s")
    if result.error:
        print(f"Error           : {result.error}")
    if result.payload:
        print(f"Progress        : {result.payload['progress']:.1f} / {result.payload['total']:.1f}")


# ---------------------------------------------------------------------------
# Demo 1 -- Mining task on an 8x8 grid
# ---------------------------------------------------------------------------


async def demo_mining() -> QLearningAgent:
    """Mine three iron ore blocks and print the task result."""
    print("=" * 60)
    print("Demo 1: Mining Task (8x8 grid, 3 iron ore)")
    print("=" * 60)

    domain = MiningDomain()
    agent = QLearningAgent(AgentConfig(agent_id="miner", learning_rate=0.2), plugin=domain, seed=42)
    world = GridWorld(WorldConfig(world_id="quarry", ore_density=0.3), mode="mining", seed=42)
    store = ProgressStore(MemoryStorage())

    controller = TaskController(
        domain, SharedAgent(agent), world, world, progress_store=store
    )
    task = Task(domain="mining", parameters={"target_block": "iron_ore", "quantity": 3})
    result = await controller.execute(task)
    _print_result(result)

    snapshot = await store.get_progress(task.task_id)
    if snapshot is not None:
        print(f"Snapshots kept  : {len(snapshot.history)}")
    print(f"Table states    : {len(agent.table)}")
    print(world.render())
    print()
    return agent


# ---------------------------------------------------------------------------
# Demo 2 -- Retries on a flaky actuator
# ---------------------------------------------------------------------------


async def demo_retries() -> None:
    """Inject transient actuator failures and watch the controller retry."""
    print("=" * 60)
    print("Demo 2: Retries with a Flaky Actuator")
    print("=" * 60)

    destination = Position(x=5, y=GROUND_Y, z=5)
    domain = NavigationDomain()
    agent = QLearningAgent(AgentConfig(agent_id="walker"), plugin=domain, seed=7)
    world = GridWorld(
        WorldConfig(world_id="swamp", width=6, height=6, failure_rate=0.02),
        mode="navigation",
        destination=destination,
        seed=7,
    )
    settings = ControllerSettings(max_retries=5, retry_delay=0.01, backoff_factor=2.0)

    controller = TaskController(domain, SharedAgent(agent), world, world, settings=settings)
    result = await controller.execute(
        Task(domain="navigation", parameters={"destination": destination.model_dump()})
    )
    _print_result(result)
    print(f"Status history  : {[s.value for s in controller.status_history]}")
    print()


# ---------------------------------------------------------------------------
# Demo 3 -- One agent, several concurrent tasks
# ---------------------------------------------------------------------------


async def demo_shared_agent() -> None:
    """Run three mining tasks concurrently against one shared agent."""
    print("=" * 60)
    print("Demo 3: Concurrent Tasks Sharing One Agent")
    print("=" * 60)

    domain = MiningDomain()
    shared = SharedAgent(QLearningAgent(AgentConfig(agent_id="crew"), plugin=domain, seed=3))
    controllers = []
    for i in range(3):
        world = GridWorld(
            WorldConfig(world_id=f"pit-{i}", ore_density=0.3), mode="mining", seed=100 + i
        )
        controllers.append(TaskController(domain, shared, world, world))

    results = await asyncio.gather(
        *(
            c.execute(Task(domain="mining", parameters={"target_block": "iron_ore", "quantity": 2}))
            for c in controllers
        )
    )
    for i, result in enumerate(results):
        print(f"Task {i}          : {result.status.value} after {result.attempts} attempt(s)")
    print(f"Shared updates  : {shared.agent.update_count}")
    print(f"Open leases     : {shared.refcount}")
    print()


# ---------------------------------------------------------------------------
# Demo 4 -- eval_mode context manager
# ---------------------------------------------------------------------------


def demo_eval_mode() -> None:
    """Show that eval_mode temporarily fixes epsilon at 0 without side effects."""
    print("=" * 60)
    print("Demo 4: eval_mode Context Manager")
    print("=" * 60)

    agent = QLearningAgent(AgentConfig(agent_id="ctx_agent", epsilon=0.5), seed=0)
    agent.update(Experience(state="s", action="right", reward=1.0, next_state="t", done=True))

    print(f"Before eval_mode: epsilon = {agent.epsilon:.4f}")
    with agent.eval_mode():
        print(f"Inside eval_mode: epsilon = {agent.epsilon}")
        print(f"  Selected action (greedy): {agent.select_action('s', ['left', 'right'])}")
    print(f"After eval_mode:  epsilon = {agent.epsilon:.4f}")
    print()


# ---------------------------------------------------------------------------
# Demo 5 -- Versioning and rollback
# ---------------------------------------------------------------------------


async def demo_versions(agent: QLearningAgent) -> None:
    """Save two versions of a model, then roll back to the first."""
    print("=" * 60)
    print("Demo 5: Model Versions and Rollback")
    print("=" * 60)

    store = ModelStore(MemoryStorage())
    first = await store.save_version(agent, "miner")
    states_v1 = len(agent.table)

    agent.update(Experience(state="bogus", action="mine:0,0,0", reward=-5.0, next_state="x", done=True))
    second = await store.save_version(agent, "miner")
    print(f"Saved versions  : v{first.version}, v{second.version}")
    print(f"States now      : {len(agent.table)}")

    await store.rollback(agent, "miner", first.version)
    assert len(agent.table) == states_v1
    print(f"After rollback  : {len(agent.table)} states (v{first.version})")
    print(f"Retained        : {[v.version for v in await store.list_versions('miner')]}")
    print()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _main() -> None:
    agent = await demo_mining()
    await demo_retries()
    await demo_shared_agent()
    demo_eval_mode()
    await demo_versions(agent)


def main() -> None:
    """Run all quickstart demos."""
    print("\naumai-taskrl Quickstart Examples")
    print("Fault-tolerant tasks driven by a tabular Q-learning core\n")
    asyncio.run(_main())
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
