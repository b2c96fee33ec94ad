"""Simulated grid world acting as both environment provider and actuator.

The agent starts at (0, 0); walls and ore blocks are randomly placed and
excluded from the start and destination cells. Cells map to positions as
``x = column``, ``z = row`` at a fixed ``y``.

Example:
    >>> world = GridWorld(WorldConfig(world_id="w1"), mode="mining", seed=42)
    >>> state = await world.observe()
    >>> result = await world.perform(MoveAction(direction="east"))
"""

from __future__ import annotations

import random
from typing import Any, Literal, Optional

from .errors import ActuatorError
from .models import (
    DIRECTIONS,
    ActuatorResult,
    BlockInfo,
    Inventory,
    MineAction,
    MiningState,
    MoveAction,
    NavigationState,
    Position,
    WorldConfig,
)

GROUND_Y = 64
STACK_SIZE = 64

Mode = Literal["mining", "navigation"]


class GridWorld:
    """Deterministic 2-D grid with walls, ores and an optional destination."""

    def __init__(
        self,
        config: WorldConfig,
        mode: Mode = "mining",
        destination: Optional[Position] = None,
        seed: Optional[int] = None,
    ) -> None:
        """Initialise the world.

        Args:
            config: World configuration.
            mode: Which environment state variant :meth:`observe` returns.
            destination: Navigation goal; defaults to the far corner.
            seed: Optional random seed.
        """
        self._config = config
        self._mode = mode
        self._rng = random.Random(seed)
        self._start: tuple[int, int] = (0, 0)
        self._destination = destination or Position(
            x=config.width - 1, y=GROUND_Y, z=config.height - 1
        )
        self._walls: set[tuple[int, int]] = set()
        self._ores: dict[tuple[int, int], str] = {}
        self._agent_pos: tuple[int, int] = self._start
        self._inventory = Inventory(total_slots=config.inventory_slots)
        self._steps_taken = 0
        self._generate()

    # -- EnvironmentProvider ------------------------------------------------

    async def observe(self) -> Any:
        return self.state()

    def state(self) -> Any:
        position = self._position(self._agent_pos)
        if self._mode == "navigation":
            return NavigationState(
                position=position,
                destination=self._destination,
                blocked=[d for d in DIRECTIONS if not self._walkable(position.step(d))],
            )
        nearby = [
            BlockInfo(type=block, position=self._position(cell))
            for cell, block in sorted(self._ores.items())
            if position.distance_to(self._position(cell)) <= self._config.view_radius
        ]
        return MiningState(
            position=position,
            inventory=self._inventory.model_copy(deep=True),
            nearby_blocks=nearby,
        )

    # -- Actuator -----------------------------------------------------------

    async def perform(self, action: Any) -> ActuatorResult:
        """Apply *action*; bumping into an obstacle leaves the agent in place.

        Raises:
            ActuatorError: On an injected transient failure or an action
                kind the grid cannot perform.
        """
        self._steps_taken += 1
        if self._config.failure_rate and self._rng.random() < self._config.failure_rate:
            raise ActuatorError("Simulated transient actuator failure")

        if isinstance(action, MoveAction):
            target = self._position(self._agent_pos).step(action.direction)
            if self._walkable(target):
                self._agent_pos = (target.x, target.z)
            return ActuatorResult(success=True, state=self.state())

        if isinstance(action, MineAction):
            cell = (action.target.x, action.target.z)
            block = self._ores.get(cell)
            if block is None:
                return ActuatorResult(
                    success=False, state=self.state(), message=f"No block to mine at {cell}"
                )
            if self._inventory.free_slots == 0 and self._inventory.count(block) % STACK_SIZE == 0:
                return ActuatorResult(success=False, state=self.state(), message="Inventory full")
            del self._ores[cell]
            self._collect(block)
            return ActuatorResult(success=True, state=self.state())

        raise ActuatorError(f"GridWorld cannot perform {type(action).__name__}")

    # -- rendering ------------------------------------------------------------

    def render(self) -> str:
        """Render the grid as ASCII text.

        Returns:
            Multi-line string representation of the grid.
        """
        goal = (self._destination.x, self._destination.z)
        rows: list[str] = []
        for z in range(self._config.height):
            row_chars: list[str] = []
            for x in range(self._config.width):
                cell = (x, z)
                if cell == self._agent_pos:
                    row_chars.append("A")
                elif self._mode == "navigation" and cell == goal:
                    row_chars.append("G")
                elif cell in self._walls:
                    row_chars.append("#")
                elif cell in self._ores:
                    row_chars.append("o")
                else:
                    row_chars.append(".")
            rows.append(" ".join(row_chars))
        return "\n".join(rows)

    @property
    def steps_taken(self) -> int:
        return self._steps_taken

    @property
    def ore_count(self) -> int:
        return len(self._ores)

    # -- internals ------------------------------------------------------------

    def _generate(self) -> None:
        """Randomly populate walls and ores, avoiding start and destination."""
        reserved = {self._start, (self._destination.x, self._destination.z)}
        for z in range(self._config.height):
            for x in range(self._config.width):
                cell = (x, z)
                if cell in reserved:
                    continue
                if self._rng.random() < self._config.wall_density:
                    self._walls.add(cell)
                elif self._rng.random() < self._config.ore_density:
                    self._ores[cell] = self._config.ore_type

    def _walkable(self, position: Position) -> bool:
        cell = (position.x, position.z)
        return (
            0 <= position.x < self._config.width
            and 0 <= position.z < self._config.height
            and cell not in self._walls
            and cell not in self._ores
        )

    def _collect(self, block: str) -> None:
        items = dict(self._inventory.items)
        items[block] = items.get(block, 0) + 1
        used = sum(-(-count // STACK_SIZE) for count in items.values())
        self._inventory = Inventory(
            total_slots=self._inventory.total_slots, used_slots=used, items=items
        )

    @staticmethod
    def _position(cell: tuple[int, int]) -> Position:
        return Position(x=cell[0], y=GROUND_Y, z=cell[1])
