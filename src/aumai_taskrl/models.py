"""Pydantic v2 models for the task execution engine and its Q-learning core."""

from __future__ import annotations

import enum
import math
import time
import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class AgentConfig(BaseModel):
    """Configuration of a tabular Q-learning agent.

    Attributes:
        agent_id: Unique identifier.
        learning_rate: Q-learning update rate (alpha).
        discount_factor: Gamma for future reward discounting.
        epsilon: Current exploration rate.
        epsilon_decay: Multiplicative decay applied after every update.
        epsilon_min: Floor for the exploration rate.
        batch_size: Mini-batch size replayed on every update.
        buffer_capacity: Maximum number of stored experiences.
        target_update_frequency: Target-refresh cadence, in updates.
    """

    agent_id: str = Field(default="agent")
    learning_rate: float = Field(default=0.1, gt=0.0, le=1.0)
    discount_factor: float = Field(default=0.95, ge=0.0, le=1.0)
    epsilon: float = Field(default=1.0, ge=0.0, le=1.0)
    epsilon_decay: float = Field(default=0.995, gt=0.0, le=1.0)
    epsilon_min: float = Field(default=0.01, ge=0.0, le=1.0)
    batch_size: int = Field(default=32, gt=0)
    buffer_capacity: int = Field(default=10000, gt=0)
    target_update_frequency: int = Field(default=100, gt=0)


class ControllerSettings(BaseModel):
    """Retry, timeout and checkpoint policy of a task controller.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        retry_delay: Seconds to wait before the first retry.
        backoff_factor: Multiplier applied to the delay on every further retry.
            A factor of 1.0 gives a fixed delay.
        max_retry_delay: Upper bound for a single retry wait.
        timeout: Wall-clock budget in seconds, measured from task start.
        checkpoint_on_finish: Save the agent model when the task ends.
    """

    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=5.0, ge=0.0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_retry_delay: float = Field(default=60.0, ge=0.0)
    timeout: float = Field(default=70.0, gt=0.0)
    checkpoint_on_finish: bool = Field(default=True)


# ---------------------------------------------------------------------------
# Environment state variants
# ---------------------------------------------------------------------------


Direction = Literal["north", "south", "east", "west"]

# (dx, dz) per horizontal direction
DIRECTIONS: dict[str, tuple[int, int]] = {
    "north": (0, -1),
    "south": (0, 1),
    "east": (1, 0),
    "west": (-1, 0),
}


class Position(BaseModel):
    """Integer block coordinates."""

    model_config = ConfigDict(frozen=True)

    x: int
    y: int = 0
    z: int

    def offset(self, dx: int = 0, dy: int = 0, dz: int = 0) -> Position:
        return Position(x=self.x + dx, y=self.y + dy, z=self.z + dz)

    def step(self, direction: str) -> Position:
        dx, dz = DIRECTIONS[direction]
        return self.offset(dx=dx, dz=dz)

    def distance_to(self, other: Position) -> float:
        return math.sqrt(
            (self.x - other.x) ** 2 + (self.y - other.y) ** 2 + (self.z - other.z) ** 2
        )

    def manhattan(self, other: Position) -> int:
        return abs(self.x - other.x) + abs(self.y - other.y) + abs(self.z - other.z)


class BlockInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    position: Position


class Inventory(BaseModel):
    """Inventory occupancy and item counts."""

    total_slots: int = Field(default=36, gt=0)
    used_slots: int = Field(default=0, ge=0)
    items: dict[str, int] = Field(default_factory=dict)

    @property
    def free_slots(self) -> int:
        return max(0, self.total_slots - self.used_slots)

    def count(self, item: str) -> int:
        return self.items.get(item, 0)


class CropPlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: Position
    crop: Optional[str] = None
    growth_stage: int = Field(default=0, ge=0, le=7)

    @property
    def mature(self) -> bool:
        return self.crop is not None and self.growth_stage >= 7


class RedstoneDevice(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_type: str
    position: Position
    powered: bool = False


class MiningState(BaseModel):
    """Everything a mining decision depends on."""

    kind: Literal["mining"] = "mining"
    position: Position
    health: float = Field(default=20.0, ge=0.0)
    inventory: Inventory = Field(default_factory=Inventory)
    nearby_blocks: list[BlockInfo] = Field(default_factory=list)
    biome: str = Field(default="plains")


class FarmingState(BaseModel):
    kind: Literal["farming"] = "farming"
    position: Position
    inventory: Inventory = Field(default_factory=Inventory)
    plots: list[CropPlot] = Field(default_factory=list)
    biome: str = Field(default="plains")


class RedstoneState(BaseModel):
    kind: Literal["redstone"] = "redstone"
    position: Position
    inventory: Inventory = Field(default_factory=Inventory)
    devices: list[RedstoneDevice] = Field(default_factory=list)
    power_efficiency: float = Field(default=0.0, ge=0.0, le=1.0)


class NavigationState(BaseModel):
    kind: Literal["navigation"] = "navigation"
    position: Position
    destination: Optional[Position] = None
    health: float = Field(default=20.0, ge=0.0)
    blocked: list[Direction] = Field(default_factory=list)
    biome: str = Field(default="plains")


EnvironmentState = Annotated[
    Union[MiningState, FarmingState, RedstoneState, NavigationState],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Action variants
# ---------------------------------------------------------------------------


class MoveAction(BaseModel):
    """Step one block in a horizontal direction."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["move"] = "move"
    direction: Direction


class MineAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["mine"] = "mine"
    target: Position
    block_type: Optional[str] = None


class PlaceAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["place"] = "place"
    target: Position
    item: str


class HarvestAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["harvest"] = "harvest"
    target: Position


class PlantAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["plant"] = "plant"
    target: Position
    crop: str


class ToggleAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["toggle"] = "toggle"
    target: Position


Action = Annotated[
    Union[MoveAction, MineAction, PlaceAction, HarvestAction, PlantAction, ToggleAction],
    Field(discriminator="kind"),
]


class ActuatorResult(BaseModel):
    """What the actuator reports after applying an action.

    Attributes:
        success: Whether the action had its intended effect.
        state: Environment state observed after the action.
        message: Failure description, if any.
    """

    success: bool
    state: EnvironmentState
    message: Optional[str] = None


class WorldConfig(BaseModel):
    """Description of a simulated grid world.

    Attributes:
        world_id: Unique identifier.
        width: Grid width (x axis).
        height: Grid height (z axis).
        wall_density: Fraction of cells that are walls.
        ore_density: Fraction of remaining cells holding an ore block.
        ore_type: Block type of generated ores.
        view_radius: Distance within which blocks are observed.
        failure_rate: Probability that an action fails transiently.
        inventory_slots: Inventory capacity of the simulated agent.
    """

    world_id: str = Field(default="grid")
    width: int = Field(default=8, gt=0)
    height: int = Field(default=8, gt=0)
    wall_density: float = Field(default=0.1, ge=0.0, le=1.0)
    ore_density: float = Field(default=0.15, ge=0.0, le=1.0)
    ore_type: str = Field(default="iron_ore")
    view_radius: float = Field(default=4.0, gt=0.0)
    failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    inventory_slots: int = Field(default=36, gt=0)


# ---------------------------------------------------------------------------
# Learning records
# ---------------------------------------------------------------------------


class Experience(BaseModel):
    """A single (state, action, reward, next_state, done) transition.

    States and actions are held as their encoded keys; the agent never sees
    the structured environment state.

    Attributes:
        state: State Key before the action.
        action: Action Key of the action taken.
        reward: Reward received.
        next_state: State Key after the action.
        done: Whether the transition ended the episode.
    """

    model_config = ConfigDict(frozen=True)

    state: str
    action: str
    reward: float
    next_state: str
    done: bool = False


class ActionValue(BaseModel):
    action_key: str
    value: float


class TableRow(BaseModel):
    state_key: str
    actions: list[ActionValue] = Field(default_factory=list)


class SerializedModel(BaseModel):
    """Flat, order-preserving representation of an agent."""

    config: AgentConfig
    table: list[TableRow]
    buffer: list[Experience]


class ModelVersion(BaseModel):
    """Index entry for one retained model version."""

    name: str
    version: int = Field(ge=1)
    key: str
    saved_at: float = Field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Tasks and progress
# ---------------------------------------------------------------------------


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class Task(BaseModel):
    """A unit of work submitted to a controller.

    Attributes:
        task_id: Unique identifier.
        domain: Name of the task domain (mining, farming, ...).
        parameters: Raw domain parameters, validated by the domain.
        status: Lifecycle status.
        attempts: Execution attempts made so far.
        retry_count: Retries consumed so far.
        created_at: Creation timestamp (epoch seconds).
        updated_at: Last status change (epoch seconds).
        error: Terminal error message, if any.
    """

    task_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    domain: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    attempts: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    error: Optional[str] = None


class ProgressEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float
    progress: float


class ProgressSnapshot(BaseModel):
    """Immutable progress record; replaces the previous one for the same task."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    current_progress: float = Field(ge=0.0)
    total_progress: float = Field(ge=0.0)
    status: TaskStatus
    estimated_time_remaining: Optional[float] = None
    last_location: Optional[Position] = None
    error_count: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    history: list[ProgressEntry] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class TaskResult(BaseModel):
    """Outcome of one ``execute`` call.

    Attributes:
        task_id: The task this result belongs to.
        success: True only for COMPLETED tasks.
        status: Terminal status.
        duration: Elapsed seconds.
        attempts: Number of execution attempts made.
        error: Message of the triggering error.
        payload: Domain output, e.g. final progress and location.
        finished_at: Completion timestamp (epoch seconds).
    """

    task_id: str
    success: bool
    status: TaskStatus
    duration: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=0, ge=0)
    error: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    finished_at: float = Field(default_factory=time.time)
