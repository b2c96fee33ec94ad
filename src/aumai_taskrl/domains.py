"""Task domains: state/action encoders, reward functions and task semantics.

Each domain is a plug-in injected into :class:`~aumai_taskrl.core.QLearningAgent`
(the :class:`DecisionPlugin` part) and into
:class:`~aumai_taskrl.lifecycle.TaskController` (the rest of :class:`TaskDomain`).
"""

from __future__ import annotations

import collections
from typing import Any, Mapping, Protocol, runtime_checkable

import pydantic
from pydantic import BaseModel, Field

from .errors import UnknownDomainError, ValidationError
from .models import (
    DIRECTIONS,
    FarmingState,
    HarvestAction,
    MineAction,
    MiningState,
    MoveAction,
    NavigationState,
    PlaceAction,
    PlantAction,
    Position,
    RedstoneState,
    ToggleAction,
)

VALUABLE_ORES = frozenset(
    {
        "diamond_ore",
        "emerald_ore",
        "gold_ore",
        "iron_ore",
        "coal_ore",
        "lapis_ore",
        "redstone_ore",
    }
)


@runtime_checkable
class DecisionPlugin(Protocol):
    """Capability interface consumed by the Q-learning agent."""

    def encode_state(self, state: Any) -> str: ...

    def encode_action(self, action: Any) -> str: ...

    def compute_reward(self, state: Any, action: Any, next_state: Any) -> float: ...


class TaskDomain(DecisionPlugin, Protocol):
    """Decision plug-in plus the task semantics the controller needs."""

    name: str

    def validate(self, parameters: Mapping[str, Any]) -> BaseModel: ...

    def total(self, params: Any, initial: Any) -> float: ...

    def progress(self, params: Any, initial: Any, state: Any) -> float: ...

    def candidate_actions(self, params: Any, state: Any) -> list[Any]: ...


def _pos_key(position: Position) -> str:
    return f"{position.x},{position.y},{position.z}"


def _parse(model: type[BaseModel], domain: str, parameters: Mapping[str, Any]) -> Any:
    try:
        return model.model_validate(dict(parameters))
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'parameters'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"Invalid {domain} parameters: {problems}") from exc


def _unsupported(domain: str, value: Any) -> TypeError:
    return TypeError(f"{domain} domain cannot encode {type(value).__name__}")


def _moves(blocked: frozenset[str] = frozenset()) -> list[MoveAction]:
    return [MoveAction(direction=d) for d in DIRECTIONS if d not in blocked]


# ---------------------------------------------------------------------------
# Mining
# ---------------------------------------------------------------------------


class MiningParameters(BaseModel):
    target_block: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    radius: int = Field(default=10, gt=0)


class MiningDomain:
    """Resource extraction: mine ``quantity`` blocks of ``target_block``.

    Reward weights: ore value 1.0, inventory fill efficiency 0.5, health
    loss 0.3 per point, remaining space 0.2.
    """

    name = "mining"
    block_value = 1.0
    efficiency_weight = 0.5
    safety_weight = 0.3
    space_weight = 0.2

    def validate(self, parameters: Mapping[str, Any]) -> MiningParameters:
        return _parse(MiningParameters, self.name, parameters)

    def encode_state(self, state: Any) -> str:
        if not isinstance(state, MiningState):
            raise _unsupported(self.name, state)
        ores = sorted(
            f"{block.type}:{_pos_key(block.position)}"
            for block in state.nearby_blocks
            if block.type in VALUABLE_ORES
        )
        return f"{state.biome}:{state.inventory.free_slots}:{'|'.join(ores)}"

    def encode_action(self, action: Any) -> str:
        if isinstance(action, MineAction):
            return f"mine:{_pos_key(action.target)}"
        if isinstance(action, MoveAction):
            return f"move:{action.direction}"
        raise _unsupported(self.name, action)

    def compute_reward(self, state: Any, action: Any, next_state: Any) -> float:
        reward = 0.0
        if isinstance(action, MineAction):
            mined = next((b for b in state.nearby_blocks if b.position == action.target), None)
            if mined is not None and mined.type in VALUABLE_ORES:
                reward += self.block_value

        before, after = state.inventory, next_state.inventory
        reward += (after.used_slots - before.used_slots) / before.total_slots * self.efficiency_weight
        if next_state.health < state.health:
            reward -= (state.health - next_state.health) * self.safety_weight
        reward += after.free_slots / after.total_slots * self.space_weight
        return reward

    def candidate_actions(self, params: MiningParameters, state: MiningState) -> list[Any]:
        targets = sorted(
            (
                block
                for block in state.nearby_blocks
                if block.type == params.target_block
                and state.position.distance_to(block.position) <= params.radius
            ),
            key=lambda block: state.position.distance_to(block.position),
        )
        if targets:
            return [MineAction(target=b.position, block_type=b.type) for b in targets]
        return _moves()

    def total(self, params: MiningParameters, initial: MiningState) -> float:
        return float(params.quantity)

    def progress(self, params: MiningParameters, initial: MiningState, state: MiningState) -> float:
        target = params.target_block
        return float(state.inventory.count(target) - initial.inventory.count(target))


# ---------------------------------------------------------------------------
# Farming
# ---------------------------------------------------------------------------


class FarmingParameters(BaseModel):
    crop: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    radius: int = Field(default=8, gt=0)


class FarmingDomain:
    """Area maintenance: harvest mature crops and replant empty plots."""

    name = "farming"
    harvest_weight = 1.0
    plant_weight = 0.2
    step_cost = 0.05

    def validate(self, parameters: Mapping[str, Any]) -> FarmingParameters:
        return _parse(FarmingParameters, self.name, parameters)

    def encode_state(self, state: Any) -> str:
        if not isinstance(state, FarmingState):
            raise _unsupported(self.name, state)
        mature = sum(1 for plot in state.plots if plot.mature)
        empty = sum(1 for plot in state.plots if plot.crop is None)
        growing = len(state.plots) - mature - empty
        return f"{state.biome}:{state.inventory.free_slots}:{mature}:{empty}:{growing}"

    def encode_action(self, action: Any) -> str:
        if isinstance(action, HarvestAction):
            return f"harvest:{_pos_key(action.target)}"
        if isinstance(action, PlantAction):
            return f"plant:{action.crop}:{_pos_key(action.target)}"
        if isinstance(action, MoveAction):
            return f"move:{action.direction}"
        raise _unsupported(self.name, action)

    def compute_reward(self, state: Any, action: Any, next_state: Any) -> float:
        harvested = sum(next_state.inventory.items.values()) - sum(state.inventory.items.values())
        planted = sum(1 for p in next_state.plots if p.crop is not None) - sum(
            1 for p in state.plots if p.crop is not None
        )
        return (
            max(harvested, 0) * self.harvest_weight
            + max(planted, 0) * self.plant_weight
            - self.step_cost
        )

    def candidate_actions(self, params: FarmingParameters, state: FarmingState) -> list[Any]:
        in_range = [
            plot for plot in state.plots
            if state.position.distance_to(plot.position) <= params.radius
        ]
        actions: list[Any] = [
            HarvestAction(target=plot.position)
            for plot in in_range
            if plot.mature and plot.crop == params.crop
        ]
        if state.inventory.count(params.crop) > 0 or not actions:
            actions.extend(
                PlantAction(target=plot.position, crop=params.crop)
                for plot in in_range
                if plot.crop is None
            )
        return actions or _moves()

    def total(self, params: FarmingParameters, initial: FarmingState) -> float:
        return float(params.quantity)

    def progress(self, params: FarmingParameters, initial: FarmingState, state: FarmingState) -> float:
        return float(state.inventory.count(params.crop) - initial.inventory.count(params.crop))


# ---------------------------------------------------------------------------
# Redstone
# ---------------------------------------------------------------------------


class RedstoneParameters(BaseModel):
    circuit_type: str = Field(min_length=1)
    devices: list[str] = Field(min_length=1)


class RedstoneDomain:
    """Circuit optimization: place the requested devices, then power them."""

    name = "redstone"
    placement_weight = 1.0
    efficiency_weight = 2.0
    power_weight = 0.1

    def validate(self, parameters: Mapping[str, Any]) -> RedstoneParameters:
        return _parse(RedstoneParameters, self.name, parameters)

    def encode_state(self, state: Any) -> str:
        if not isinstance(state, RedstoneState):
            raise _unsupported(self.name, state)
        placed = ",".join(sorted(device.device_type for device in state.devices))
        powered = sum(1 for device in state.devices if device.powered)
        return f"{placed}:{powered}:{round(state.power_efficiency, 1)}"

    def encode_action(self, action: Any) -> str:
        if isinstance(action, PlaceAction):
            return f"place:{action.item}:{_pos_key(action.target)}"
        if isinstance(action, ToggleAction):
            return f"toggle:{_pos_key(action.target)}"
        raise _unsupported(self.name, action)

    def compute_reward(self, state: Any, action: Any, next_state: Any) -> float:
        placed = len(next_state.devices) - len(state.devices)
        powered = sum(1 for d in next_state.devices if d.powered) - sum(
            1 for d in state.devices if d.powered
        )
        efficiency = next_state.power_efficiency - state.power_efficiency
        return (
            placed * self.placement_weight
            + efficiency * self.efficiency_weight
            + powered * self.power_weight
        )

    def missing_devices(self, params: RedstoneParameters, state: RedstoneState) -> list[str]:
        remaining = collections.Counter(params.devices)
        remaining.subtract(device.device_type for device in state.devices)
        return list((+remaining).elements())

    def candidate_actions(self, params: RedstoneParameters, state: RedstoneState) -> list[Any]:
        occupied = {device.position for device in state.devices}
        missing = [
            device for device in dict.fromkeys(self.missing_devices(params, state))
            if state.inventory.count(device) > 0
        ]
        if missing:
            slot = state.position.offset(dx=1)
            while slot in occupied:
                slot = slot.offset(dx=1)
            return [PlaceAction(target=slot, item=device) for device in missing]
        return [ToggleAction(target=device.position) for device in state.devices]

    def total(self, params: RedstoneParameters, initial: RedstoneState) -> float:
        return float(len(params.devices))

    def progress(self, params: RedstoneParameters, initial: RedstoneState, state: RedstoneState) -> float:
        return float(len(params.devices) - len(self.missing_devices(params, state)))


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


class NavigationParameters(BaseModel):
    destination: Position
    tolerance: float = Field(default=1.0, ge=0.0)


class NavigationDomain:
    """Movement: reach ``destination`` within ``tolerance`` blocks."""

    name = "navigation"
    step_cost = 0.05
    bump_penalty = 0.5
    arrival_bonus = 1.0

    def validate(self, parameters: Mapping[str, Any]) -> NavigationParameters:
        return _parse(NavigationParameters, self.name, parameters)

    def encode_state(self, state: Any) -> str:
        if not isinstance(state, NavigationState):
            raise _unsupported(self.name, state)
        if state.destination is None:
            return f"{state.biome}:none:{','.join(sorted(state.blocked))}"
        dx = state.destination.x - state.position.x
        dz = state.destination.z - state.position.z
        heading = f"{(dx > 0) - (dx < 0)},{(dz > 0) - (dz < 0)}"
        distance = min(int(state.position.distance_to(state.destination)), 16)
        return f"{state.biome}:{heading}:{distance}:{','.join(sorted(state.blocked))}"

    def encode_action(self, action: Any) -> str:
        if isinstance(action, MoveAction):
            return f"move:{action.direction}"
        raise _unsupported(self.name, action)

    def compute_reward(self, state: Any, action: Any, next_state: Any) -> float:
        reward = -self.step_cost
        if next_state.position == state.position:
            reward -= self.bump_penalty
        if state.destination is not None:
            before = state.position.distance_to(state.destination)
            after = next_state.position.distance_to(state.destination)
            reward += before - after
            if after < 1.0:
                reward += self.arrival_bonus
        return reward

    def candidate_actions(self, params: NavigationParameters, state: NavigationState) -> list[Any]:
        return _moves(frozenset(state.blocked)) or _moves()

    def total(self, params: NavigationParameters, initial: NavigationState) -> float:
        return max(initial.position.distance_to(params.destination) - params.tolerance, 0.0)

    def progress(
        self, params: NavigationParameters, initial: NavigationState, state: NavigationState
    ) -> float:
        start = initial.position.distance_to(params.destination)
        return start - state.position.distance_to(params.destination)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


DOMAINS: dict[str, TaskDomain] = {
    domain.name: domain
    for domain in (MiningDomain(), FarmingDomain(), RedstoneDomain(), NavigationDomain())
}


def get_domain(name: str) -> TaskDomain:
    """Look up a registered domain by name."""
    try:
        return DOMAINS[name]
    except KeyError:
        raise UnknownDomainError(
            f"Unknown task domain {name!r}; expected one of {sorted(DOMAINS)}"
        ) from None
