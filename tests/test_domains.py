"""Tests for aumai-taskrl task domains: encoders, rewards, candidates and validation."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from aumai_taskrl.domains import (
    DOMAINS,
    DecisionPlugin,
    FarmingDomain,
    MiningDomain,
    NavigationDomain,
    RedstoneDomain,
    get_domain,
)
from aumai_taskrl.errors import UnknownDomainError, ValidationError
from aumai_taskrl.models import (
    BlockInfo,
    CropPlot,
    FarmingState,
    HarvestAction,
    Inventory,
    MineAction,
    MiningState,
    MoveAction,
    NavigationState,
    PlaceAction,
    PlantAction,
    Position,
    RedstoneDevice,
    RedstoneState,
    ToggleAction,
)

ORIGIN = Position(x=0, y=64, z=0)


def mining_state(
    blocks: list[BlockInfo] | None = None,
    inventory: Inventory | None = None,
    health: float = 20.0,
    position: Position = ORIGIN,
) -> MiningState:
    return MiningState(
        position=position,
        health=health,
        inventory=inventory or Inventory(),
        nearby_blocks=blocks or [],
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mining() -> MiningDomain:
    return MiningDomain()


@pytest.fixture()
def navigation() -> NavigationDomain:
    return NavigationDomain()


@pytest.fixture()
def iron_block() -> BlockInfo:
    return BlockInfo(type="iron_ore", position=Position(x=2, y=64, z=0))


# ---------------------------------------------------------------------------
# Registry tests
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_all_domains_registered(self) -> None:
        assert set(DOMAINS) == {"mining", "farming", "redstone", "navigation"}

    def test_get_domain(self) -> None:
        assert isinstance(get_domain("mining"), MiningDomain)

    def test_unknown_domain(self) -> None:
        with pytest.raises(UnknownDomainError):
            get_domain("fishing")

    def test_unknown_domain_is_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            get_domain("fishing")

    def test_domains_are_decision_plugins(self) -> None:
        for domain in DOMAINS.values():
            assert isinstance(domain, DecisionPlugin)


# ---------------------------------------------------------------------------
# Mining tests
# ---------------------------------------------------------------------------


class TestMiningValidation:
    def test_valid_parameters(self, mining: MiningDomain) -> None:
        params = mining.validate({"target_block": "iron_ore", "quantity": 3})
        assert params.quantity == 3
        assert params.radius == 10

    def test_zero_quantity_rejected(self, mining: MiningDomain) -> None:
        with pytest.raises(ValidationError, match="quantity"):
            mining.validate({"target_block": "iron_ore", "quantity": 0})

    def test_zero_radius_rejected(self, mining: MiningDomain) -> None:
        with pytest.raises(ValidationError, match="radius"):
            mining.validate({"target_block": "iron_ore", "radius": 0})

    def test_missing_target_rejected(self, mining: MiningDomain) -> None:
        with pytest.raises(ValidationError):
            mining.validate({"quantity": 1})


class TestMiningEncoding:
    def test_state_key_format(self, mining: MiningDomain, iron_block: BlockInfo) -> None:
        key = mining.encode_state(mining_state([iron_block]))
        assert key == "plains:36:iron_ore:2,64,0"

    def test_state_key_ignores_worthless_blocks(self, mining: MiningDomain) -> None:
        dirt = BlockInfo(type="dirt", position=Position(x=1, y=64, z=0))
        assert mining.encode_state(mining_state([dirt])) == "plains:36:"

    def test_state_key_order_independent(self, mining: MiningDomain) -> None:
        a = BlockInfo(type="iron_ore", position=Position(x=1, y=64, z=0))
        b = BlockInfo(type="coal_ore", position=Position(x=0, y=64, z=3))
        assert mining.encode_state(mining_state([a, b])) == mining.encode_state(mining_state([b, a]))

    def test_action_keys(self, mining: MiningDomain) -> None:
        assert mining.encode_action(MineAction(target=Position(x=1, y=2, z=3))) == "mine:1,2,3"
        assert mining.encode_action(MoveAction(direction="west")) == "move:west"

    def test_wrong_state_type(self, mining: MiningDomain) -> None:
        with pytest.raises(TypeError):
            mining.encode_state(NavigationState(position=ORIGIN))

    def test_unsupported_action(self, mining: MiningDomain) -> None:
        with pytest.raises(TypeError):
            mining.encode_action(ToggleAction(target=ORIGIN))


class TestMiningReward:
    def test_valuable_block_rewarded(self, mining: MiningDomain, iron_block: BlockInfo) -> None:
        before = mining_state([iron_block])
        after = mining_state(inventory=Inventory(used_slots=1, items={"iron_ore": 1}))
        reward = mining.compute_reward(before, MineAction(target=iron_block.position), after)
        expected = 1.0 + (1 / 36) * 0.5 + (35 / 36) * 0.2
        assert reward == pytest.approx(expected)

    def test_health_loss_penalised(self, mining: MiningDomain) -> None:
        before = mining_state(health=20.0)
        after = mining_state(health=18.0)
        reward = mining.compute_reward(before, MoveAction(direction="north"), after)
        assert reward == pytest.approx(-2 * 0.3 + 0.2)

    def test_worthless_block_no_value(self, mining: MiningDomain) -> None:
        dirt = BlockInfo(type="dirt", position=Position(x=1, y=64, z=0))
        state = mining_state([dirt])
        reward = mining.compute_reward(state, MineAction(target=dirt.position), mining_state())
        assert reward == pytest.approx(0.2)


class TestMiningTask:
    def test_candidates_prefer_target_blocks(
        self, mining: MiningDomain, iron_block: BlockInfo
    ) -> None:
        near = BlockInfo(type="iron_ore", position=Position(x=1, y=64, z=0))
        params = mining.validate({"target_block": "iron_ore"})
        candidates = mining.candidate_actions(params, mining_state([iron_block, near]))
        assert [c.target for c in candidates] == [near.position, iron_block.position]

    def test_candidates_respect_radius(self, mining: MiningDomain) -> None:
        far = BlockInfo(type="iron_ore", position=Position(x=9, y=64, z=0))
        params = mining.validate({"target_block": "iron_ore", "radius": 2})
        candidates = mining.candidate_actions(params, mining_state([far]))
        assert all(isinstance(c, MoveAction) for c in candidates)
        assert len(candidates) == 4

    def test_progress_counts_new_items(self, mining: MiningDomain) -> None:
        params = mining.validate({"target_block": "iron_ore", "quantity": 2})
        initial = mining_state(inventory=Inventory(used_slots=1, items={"iron_ore": 5}))
        later = mining_state(inventory=Inventory(used_slots=1, items={"iron_ore": 6}))
        assert mining.total(params, initial) == 2.0
        assert mining.progress(params, initial, later) == 1.0


# ---------------------------------------------------------------------------
# Farming tests
# ---------------------------------------------------------------------------


class TestFarmingDomain:
    def test_state_key_counts_plots(self) -> None:
        domain = FarmingDomain()
        state = FarmingState(
            position=ORIGIN,
            plots=[
                CropPlot(position=Position(x=1, y=64, z=0), crop="wheat", growth_stage=7),
                CropPlot(position=Position(x=2, y=64, z=0), crop="wheat", growth_stage=3),
                CropPlot(position=Position(x=3, y=64, z=0)),
            ],
        )
        assert domain.encode_state(state) == "plains:36:1:1:1"

    def test_candidates_harvest_mature(self) -> None:
        domain = FarmingDomain()
        params = domain.validate({"crop": "wheat"})
        mature = CropPlot(position=Position(x=1, y=64, z=0), crop="wheat", growth_stage=7)
        empty = CropPlot(position=Position(x=2, y=64, z=0))
        state = FarmingState(position=ORIGIN, plots=[mature, empty])
        candidates = domain.candidate_actions(params, state)
        assert candidates == [HarvestAction(target=mature.position)]

    def test_candidates_plant_when_seeds_available(self) -> None:
        domain = FarmingDomain()
        params = domain.validate({"crop": "wheat"})
        empty = CropPlot(position=Position(x=2, y=64, z=0))
        state = FarmingState(
            position=ORIGIN, plots=[empty], inventory=Inventory(used_slots=1, items={"wheat": 3})
        )
        assert domain.candidate_actions(params, state) == [
            PlantAction(target=empty.position, crop="wheat")
        ]

    def test_reward_harvest(self) -> None:
        domain = FarmingDomain()
        plot = CropPlot(position=Position(x=1, y=64, z=0), crop="wheat", growth_stage=7)
        before = FarmingState(position=ORIGIN, plots=[plot])
        after = FarmingState(
            position=ORIGIN,
            plots=[CropPlot(position=plot.position)],
            inventory=Inventory(used_slots=1, items={"wheat": 1}),
        )
        reward = domain.compute_reward(before, HarvestAction(target=plot.position), after)
        assert reward == pytest.approx(1.0 - 0.05)

    def test_invalid_quantity(self) -> None:
        with pytest.raises(ValidationError):
            FarmingDomain().validate({"crop": "wheat", "quantity": -1})


# ---------------------------------------------------------------------------
# Redstone tests
# ---------------------------------------------------------------------------


class TestRedstoneDomain:
    def test_missing_devices_respects_multiplicity(self) -> None:
        domain = RedstoneDomain()
        params = domain.validate({"circuit_type": "clock", "devices": ["repeater", "repeater", "lever"]})
        state = RedstoneState(
            position=ORIGIN,
            devices=[RedstoneDevice(device_type="repeater", position=Position(x=1, y=64, z=0))],
        )
        assert sorted(domain.missing_devices(params, state)) == ["lever", "repeater"]
        assert domain.total(params, state) == 3.0
        assert domain.progress(params, state, state) == 1.0

    def test_place_candidates_skip_occupied_slots(self) -> None:
        domain = RedstoneDomain()
        params = domain.validate({"circuit_type": "door", "devices": ["lever"]})
        state = RedstoneState(
            position=ORIGIN,
            inventory=Inventory(used_slots=1, items={"lever": 1}),
            devices=[RedstoneDevice(device_type="torch", position=ORIGIN.offset(dx=1))],
        )
        assert domain.candidate_actions(params, state) == [
            PlaceAction(target=ORIGIN.offset(dx=2), item="lever")
        ]

    def test_toggle_when_nothing_to_place(self) -> None:
        domain = RedstoneDomain()
        params = domain.validate({"circuit_type": "door", "devices": ["lever"]})
        device = RedstoneDevice(device_type="lever", position=ORIGIN.offset(dx=1))
        state = RedstoneState(position=ORIGIN, devices=[device])
        assert domain.candidate_actions(params, state) == [ToggleAction(target=device.position)]

    def test_reward_placement_and_efficiency(self) -> None:
        domain = RedstoneDomain()
        before = RedstoneState(position=ORIGIN, power_efficiency=0.2)
        after = RedstoneState(
            position=ORIGIN,
            power_efficiency=0.5,
            devices=[RedstoneDevice(device_type="lever", position=ORIGIN.offset(dx=1), powered=True)],
        )
        reward = domain.compute_reward(before, PlaceAction(target=ORIGIN.offset(dx=1), item="lever"), after)
        assert reward == pytest.approx(1.0 + 0.3 * 2.0 + 0.1)

    def test_empty_device_list_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RedstoneDomain().validate({"circuit_type": "clock", "devices": []})


# ---------------------------------------------------------------------------
# Navigation tests
# ---------------------------------------------------------------------------


class TestNavigationDomain:
    def test_state_key_is_position_independent(self, navigation: NavigationDomain) -> None:
        a = NavigationState(position=ORIGIN, destination=Position(x=5, y=64, z=0))
        b = NavigationState(
            position=Position(x=10, y=64, z=3), destination=Position(x=15, y=64, z=3)
        )
        assert navigation.encode_state(a) == navigation.encode_state(b) == "plains:1,0:5:"

    def test_state_key_lists_blocked_directions(self, navigation: NavigationDomain) -> None:
        state = NavigationState(
            position=ORIGIN, destination=ORIGIN.offset(dz=2), blocked=["west", "north"]
        )
        assert navigation.encode_state(state) == "plains:0,1:2:north,west"

    def test_bump_penalised(self, navigation: NavigationDomain) -> None:
        state = NavigationState(position=ORIGIN, destination=ORIGIN.offset(dx=3))
        reward = navigation.compute_reward(state, MoveAction(direction="west"), state)
        assert reward == pytest.approx(-0.05 - 0.5)

    def test_arrival_bonus(self, navigation: NavigationDomain) -> None:
        goal = ORIGIN.offset(dx=1)
        before = NavigationState(position=ORIGIN, destination=goal)
        after = NavigationState(position=goal, destination=goal)
        reward = navigation.compute_reward(before, MoveAction(direction="east"), after)
        assert reward == pytest.approx(-0.05 + 1.0 + 1.0)

    def test_candidates_exclude_blocked(self, navigation: NavigationDomain) -> None:
        params = navigation.validate({"destination": {"x": 3, "y": 64, "z": 3}})
        state = NavigationState(position=ORIGIN, blocked=["north", "west"])
        assert navigation.candidate_actions(params, state) == [
            MoveAction(direction="south"),
            MoveAction(direction="east"),
        ]

    def test_total_subtracts_tolerance(self, navigation: NavigationDomain) -> None:
        params = navigation.validate({"destination": {"x": 4, "y": 64, "z": 0}, "tolerance": 1.0})
        initial = NavigationState(position=ORIGIN)
        assert navigation.total(params, initial) == pytest.approx(3.0)
        moved = NavigationState(position=ORIGIN.offset(dx=3))
        assert navigation.progress(params, initial, moved) == pytest.approx(3.0)

    def test_negative_tolerance_rejected(self, navigation: NavigationDomain) -> None:
        with pytest.raises(ValidationError):
            navigation.validate({"destination": {"x": 1, "z": 1}, "tolerance": -1})


# ---------------------------------------------------------------------------
# Hypothesis property-based tests
# ---------------------------------------------------------------------------


@given(
    x=st.integers(min_value=-50, max_value=50),
    z=st.integers(min_value=-50, max_value=50),
    dx=st.integers(min_value=-20, max_value=20),
    dz=st.integers(min_value=-20, max_value=20),
)
@settings(max_examples=50)
def test_navigation_key_translation_invariant(x: int, z: int, dx: int, dz: int) -> None:
    domain = NavigationDomain()
    start = Position(x=0, y=64, z=0)
    shifted = Position(x=x, y=64, z=z)
    a = NavigationState(position=start, destination=start.offset(dx=dx, dz=dz))
    b = NavigationState(position=shifted, destination=shifted.offset(dx=dx, dz=dz))
    assert domain.encode_state(a) == domain.encode_state(b)


@given(quantity=st.integers(max_value=0))
@settings(max_examples=20)
def test_non_positive_quantity_always_rejected(quantity: int) -> None:
    with pytest.raises(ValidationError):
        MiningDomain().validate({"target_block": "iron_ore", "quantity": quantity})
