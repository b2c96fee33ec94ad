"""Core RL implementations: DecisionTable, ExperienceReplay, QLearningAgent, SharedAgent.

DecisionTable maps State Keys to insertion-ordered Action Key values.
ExperienceReplay is a fixed-size FIFO buffer for experience storage.
QLearningAgent uses tabular Q-learning with epsilon-greedy exploration and
mini-batch replay; state/action encoding and rewards come from a plug-in.
SharedAgent serializes access to one agent shared by concurrent tasks.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import random
from contextlib import asynccontextmanager, contextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Iterable,
    Iterator,
    Optional,
    Sequence,
    TypeVar,
)

from .models import AgentConfig, Experience

if TYPE_CHECKING:
    from .domains import DecisionPlugin

logger = logging.getLogger(__name__)

A = TypeVar("A")


# ---------------------------------------------------------------------------
# DecisionTable
# ---------------------------------------------------------------------------


class DecisionTable:
    """State Key -> Action Key -> value estimate.

    A state key only appears once a value has been written for it. Reads of
    absent entries return 0.0 and never create rows.

    Example:
        >>> table = DecisionTable()
        >>> table.set("s1", "a1", 5.0)
        >>> table.max_value("s1")
        5.0
    """

    def __init__(self) -> None:
        self._rows: dict[str, dict[str, float]] = {}

    def get(self, state_key: str, action_key: str) -> float:
        row = self._rows.get(state_key)
        if row is None:
            return 0.0
        return row.get(action_key, 0.0)

    def set(self, state_key: str, action_key: str, value: float) -> None:
        self._rows.setdefault(state_key, {})[action_key] = value

    def max_value(self, state_key: str) -> float:
        """Highest value recorded for *state_key*, or 0.0 if it is unseen."""
        row = self._rows.get(state_key)
        if not row:
            return 0.0
        return max(row.values())

    def actions(self, state_key: str) -> dict[str, float]:
        """Copy of the row for *state_key* in first-seen order."""
        return dict(self._rows.get(state_key, {}))

    def has_state(self, state_key: str) -> bool:
        return bool(self._rows.get(state_key))

    def clear(self) -> None:
        self._rows.clear()

    def items(self) -> Iterator[tuple[str, dict[str, float]]]:
        for state_key, row in self._rows.items():
            yield state_key, dict(row)

    @property
    def entry_count(self) -> int:
        """Number of (state, action) pairs stored."""
        return sum(len(row) for row in self._rows.values())

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, state_key: object) -> bool:
        return state_key in self._rows


# ---------------------------------------------------------------------------
# ExperienceReplay
# ---------------------------------------------------------------------------


class ExperienceReplay:
    """Fixed-capacity FIFO experience replay buffer.

    Example:
        >>> buffer = ExperienceReplay(capacity=1000)
        >>> buffer.push(Experience(state="s1", action="a1", reward=0.1,
        ...                        next_state="s2", done=False))
        >>> batch = buffer.sample(32)
    """

    def __init__(self, capacity: int = 10000) -> None:
        """Initialise with fixed capacity.

        Args:
            capacity: Maximum number of experiences to store.
        """
        self._buffer: collections.deque[Experience] = collections.deque(maxlen=capacity)

    def push(self, experience: Experience) -> None:
        """Add one experience, evicting the oldest one when full.

        Args:
            experience: The transition to store.
        """
        self._buffer.append(experience)

    def sample(self, batch_size: int, rng: Optional[random.Random] = None) -> list[Experience]:
        """Sample a random mini-batch.

        Args:
            batch_size: Number of samples to draw.
            rng: Optional seeded RNG.

        Returns:
            The whole buffer (oldest first) when it holds at most
            *batch_size* experiences, otherwise *batch_size* distinct
            experiences drawn uniformly.
        """
        r = rng or random
        population = list(self._buffer)
        if len(population) <= batch_size:
            return population
        return r.sample(population, batch_size)

    def replace(self, experiences: Iterable[Experience]) -> None:
        """Swap the buffer contents wholesale, keeping the capacity."""
        self._buffer = collections.deque(experiences, maxlen=self._buffer.maxlen)

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen or 0

    def __iter__(self) -> Iterator[Experience]:
        return iter(list(self._buffer))

    def __len__(self) -> int:
        return len(self._buffer)


# ---------------------------------------------------------------------------
# QLearningAgent
# ---------------------------------------------------------------------------


class QLearningAgent:
    """Tabular Q-learning agent with epsilon-greedy exploration and replay.

    The agent only ever handles State and Action Keys. A domain plug-in
    turns structured states and actions into keys and scores transitions.

    Example:
        >>> agent = QLearningAgent(AgentConfig(learning_rate=0.5, discount_factor=0.9))
        >>> agent.update(Experience(state="s1", action="a1", reward=10.0,
        ...                         next_state="s2", done=True))
        [10.0]
        >>> agent.get_value("s1", "a1")
        5.0
    """

    def __init__(
        self,
        config: AgentConfig,
        plugin: Optional[DecisionPlugin] = None,
        seed: Optional[int] = None,
    ) -> None:
        """Initialise the agent.

        Args:
            config: Agent configuration.
            plugin: Domain encoders and reward function. Without one,
                candidate actions are keyed by ``str(action)``.
            seed: Optional random seed.
        """
        self._config = config
        self._plugin = plugin
        self._rng = random.Random(seed)
        self._table = DecisionTable()
        self._buffer = ExperienceReplay(capacity=config.buffer_capacity)
        self._update_count = 0

    def select_action(self, state_key: str, candidates: Sequence[A]) -> A:
        """Select an action using the epsilon-greedy policy.

        Args:
            state_key: Encoded current state.
            candidates: Actions available in this state.

        Returns:
            One member of *candidates*. Unseen states always explore.

        Raises:
            ValueError: If *candidates* is empty.
        """
        if not candidates:
            raise ValueError("select_action requires at least one candidate action")
        if not self._table.has_state(state_key):
            return self._rng.choice(list(candidates))
        if self._rng.random() < self._config.epsilon:
            return self._rng.choice(list(candidates))
        return self._greedy_action(state_key, candidates)

    def update(self, experience: Experience) -> list[float]:
        """Store *experience* and replay a mini-batch.

        Q(s,a) <- Q(s,a) + lr * (r + gamma * max_a' Q(s',a') - Q(s,a))

        Each sampled experience is applied in sequence, so later samples in
        the batch see the values written by earlier ones.

        Args:
            experience: The newly observed transition.

        Returns:
            The TD errors of the replayed batch, in application order.
        """
        self._buffer.push(experience)
        batch = self._buffer.sample(self._config.batch_size, rng=self._rng)

        td_errors: list[float] = []
        for exp in batch:
            current_q = self._table.get(exp.state, exp.action)
            if exp.done:
                target = exp.reward
            else:
                target = exp.reward + self._config.discount_factor * self._table.max_value(
                    exp.next_state
                )
            td_error = target - current_q
            self._table.set(exp.state, exp.action, current_q + self._config.learning_rate * td_error)
            td_errors.append(td_error)

        self._update_count += 1
        self.decay_epsilon()
        return td_errors

    def observe(self, state: Any, action: Any, next_state: Any, done: bool = False) -> Experience:
        """Encode a structured transition with the plug-in and learn from it."""
        if self._plugin is None:
            raise RuntimeError("observe() needs a domain plug-in")
        experience = Experience(
            state=self._plugin.encode_state(state),
            action=self._plugin.encode_action(action),
            reward=self._plugin.compute_reward(state, action, next_state),
            next_state=self._plugin.encode_state(next_state),
            done=done,
        )
        self.update(experience)
        return experience

    def encode_state(self, state: Any) -> str:
        if self._plugin is None:
            return str(state)
        return self._plugin.encode_state(state)

    def get_value(self, state_key: str, action_key: str) -> float:
        return self._table.get(state_key, action_key)

    def get_max_value(self, state_key: str) -> float:
        """Maximum action value for *state_key*, 0.0 if it is unseen."""
        return self._table.max_value(state_key)

    def decay_epsilon(self) -> None:
        """Decay exploration rate by epsilon_decay, down to epsilon_min."""
        new_epsilon = max(
            self._config.epsilon_min,
            self._config.epsilon * self._config.epsilon_decay,
        )
        self._config = self._config.model_copy(update={"epsilon": new_epsilon})

    def load_state(
        self,
        config: AgentConfig,
        rows: Iterable[tuple[str, Iterable[tuple[str, float]]]],
        experiences: Iterable[Experience],
    ) -> None:
        """Replace configuration, table and buffer wholesale.

        Args:
            config: Configuration to adopt.
            rows: ``(state_key, [(action_key, value), ...])`` in table order.
            experiences: Buffer contents, oldest first.
        """
        self._config = config
        self._table.clear()
        for state_key, actions in rows:
            for action_key, value in actions:
                self._table.set(state_key, action_key, value)
        self._buffer = ExperienceReplay(capacity=config.buffer_capacity)
        self._buffer.replace(experiences)
        self._update_count = 0

    @contextmanager
    def eval_mode(self) -> Iterator[None]:
        """Context manager that sets epsilon to 0.0 for greedy evaluation.

        Saves the current epsilon value before entering and restores it
        unconditionally on exit via try/finally.
        """
        saved = self._config.epsilon
        self._config = self._config.model_copy(update={"epsilon": 0.0})
        try:
            yield
        finally:
            self._config = self._config.model_copy(update={"epsilon": saved})

    def _greedy_action(self, state_key: str, candidates: Sequence[A]) -> A:
        """Return the candidate with the highest value for *state_key*.

        Ties go to the action seen first in the table, then to the earliest
        candidate. Candidates missing from the table count as 0.0.
        """
        by_key: dict[str, A] = {}
        for candidate in candidates:
            by_key.setdefault(self._encode_action(candidate), candidate)

        row = self._table.actions(state_key)
        ordered = [key for key in row if key in by_key]
        ordered.extend(key for key in by_key if key not in row)
        best_key = max(ordered, key=lambda key: row.get(key, 0.0))
        return by_key[best_key]

    def _encode_action(self, action: Any) -> str:
        if self._plugin is None:
            return str(action)
        return self._plugin.encode_action(action)

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def plugin(self) -> Optional[DecisionPlugin]:
        return self._plugin

    @property
    def epsilon(self) -> float:
        """Current exploration rate."""
        return self._config.epsilon

    @property
    def table(self) -> DecisionTable:
        return self._table

    @property
    def buffer(self) -> ExperienceReplay:
        return self._buffer

    @property
    def update_count(self) -> int:
        """Number of ``update`` calls applied since construction or restore."""
        return self._update_count


# ---------------------------------------------------------------------------
# SharedAgent
# ---------------------------------------------------------------------------


class SharedAgent:
    """Single-writer handle around an agent shared by concurrent tasks.

    Every read or write of the table and buffer goes through one
    ``asyncio.Lock``. Tasks hold a reference through :meth:`lease`.

    Example:
        >>> shared = SharedAgent(QLearningAgent(AgentConfig()))
        >>> async with shared.lease():
        ...     action = await shared.select_action("s1", ["a", "b"])
    """

    def __init__(self, agent: QLearningAgent) -> None:
        self._agent = agent
        self._lock = asyncio.Lock()
        self._refcount = 0

    async def select_action(self, state_key: str, candidates: Sequence[A]) -> A:
        async with self._lock:
            return self._agent.select_action(state_key, candidates)

    async def update(self, experience: Experience) -> list[float]:
        async with self._lock:
            return self._agent.update(experience)

    async def observe(self, state: Any, action: Any, next_state: Any, done: bool = False) -> Experience:
        async with self._lock:
            return self._agent.observe(state, action, next_state, done)

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[QLearningAgent]:
        """Exclusive access to the wrapped agent, e.g. for checkpoints."""
        async with self._lock:
            yield self._agent

    def acquire(self) -> SharedAgent:
        self._refcount += 1
        return self

    def release(self) -> None:
        if self._refcount <= 0:
            raise RuntimeError("release() called without a matching acquire()")
        self._refcount -= 1

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[SharedAgent]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def encode_state(self, state: Any) -> str:
        return self._agent.encode_state(state)

    @property
    def agent(self) -> QLearningAgent:
        return self._agent

    @property
    def refcount(self) -> int:
        return self._refcount
