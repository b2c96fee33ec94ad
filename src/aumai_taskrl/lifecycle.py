"""Task lifecycle controller: validation, stepping, progress, retries, checkpoints.

A controller runs one task at a time::

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED | CANCELLED

A failing attempt re-enters IN_PROGRESS through :meth:`TaskController.retry`
until ``max_retries`` is consumed. Each step observes the environment, asks
the shared agent for an action, applies it through the actuator and feeds
the transition back into the agent.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from .core import SharedAgent
from .domains import TaskDomain
from .errors import (
    ActuatorError,
    PersistenceError,
    RetryExhaustedError,
    TaskTimeoutError,
    ValidationError,
)
from .models import (
    ActuatorResult,
    ControllerSettings,
    Position,
    ProgressEntry,
    ProgressSnapshot,
    Task,
    TaskResult,
    TaskStatus,
)
from .persistence import ModelStore
from .storage import ProgressStore

logger = logging.getLogger(__name__)


@runtime_checkable
class Actuator(Protocol):
    """Applies actions to the live environment."""

    async def perform(self, action: Any) -> ActuatorResult: ...


@runtime_checkable
class EnvironmentProvider(Protocol):
    """Supplies the current environment state on demand."""

    async def observe(self) -> Any: ...


class TaskController:
    """Drives a single task through its lifecycle.

    Example:
        >>> controller = TaskController(MiningDomain(), shared, world, world)
        >>> result = await controller.execute(
        ...     Task(domain="mining", parameters={"target_block": "iron_ore", "quantity": 3})
        ... )
    """

    def __init__(
        self,
        domain: TaskDomain,
        agent: SharedAgent,
        provider: EnvironmentProvider,
        actuator: Actuator,
        *,
        progress_store: Optional[ProgressStore] = None,
        model_store: Optional[ModelStore] = None,
        model_key: Optional[str] = None,
        settings: Optional[ControllerSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise the controller.

        Args:
            domain: Task domain supplying validation, candidates and progress.
            agent: Shared decision agent configured with the same domain.
            provider: Source of environment state.
            actuator: Applies the chosen actions.
            progress_store: Where progress snapshots and results are persisted.
            model_store: Where the agent is checkpointed when a task ends.
            model_key: Storage key of that checkpoint.
            settings: Retry, timeout and checkpoint policy.
            sleep: Awaitable used for retry delays.
            clock: Monotonic clock for elapsed time and timeouts.
            wall_clock: Epoch clock for timestamps.
        """
        self._domain = domain
        self._agent = agent
        self._provider = provider
        self._actuator = actuator
        self._progress_store = progress_store
        self._model_store = model_store
        self._model_key = model_key
        self._settings = settings or ControllerSettings()
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._reset(None)

    # -- public API -------------------------------------------------------

    async def execute(self, task: Task) -> TaskResult:
        """Run *task* to a terminal status and report the outcome.

        Validation failures are never retried. Step failures go through
        :meth:`retry` until it raises :class:`RetryExhaustedError`.
        """
        self._reset(task)
        logger.info("Executing %s task %s", self._domain.name, task.task_id)

        try:
            if task.domain != self._domain.name:
                raise ValidationError(
                    f"Task domain {task.domain!r} does not match controller domain {self._domain.name!r}"
                )
            self._params = self._domain.validate(task.parameters)
        except ValidationError as exc:
            logger.error(
                "Task %s rejected: %s", task.task_id, exc, extra=self._log_context()
            )
            return await self._finish(TaskStatus.FAILED, exc)

        async with self._agent.lease():
            error = await self._run()

        if error is not None:
            return await self._finish(TaskStatus.FAILED, error)
        if self._stop_requested and self._current < self._total:
            return await self._finish(TaskStatus.CANCELLED)
        return await self._finish(TaskStatus.COMPLETED)

    async def update_progress(self, value: float) -> ProgressSnapshot:
        """Record progress *value* (clamped to ``[0, total]``) and persist it.

        Persistence failures are logged and swallowed.
        """
        if self._task is None:
            raise RuntimeError("update_progress() called before execute()")
        now = self._wall_clock()
        value = float(value)
        if not math.isfinite(value):
            logger.warning("Ignoring non-finite progress value %r", value)
            value = self._current
        self._current = min(max(value, 0.0), self._total)

        eta: Optional[float] = None
        elapsed = self._clock() - self._started
        if self._history and elapsed > 0 and self._current > 0:
            rate = self._current / elapsed
            eta = (self._total - self._current) / rate

        self._history.append(ProgressEntry(timestamp=now, progress=self._current))
        self._snapshot = ProgressSnapshot(
            task_id=self._task.task_id,
            current_progress=self._current,
            total_progress=self._total,
            status=self._status,
            estimated_time_remaining=eta,
            last_location=self._location,
            error_count=self._error_count,
            retry_count=self._retry_count,
            history=list(self._history),
            created_at=self._task.created_at,
            updated_at=now,
        )

        if self._progress_store is not None:
            try:
                await self._progress_store.save_progress(self._snapshot)
            except (PersistenceError, OSError) as exc:
                logger.warning(
                    "Failed to persist progress for task %s: %s", self._task.task_id, exc
                )
        return self._snapshot

    def should_retry(self) -> bool:
        return self._retry_count < self._settings.max_retries

    async def retry(self) -> None:
        """Wait out the retry delay and run another attempt.

        Raises:
            RetryExhaustedError: If no retries are left.
        """
        if not self.should_retry():
            raise RetryExhaustedError(self._attempts, self._last_error)
        self._retry_count += 1
        delay = min(
            self._settings.retry_delay * self._settings.backoff_factor ** (self._retry_count - 1),
            self._settings.max_retry_delay,
        )
        logger.info(
            "Retrying task %s (%d/%d) in %.1fs",
            self._task.task_id if self._task else "?",
            self._retry_count,
            self._settings.max_retries,
            delay,
        )
        await self._sleep(delay)
        await self._attempt()

    def stop(self) -> None:
        """Request cooperative cancellation at the next step boundary."""
        self._stop_requested = True
        logger.info("Stop requested for task %s", self._task.task_id if self._task else "?")

    @property
    def task(self) -> Optional[Task]:
        return self._task

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def status_history(self) -> list[TaskStatus]:
        """Every status the current task passed through, in order."""
        return list(self._status_history)

    @property
    def snapshot(self) -> Optional[ProgressSnapshot]:
        """Latest progress snapshot, for polling."""
        return self._snapshot

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def retry_count(self) -> int:
        return self._retry_count

    # -- execution ----------------------------------------------------------

    async def _run(self) -> Optional[BaseException]:
        """First attempt plus retries; returns the terminal error, if any."""
        try:
            await self._attempt()
            return None
        except Exception as exc:
            failure: Exception = exc

        while True:
            self._record_failure(failure)
            try:
                await self.retry()
                return None
            except RetryExhaustedError as exc:
                logger.error(
                    "Task %s failed after %d attempts: %s",
                    self._task.task_id if self._task else "?",
                    self._attempts,
                    failure,
                    extra=self._log_context(),
                )
                return exc
            except Exception as exc:
                failure = exc

    async def _attempt(self) -> None:
        self._attempts += 1
        self._set_status(TaskStatus.IN_PROGRESS)
        if self._initial_state is None:
            await self._initialize_progress()

        while not self._stop_requested:
            if self._current >= self._total:
                return
            self._check_timeout()
            await self._step()

    async def _initialize_progress(self) -> None:
        self._initial_state = await self._provider.observe()
        self._track_location(self._initial_state)
        self._total = max(float(self._domain.total(self._params, self._initial_state)), 0.0)
        self._current = 0.0
        self._history = []
        await self.update_progress(0.0)

    async def _step(self) -> None:
        state = await self._provider.observe()
        self._track_location(state)
        candidates = self._domain.candidate_actions(self._params, state)
        if not candidates:
            raise ActuatorError(f"No {self._domain.name} actions available in the current state")

        action = await self._agent.select_action(self._domain.encode_state(state), candidates)
        result = await self._actuator.perform(action)

        progress = self._domain.progress(self._params, self._initial_state, result.state)
        done = progress >= self._total
        await self._agent.observe(state, action, result.state, done)
        self._track_location(result.state)
        await self.update_progress(progress)

        if not result.success:
            raise ActuatorError(
                result.message or f"Action {self._domain.encode_action(action)} failed"
            )

    def _check_timeout(self) -> None:
        elapsed = self._clock() - self._started
        if elapsed > self._settings.timeout:
            raise TaskTimeoutError(
                f"Task timed out after {elapsed:.1f}s (limit {self._settings.timeout:.1f}s)"
            )

    def _record_failure(self, exc: Exception) -> None:
        self._error_count += 1
        self._last_error = exc
        logger.error(
            "Task %s attempt %d failed: %s",
            self._task.task_id if self._task else "?",
            self._attempts,
            exc,
            extra=self._log_context(),
        )

    async def _finish(self, status: TaskStatus, error: Optional[BaseException] = None) -> TaskResult:
        assert self._task is not None
        self._set_status(status)
        duration = self._clock() - self._started
        self._task.attempts = self._attempts
        self._task.retry_count = self._retry_count
        self._task.error = str(error) if error is not None else None

        payload: Optional[dict[str, Any]] = None
        if self._initial_state is not None:
            await self.update_progress(self._current)
            await self._checkpoint()
            payload = {
                "progress": self._current,
                "total": self._total,
                "location": self._location.model_dump() if self._location else None,
            }

        result = TaskResult(
            task_id=self._task.task_id,
            success=status is TaskStatus.COMPLETED,
            status=status,
            duration=max(duration, 0.0),
            attempts=self._attempts,
            error=self._task.error,
            payload=payload,
            finished_at=self._wall_clock(),
        )
        if self._progress_store is not None:
            try:
                await self._progress_store.save_result(result)
            except (PersistenceError, OSError) as exc:
                logger.warning("Failed to persist result for task %s: %s", self._task.task_id, exc)

        logger.info(
            "Task %s %s in %.2fs after %d attempts",
            self._task.task_id,
            status.value,
            result.duration,
            result.attempts,
        )
        return result

    async def _checkpoint(self) -> None:
        if not (self._settings.checkpoint_on_finish and self._model_store and self._model_key):
            return
        try:
            async with self._agent.locked() as agent:
                await self._model_store.save(agent, self._model_key)
        except (PersistenceError, OSError) as exc:
            logger.error("Checkpoint of %s failed: %s", self._model_key, exc)

    # -- bookkeeping --------------------------------------------------------

    def _reset(self, task: Optional[Task]) -> None:
        self._task = task
        self._params: Any = None
        self._initial_state: Any = None
        self._total = 0.0
        self._current = 0.0
        self._history: list[ProgressEntry] = []
        self._location: Optional[Position] = None
        self._snapshot: Optional[ProgressSnapshot] = None
        self._error_count = 0
        self._retry_count = 0
        self._attempts = 0
        self._last_error: Optional[BaseException] = None
        self._stop_requested = False
        self._started = self._clock()
        self._status = TaskStatus.PENDING
        self._status_history = [TaskStatus.PENDING]
        if task is not None:
            task.status = TaskStatus.PENDING

    def _set_status(self, status: TaskStatus) -> None:
        self._status = status
        self._status_history.append(status)
        if self._task is not None:
            self._task.status = status
            self._task.updated_at = self._wall_clock()

    def _track_location(self, state: Any) -> None:
        position = getattr(state, "position", None)
        if isinstance(position, Position):
            self._location = position

    def _log_context(self) -> dict[str, Any]:
        return {
            "task_id": self._task.task_id if self._task else None,
            "domain": self._domain.name,
            "parameters": self._task.parameters if self._task else None,
            "attempt": self._attempts,
        }
