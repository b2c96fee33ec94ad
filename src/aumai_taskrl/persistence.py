"""Model persistence: save, load, restore and versioned rollback of agents.

Serialized models are JSON documents with three top-level fields::

    {"config": {...},
     "table": [{"state_key": "...", "actions": [{"action_key": "...", "value": 0.5}]}],
     "buffer": [{"state": "...", "action": "...", "reward": 1.0,
                 "next_state": "...", "done": false}]}

Table rows and buffer entries keep their in-memory order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import pydantic
from pydantic import TypeAdapter

from .core import QLearningAgent
from .errors import CorruptModelError, PersistenceError
from .models import ActionValue, ModelVersion, SerializedModel, TableRow
from .storage import BlobStorage

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("config", "table", "buffer")

_VERSION_INDEX = TypeAdapter(list[ModelVersion])


def serialize(agent: QLearningAgent) -> SerializedModel:
    """Flatten an agent's configuration, table and buffer."""
    return SerializedModel(
        config=agent.config,
        table=[
            TableRow(
                state_key=state_key,
                actions=[ActionValue(action_key=k, value=v) for k, v in row.items()],
            )
            for state_key, row in agent.table.items()
        ],
        buffer=list(agent.buffer),
    )


def parse(data: bytes | str) -> SerializedModel:
    """Validate raw bytes as a serialized model.

    Raises:
        CorruptModelError: If the data is not JSON, lacks one of the
            ``config``, ``table`` or ``buffer`` fields, holds invalid values,
            or has more buffered experiences than its capacity.
    """
    try:
        raw = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise CorruptModelError(f"Model is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise CorruptModelError("Model must be a JSON object")
    missing = [name for name in REQUIRED_FIELDS if name not in raw]
    if missing:
        raise CorruptModelError(f"Invalid model format: missing {', '.join(missing)}")
    try:
        model = SerializedModel.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise CorruptModelError(f"Invalid model format: {exc}") from exc
    if len(model.buffer) > model.config.buffer_capacity:
        raise CorruptModelError(
            f"Invalid model format: buffer holds {len(model.buffer)} experiences, "
            f"capacity is {model.config.buffer_capacity}"
        )
    return model


def restore(serialized: SerializedModel, agent: QLearningAgent) -> None:
    """Replace *agent*'s configuration, table and buffer with *serialized*.

    This is a full replacement; nothing from the agent's previous state is
    merged in.

    Raises:
        CorruptModelError: If the buffer does not fit the configured capacity.
    """
    if len(serialized.buffer) > serialized.config.buffer_capacity:
        raise CorruptModelError(
            f"Buffer holds {len(serialized.buffer)} experiences, "
            f"capacity is {serialized.config.buffer_capacity}"
        )
    agent.load_state(
        serialized.config,
        ((row.state_key, ((a.action_key, a.value) for a in row.actions)) for row in serialized.table),
        serialized.buffer,
    )
    logger.debug(
        "Restored agent %s: %d states, %d experiences",
        serialized.config.agent_id,
        len(serialized.table),
        len(serialized.buffer),
    )


class ModelStore:
    """Saves agents to a :class:`BlobStorage` and keeps numbered versions.

    Example:
        >>> store = ModelStore(FileStorage("data"))
        >>> version = await store.save_version(agent, "mining")
        >>> await store.rollback(agent, "mining", version.version)
    """

    def __init__(self, storage: BlobStorage, prefix: str = "models") -> None:
        self._storage = storage
        self._prefix = prefix.rstrip("/")
        self._version_locks: dict[str, asyncio.Lock] = {}

    async def save(self, agent: QLearningAgent, key: str) -> SerializedModel:
        """Write *agent* to *key* atomically.

        Raises:
            PersistenceError: If the backend write fails.
        """
        model = serialize(agent)
        await self._storage.write(key, model.model_dump_json(indent=2).encode("utf-8"))
        logger.info(
            "Model saved to %s (%d states, %d experiences)", key, len(model.table), len(model.buffer)
        )
        return model

    async def load(self, key: str) -> SerializedModel:
        """Read and validate the model stored at *key*.

        Raises:
            PersistenceError: If nothing is stored at *key*.
            CorruptModelError: If the stored blob is malformed.
        """
        data = await self._storage.read(key)
        if data is None:
            raise PersistenceError(f"No model stored at {key!r}")
        model = parse(data)
        logger.info("Model loaded from %s", key)
        return model

    async def load_into(self, agent: QLearningAgent, key: str) -> SerializedModel:
        """Load *key* and restore it into *agent*; the agent is untouched on error."""
        model = await self.load(key)
        restore(model, agent)
        return model

    # -- versions ---------------------------------------------------------

    def version_key(self, name: str, version: int) -> str:
        return f"{self._prefix}/{name}/v{version:06d}.json"

    def _index_key(self, name: str) -> str:
        return f"{self._prefix}/{name}/index.json"

    async def list_versions(self, name: str) -> list[ModelVersion]:
        """All retained versions of *name*, oldest first."""
        data = await self._storage.read(self._index_key(name))
        if data is None:
            return []
        try:
            return _VERSION_INDEX.validate_json(data)
        except pydantic.ValidationError as exc:
            raise CorruptModelError(f"Version index for {name!r} is unreadable: {exc}") from exc

    async def latest_version(self, name: str) -> Optional[ModelVersion]:
        versions = await self.list_versions(name)
        return versions[-1] if versions else None

    async def save_version(self, agent: QLearningAgent, name: str) -> ModelVersion:
        """Save *agent* as the next numbered version of *name*.

        Concurrent calls for the same name are serialized, so every call
        gets its own version number.
        """
        lock = self._version_locks.setdefault(name, asyncio.Lock())
        async with lock:
            versions = await self.list_versions(name)
            number = versions[-1].version + 1 if versions else 1
            entry = ModelVersion(name=name, version=number, key=self.version_key(name, number))
            await self.save(agent, entry.key)
            versions.append(entry)
            await self._storage.write(self._index_key(name), _VERSION_INDEX.dump_json(versions))
        logger.info("Saved %s version %d", name, number)
        return entry

    async def rollback(self, agent: QLearningAgent, name: str, version: int) -> ModelVersion:
        """Reload version *version* of *name* into *agent*.

        Later versions stay stored. Actions already applied to the
        environment are not undone.

        Raises:
            PersistenceError: If the version does not exist.
            CorruptModelError: If its blob is malformed.
        """
        entry = next((v for v in await self.list_versions(name) if v.version == version), None)
        if entry is None:
            raise PersistenceError(f"Model {name!r} has no version {version}")
        await self.load_into(agent, entry.key)
        logger.info("Rolled back %s to version %d", name, version)
        return entry
