import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

from .utils.paths import get_data_file
from .utils.resilient_io import SnapshotWriter, backup_path

lib_logger = logging.getLogger("quota_broker")

_SECTIONS = (("credentials", list), ("bindings", list), ("exclusions", dict))


def empty_state() -> Dict[str, Any]:
    return {"credentials": [], "bindings": [], "exclusions": {}}


class StateStore(ABC):
    """
    Durable home of the broker's state: credentials, bindings (with their
    usage documents) and the exclusion ledger.

    The broker is the only writer. `load()` must never raise on corrupt data;
    it returns whatever could be recovered and the broker repairs the rest.
    """

    @abstractmethod
    async def load(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def save(self, state: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        """Release resources and flush anything pending."""


class MemoryStateStore(StateStore):
    """Keeps state in process memory. Used by tests and embedded callers."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._state = copy.deepcopy(initial) if initial else empty_state()
        self.save_count = 0

    async def load(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state)

    async def save(self, state: Dict[str, Any]) -> None:
        self._state = copy.deepcopy(state)
        self.save_count += 1

    @property
    def state(self) -> Dict[str, Any]:
        return self._state


class JsonFileStateStore(StateStore):
    """
    JSON file store. Reads asynchronously and writes through SnapshotWriter,
    so disk failures never reach the selector. If the state file is corrupt
    the previous snapshot (`<file>.bak`) is tried before starting empty.
    """

    def __init__(self, file_path: Optional[Union[str, Path]] = None):
        if file_path is None:
            file_path = get_data_file("broker_state.json")
        self.file_path = Path(file_path)
        self._writer = SnapshotWriter(self.file_path, lib_logger)

    async def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        """Parsed top-level object of `path`, or None if it is missing or unusable."""
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            lib_logger.warning(f"Cannot read state file {path}: {e}")
            return None

        if not content.strip():
            return {}
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            lib_logger.warning(f"Corrupted state file {path}: {e}")
            return None
        if not isinstance(data, dict):
            lib_logger.warning(f"State file {path} does not hold a JSON object")
            return None
        return data

    async def load(self) -> Dict[str, Any]:
        data = await self._read(self.file_path)
        if data is None and backup_path(self.file_path).exists():
            data = await self._read(backup_path(self.file_path))
            if data is not None:
                lib_logger.warning(f"Recovered broker state from {backup_path(self.file_path).name}")
        if data is None:
            return empty_state()

        state = empty_state()
        for key, expected in _SECTIONS:
            value = data.get(key)
            if isinstance(value, expected):
                state[key] = value
            elif value is not None:
                lib_logger.warning(f"Ignoring malformed '{key}' section in {self.file_path}")
        return state

    async def save(self, state: Dict[str, Any]) -> None:
        self._writer.write(state)

    async def close(self) -> None:
        self._writer.flush()

    @property
    def is_healthy(self) -> bool:
        return self._writer.is_healthy
