import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from fleet_autoscaler.errors import StateConflictError

State = Dict[str, Any]

DEFAULT_UPDATE_RETRIES = 5


class StateDocument(ABC):
    """
    A singleton JSON document holding process-wide state that must survive restarts.

    The whole document is read, mutated in memory and written back. Writes are
    conditional on the version that was read, so two writers racing on the same
    document never silently drop each other's changes; the loser re-reads and
    re-applies its mutation.
    """

    def __init__(self, key: str, retries: int = DEFAULT_UPDATE_RETRIES):
        self.key = key
        self._retries = max(1, retries)

    @abstractmethod
    async def _read(self) -> Tuple[State, Optional[str]]:
        """Return the current state and an opaque version, or ({}, None) if nothing was written yet."""

    @abstractmethod
    async def _write(self, state: State, version: Optional[str]) -> bool:
        """Write state if the stored version still equals version. Return False on a lost race."""

    async def get(self) -> State:
        state, _ = await self._read()
        return state

    async def update(self, mutator: Callable[[State], None]) -> State:
        """
        Apply a mutation to the document and save it.

        Args:
            mutator: Function that modifies the state dict in place

        Returns:
            dict: The state as written

        Raises:
            StateConflictError: If every attempt lost a race against another writer
        """
        for attempt in range(1, self._retries + 1):
            state, version = await self._read()
            mutator(state)
            if await self._write(state, version):
                return state
            logging.info(f"Conflicting write to state document {self.key} (attempt {attempt}/{self._retries}), retrying")
        raise StateConflictError(self.key, self._retries)


class MemoryStateDocument(StateDocument):
    """In-process state document, for tests and single-process local runs."""

    def __init__(self, key: str = 'memory', initial: Optional[State] = None, retries: int = DEFAULT_UPDATE_RETRIES):
        super().__init__(key, retries)
        self._state = copy.deepcopy(initial) if initial else {}
        self._version = 1 if initial else 0

    async def _read(self) -> Tuple[State, Optional[str]]:
        return copy.deepcopy(self._state), str(self._version) if self._version else None

    async def _write(self, state: State, version: Optional[str]) -> bool:
        current = str(self._version) if self._version else None
        if version != current:
            return False
        self._state = copy.deepcopy(state)
        self._version += 1
        return True
