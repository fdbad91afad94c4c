from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import FrozenSet, NamedTuple, Optional, Sequence, Tuple


class PoolSizeStrategy(str, Enum):
    """Available pool sizing strategies."""
    LEASE_UTILIZATION = 'LeaseUtilization'
    JOB_QUEUE = 'JobQueue'
    NO_OP = 'NoOp'

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['PoolSizeStrategy']:
        """
        Resolve a configured selector to a strategy.

        Args:
            value: Selector as found in pool configuration (case-insensitive)

        Returns:
            PoolSizeStrategy or None if the selector is empty or unknown
        """
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for strategy in cls:
            if strategy.value.lower() == normalized or strategy.name.lower() == normalized:
                return strategy
        return None


class ScalingDirection(str, Enum):
    SCALE_OUT = 'scale_out'
    SCALE_IN = 'scale_in'


class Pool(NamedTuple):
    """An agent pool as configured by pool management. Read-only to the autoscaler."""
    id: str
    name: str
    size_strategy: Optional[str] = None
    min_agents: int = 0
    max_agents: Optional[int] = None

    def clamp(self, count: int) -> int:
        """Clamp an agent count to the pool's configured bounds."""
        count = max(self.min_agents, count)
        if self.max_agents is not None:
            count = min(self.max_agents, count)
        return max(0, count)


class Agent(NamedTuple):
    """A worker machine registered with a pool."""
    id: str
    pool_id: str
    properties: FrozenSet[str] = frozenset()
    num_leases: int = 0
    request_shutdown: bool = False

    def has_property(self, prop: str) -> bool:
        return prop in self.properties


class Lease(NamedTuple):
    """A work assignment held by an agent. finish_time is None while the lease is active."""
    id: str
    agent_id: str
    pool_id: str
    start_time: datetime
    finish_time: Optional[datetime] = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start_time < end and (self.finish_time is None or self.finish_time > start)


class BatchState(str, Enum):
    WAITING = 'Waiting'
    READY = 'Ready'
    STARTING = 'Starting'
    RUNNING = 'Running'
    COMPLETE = 'Complete'


class StepState(str, Enum):
    WAITING = 'Waiting'
    READY = 'Ready'
    RUNNING = 'Running'
    COMPLETED = 'Completed'
    SKIPPED = 'Skipped'
    ABORTED = 'Aborted'


class JobStep(NamedTuple):
    id: str
    state: StepState = StepState.WAITING


class JobBatch(NamedTuple):
    """A group of steps executed together on one agent of the target pool."""
    id: str
    pool_id: str
    state: BatchState = BatchState.WAITING
    steps: Tuple[JobStep, ...] = ()


class Job(NamedTuple):
    id: str
    create_time: datetime
    batches: Tuple[JobBatch, ...] = ()


@dataclass(frozen=True)
class PoolSizeData:
    """
    Snapshot of a pool and its agents used for calculating pool size.

    desired_agent_count is None until a sizing strategy has run. Instances are
    immutable; use copy() to derive a revised snapshot.
    """
    pool: Pool
    agents: Tuple[Agent, ...] = ()
    desired_agent_count: Optional[int] = None
    status_message: str = 'N/A'

    def __post_init__(self):
        object.__setattr__(self, 'agents', tuple(self.agents))
        if self.desired_agent_count is not None and self.desired_agent_count < 0:
            raise ValueError(
                f"Desired agent count for pool {self.pool.id} cannot be negative: {self.desired_agent_count}")

    @property
    def current_agent_count(self) -> int:
        return len(self.agents)

    def copy(self, pool: Optional[Pool] = None, agents: Optional[Sequence[Agent]] = None,
             desired_agent_count: Optional[int] = None, status_message: Optional[str] = None) -> 'PoolSizeData':
        """
        Copy the snapshot, inheriting any unspecified values from this instance.

        Returns:
            PoolSizeData: A new snapshot
        """
        overrides = {
            'pool': pool,
            'agents': agents,
            'desired_agent_count': desired_agent_count,
            'status_message': status_message,
        }
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


class ResizeOutcome(NamedTuple):
    """Result of evaluating one pool during a resize pass."""
    pool_id: str
    current_agent_count: int
    desired_agent_count: Optional[int]
    action: str

    EXPAND = 'expand'
    SHRINK = 'shrink'
    NONE = 'none'
    COOLDOWN = 'cooldown'
    SKIPPED = 'skipped'
    TIMEOUT = 'timeout'
    ERROR = 'error'
    CANCELLED = 'cancelled'
