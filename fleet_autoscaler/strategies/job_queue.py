import logging
from collections import Counter
from datetime import timedelta
from typing import Iterable, List

from fleet_autoscaler.common.clock import Clock
from fleet_autoscaler.fleet.store import FleetStore
from fleet_autoscaler.models import BatchState, Job, JobBatch, PoolSizeData, StepState
from fleet_autoscaler.strategies.base import PoolSizeStrategyBase

PENDING_STEP_STATES = (StepState.WAITING, StepState.READY)


def is_queued(batch: JobBatch) -> bool:
    """A batch is queued when it is ready to run but no agent has picked it up yet."""
    return batch.state == BatchState.READY and any(step.state in PENDING_STEP_STATES for step in batch.steps)


def get_queue_sizes(jobs: Iterable[Job]) -> Counter:
    """Number of queued batches per pool id."""
    queue_sizes = Counter()
    for job in jobs:
        for batch in job.batches:
            if is_queued(batch):
                queue_sizes[batch.pool_id] += 1
    return queue_sizes


class JobQueueStrategy(PoolSizeStrategyBase):
    """
    Size pools from the backlog of batches waiting for an agent.

    With a non-empty queue the pool grows by a fraction of the queue size (at least one agent).
    With an empty queue it shrinks by the scale-in factor.
    """

    name = 'JobQueue'

    def __init__(self, fleet_store: FleetStore, clock: Clock, window: int = 7200,
                 scale_out_factor: float = 0.25, scale_in_factor: float = 0.9):
        self._fleet_store = fleet_store
        self._clock = clock
        self._window = window
        self._scale_out_factor = scale_out_factor
        self._scale_in_factor = scale_in_factor

    async def calc_desired_pool_sizes(self, pools: List[PoolSizeData]) -> List[PoolSizeData]:
        min_create_time = self._clock.utcnow() - timedelta(seconds=self._window)
        queue_sizes = get_queue_sizes(await self._fleet_store.find_jobs(min_create_time))

        results = []
        for data in pools:
            queue_size = queue_sizes.get(data.pool.id, 0)
            current = len(data.agents)
            if queue_size > 0:
                desired = current + max(1, round(queue_size * self._scale_out_factor))
            else:
                desired = int(current * self._scale_in_factor)
            desired = data.pool.clamp(desired)

            logging.debug(f"Pool {data.pool.id}: queue size {queue_size}, current {current}, desired {desired}")
            results.append(data.copy(desired_agent_count=desired, status_message=f"QueueSize={queue_size}"))

        return results
