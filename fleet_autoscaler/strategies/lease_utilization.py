import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Sequence

from fleet_autoscaler.common.clock import Clock
from fleet_autoscaler.fleet.store import FleetStore
from fleet_autoscaler.models import Agent, Lease, PoolSizeData
from fleet_autoscaler.strategies.base import PoolSizeStrategyBase


class LeaseUtilizationStrategy(PoolSizeStrategyBase):
    """
    Size pools from how many of their agents have been busy recently.

    The trailing window is split into equal sample intervals. For each interval we count the
    pool's agents holding at least one lease during it, and average over the intervals. The
    desired size is that average scaled by the headroom factor, plus a fixed number of
    reserve agents, clamped to the pool's bounds.
    """

    name = 'LeaseUtilization'

    def __init__(self, fleet_store: FleetStore, clock: Clock, window: int = 3600, num_samples: int = 6,
                 headroom: float = 1.25, reserve_agents: int = 1):
        self._fleet_store = fleet_store
        self._clock = clock
        self._window = window
        self._num_samples = max(1, num_samples)
        self._headroom = headroom
        self._reserve_agents = reserve_agents

    async def calc_desired_pool_sizes(self, pools: List[PoolSizeData]) -> List[PoolSizeData]:
        now = self._clock.utcnow()
        min_time = now - timedelta(seconds=self._window)

        leases_by_agent: Dict[str, List[Lease]] = defaultdict(list)
        for lease in await self._fleet_store.find_leases(min_time):
            leases_by_agent[lease.agent_id].append(lease)

        results = []
        for data in pools:
            num_agents = len(data.agents)
            busy_agents = self.calc_busy_agents(data.agents, leases_by_agent, min_time, now)

            # Rounded first so float noise cannot add a whole agent
            target = math.ceil(round(busy_agents * self._headroom, 6)) + self._reserve_agents
            desired = data.pool.clamp(target)

            utilization = busy_agents / num_agents if num_agents else 0.0
            status = f"Utilization {utilization:.0%} ({busy_agents:.1f}/{num_agents} agents busy over {self._window}s)"
            logging.debug(f"Pool {data.pool.id}: {status}, desired {desired}")
            results.append(data.copy(desired_agent_count=desired, status_message=status))

        return results

    def calc_busy_agents(self, agents: Sequence[Agent], leases_by_agent: Dict[str, List[Lease]],
                         min_time: datetime, now: datetime) -> float:
        """Average number of agents holding a lease per sample interval."""
        if not agents:
            return 0.0

        sample_length = (now - min_time) / self._num_samples
        total = 0
        for idx in range(self._num_samples):
            start = min_time + sample_length * idx
            end = start + sample_length
            is_latest = idx == self._num_samples - 1
            busy = 0
            for agent in agents:
                if is_latest and agent.num_leases > 0:
                    busy += 1
                elif any(lease.overlaps(start, end) for lease in leases_by_agent.get(agent.id, ())):
                    busy += 1
            total += busy

        return total / self._num_samples
