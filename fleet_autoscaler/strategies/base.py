from abc import ABC, abstractmethod
from typing import List

from fleet_autoscaler.models import PoolSizeData


class PoolSizeStrategyBase(ABC):
    """
    Interface for agent pool sizing strategies.

    A strategy receives every pool assigned to it in a single batch so that any lookups it
    needs (leases, jobs) can be made once per tick rather than once per pool.
    """

    name = 'Unnamed'

    @abstractmethod
    async def calc_desired_pool_sizes(self, pools: List[PoolSizeData]) -> List[PoolSizeData]:
        """
        Calculate the adequate number of agents to be online for the given pools.

        Args:
            pools: Pools including attached agents

        Returns:
            list: One PoolSizeData per input pool, with desired_agent_count and status_message set
        """


class NoOpPoolSizeStrategy(PoolSizeStrategyBase):
    """
    Strategy that never resizes, it just returns the existing count.

    Used for pools without a configured strategy so that every pool always resolves to one.
    """

    name = 'NoOp'

    async def calc_desired_pool_sizes(self, pools: List[PoolSizeData]) -> List[PoolSizeData]:
        return [PoolSizeData(x.pool, x.agents, len(x.agents), '(no-op)') for x in pools]
