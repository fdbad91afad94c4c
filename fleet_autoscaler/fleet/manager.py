import logging
from abc import ABC, abstractmethod
from typing import Sequence

from fleet_autoscaler.models import Agent, Pool


class FleetManager(ABC):
    """Performs the actual expand/shrink effects for a pool."""

    @abstractmethod
    async def expand_pool(self, pool: Pool, agents: Sequence[Agent], count: int) -> None:
        """
        Bring up to `count` additional agents online.

        Under-fulfilment (not enough reserve capacity, provider errors) is logged, not raised.
        """

    @abstractmethod
    async def shrink_pool(self, pool: Pool, agents: Sequence[Agent], count: int) -> None:
        """Mark up to `count` agents of the pool for graceful shutdown."""

    @abstractmethod
    async def get_num_stopped_instances(self, pool: Pool) -> int:
        """Number of stopped instances available to expand the pool with."""


class NoOpFleetManager(FleetManager):
    """Fleet manager that only logs what it would do. Used for dry runs."""

    async def expand_pool(self, pool: Pool, agents: Sequence[Agent], count: int) -> None:
        logging.info(f"[dry run] Would expand pool {pool.name} ({pool.id}) by {count} agents, "
                     f"currently {len(agents)}")

    async def shrink_pool(self, pool: Pool, agents: Sequence[Agent], count: int) -> None:
        logging.info(f"[dry run] Would shrink pool {pool.name} ({pool.id}) by {count} agents, "
                     f"currently {len(agents)}")

    async def get_num_stopped_instances(self, pool: Pool) -> int:
        return 0
