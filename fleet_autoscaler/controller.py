import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional

from fleet_autoscaler.common.clock import Clock
from fleet_autoscaler.errors import StrategyResultError
from fleet_autoscaler.fleet.manager import FleetManager
from fleet_autoscaler.fleet.store import FleetStore
from fleet_autoscaler.models import PoolSizeData, PoolSizeStrategy, ResizeOutcome, ScalingDirection
from fleet_autoscaler.state.cooldown import CooldownLedger
from fleet_autoscaler.state.document import StateDocument
from fleet_autoscaler.strategies.base import NoOpPoolSizeStrategy, PoolSizeStrategyBase


class AutoscaleController:
    """
    Periodic reconcile loop sizing every agent pool.

    Each tick loads all pools with their agents, groups them by sizing strategy, runs every
    strategy once with its whole group, then applies the desired counts through the fleet
    manager subject to per-pool, per-direction cooldowns.
    """

    def __init__(self, strategies: Dict[PoolSizeStrategy, PoolSizeStrategyBase], fleet_store: FleetStore,
                 fleet_manager: FleetManager, state_document: StateDocument, clock: Clock,
                 scale_out_cooldown: int = 3600, scale_in_cooldown: int = 3600,
                 actuator_timeout: Optional[float] = 120,
                 default_strategy: PoolSizeStrategy = PoolSizeStrategy.NO_OP):
        self._strategies = dict(strategies)
        self._strategies.setdefault(PoolSizeStrategy.NO_OP, NoOpPoolSizeStrategy())
        self._fleet_store = fleet_store
        self._fleet_manager = fleet_manager
        self._state_document = state_document
        self._clock = clock
        self._scale_out_cooldown = scale_out_cooldown
        self._scale_in_cooldown = scale_in_cooldown
        self._actuator_timeout = actuator_timeout or None
        self._default_strategy = default_strategy

    def override_pool_size_strategies_for_testing(self, lease_utilization: PoolSizeStrategyBase,
                                                  job_queue: PoolSizeStrategyBase,
                                                  no_op: PoolSizeStrategyBase) -> None:
        self._strategies = {
            PoolSizeStrategy.LEASE_UTILIZATION: lease_utilization,
            PoolSizeStrategy.JOB_QUEUE: job_queue,
            PoolSizeStrategy.NO_OP: no_op,
        }

    def resolve_strategy(self, data: PoolSizeData) -> PoolSizeStrategy:
        """
        Pick the strategy for a pool.

        Unconfigured pools use the default strategy. Unknown selectors, and strategies with no
        implementation registered, fall back to NoOp.
        """
        selector = data.pool.size_strategy
        if selector is None or selector == '':
            strategy = self._default_strategy
        else:
            strategy = PoolSizeStrategy.parse(selector)
            if strategy is None:
                logging.warning(f"Unknown pool size strategy '{selector}' for pool {data.pool.id}, using NoOp")
                return PoolSizeStrategy.NO_OP

        if strategy not in self._strategies:
            logging.warning(f"No implementation registered for strategy {strategy.value}, "
                            f"using NoOp for pool {data.pool.id}")
            return PoolSizeStrategy.NO_OP
        return strategy

    async def get_pool_size_data(self) -> List[PoolSizeData]:
        """Load all pools with the agents that currently count toward their size."""
        await self._fleet_store.refresh()
        pools = await self._fleet_store.get_pools()
        agents = await self._fleet_store.get_agents()

        agents_by_pool = {pool.id: [] for pool in pools}
        for agent in agents:
            # Agents already draining are on their way out and don't count toward the pool size
            if agent.request_shutdown:
                continue
            if agent.pool_id in agents_by_pool:
                agents_by_pool[agent.pool_id].append(agent)

        return [PoolSizeData(pool, agents_by_pool[pool.id]) for pool in pools]

    async def _run_strategy(self, strategy: PoolSizeStrategyBase, pools: List[PoolSizeData]) -> List[PoolSizeData]:
        results = await strategy.calc_desired_pool_sizes(pools)

        expected = [data.pool.id for data in pools]
        actual = [data.pool.id for data in results]
        if sorted(expected) != sorted(actual):
            raise StrategyResultError(f"Strategy {strategy.name} returned pools {sorted(actual)}, "
                                      f"expected {sorted(expected)}")
        return results

    async def calc_desired_pool_sizes(self, pools: List[PoolSizeData]) -> List[PoolSizeData]:
        """
        Run each strategy once for all pools assigned to it.

        Groups run concurrently. If a strategy fails, its pools are left out of the result and
        so are not resized this tick.

        Args:
            pools: Pool snapshots without desired counts

        Returns:
            list: Snapshots with desired counts, in input order, minus pools whose strategy failed
        """
        groups: Dict[PoolSizeStrategy, List[PoolSizeData]] = OrderedDict()
        for data in pools:
            groups.setdefault(self.resolve_strategy(data), []).append(data)

        results = await asyncio.gather(
            *(self._run_strategy(self._strategies[kind], items) for kind, items in groups.items()),
            return_exceptions=True
        )

        sized: Dict[str, PoolSizeData] = {}
        for (kind, items), result in zip(groups.items(), results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logging.error(f"Strategy {self._strategies[kind].name} failed for pools "
                              f"{[data.pool.id for data in items]}: {result}", exc_info=result)
                continue

            logging.info(f"Calculated desired size of {len(items)} pools with strategy {self._strategies[kind].name}")
            for data in result:
                sized[data.pool.id] = data

        return [sized[data.pool.id] for data in pools if data.pool.id in sized]

    async def resize_pools(self, pools: List[PoolSizeData], cancel_event: Optional[asyncio.Event] = None,
                           ledger: Optional[CooldownLedger] = None) -> List[ResizeOutcome]:
        """
        Apply desired counts to pools, respecting cooldowns.

        Pools are processed one at a time; cancellation is checked between pools.

        Args:
            pools: Snapshots carrying desired agent counts
            cancel_event: Optional event that stops processing of the remaining pools
            ledger: Cooldown ledger already loaded for this tick; loaded here if omitted

        Returns:
            list: One ResizeOutcome per input pool
        """
        if ledger is None:
            ledger = await self._load_ledger()

        outcomes = []
        for idx, data in enumerate(pools):
            if cancel_event is not None and cancel_event.is_set():
                remaining = pools[idx:]
                logging.info(f"Resize cancelled, skipping {len(remaining)} remaining pools")
                outcomes.extend(
                    ResizeOutcome(x.pool.id, len(x.agents), x.desired_agent_count, ResizeOutcome.CANCELLED)
                    for x in remaining
                )
                break
            outcomes.append(await self._resize_pool(data, ledger))
        return outcomes

    async def _resize_pool(self, data: PoolSizeData, ledger: CooldownLedger) -> ResizeOutcome:
        pool = data.pool
        current = len(data.agents)
        desired = data.desired_agent_count

        def outcome(action: str) -> ResizeOutcome:
            return ResizeOutcome(pool.id, current, desired, action)

        if desired is None:
            logging.warning(f"No desired agent count for pool {pool.id}, skipping resize")
            return outcome(ResizeOutcome.SKIPPED)

        delta = desired - current
        if delta == 0:
            logging.debug(f"Pool {pool.id} already at desired size {current} ({data.status_message})")
            return outcome(ResizeOutcome.NONE)

        direction = ScalingDirection.SCALE_OUT if delta > 0 else ScalingDirection.SCALE_IN
        now = self._clock.utcnow()
        if not ledger.can_scale(pool.id, direction, now):
            logging.info(f"Scaling action needed for pool {pool.id} (from {current} to {desired}) "
                         f"but in cooldown period")
            return outcome(ResizeOutcome.COOLDOWN)

        logging.info(f"Resizing pool {pool.name} ({pool.id}) from {current} to {desired} agents. "
                     f"Status: {data.status_message}")
        try:
            if delta > 0:
                await asyncio.wait_for(self._fleet_manager.expand_pool(pool, data.agents, delta),
                                       self._actuator_timeout)
            else:
                await asyncio.wait_for(self._fleet_manager.shrink_pool(pool, data.agents, -delta),
                                       self._actuator_timeout)
        except asyncio.TimeoutError:
            # Only the wait is abandoned; a provider call already running in the executor still completes
            logging.warning(f"Resizing pool {pool.id} timed out after {self._actuator_timeout}s. The provider "
                            f"call may still complete; no cooldown recorded, will retry next tick")
            return outcome(ResizeOutcome.TIMEOUT)
        except Exception as e:
            logging.error(f"Error resizing pool {pool.id}: {e}", exc_info=True)
            return outcome(ResizeOutcome.ERROR)

        try:
            await ledger.record(pool.id, direction, now)
        except Exception as e:
            logging.error(f"Resized pool {pool.id} but failed to record cooldown: {e}", exc_info=True)

        return outcome(ResizeOutcome.EXPAND if delta > 0 else ResizeOutcome.SHRINK)

    async def _load_ledger(self) -> CooldownLedger:
        ledger = CooldownLedger(self._state_document, self._scale_out_cooldown, self._scale_in_cooldown)
        return await ledger.load()

    async def tick(self, cancel_event: Optional[asyncio.Event] = None) -> List[ResizeOutcome]:
        """
        Run one full reconcile cycle across all pools.

        Args:
            cancel_event: Optional event that aborts the tick between pools

        Returns:
            list: One ResizeOutcome per pool
        """
        pools = await self.get_pool_size_data()
        logging.info(f"Starting autoscale tick for {len(pools)} pools")

        sized = await self.calc_desired_pool_sizes(pools)
        ledger = await self._load_ledger()
        outcomes = await self.resize_pools(sized, cancel_event, ledger)

        sized_ids = {data.pool.id for data in sized}
        outcomes.extend(
            ResizeOutcome(data.pool.id, len(data.agents), None, ResizeOutcome.SKIPPED)
            for data in pools if data.pool.id not in sized_ids
        )

        try:
            await ledger.prune((data.pool.id for data in pools), self._clock.utcnow())
        except Exception as e:
            logging.warning(f"Error removing stale cooldown entries: {e}")

        resized = sum(1 for x in outcomes if x.action in (ResizeOutcome.EXPAND, ResizeOutcome.SHRINK))
        logging.info(f"Autoscale tick complete: {resized} of {len(outcomes)} pools resized")
        return outcomes
