from fleet_autoscaler.strategies.base import NoOpPoolSizeStrategy, PoolSizeStrategyBase
from fleet_autoscaler.strategies.job_queue import JobQueueStrategy
from fleet_autoscaler.strategies.lease_utilization import LeaseUtilizationStrategy

__all__ = [
    'PoolSizeStrategyBase',
    'NoOpPoolSizeStrategy',
    'LeaseUtilizationStrategy',
    'JobQueueStrategy',
]
