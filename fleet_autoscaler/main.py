import asyncio
import logging
import signal
from collections import Counter
from typing import Dict, Any, Optional

from fleet_autoscaler.aws.wrapper import AWSWrapper
from fleet_autoscaler.common.clock import Clock
from fleet_autoscaler.common.logger import setup_logging
from fleet_autoscaler.config import load_config, Config
from fleet_autoscaler.controller import AutoscaleController
from fleet_autoscaler.fleet.aws_fleet_manager import AwsFleetManager
from fleet_autoscaler.fleet.manager import NoOpFleetManager
from fleet_autoscaler.fleet.store import S3FleetStore
from fleet_autoscaler.models import PoolSizeStrategy
from fleet_autoscaler.state.s3_state import S3StateDocument
from fleet_autoscaler.strategies import JobQueueStrategy, LeaseUtilizationStrategy, NoOpPoolSizeStrategy
from fleet_autoscaler.ticker import Ticker


def build_controller(config: Config, aws_wrapper: Optional[AWSWrapper] = None,
                     clock: Optional[Clock] = None) -> AutoscaleController:
    """
    Wire up the controller and its collaborators from configuration.

    Args:
        config: Configuration object
        aws_wrapper: Optional AWS API wrapper (created from config if omitted)
        clock: Optional clock (system clock if omitted)

    Returns:
        AutoscaleController: Ready-to-tick controller
    """
    clock = clock or Clock()
    aws_wrapper = aws_wrapper or AWSWrapper(
        sso_profile_name=config.sso_profile,
        region_name=config.region,
        timeout=config.actuator_timeout
    )

    fleet_store = S3FleetStore(
        S3StateDocument(aws_wrapper, config.s3_config_bucket, config.fleet_state_key, config.state_update_retries)
    )
    state_document = S3StateDocument(aws_wrapper, config.s3_config_bucket, config.state_key,
                                     config.state_update_retries)

    if config.dry_run:
        logging.info("Dry run enabled, pools will not actually be resized")
        fleet_manager = NoOpFleetManager()
    else:
        fleet_manager = AwsFleetManager(aws_wrapper, fleet_store, config.pool_tag_name)

    strategies = {
        PoolSizeStrategy.LEASE_UTILIZATION: LeaseUtilizationStrategy(
            fleet_store, clock,
            window=config.lease_utilization_window,
            num_samples=config.lease_utilization_samples,
            headroom=config.lease_utilization_headroom,
            reserve_agents=config.lease_utilization_reserve_agents
        ),
        PoolSizeStrategy.JOB_QUEUE: JobQueueStrategy(
            fleet_store, clock,
            window=config.job_queue_window,
            scale_out_factor=config.job_queue_scale_out_factor,
            scale_in_factor=config.job_queue_scale_in_factor
        ),
        PoolSizeStrategy.NO_OP: NoOpPoolSizeStrategy(),
    }

    return AutoscaleController(
        strategies,
        fleet_store,
        fleet_manager,
        state_document,
        clock,
        scale_out_cooldown=config.scale_out_cooldown,
        scale_in_cooldown=config.scale_in_cooldown,
        actuator_timeout=config.actuator_timeout,
        default_strategy=config.default_strategy
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler running a single autoscale tick.

    Intended to be invoked on a schedule (e.g. an EventBridge rule at the tick interval).
    Configuration can be provided via environment variables or in the event payload.

    Args:
        event: AWS Lambda event object, can contain configuration overrides
        context: AWS Lambda context object

    Returns:
        dict: Number of pools evaluated and a count of outcomes per action
    """
    config = load_config(event)
    logging.info(f"Starting autoscale tick with state in s3://{config.s3_config_bucket}/{config.state_key}")

    try:
        controller = build_controller(config)
        outcomes = asyncio.run(controller.tick())
        actions = Counter(outcome.action for outcome in outcomes)
        return {
            'pools': len(outcomes),
            'actions': dict(actions),
            'outcomes': [outcome._asdict() for outcome in outcomes]
        }
    except Exception as e:
        logging.error(f"Error in autoscale lambda: {e}", exc_info=True)
        return {"statusCode": 500, "error": str(e)}


async def run(config: Config) -> None:
    """Run the autoscaler until SIGINT or SIGTERM."""
    controller = build_controller(config)
    ticker = Ticker(config.tick_interval, controller.tick)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, ticker.stop)
        except NotImplementedError:
            # Windows event loops don't support signal handlers
            pass

    await ticker.run()


def main() -> None:
    setup_logging()
    asyncio.run(run(load_config()))


if __name__ == '__main__':
    main()
