import logging
import os
from typing import Dict, Any, Optional, NamedTuple

from fleet_autoscaler.models import PoolSizeStrategy


class Config(NamedTuple):
    """Configuration for the autoscaler."""
    # AWS configuration
    region: str
    sso_profile: Optional[str]
    s3_config_bucket: str
    state_key: str
    fleet_state_key: str

    # Cooldown and scheduling (seconds)
    scale_out_cooldown: int
    scale_in_cooldown: int
    tick_interval: int
    actuator_timeout: int

    # Fleet management
    default_strategy: PoolSizeStrategy
    pool_tag_name: str
    dry_run: bool
    state_update_retries: int

    # Lease utilization strategy
    lease_utilization_window: int
    lease_utilization_samples: int
    lease_utilization_headroom: float
    lease_utilization_reserve_agents: int

    # Job queue strategy
    job_queue_window: int
    job_queue_scale_out_factor: float
    job_queue_scale_in_factor: float


def _get(config_from_event: Dict[str, Any], key: str, env_name: str, default: Optional[str] = None):
    value = config_from_event.get(key)
    if value is None or value == '':
        value = os.environ.get(env_name, default)
    return value


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('true', '1', 't', 'yes')


def load_config(event: Dict[str, Any] = None) -> Config:
    """
    Load configuration from environment variables and optional event payload.

    Event payload values override environment variables when present.

    Args:
        event: Optional Lambda event that may contain configuration overrides under 'config'

    Returns:
        Config: Configuration object with all autoscaler settings

    Raises:
        ValueError: If a numeric setting cannot be parsed
    """
    event = event or {}
    config_from_event = event.get('config', {})

    # AWS configuration
    region = _get(config_from_event, 'region', 'AWS_REGION', 'us-east-1')
    sso_profile = _get(config_from_event, 'sso_profile', 'SSO_PROFILE')
    s3_config_bucket = _get(config_from_event, 's3_config_bucket', 'S3_CONFIG_BUCKET', 'fleet-autoscaler-state')
    state_key = _get(config_from_event, 'state_key', 'STATE_KEY', 'autoscaling-state/fleet-autoscaler.json')
    fleet_state_key = _get(config_from_event, 'fleet_state_key', 'FLEET_STATE_KEY', 'fleet-state/fleet.json')

    # Cooldown and scheduling
    scale_out_cooldown = int(_get(config_from_event, 'scale_out_cooldown', 'SCALE_OUT_COOLDOWN', '3600'))
    scale_in_cooldown = int(_get(config_from_event, 'scale_in_cooldown', 'SCALE_IN_COOLDOWN', '3600'))
    tick_interval = int(_get(config_from_event, 'tick_interval', 'TICK_INTERVAL', '60'))
    actuator_timeout = int(_get(config_from_event, 'actuator_timeout', 'ACTUATOR_TIMEOUT', '120'))

    # Fleet management
    default_strategy_name = _get(config_from_event, 'default_strategy', 'DEFAULT_POOL_SIZE_STRATEGY', 'NoOp')
    default_strategy = PoolSizeStrategy.parse(default_strategy_name)
    if default_strategy is None:
        logging.warning(f"Unknown default pool size strategy '{default_strategy_name}', falling back to NoOp")
        default_strategy = PoolSizeStrategy.NO_OP
    pool_tag_name = _get(config_from_event, 'pool_tag_name', 'POOL_TAG_NAME', 'Autoscale_Pool')
    dry_run = _parse_bool(_get(config_from_event, 'dry_run', 'DRY_RUN', 'False'))
    state_update_retries = int(_get(config_from_event, 'state_update_retries', 'STATE_UPDATE_RETRIES', '5'))

    # Lease utilization strategy
    lease_utilization_window = int(_get(config_from_event, 'lease_utilization_window',
                                        'LEASE_UTILIZATION_WINDOW', '3600'))
    lease_utilization_samples = int(_get(config_from_event, 'lease_utilization_samples',
                                         'LEASE_UTILIZATION_SAMPLES', '6'))
    lease_utilization_headroom = float(_get(config_from_event, 'lease_utilization_headroom',
                                            'LEASE_UTILIZATION_HEADROOM', '1.25'))
    lease_utilization_reserve_agents = int(_get(config_from_event, 'lease_utilization_reserve_agents',
                                                'LEASE_UTILIZATION_RESERVE_AGENTS', '1'))

    # Job queue strategy
    job_queue_window = int(_get(config_from_event, 'job_queue_window', 'JOB_QUEUE_WINDOW', '7200'))
    job_queue_scale_out_factor = float(_get(config_from_event, 'job_queue_scale_out_factor',
                                            'JOB_QUEUE_SCALE_OUT_FACTOR', '0.25'))
    job_queue_scale_in_factor = float(_get(config_from_event, 'job_queue_scale_in_factor',
                                           'JOB_QUEUE_SCALE_IN_FACTOR', '0.9'))

    if lease_utilization_samples < 1:
        raise ValueError(f"lease_utilization_samples must be at least 1, got {lease_utilization_samples}")

    return Config(
        region=region,
        sso_profile=sso_profile,
        s3_config_bucket=s3_config_bucket,
        state_key=state_key,
        fleet_state_key=fleet_state_key,
        scale_out_cooldown=scale_out_cooldown,
        scale_in_cooldown=scale_in_cooldown,
        tick_interval=tick_interval,
        actuator_timeout=actuator_timeout,
        default_strategy=default_strategy,
        pool_tag_name=pool_tag_name,
        dry_run=dry_run,
        state_update_retries=state_update_retries,
        lease_utilization_window=lease_utilization_window,
        lease_utilization_samples=lease_utilization_samples,
        lease_utilization_headroom=lease_utilization_headroom,
        lease_utilization_reserve_agents=lease_utilization_reserve_agents,
        job_queue_window=job_queue_window,
        job_queue_scale_out_factor=job_queue_scale_out_factor,
        job_queue_scale_in_factor=job_queue_scale_in_factor
    )
