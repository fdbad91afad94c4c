import logging
from typing import List, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from fleet_autoscaler.aws.wrapper import AWSWrapper, run_blocking
from fleet_autoscaler.fleet.manager import FleetManager
from fleet_autoscaler.fleet.store import FleetStore
from fleet_autoscaler.models import Agent, Pool

AWS_TAG_PROPERTY_NAME = 'aws-tag'
DEFAULT_POOL_TAG_NAME = 'Autoscale_Pool'
SHUTDOWN_REASON = 'Autoscaler'


class AwsFleetManager(FleetManager):
    """
    Fleet manager for pools backed by AWS EC2 instances.

    Instances belong to a pool through an EC2 tag whose value is the pool name. Agents running
    on such instances report the tag as an 'aws-tag=<tag>:<pool name>' property. Expanding
    starts stopped instances; shrinking only flags agents for shutdown, the agent then drains
    its leases and stops its own instance.
    """

    def __init__(self, aws_wrapper: AWSWrapper, fleet_store: FleetStore, pool_tag_name: str = DEFAULT_POOL_TAG_NAME):
        self._aws_wrapper = aws_wrapper
        self._fleet_store = fleet_store
        self._pool_tag_name = pool_tag_name
        self._ec2_client = None

    def _client(self):
        if self._ec2_client is None:
            self._ec2_client = self._aws_wrapper.create_aws_client('ec2')
        return self._ec2_client

    def _describe_stopped_instance_ids(self, pool: Pool) -> List[str]:
        paginator = self._client().get_paginator('describe_instances')
        pages = paginator.paginate(Filters=[
            {'Name': 'instance-state-name', 'Values': ['stopped']},
            {'Name': f'tag:{self._pool_tag_name}', 'Values': [pool.name]},
        ])

        instance_ids = []
        for page in pages:
            for reservation in page.get('Reservations', []):
                for instance in reservation.get('Instances', []):
                    instance_id = instance['InstanceId']
                    if instance_id not in instance_ids:
                        instance_ids.append(instance_id)
        return instance_ids

    def _start_instances(self, instance_ids: List[str]) -> dict:
        return self._client().start_instances(InstanceIds=instance_ids)

    async def expand_pool(self, pool: Pool, agents: Sequence[Agent], count: int) -> None:
        if count <= 0:
            return

        try:
            stopped_ids = await run_blocking(self._describe_stopped_instance_ids, pool)
        except (ClientError, BotoCoreError) as e:
            logging.warning(f"Unable to describe stopped instances for pool {pool.name}: {e}")
            return

        instance_ids = stopped_ids[:count]
        started = 0
        if instance_ids:
            try:
                response = await run_blocking(self._start_instances, instance_ids)
            except (ClientError, BotoCoreError) as e:
                logging.warning(f"Error starting instances {instance_ids} for pool {pool.name}: {e}")
                response = None

            if response is not None:
                status_code = response.get('ResponseMetadata', {}).get('HTTPStatusCode', 200)
                if 200 <= status_code <= 299:
                    for change in response.get('StartingInstances', []):
                        started += 1
                        logging.info(f"Starting instance {change.get('InstanceId')} for pool {pool.id} "
                                     f"(prev state {change.get('PreviousState', {}).get('Name')}, "
                                     f"current state {change.get('CurrentState', {}).get('Name')})")
                else:
                    logging.warning(f"StartInstances for pool {pool.name} returned HTTP {status_code}")

        if started < count:
            logging.info(f"Unable to expand pool {pool.name} with the requested number of instances. "
                         f"Num requested instances to add {count}. Actual instances started {started}",
                         extra={'pool_id': pool.id, 'requested': count, 'started': started})

    async def shrink_pool(self, pool: Pool, agents: Sequence[Agent], count: int) -> None:
        if count <= 0:
            return

        aws_tag_property = f"{AWS_TAG_PROPERTY_NAME}={self._pool_tag_name}:{pool.name}"

        # Agents doing nothing go first; sorted() is stable so ties keep their order
        candidates = [agent for agent in sorted(agents, key=lambda x: x.num_leases)
                      if agent.has_property(aws_tag_property)]
        selected = candidates[:count]

        logging.debug(f"Shrinking pool {pool.name}: {len(agents)} agents, {len(candidates)} with AWS tags, "
                      f"{len(selected)} selected")

        marked = 0
        for agent in selected:
            if await self._fleet_store.request_shutdown(agent, SHUTDOWN_REASON):
                marked += 1
                logging.info(f"Marked {agent.id} in pool {pool.name} for shutdown due to autoscaling "
                             f"(currently {agent.num_leases} leases outstanding)")
            else:
                logging.error(f"Unable to mark agent {agent.id} in pool {pool.name} for shutdown due to autoscaling")

        if marked < count:
            logging.info(f"Unable to shrink pool {pool.name} by the requested number of agents. "
                         f"Num requested {count}. Actual agents marked {marked}",
                         extra={'pool_id': pool.id, 'requested': count, 'marked': marked})

    async def get_num_stopped_instances(self, pool: Pool) -> int:
        return len(await run_blocking(self._describe_stopped_instance_ids, pool))
