import unittest
from unittest import mock

from botocore.exceptions import ClientError

from fleet_autoscaler.fleet.aws_fleet_manager import AwsFleetManager
from fleet_autoscaler.fleet.manager import NoOpFleetManager
from fleet_autoscaler.fleet.store import MemoryFleetStore
from fleet_autoscaler.models import Agent, Pool

TAG = 'aws-tag=Autoscale_Pool:linux-builders'


def describe_page(*instance_ids):
    return {'Reservations': [{'Instances': [{'InstanceId': instance_id} for instance_id in instance_ids]}]}


def start_response(instance_ids, status_code=200):
    return {
        'ResponseMetadata': {'HTTPStatusCode': status_code},
        'StartingInstances': [
            {'InstanceId': instance_id, 'PreviousState': {'Name': 'stopped'}, 'CurrentState': {'Name': 'pending'}}
            for instance_id in instance_ids
        ]
    }


class TestAwsFleetManager(unittest.IsolatedAsyncioTestCase):
    """Tests for the EC2 backed fleet manager."""

    def setUp(self):
        self.pool = Pool('pool-1', 'linux-builders')
        self.ec2 = mock.MagicMock()
        self.aws_wrapper = mock.MagicMock()
        self.aws_wrapper.create_aws_client.return_value = self.ec2
        self.store = MemoryFleetStore()
        self.fleet_manager = AwsFleetManager(self.aws_wrapper, self.store)

    def set_stopped_instances(self, *pages):
        self.ec2.get_paginator.return_value.paginate.return_value = list(pages)

    async def test_expand_starts_at_most_count(self):
        """Test that no more instances are started than requested."""
        self.set_stopped_instances(describe_page('i-1', 'i-2'), describe_page('i-3'))
        self.ec2.start_instances.return_value = start_response(['i-1', 'i-2'])

        await self.fleet_manager.expand_pool(self.pool, [], 2)

        self.ec2.start_instances.assert_called_once_with(InstanceIds=['i-1', 'i-2'])
        self.ec2.get_paginator.assert_called_once_with('describe_instances')
        self.ec2.get_paginator.return_value.paginate.assert_called_once_with(Filters=[
            {'Name': 'instance-state-name', 'Values': ['stopped']},
            {'Name': 'tag:Autoscale_Pool', 'Values': ['linux-builders']},
        ])

    async def test_expand_zero_is_noop(self):
        """Test that expanding by zero makes no provider calls."""
        await self.fleet_manager.expand_pool(self.pool, [], 0)

        self.aws_wrapper.create_aws_client.assert_not_called()

    async def test_expand_partial_is_logged(self):
        """Test that running out of stopped instances is logged, not raised."""
        self.set_stopped_instances(describe_page('i-1'))
        self.ec2.start_instances.return_value = start_response(['i-1'])

        with self.assertLogs(level='INFO') as logs:
            await self.fleet_manager.expand_pool(self.pool, [], 3)

        self.ec2.start_instances.assert_called_once_with(InstanceIds=['i-1'])
        self.assertTrue(any('Num requested instances to add 3. Actual instances started 1' in line
                            for line in logs.output))

    async def test_expand_without_stopped_instances(self):
        """Test that nothing is started when the pool has no reserve capacity."""
        self.set_stopped_instances(describe_page())

        await self.fleet_manager.expand_pool(self.pool, [], 2)

        self.ec2.start_instances.assert_not_called()

    async def test_expand_non_2xx_is_not_raised(self):
        """Test that an unsuccessful StartInstances response only logs."""
        self.set_stopped_instances(describe_page('i-1'))
        self.ec2.start_instances.return_value = start_response(['i-1'], status_code=503)

        with self.assertLogs(level='WARNING') as logs:
            await self.fleet_manager.expand_pool(self.pool, [], 1)

        self.assertTrue(any('HTTP 503' in line for line in logs.output))

    async def test_expand_client_error_is_not_raised(self):
        """Test that provider errors are treated as transient."""
        self.set_stopped_instances(describe_page('i-1'))
        self.ec2.start_instances.side_effect = ClientError(
            {'Error': {'Code': 'InsufficientInstanceCapacity', 'Message': 'no capacity'}}, 'StartInstances')

        await self.fleet_manager.expand_pool(self.pool, [], 1)

        self.ec2.start_instances.assert_called_once()

    async def test_shrink_prefers_agents_with_fewer_leases(self):
        """Test that the agent with fewer active leases is selected."""
        agent1 = Agent('agent1', self.pool.id, frozenset({TAG}), num_leases=2)
        agent2 = Agent('agent2', self.pool.id, frozenset({TAG}), num_leases=0)
        self.store.agents = [agent1, agent2]

        await self.fleet_manager.shrink_pool(self.pool, [agent1, agent2], 1)

        self.assertEqual({x.id: x.request_shutdown for x in self.store.agents}, {'agent1': False, 'agent2': True})
        self.assertEqual(self.store.shutdown_reasons, {'agent2': 'Autoscaler'})

    async def test_shrink_ties_keep_original_order(self):
        """Test that agents with equal lease counts are selected in their original order."""
        agents = [Agent(f'agent{idx}', self.pool.id, frozenset({TAG}), num_leases=1) for idx in range(3)]
        self.store.agents = list(agents)

        await self.fleet_manager.shrink_pool(self.pool, agents, 2)

        self.assertEqual([x.id for x in self.store.agents if x.request_shutdown], ['agent0', 'agent1'])

    async def test_shrink_ignores_agents_without_pool_tag(self):
        """Test that manually managed agents are never shut down."""
        manual = Agent('manual', self.pool.id, frozenset({'aws-tag=Autoscale_Pool:other-pool'}), num_leases=0)
        tagged = Agent('tagged', self.pool.id, frozenset({TAG}), num_leases=5)
        self.store.agents = [manual, tagged]

        await self.fleet_manager.shrink_pool(self.pool, [manual, tagged], 2)

        self.assertEqual([x.id for x in self.store.agents if x.request_shutdown], ['tagged'])
        self.aws_wrapper.create_aws_client.assert_not_called()

    async def test_get_num_stopped_instances_counts_distinct(self):
        """Test that instances listed in several pages are counted once."""
        self.set_stopped_instances(describe_page('i-1', 'i-2'), describe_page('i-2', 'i-3'))

        self.assertEqual(await self.fleet_manager.get_num_stopped_instances(self.pool), 3)


class TestNoOpFleetManager(unittest.IsolatedAsyncioTestCase):

    async def test_only_logs(self):
        """Test that the dry run manager logs instead of acting."""
        with self.assertLogs(level='INFO') as logs:
            await NoOpFleetManager().expand_pool(Pool('p', 'p'), [], 2)
            await NoOpFleetManager().shrink_pool(Pool('p', 'p'), [], 1)

        self.assertEqual(len(logs.output), 2)
        self.assertEqual(await NoOpFleetManager().get_num_stopped_instances(Pool('p', 'p')), 0)


if __name__ == '__main__':
    unittest.main()
