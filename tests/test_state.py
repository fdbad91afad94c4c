import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from botocore.exceptions import ClientError

from fleet_autoscaler.errors import StateConflictError
from fleet_autoscaler.models import ScalingDirection
from fleet_autoscaler.state.cooldown import CooldownLedger, parse_timestamp
from fleet_autoscaler.state.document import MemoryStateDocument
from fleet_autoscaler.state.s3_state import S3StateDocument

NOW = datetime(2022, 1, 1, 12, 0, tzinfo=timezone.utc)


def precondition_failed():
    return ClientError({'Error': {'Code': 'PreconditionFailed', 'Message': 'etag mismatch'},
                        'ResponseMetadata': {'HTTPStatusCode': 412}}, 'PutObject')


class RacingStateDocument(MemoryStateDocument):
    """Memory document where another writer sneaks in before the first few writes."""

    def __init__(self, races, **kwargs):
        super().__init__(**kwargs)
        self.races = races
        self.reads = 0

    async def _write(self, state, version):
        if self.races > 0:
            self.races -= 1
            current, current_version = await super()._read()
            current['other'] = self.races
            await super()._write(current, current_version)
        return await super()._write(state, version)

    async def _read(self):
        self.reads += 1
        return await super()._read()


class TestStateDocument(unittest.IsolatedAsyncioTestCase):
    """Tests for the read-mutate-write state document."""

    async def test_empty_document(self):
        """Test that a document read before any write is empty."""
        self.assertEqual(await MemoryStateDocument().get(), {})

    async def test_update_retries_after_conflict(self):
        """Test that a lost race re-reads and re-applies the mutation."""
        document = RacingStateDocument(races=2)

        state = await document.update(lambda s: s.__setitem__('mine', True))

        self.assertEqual(document.reads, 3)
        self.assertTrue(state['mine'])
        self.assertIn('other', await document.get())
        self.assertTrue((await document.get())['mine'])

    async def test_update_gives_up(self):
        """Test that endless conflicts raise StateConflictError."""
        document = RacingStateDocument(races=10, retries=3)

        with self.assertRaises(StateConflictError):
            await document.update(lambda s: s.__setitem__('mine', True))


class TestS3StateDocument(unittest.IsolatedAsyncioTestCase):
    """Tests for the S3 backed state document."""

    def setUp(self):
        self.aws_wrapper = mock.MagicMock()
        self.document = S3StateDocument(self.aws_wrapper, 'test-bucket', 'autoscaling-state/test.json', retries=3)

    async def test_missing_object_creates_with_if_none_match(self):
        """Test that the first write only succeeds if nobody created the object meanwhile."""
        self.aws_wrapper.get_file_content_from_s3_bucket.return_value = (None, None)

        await self.document.update(lambda s: s.__setitem__('a', 1))

        kwargs = self.aws_wrapper.upload_bytes_to_s3.call_args.kwargs
        self.assertEqual(kwargs['if_none_match'], '*')
        self.assertIsNone(kwargs['if_match'])
        self.assertEqual(json.loads(kwargs['content']), {'a': 1})

    async def test_existing_object_updates_with_if_match(self):
        """Test that updates are conditional on the ETag that was read."""
        self.aws_wrapper.get_file_content_from_s3_bucket.return_value = (b'{"a": 1}', '"etag-1"')

        state = await self.document.update(lambda s: s.__setitem__('b', 2))

        self.assertEqual(state, {'a': 1, 'b': 2})
        kwargs = self.aws_wrapper.upload_bytes_to_s3.call_args.kwargs
        self.assertEqual(kwargs['if_match'], '"etag-1"')
        self.assertIsNone(kwargs['if_none_match'])

    async def test_precondition_failure_is_retried(self):
        """Test that a failed conditional write re-reads the object."""
        self.aws_wrapper.get_file_content_from_s3_bucket.side_effect = [
            (b'{"a": 1}', '"etag-1"'),
            (b'{"a": 5}', '"etag-2"'),
        ]
        self.aws_wrapper.upload_bytes_to_s3.side_effect = [precondition_failed(), '"etag-3"']

        state = await self.document.update(lambda s: s.__setitem__('b', 2))

        self.assertEqual(state, {'a': 5, 'b': 2})
        self.assertEqual(self.aws_wrapper.upload_bytes_to_s3.call_count, 2)

    async def test_other_errors_propagate(self):
        """Test that non-conflict errors are not mistaken for races."""
        self.aws_wrapper.get_file_content_from_s3_bucket.return_value = (None, None)
        self.aws_wrapper.upload_bytes_to_s3.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'PutObject')

        with self.assertRaises(ClientError):
            await self.document.update(lambda s: s.__setitem__('a', 1))

    async def test_corrupt_document_reads_empty(self):
        """Test that unparseable state is treated as empty."""
        self.aws_wrapper.get_file_content_from_s3_bucket.return_value = (b'not json', '"etag-1"')

        with self.assertLogs(level='WARNING'):
            self.assertEqual(await self.document.get(), {})


class TestCooldownLedger(unittest.IsolatedAsyncioTestCase):
    """Tests for the per-pool, per-direction cooldown ledger."""

    async def test_absent_entry_permits_action(self):
        """Test that a pool that never scaled may scale."""
        ledger = await CooldownLedger(MemoryStateDocument(), 3600, 3600).load()

        self.assertTrue(ledger.can_scale('pool', ScalingDirection.SCALE_OUT, NOW))
        self.assertIsNone(ledger.get_last_action_time('pool', ScalingDirection.SCALE_IN))

    async def test_record_persists_entry(self):
        """Test that recorded actions are visible to a freshly loaded ledger."""
        document = MemoryStateDocument()
        ledger = await CooldownLedger(document, 3600, 600).load()

        await ledger.record('pool', ScalingDirection.SCALE_IN, NOW)

        reloaded = await CooldownLedger(document, 3600, 600).load()
        self.assertFalse(reloaded.can_scale('pool', ScalingDirection.SCALE_IN, NOW + timedelta(seconds=599)))
        self.assertTrue(reloaded.can_scale('pool', ScalingDirection.SCALE_IN, NOW + timedelta(seconds=600)))
        self.assertTrue(reloaded.can_scale('pool', ScalingDirection.SCALE_OUT, NOW))
        self.assertEqual(await document.get(), {'key_to_last_action_time': {'pool:scale_in': NOW.timestamp()}})

    async def test_record_merges_with_concurrent_writers(self):
        """Test that two ledgers loaded from the same state don't drop each other's records."""
        document = MemoryStateDocument()
        first = await CooldownLedger(document, 3600, 3600).load()
        second = await CooldownLedger(document, 3600, 3600).load()

        await first.record('p', ScalingDirection.SCALE_OUT, NOW)
        await second.record('q', ScalingDirection.SCALE_OUT, NOW)

        entries = (await document.get())['key_to_last_action_time']
        self.assertEqual(set(entries), {'p:scale_out', 'q:scale_out'})

    async def test_prune_keeps_entries_inside_cooldown(self):
        """Test that only expired entries of missing pools are removed."""
        document = MemoryStateDocument(initial={'key_to_last_action_time': {
            'recent:scale_out': (NOW - timedelta(minutes=5)).timestamp(),
            'expired:scale_in': (NOW - timedelta(hours=2)).timestamp(),
            'kept:scale_in': (NOW - timedelta(hours=2)).timestamp(),
        }})
        ledger = await CooldownLedger(document, 3600, 600).load()

        removed = await ledger.prune(['kept'], NOW)

        self.assertEqual(removed, 1)
        entries = (await document.get())['key_to_last_action_time']
        self.assertEqual(set(entries), {'recent:scale_out', 'kept:scale_in'})
        self.assertFalse(ledger.can_scale('recent', ScalingDirection.SCALE_OUT, NOW))

    async def test_prune_keeps_entry_refreshed_by_another_writer(self):
        """Test that an entry recorded again after loading survives pruning."""
        document = MemoryStateDocument(initial={'key_to_last_action_time': {
            'gone:scale_out': (NOW - timedelta(hours=2)).timestamp(),
        }})
        ledger = await CooldownLedger(document, 3600, 3600).load()
        await CooldownLedger(document, 3600, 3600).record('gone', ScalingDirection.SCALE_OUT, NOW)

        await ledger.prune([], NOW)

        self.assertIn('gone:scale_out', (await document.get())['key_to_last_action_time'])

    def test_parse_timestamp(self):
        """Test that epoch and legacy ISO timestamps are both understood."""
        self.assertEqual(parse_timestamp(1640995200.5), 1640995200.5)
        self.assertEqual(parse_timestamp('1640995200'), 1640995200.0)
        self.assertEqual(parse_timestamp('2022-01-01T00:00:00'), 1640995200.0)
        self.assertEqual(parse_timestamp('2022-01-01T00:00:00+00:00'), 1640995200.0)
        with self.assertLogs(level='WARNING'):
            self.assertIsNone(parse_timestamp('yesterday'))


if __name__ == '__main__':
    unittest.main()
