"""
Tests for the row stores: in-memory transactional semantics and the DynamoDB
request/error translation.
"""
import threading
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from edurewards.config import config
from edurewards.dynamo import DynamoStore
from edurewards.errors import StoreUnavailable, WriteConflict
from edurewards.proofs import ProofSubmissionHandler
from edurewards.store import MemoryStore, Put, Update, absent, eq, gte, lt


def client_error(code, operation='TransactWriteItems', **extra):
    response = {'Error': {'Code': code, 'Message': code}}
    response.update(extra)
    return ClientError(response, operation)


class TestMemoryStore:
    """Tests for MemoryStore transactions and queries."""

    def test_put_if_absent_conflicts_on_existing_row(self):
        """A second put-if-absent on the same key fails and names the op."""
        store = MemoryStore()
        store.transact([Put(config.REDEMPTIONS_TABLE, {'id': 'r1', 'status': 'pending'}, if_absent='id')])

        again = Put(config.REDEMPTIONS_TABLE, {'id': 'r1', 'status': 'collected'}, if_absent='id')
        with pytest.raises(WriteConflict) as exc:
            store.transact([again])

        assert exc.value.failed(again)
        assert store.get(config.REDEMPTIONS_TABLE, {'id': 'r1'})['status'] == 'pending'

    def test_transaction_is_all_or_nothing(self):
        """One failing condition leaves every row untouched."""
        store = MemoryStore()
        store.transact([Put(config.REDEMPTIONS_TABLE, {'id': 'r1', 'status': 'pending'})])

        ok = Put(config.REDEMPTION_CODES_TABLE, {'redemption_code': 'EDU-AAA-1111', 'redemption_id': 'r1'})
        bad = Update(config.REDEMPTIONS_TABLE, {'id': 'r1'}, {'status': 'collected'}, [eq('status', 'rejected')])
        with pytest.raises(WriteConflict) as exc:
            store.transact([ok, bad])

        assert exc.value.failed(bad)
        assert not exc.value.failed(ok)
        assert store.get(config.REDEMPTION_CODES_TABLE, {'redemption_code': 'EDU-AAA-1111'}) is None

    def test_update_creates_missing_row(self):
        """An unconditional update on a missing key creates the row."""
        store = MemoryStore()
        store.transact([Update(config.WALLETS_TABLE, {'user_id': 'u1'}, {'balance': 5})])

        assert store.get(config.WALLETS_TABLE, {'user_id': 'u1'}) == {'user_id': 'u1', 'balance': 5}

    def test_conditions(self):
        """Comparison conditions evaluate against the stored row."""
        row = {'version': 3, 'status': 'pending', 'expires_at': '2024-03-03T09:00:00Z'}

        assert eq('version', 3).holds(row)
        assert not eq('status', 'collected').holds(row)
        assert gte('version', 3).holds(row)
        assert lt('expires_at', '2024-03-04T00:00:00Z').holds(row)
        assert absent('frozen').holds(row)
        assert absent('user_id').holds(None)
        assert not eq('frozen', False).holds(row)

    def test_query_orders_and_bounds(self):
        """Queries filter by partition, sort, apply the upper bound and the limit."""
        store = MemoryStore()
        for i, expires in enumerate(['2024-03-03T00:00:00Z', '2024-03-01T00:00:00Z', '2024-03-02T00:00:00Z']):
            store.transact([Put(config.REDEMPTIONS_TABLE, {'id': f"r{i}", 'status': 'pending', 'expires_at': expires})])
        store.transact([Put(config.REDEMPTIONS_TABLE, {'id': 'done', 'status': 'collected', 'expires_at': '2024-01-01T00:00:00Z'})])

        rows = store.query(
            config.REDEMPTIONS_TABLE, 'status', 'pending',
            sort_key='expires_at', below='2024-03-02T12:00:00Z'
        )
        assert [r['id'] for r in rows] == ['r1', 'r2']

        newest = store.query(config.REDEMPTIONS_TABLE, 'status', 'pending', sort_key='expires_at', descending=True, limit=1)
        assert [r['id'] for r in newest] == ['r0']

    def test_reads_return_copies(self):
        """Mutating a returned row does not change the stored one."""
        store = MemoryStore()
        store.transact([Put(config.WALLETS_TABLE, {'user_id': 'u1', 'balance': 5})])

        row = store.get(config.WALLETS_TABLE, {'user_id': 'u1'})
        row['balance'] = 1000

        assert store.get(config.WALLETS_TABLE, {'user_id': 'u1'})['balance'] == 5

    def test_concurrent_compare_and_swap_has_one_winner(self):
        """Threads racing on the same condition: exactly one commits."""
        store = MemoryStore()
        store.transact([Put(config.REDEMPTIONS_TABLE, {'id': 'r1', 'status': 'pending'})])
        winners = []
        barrier = threading.Barrier(8)

        def attempt(n):
            barrier.wait()
            try:
                store.transact([
                    Update(config.REDEMPTIONS_TABLE, {'id': 'r1'}, {'status': 'collected', 'by': n}, [eq('status', 'pending')])
                ])
                winners.append(n)
            except WriteConflict:
                pass

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert store.get(config.REDEMPTIONS_TABLE, {'id': 'r1'})['by'] == winners[0]


class TestDynamoStore:
    """Tests for DynamoStore request building and error translation."""

    def test_put_if_absent_request(self):
        """put-if-absent becomes attribute_not_exists on the key."""
        client = MagicMock()
        store = DynamoStore(client=client)

        store.transact([Put('edu-redemptions', {'id': 'r1', 'coins_redeemed': 300}, if_absent='id')])

        items = client.transact_write_items.call_args.kwargs['TransactItems']
        put = items[0]['Put']
        assert put['TableName'] == 'edu-redemptions'
        assert put['Item'] == {'id': {'S': 'r1'}, 'coins_redeemed': {'N': '300'}}
        assert put['ConditionExpression'] == 'attribute_not_exists(#a0)'
        assert put['ExpressionAttributeNames'] == {'#a0': 'id'}

    def test_conditional_update_request(self):
        """Updates become SET expressions with placeholder names and values."""
        client = MagicMock()
        store = DynamoStore(client=client)

        store.transact([
            Update('edu-redemptions', {'id': 'r1'}, {'status': 'collected'}, [eq('status', 'pending')])
        ])

        update = client.transact_write_items.call_args.kwargs['TransactItems'][0]['Update']
        assert update['Key'] == {'id': {'S': 'r1'}}
        assert update['UpdateExpression'] == 'SET #a0 = :v0'
        assert update['ConditionExpression'] == '#a1 = :v1'
        assert update['ExpressionAttributeNames'] == {'#a0': 'status', '#a1': 'status'}
        assert update['ExpressionAttributeValues'] == {':v0': {'S': 'collected'}, ':v1': {'S': 'pending'}}

    def test_conditional_check_failure_maps_to_write_conflict(self):
        """Cancellation reasons are matched to the ops in request order."""
        client = MagicMock()
        client.transact_write_items.side_effect = client_error(
            'TransactionCanceledException',
            CancellationReasons=[{'Code': 'None'}, {'Code': 'ConditionalCheckFailed'}],
        )
        store = DynamoStore(client=client)
        first = Put('edu-redemptions', {'id': 'r1'}, if_absent='id')
        second = Put('edu-redemption-codes', {'redemption_code': 'EDU-AAA-1111'}, if_absent='redemption_code')

        with pytest.raises(WriteConflict) as exc:
            store.transact([first, second])

        assert exc.value.failed(second)
        assert not exc.value.failed(first)

    def test_cancellation_without_condition_failure_is_transient(self):
        """A transaction cancelled by a concurrent transaction is retryable."""
        client = MagicMock()
        client.transact_write_items.side_effect = client_error(
            'TransactionCanceledException',
            CancellationReasons=[{'Code': 'TransactionConflict'}],
        )
        store = DynamoStore(client=client)

        with pytest.raises(StoreUnavailable):
            store.transact([Put('edu-redemptions', {'id': 'r1'})])

    def test_throttling_maps_to_store_unavailable(self):
        """Throughput errors surface as StoreUnavailable."""
        client = MagicMock()
        client.get_item.side_effect = client_error('ProvisionedThroughputExceededException', 'GetItem')
        store = DynamoStore(client=client)

        with pytest.raises(StoreUnavailable) as exc:
            store.get('edu-wallets', {'user_id': 'u1'})
        assert exc.value.status_code == 503

    def test_other_client_errors_propagate(self):
        """Non-transient errors are not masked."""
        client = MagicMock()
        client.get_item.side_effect = client_error('ResourceNotFoundException', 'GetItem')
        store = DynamoStore(client=client)

        with pytest.raises(ClientError):
            store.get('edu-wallets', {'user_id': 'u1'})

    def test_get_deserializes_numbers(self):
        """Items come back as plain Python values, consistently read."""
        client = MagicMock()
        client.get_item.return_value = {'Item': {'user_id': {'S': 'u1'}, 'balance': {'N': '200'}, 'frozen': {'BOOL': False}}}
        store = DynamoStore(client=client)

        item = store.get('edu-wallets', {'user_id': 'u1'})

        assert item == {'user_id': 'u1', 'balance': 200, 'frozen': False}
        assert isinstance(item['balance'], int)
        assert client.get_item.call_args.kwargs['ConsistentRead'] is True

    def test_query_follows_pagination(self):
        """Pages are followed until LastEvaluatedKey is gone."""
        client = MagicMock()
        client.query.side_effect = [
            {'Items': [{'id': {'S': 'r1'}}], 'LastEvaluatedKey': {'id': {'S': 'r1'}}},
            {'Items': [{'id': {'S': 'r2'}}]},
        ]
        store = DynamoStore(client=client)

        rows = store.query(
            'edu-redemptions', 'status', 'pending',
            index='byStatusExpiry', sort_key='expires_at', below='2024-03-01T00:00:00Z'
        )

        assert [r['id'] for r in rows] == ['r1', 'r2']
        first_call = client.query.call_args_list[0].kwargs
        assert first_call['IndexName'] == 'byStatusExpiry'
        assert 'ConsistentRead' not in first_call
        assert first_call['KeyConditionExpression'] == '#a0 = :v0 AND #a1 < :v1'
        assert client.query.call_args_list[1].kwargs['ExclusiveStartKey'] == {'id': {'S': 'r1'}}

    def test_float_evidence_is_sent_as_numbers(self, catalog, clock):
        """Floats from JSON bodies (nested too) are written as DynamoDB numbers."""
        client = MagicMock()
        store = DynamoStore(client=client)
        proof = ProofSubmissionHandler(clock).validate(
            catalog.get('physics-quiz'),
            {'type': 'auto', 'evidence': {'score': 0.85, 'answers': [{'q': 1, 'time': 12.5}]}},
            's1',
            'p1',
        )

        store.transact([Put('edu-proofs', proof.to_item(), if_absent='id')])

        item = client.transact_write_items.call_args.kwargs['TransactItems'][0]['Put']['Item']
        evidence = item['evidence']['M']
        assert evidence['score'] == {'N': '0.85'}
        assert evidence['answers']['L'][0]['M']['time'] == {'N': '12.5'}

    def test_float_update_values_and_conditions(self):
        """Update values and condition operands are converted as well."""
        client = MagicMock()
        store = DynamoStore(client=client)

        store.transact([Update('edu-proofs', {'id': 'p1'}, {'confidence': 0.5}, [lt('confidence', 0.75)])])

        update = client.transact_write_items.call_args.kwargs['TransactItems'][0]['Update']
        assert update['ExpressionAttributeValues'] == {':v0': {'N': '0.5'}, ':v1': {'N': '0.75'}}
