"""
DynamoDB implementation of the engine's row store.
Conditional multi-row writes go through TransactWriteItems.
"""
import boto3
from typing import List, Dict, Any, Optional
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError
from .config import config
from .errors import StoreUnavailable, WriteConflict
from .logging import logger
from .store import Put, Store, Update
from .utils import dynamo_safe, plain

# Error codes worth a client retry (only idempotent operations are retried)
RETRYABLE_ERRORS = {
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'InternalServerError',
    'ServiceUnavailable',
    'TransactionInProgressException',
}

_CONDITION_TEMPLATES = {
    'eq': '{name} = {value}',
    'gte': '{name} >= {value}',
    'lt': '{name} < {value}',
}


class _Expression:
    """Collects placeholder names/values while an expression is built."""

    def __init__(self):
        self.names = {}
        self.values = {}

    def name(self, attribute: str) -> str:
        placeholder = f"#a{len(self.names)}"
        self.names[placeholder] = attribute
        return placeholder

    def value(self, serialized: Dict[str, Any]) -> str:
        placeholder = f":v{len(self.values)}"
        self.values[placeholder] = serialized
        return placeholder


class DynamoStore(Store):
    """Row store backed by DynamoDB tables named in config."""

    def __init__(self, client=None, region: Optional[str] = None):
        self._client = client or boto3.client('dynamodb', region_name=region or config.AWS_REGION)
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def _serialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return {k: self._serializer.serialize(dynamo_safe(v)) for k, v in item.items()}

    def _deserialize(self, item: Dict[str, Any]) -> Dict[str, Any]:
        return plain({k: self._deserializer.deserialize(v) for k, v in item.items()})

    def _conditions(self, conditions, expr: _Expression) -> Optional[str]:
        parts = []
        for condition in conditions:
            name = expr.name(condition.attribute)
            if condition.op == 'absent':
                parts.append(f"attribute_not_exists({name})")
            else:
                value = expr.value(self._serializer.serialize(dynamo_safe(condition.value)))
                parts.append(_CONDITION_TEMPLATES[condition.op].format(name=name, value=value))
        return ' AND '.join(parts) if parts else None

    def _transact_item(self, op) -> Dict[str, Any]:
        expr = _Expression()
        if isinstance(op, Put):
            request = {'TableName': op.table, 'Item': self._serialize(op.item)}
        elif isinstance(op, Update):
            assignments = [
                f"{expr.name(attr)} = {expr.value(self._serializer.serialize(dynamo_safe(val)))}"
                for attr, val in op.values.items()
            ]
            request = {
                'TableName': op.table,
                'Key': self._serialize(op.key),
                'UpdateExpression': 'SET ' + ', '.join(assignments),
            }
        else:
            raise TypeError(f"Unsupported store operation: {op!r}")

        condition = self._conditions(op.conditions, expr)
        if condition:
            request['ConditionExpression'] = condition
        if expr.names:
            request['ExpressionAttributeNames'] = expr.names
        if expr.values:
            request['ExpressionAttributeValues'] = expr.values
        return {'Put' if isinstance(op, Put) else 'Update': request}

    def _unavailable(self, action: str, error: ClientError) -> StoreUnavailable:
        code = error.response.get('Error', {}).get('Code', 'Unknown')
        logger.warning(f"DynamoDB {action} failed with {code}: {error}")
        return StoreUnavailable(f"Store unavailable during {action}", reason=code)

    # -------------------------------------------------------------------------
    # Store interface
    # -------------------------------------------------------------------------

    def get(self, table, key):
        """Get a single item (strongly consistent)."""
        try:
            response = self._client.get_item(
                TableName=table,
                Key=self._serialize(key),
                ConsistentRead=True
            )
        except ClientError as e:
            if e.response['Error']['Code'] in RETRYABLE_ERRORS:
                raise self._unavailable('get_item', e)
            raise
        item = response.get('Item')
        return self._deserialize(item) if item else None

    def query(self, table, partition_key, partition_value, index=None,
              sort_key=None, below=None, limit=None, descending=False):
        expr = _Expression()
        key_condition = f"{expr.name(partition_key)} = {expr.value(self._serializer.serialize(partition_value))}"
        if sort_key and below is not None:
            key_condition += f" AND {expr.name(sort_key)} < {expr.value(self._serializer.serialize(below))}"

        params = {
            'TableName': table,
            'KeyConditionExpression': key_condition,
            'ExpressionAttributeNames': expr.names,
            'ExpressionAttributeValues': expr.values,
            'ScanIndexForward': not descending,
        }
        if index:
            params['IndexName'] = index
        else:
            # GSIs do not support strongly consistent reads
            params['ConsistentRead'] = True

        items: List[Dict[str, Any]] = []
        try:
            while True:
                if limit:
                    params['Limit'] = limit - len(items)
                response = self._client.query(**params)
                items.extend(self._deserialize(i) for i in response.get('Items', []))
                last_key = response.get('LastEvaluatedKey')
                if not last_key or (limit and len(items) >= limit):
                    break
                params['ExclusiveStartKey'] = last_key
        except ClientError as e:
            if e.response['Error']['Code'] in RETRYABLE_ERRORS:
                raise self._unavailable('query', e)
            raise
        return items

    def scan(self, table):
        params = {'TableName': table}
        items: List[Dict[str, Any]] = []
        try:
            while True:
                response = self._client.scan(**params)
                items.extend(self._deserialize(i) for i in response.get('Items', []))
                last_key = response.get('LastEvaluatedKey')
                if not last_key:
                    return items
                params['ExclusiveStartKey'] = last_key
        except ClientError as e:
            if e.response['Error']['Code'] in RETRYABLE_ERRORS:
                raise self._unavailable('scan', e)
            raise

    def transact(self, ops):
        ops = list(ops)
        try:
            self._client.transact_write_items(
                TransactItems=[self._transact_item(op) for op in ops]
            )
        except ClientError as e:
            code = e.response['Error']['Code']
            if code == 'TransactionCanceledException':
                # Cancellation reasons correspond to the TransactItems list order
                reasons = e.response.get('CancellationReasons', [])
                failed = [
                    op for op, reason in zip(ops, reasons)
                    if reason.get('Code') == 'ConditionalCheckFailed'
                ]
                if failed:
                    raise WriteConflict(failed)
                # Cancelled for another reason (e.g. a concurrent transaction on the same row)
                raise self._unavailable('transact_write_items', e)
            if code in RETRYABLE_ERRORS:
                raise self._unavailable('transact_write_items', e)
            raise
