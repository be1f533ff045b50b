"""
Row store contract consumed by the engine.

Writes are described as plain operation objects (Put / Update with
conditions) and committed through ``Store.transact``: all of them apply or
none do. A condition that does not hold raises ``WriteConflict`` naming the
failing operations. ``DynamoStore`` (dynamo.py) runs them as a DynamoDB
TransactWriteItems call; ``MemoryStore`` runs them in-process.
"""
import copy
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import config
from .errors import WriteConflict


def table_schema() -> Dict[str, Tuple[str, ...]]:
    """Primary key attributes of every table the engine uses."""
    return {
        config.TASK_CATALOG_TABLE: ('id',),
        config.USER_TASKS_TABLE: ('user_id', 'task_id'),
        config.PROOFS_TABLE: ('id',),
        config.WALLETS_TABLE: ('user_id',),
        config.TRANSACTIONS_TABLE: ('user_id', 'transaction_id'),
        config.REDEMPTIONS_TABLE: ('id',),
        config.REDEMPTION_CODES_TABLE: ('redemption_code',),
    }


# =============================================================================
# Conditions
# =============================================================================

class Condition:
    """A single attribute test evaluated against the row's current state."""

    def __init__(self, attribute: str, op: str, value: Any = None):
        self.attribute = attribute
        self.op = op
        self.value = value

    def holds(self, item: Optional[Dict[str, Any]]) -> bool:
        present = item is not None and self.attribute in item
        if self.op == 'absent':
            return not present
        if not present:
            return False
        current = item[self.attribute]
        if self.op == 'eq':
            return current == self.value
        if self.op == 'gte':
            return current >= self.value
        if self.op == 'lt':
            return current < self.value
        raise ValueError(f"Unknown condition operator: {self.op}")

    def __repr__(self) -> str:
        return f"Condition({self.attribute!r} {self.op} {self.value!r})"


def eq(attribute: str, value: Any) -> Condition:
    return Condition(attribute, 'eq', value)


def gte(attribute: str, value: Any) -> Condition:
    return Condition(attribute, 'gte', value)


def lt(attribute: str, value: Any) -> Condition:
    return Condition(attribute, 'lt', value)


def absent(attribute: str) -> Condition:
    """attribute_not_exists: on a key attribute, 'the row does not exist yet'."""
    return Condition(attribute, 'absent')


# =============================================================================
# Operations
# =============================================================================

class Put:
    """Write a whole row, optionally only when no row with that key exists."""

    def __init__(self, table: str, item: Dict[str, Any], if_absent: Optional[str] = None):
        self.table = table
        self.item = item
        self.conditions = [absent(if_absent)] if if_absent else []

    def __repr__(self) -> str:
        return f"Put({self.table}, conditions={self.conditions})"


class Update:
    """
    Set attributes on one row if every condition holds.
    Without conditions, an update on a missing row creates it (DynamoDB upsert).
    """

    def __init__(
        self,
        table: str,
        key: Dict[str, Any],
        values: Dict[str, Any],
        conditions: Sequence[Condition] = ()
    ):
        self.table = table
        self.key = key
        self.values = values
        self.conditions = list(conditions)

    def __repr__(self) -> str:
        return f"Update({self.table}, {self.key}, conditions={self.conditions})"


class Store:
    """Interface shared by DynamoStore and MemoryStore."""

    def get(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def query(
        self,
        table: str,
        partition_key: str,
        partition_value: Any,
        index: Optional[str] = None,
        sort_key: Optional[str] = None,
        below: Optional[Any] = None,
        limit: Optional[int] = None,
        descending: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Rows of one partition, ordered by ``sort_key``.

        Args:
            table: Table name
            partition_key: Partition attribute (of the table or of ``index``)
            partition_value: Partition value to match
            index: Optional GSI name
            sort_key: Sort attribute, used for ordering and for ``below``
            below: Only rows whose sort attribute is strictly lower
            limit: Max rows to return
            descending: Newest/highest first
        """
        raise NotImplementedError

    def scan(self, table: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def transact(self, ops: Iterable[Any]) -> None:
        raise NotImplementedError


class MemoryStore(Store):
    """
    In-process store with the same transactional semantics as DynamoStore.
    Used for local runs and tests. Thread-safe: every call holds one lock.
    """

    def __init__(self, schema: Optional[Dict[str, Tuple[str, ...]]] = None):
        self._schema = schema or table_schema()
        self._tables = {name: {} for name in self._schema}
        self._lock = threading.RLock()

    def _row_key(self, table: str, item: Dict[str, Any]) -> Tuple[Any, ...]:
        try:
            return tuple(item[name] for name in self._schema[table])
        except KeyError as e:
            raise ValueError(f"Missing key attribute {e} for table {table}")

    def get(self, table, key):
        with self._lock:
            row = self._tables[table].get(self._row_key(table, key))
            return copy.deepcopy(row) if row is not None else None

    def query(self, table, partition_key, partition_value, index=None,
              sort_key=None, below=None, limit=None, descending=False):
        with self._lock:
            rows = [
                copy.deepcopy(row) for row in self._tables[table].values()
                if row.get(partition_key) == partition_value
            ]
        if sort_key:
            rows = [row for row in rows if sort_key in row]
            if below is not None:
                rows = [row for row in rows if row[sort_key] < below]
            rows.sort(key=lambda row: row[sort_key], reverse=descending)
        if limit:
            rows = rows[:limit]
        return rows

    def scan(self, table):
        with self._lock:
            return [copy.deepcopy(row) for row in self._tables[table].values()]

    def transact(self, ops):
        ops = list(ops)
        with self._lock:
            failed = []
            for op in ops:
                key = op.item if isinstance(op, Put) else op.key
                current = self._tables[op.table].get(self._row_key(op.table, key))
                if not all(condition.holds(current) for condition in op.conditions):
                    failed.append(op)
            if failed:
                raise WriteConflict(failed)

            for op in ops:
                rows = self._tables[op.table]
                if isinstance(op, Put):
                    rows[self._row_key(op.table, op.item)] = copy.deepcopy(op.item)
                else:
                    row_key = self._row_key(op.table, op.key)
                    row = rows.get(row_key) or dict(op.key)
                    row.update(copy.deepcopy(op.values))
                    rows[row_key] = row
