"""
Reward Ledger - append-only coin transactions plus a cached wallet per user.

Every mutation is a single store transaction holding:
  1. any caller-supplied operations (e.g. a status compare-and-swap),
  2. the ledger entry, put-if-absent on a deterministic transaction id,
  3. the wallet row, guarded by a version compare-and-swap.

Transaction ids are derived from the entry's source, so a retried call
finds its own entry instead of writing a second one:
  earn#task#<task_id>, reserve#redemption#<id>, settle#redemption#<id>
Finalize and reverse share the settle id: a reservation settles once.
"""
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import config
from .errors import (
    AlreadyResolved,
    ConsistencyError,
    Contention,
    InsufficientBalance,
    NotFound,
    ValidationError,
    WriteConflict,
)
from .logging import logger
from .models import Reservation, SourceRef, TransactionType, Wallet, WalletTransaction
from .store import Put, Update, absent, eq, gte
from .utils import SystemClock, to_iso

TRANSACTIONS_BY_USER_INDEX = 'byUserCreated'

DEBITS = (TransactionType.RESERVE, TransactionType.SPEND)


def transaction_id(kind: TransactionType, source: SourceRef) -> str:
    prefix = 'settle' if kind in (TransactionType.SPEND, TransactionType.REVERSE) else kind.value
    return f"{prefix}#{source.source_type}#{source.source_id}"


class RewardLedger:
    """Owns wallets and their transaction logs."""

    def __init__(self, store, clock=None, max_retries: int = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.max_retries = max_retries or config.LEDGER_MAX_RETRIES

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def credit(
        self,
        user_id: str,
        amount: int,
        source: SourceRef,
        description: str = '',
        extra_ops: Sequence[Any] = ()
    ) -> WalletTransaction:
        """
        Append an 'earn' entry and add ``amount`` to the balance.

        Args:
            user_id: Wallet owner
            amount: Positive coin amount
            source: What the coins are for, e.g. SourceRef('task', task_id)
            description: Human readable entry text
            extra_ops: Store operations that must commit with the entry

        Returns:
            The ledger entry (the existing one when the call is a retry)
        """
        self._check_amount(amount)
        return self._mutate(user_id, TransactionType.EARN, source, description, extra_ops, amount)

    def reserve(
        self,
        user_id: str,
        amount: int,
        source: SourceRef,
        description: str = '',
        extra_ops: Sequence[Any] = ()
    ) -> WalletTransaction:
        """
        Hold ``amount`` coins against ``source`` until it is finalized or reversed.

        Raises:
            InsufficientBalance: amount exceeds the available balance (nothing is written)
        """
        self._check_amount(amount)
        return self._mutate(user_id, TransactionType.RESERVE, source, description, extra_ops, amount)

    def finalize(
        self,
        reservation: Reservation,
        description: str = '',
        extra_ops: Sequence[Any] = ()
    ) -> WalletTransaction:
        """Make a reservation permanent: reserved coins become spent."""
        return self._settle(reservation, TransactionType.SPEND, description, extra_ops)

    def reverse(
        self,
        reservation: Reservation,
        description: str = '',
        extra_ops: Sequence[Any] = ()
    ) -> WalletTransaction:
        """Refund a reservation: reserved coins return to the balance."""
        return self._settle(reservation, TransactionType.REVERSE, description, extra_ops)

    def _settle(self, reservation, kind, description, extra_ops):
        held = self._entry(reservation.user_id, transaction_id(TransactionType.RESERVE, reservation.source))
        if held is None:
            raise NotFound(
                f"No reservation for {reservation.source.source_type} {reservation.source.source_id}",
                user_id=reservation.user_id,
            )
        return self._mutate(
            reservation.user_id, kind, reservation.source, description, extra_ops, abs(held.amount)
        )

    def _check_amount(self, amount: Any) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError('Amount must be a positive integer', amount=amount)

    def _mutate(
        self,
        user_id: str,
        kind: TransactionType,
        source: SourceRef,
        description: str,
        extra_ops: Sequence[Any],
        amount: int
    ) -> WalletTransaction:
        txn_id = transaction_id(kind, source)
        extra_ops = list(extra_ops)

        for attempt in range(1, self.max_retries + 1):
            wallet, exists = self._load_checked(user_id)

            if not extra_ops:
                existing = self._entry(user_id, txn_id)
                if existing is not None:
                    return self._replayed(existing, kind)

            if kind is TransactionType.RESERVE and amount > wallet.balance:
                raise InsufficientBalance(
                    f"Balance {wallet.balance} is less than {amount}",
                    balance=wallet.balance,
                    required=amount,
                )

            now = to_iso(self.clock.now())
            after = wallet.applied(kind, amount, now)
            entry = WalletTransaction(
                user_id=user_id,
                transaction_id=txn_id,
                type=kind,
                amount=-amount if kind in DEBITS else amount,
                balance_after=after.balance,
                source_type=source.source_type,
                source_id=source.source_id,
                description=description,
                created_at=now,
            )

            if exists:
                conditions = [eq('version', wallet.version), eq('frozen', False)]
            else:
                conditions = [absent('user_id')]
            if kind is TransactionType.RESERVE:
                conditions.append(gte('balance', amount))

            values = after.to_item()
            del values['user_id']
            entry_put = Put(config.TRANSACTIONS_TABLE, entry.to_item(), if_absent='transaction_id')
            wallet_update = Update(config.WALLETS_TABLE, {'user_id': user_id}, values, conditions)

            try:
                self.store.transact([*extra_ops, entry_put, wallet_update])
            except WriteConflict as e:
                if any(e.failed(op) for op in extra_ops):
                    raise
                if e.failed(entry_put):
                    existing = self._entry(user_id, txn_id)
                    if existing is not None:
                        return self._replayed(existing, kind)
                logger.info(
                    f"Wallet {user_id} changed during {kind.value} {txn_id}, "
                    f"retrying ({attempt}/{self.max_retries})"
                )
                continue

            logger.info(
                f"Ledger {kind.value} {entry.amount:+d} for {user_id} ({txn_id}), "
                f"balance {after.balance}, reserved {after.reserved}"
            )
            return entry

        raise Contention(f"Wallet {user_id} is busy, try again", user_id=user_id)

    def _replayed(self, existing: WalletTransaction, kind: TransactionType) -> WalletTransaction:
        if existing.type is not kind:
            raise AlreadyResolved(
                f"{existing.source_type} {existing.source_id} was already settled as {existing.type.value}",
                settled_as=existing.type.value,
            )
        logger.info(f"Ledger entry {existing.transaction_id} already recorded for {existing.user_id}")
        return existing

    # -------------------------------------------------------------------------
    # Consistency
    # -------------------------------------------------------------------------

    def _read_wallet(self, user_id: str) -> Tuple[Wallet, bool]:
        item = self.store.get(config.WALLETS_TABLE, {'user_id': user_id})
        if item is None:
            return Wallet(user_id=user_id), False
        return Wallet.from_item(item), True

    def _entries(self, user_id: str) -> List[WalletTransaction]:
        items = self.store.query(config.TRANSACTIONS_TABLE, 'user_id', user_id)
        return [WalletTransaction.from_item(item) for item in items]

    def _entry(self, user_id: str, txn_id: str) -> Optional[WalletTransaction]:
        item = self.store.get(config.TRANSACTIONS_TABLE, {'user_id': user_id, 'transaction_id': txn_id})
        return WalletTransaction.from_item(item) if item else None

    def _load_checked(self, user_id: str) -> Tuple[Wallet, bool]:
        """
        Read the wallet and verify it against its transaction log.

        The wallet is read on both sides of the log query. A version change
        in between means a writer committed meanwhile, so the check restarts.
        """
        for _ in range(self.max_retries):
            wallet, exists = self._read_wallet(user_id)
            if wallet.frozen:
                raise ConsistencyError(
                    f"Wallet {user_id} is frozen pending operator review",
                    user_id=user_id,
                )
            entries = self._entries(user_id)
            again, _ = self._read_wallet(user_id)
            if again.version != wallet.version:
                continue
            if len(entries) > wallet.version:
                # Entry visible before its wallet update
                continue

            recomputed = Wallet.from_entries(user_id, entries)
            if (len(entries) < wallet.version
                    or not recomputed.same_totals(wallet)
                    or not wallet.holds_invariant()):
                self._freeze(wallet, recomputed, len(entries))
            return wallet, exists

        raise Contention(f"Wallet {user_id} is busy, try again", user_id=user_id)

    def _freeze(self, wallet: Wallet, recomputed: Wallet, entry_count: int) -> None:
        logger.critical(
            f"Wallet {wallet.user_id} diverges from its ledger: cached "
            f"balance={wallet.balance} reserved={wallet.reserved} earned={wallet.total_earned} "
            f"spent={wallet.total_spent} version={wallet.version}; ledger "
            f"balance={recomputed.balance} reserved={recomputed.reserved} "
            f"earned={recomputed.total_earned} spent={recomputed.total_spent} "
            f"entries={entry_count}. Freezing wallet."
        )
        self.store.transact([
            Update(
                config.WALLETS_TABLE,
                {'user_id': wallet.user_id},
                {'frozen': True, 'updated_at': to_iso(self.clock.now())},
            )
        ])
        raise ConsistencyError(
            f"Wallet {wallet.user_id} is inconsistent with its ledger and has been frozen",
            user_id=wallet.user_id,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_wallet(self, user_id: str) -> Wallet:
        wallet, _ = self._read_wallet(user_id)
        return wallet

    def transactions(self, user_id: str, limit: int = 50) -> List[WalletTransaction]:
        """Most recent ledger entries first."""
        items = self.store.query(
            config.TRANSACTIONS_TABLE,
            'user_id',
            user_id,
            index=TRANSACTIONS_BY_USER_INDEX,
            sort_key='created_at',
            limit=limit,
            descending=True,
        )
        return [WalletTransaction.from_item(item) for item in items]

    def audit(self, user_id: str) -> Dict[str, Any]:
        """Compare the cached wallet with a recomputation from the log. Writes nothing."""
        wallet, _ = self._read_wallet(user_id)
        entries = self._entries(user_id)
        recomputed = Wallet.from_entries(user_id, entries)
        return {
            'user_id': user_id,
            'consistent': (
                len(entries) == wallet.version
                and recomputed.same_totals(wallet)
                and wallet.holds_invariant()
            ),
            'frozen': wallet.frozen,
            'entries': len(entries),
            'wallet': wallet.to_item(),
            'recomputed': recomputed.to_item(),
        }
