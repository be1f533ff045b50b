"""
Tests for the reward ledger: balances, reservations, idempotency and the
consistency check that freezes diverging wallets.
"""
from unittest.mock import patch

import pytest

from edurewards.config import config
from edurewards.errors import (
    AlreadyResolved,
    ConsistencyError,
    Contention,
    InsufficientBalance,
    NotFound,
    ValidationError,
    WriteConflict,
)
from edurewards.ledger import RewardLedger
from edurewards.models import Reservation, SourceRef, TransactionType
from edurewards.store import Put, Update, eq

HOLD = SourceRef('redemption', 'r1')


@pytest.fixture
def ledger(store, clock):
    return RewardLedger(store, clock)


def assert_consistent(ledger, user_id):
    report = ledger.audit(user_id)
    wallet = ledger.get_wallet(user_id)
    assert report['consistent'], report
    assert wallet.balance == wallet.total_earned - wallet.total_spent - wallet.reserved
    assert wallet.balance >= 0


class TestCredit:
    """Tests for earning coins."""

    def test_credit_updates_wallet_and_log(self, ledger):
        """Earned coins land in balance and total_earned with one log entry."""
        entry = ledger.credit('u1', 50, SourceRef('task', 't1'), 'Completed task')

        wallet = ledger.get_wallet('u1')
        assert entry.type is TransactionType.EARN
        assert entry.amount == 50
        assert entry.balance_after == 50
        assert entry.transaction_id == 'earn#task#t1'
        assert (wallet.balance, wallet.total_earned, wallet.version) == (50, 50, 1)
        assert_consistent(ledger, 'u1')

    def test_credit_is_idempotent(self, ledger):
        """Crediting the same source twice pays once."""
        first = ledger.credit('u1', 50, SourceRef('task', 't1'))
        second = ledger.credit('u1', 50, SourceRef('task', 't1'))

        assert first == second
        assert ledger.get_wallet('u1').balance == 50
        assert len(ledger.transactions('u1')) == 1

    @pytest.mark.parametrize('amount', [0, -5, 2.5, True, '10'])
    def test_rejects_non_positive_amounts(self, ledger, amount):
        """Amounts are positive integers."""
        with pytest.raises(ValidationError):
            ledger.credit('u1', amount, SourceRef('task', 't1'))

    def test_extra_ops_commit_with_the_entry(self, ledger, store):
        """Caller rows and the ledger entry are one transaction."""
        status = Update(config.USER_TASKS_TABLE, {'user_id': 'u1', 'task_id': 't1'}, {'status': 'completed'})

        ledger.credit('u1', 10, SourceRef('task', 't1'), extra_ops=[status])

        assert store.get(config.USER_TASKS_TABLE, {'user_id': 'u1', 'task_id': 't1'})['status'] == 'completed'

    def test_failed_extra_op_writes_nothing(self, ledger, store):
        """If the caller's condition fails, no coins move."""
        status = Update(
            config.USER_TASKS_TABLE, {'user_id': 'u1', 'task_id': 't1'},
            {'status': 'completed'}, [eq('status', 'under_review')]
        )

        with pytest.raises(WriteConflict) as exc:
            ledger.credit('u1', 10, SourceRef('task', 't1'), extra_ops=[status])

        assert exc.value.failed(status)
        assert ledger.get_wallet('u1').balance == 0
        assert ledger.transactions('u1') == []


class TestReservations:
    """Tests for reserve / finalize / reverse."""

    def test_reserve_moves_balance_to_reserved(self, ledger):
        """Reserving holds coins without spending them."""
        ledger.credit('u1', 500, SourceRef('grant', 'g1'))

        entry = ledger.reserve('u1', 300, HOLD)

        wallet = ledger.get_wallet('u1')
        assert entry.amount == -300
        assert (wallet.balance, wallet.reserved, wallet.total_spent) == (200, 300, 0)
        assert_consistent(ledger, 'u1')

    def test_reserve_more_than_balance(self, ledger, store):
        """InsufficientBalance is raised before anything is written."""
        ledger.credit('u1', 100, SourceRef('grant', 'g1'))
        marker = Put(config.REDEMPTIONS_TABLE, {'id': 'r1'})

        with pytest.raises(InsufficientBalance) as exc:
            ledger.reserve('u1', 101, HOLD, extra_ops=[marker])

        assert exc.value.status_code == 402
        assert store.get(config.REDEMPTIONS_TABLE, {'id': 'r1'}) is None
        assert ledger.get_wallet('u1').balance == 100

    def test_finalize_spends_reserved_coins(self, ledger):
        """Finalizing moves reserved coins to total_spent, balance unchanged."""
        ledger.credit('u1', 500, SourceRef('grant', 'g1'))
        ledger.reserve('u1', 300, HOLD)

        entry = ledger.finalize(Reservation('u1', HOLD))

        wallet = ledger.get_wallet('u1')
        assert entry.type is TransactionType.SPEND
        assert entry.amount == -300
        assert (wallet.balance, wallet.reserved, wallet.total_spent) == (200, 0, 300)
        assert_consistent(ledger, 'u1')

    def test_reverse_refunds_reserved_coins(self, ledger):
        """Reversing returns the reservation to the balance."""
        ledger.credit('u1', 500, SourceRef('grant', 'g1'))
        ledger.reserve('u1', 300, HOLD)

        entry = ledger.reverse(Reservation('u1', HOLD))

        wallet = ledger.get_wallet('u1')
        assert entry.amount == 300
        assert (wallet.balance, wallet.reserved, wallet.total_spent) == (500, 0, 0)
        assert_consistent(ledger, 'u1')

    def test_reservation_settles_once(self, ledger):
        """Finalize after reverse is refused; repeating the same settlement is a no-op."""
        ledger.credit('u1', 500, SourceRef('grant', 'g1'))
        ledger.reserve('u1', 300, HOLD)
        ledger.reverse(Reservation('u1', HOLD))

        assert ledger.reverse(Reservation('u1', HOLD)).type is TransactionType.REVERSE
        with pytest.raises(AlreadyResolved):
            ledger.finalize(Reservation('u1', HOLD))
        assert ledger.get_wallet('u1').balance == 500

    def test_settling_unknown_reservation(self, ledger):
        """There is nothing to settle without a reserve entry."""
        with pytest.raises(NotFound):
            ledger.finalize(Reservation('u1', SourceRef('redemption', 'missing')))


class TestConsistency:
    """Tests for the wallet/log consistency check."""

    def test_divergent_wallet_is_frozen(self, ledger, store):
        """A cached balance that disagrees with the log freezes the wallet."""
        ledger.credit('u1', 100, SourceRef('grant', 'g1'))
        store.transact([Update(config.WALLETS_TABLE, {'user_id': 'u1'}, {'balance': 1000, 'total_earned': 1000})])

        with patch('edurewards.ledger.logger') as mock_logger:
            with pytest.raises(ConsistencyError):
                ledger.credit('u1', 10, SourceRef('grant', 'g2'))
        mock_logger.critical.assert_called_once()

        assert ledger.get_wallet('u1').frozen
        assert not ledger.audit('u1')['consistent']

    def test_frozen_wallet_rejects_mutations(self, ledger, store):
        """Nothing moves on a frozen wallet."""
        ledger.credit('u1', 100, SourceRef('grant', 'g1'))
        store.transact([Update(config.WALLETS_TABLE, {'user_id': 'u1'}, {'frozen': True})])

        with pytest.raises(ConsistencyError):
            ledger.reserve('u1', 10, HOLD)
        assert ledger.get_wallet('u1').balance == 100

    def test_missing_log_entry_is_detected(self, ledger, store):
        """A wallet version ahead of its log is a divergence."""
        ledger.credit('u1', 100, SourceRef('grant', 'g1'))
        store.transact([Update(config.WALLETS_TABLE, {'user_id': 'u1'}, {'version': 2})])

        with pytest.raises(ConsistencyError):
            ledger.credit('u1', 10, SourceRef('grant', 'g2'))

    def test_lost_version_race_retries(self, ledger, store):
        """A concurrent commit between read and write is retried, not lost."""
        ledger.credit('u1', 100, SourceRef('grant', 'g1'))
        original = store.transact
        calls = []

        def racing_transact(ops):
            if not calls:
                calls.append(1)
                # Another writer commits first
                ledger.credit('u1', 5, SourceRef('grant', 'racer'))
            return original(ops)

        with patch.object(store, 'transact', side_effect=racing_transact):
            ledger.credit('u1', 10, SourceRef('grant', 'g2'))

        wallet = ledger.get_wallet('u1')
        assert wallet.balance == 115
        assert wallet.version == 3
        assert_consistent(ledger, 'u1')

    def test_retries_are_bounded(self, store, clock):
        """Constant contention ends in Contention."""
        ledger = RewardLedger(store, clock, max_retries=2)
        ledger.credit('u1', 100, SourceRef('grant', 'g1'))

        def always_conflict(ops):
            raise WriteConflict([ops[-1]])

        with patch.object(store, 'transact', side_effect=always_conflict):
            with pytest.raises(Contention):
                ledger.credit('u1', 10, SourceRef('grant', 'g2'))


class TestReads:
    """Tests for transaction history."""

    def test_transactions_newest_first(self, ledger, clock):
        """History is ordered by creation time, newest first, and limited."""
        ledger.credit('u1', 10, SourceRef('task', 'a'))
        clock.advance(minutes=1)
        ledger.credit('u1', 20, SourceRef('task', 'b'))
        clock.advance(minutes=1)
        ledger.credit('u1', 30, SourceRef('task', 'c'))

        entries = ledger.transactions('u1', limit=2)

        assert [e.source_id for e in entries] == ['c', 'b']
        assert entries[0].balance_after == 60

    def test_unknown_user_has_empty_wallet(self, ledger):
        """Wallets exist implicitly with zero balance."""
        wallet = ledger.get_wallet('nobody')
        assert (wallet.balance, wallet.version, wallet.frozen) == (0, 0, False)
