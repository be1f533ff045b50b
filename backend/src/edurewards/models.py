"""
Data models and status enums for the rewards engine.

Task lifecycle:       Locked → Available → InProgress → AwaitingProof → UnderReview → Completed/Rejected
Redemption lifecycle: Pending → Collected/Rejected/Expired

Each entity has one transition table and one function that enforces it.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from .errors import InvalidTransition, ValidationError


class TaskStatus(str, Enum):
    """UserTask lifecycle statuses."""
    LOCKED = 'locked'
    AVAILABLE = 'available'
    IN_PROGRESS = 'in_progress'
    AWAITING_PROOF = 'awaiting_proof'
    UNDER_REVIEW = 'under_review'
    COMPLETED = 'completed'
    REJECTED = 'rejected'


class TaskCategory(str, Enum):
    VILLAGE = 'village'
    FAMILY = 'family'
    SUBJECT = 'subject'
    PERSONAL = 'personal'


class ProofPolicy(str, Enum):
    """What a task accepts as evidence of completion."""
    NONE = 'none'
    PHOTO = 'photo'
    TEXT = 'text'
    AUTO = 'auto'  # generated by an in-app activity (quiz score, game result)


class ReviewStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class TransactionType(str, Enum):
    """Ledger entry types."""
    EARN = 'earn'        # task reward
    RESERVE = 'reserve'  # coins held for a pending redemption
    SPEND = 'spend'      # reservation made permanent (reward collected)
    REVERSE = 'reverse'  # reservation refunded (rejected or expired)


class RedemptionStatus(str, Enum):
    PENDING = 'pending'
    COLLECTED = 'collected'
    REJECTED = 'rejected'
    EXPIRED = 'expired'


TASK_TRANSITIONS = {
    TaskStatus.LOCKED: {TaskStatus.AVAILABLE},
    TaskStatus.AVAILABLE: {TaskStatus.IN_PROGRESS},
    # policy 'none' skips the proof step
    TaskStatus.IN_PROGRESS: {TaskStatus.AWAITING_PROOF, TaskStatus.UNDER_REVIEW},
    TaskStatus.AWAITING_PROOF: {TaskStatus.UNDER_REVIEW},
    TaskStatus.UNDER_REVIEW: {TaskStatus.COMPLETED, TaskStatus.REJECTED},
    TaskStatus.REJECTED: {TaskStatus.AVAILABLE},
    TaskStatus.COMPLETED: set(),
}

REDEMPTION_TRANSITIONS = {
    RedemptionStatus.PENDING: {
        RedemptionStatus.COLLECTED,
        RedemptionStatus.REJECTED,
        RedemptionStatus.EXPIRED,
    },
    RedemptionStatus.COLLECTED: set(),
    RedemptionStatus.REJECTED: set(),
    RedemptionStatus.EXPIRED: set(),
}


def check_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise InvalidTransition unless current -> target is a legal task move."""
    if target not in TASK_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot move task from {current.value} to {target.value}",
            status=current.value,
        )


def check_redemption_transition(current: RedemptionStatus, target: RedemptionStatus) -> None:
    if target not in REDEMPTION_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot move redemption from {current.value} to {target.value}",
            status=current.value,
        )


class SourceRef(NamedTuple):
    """What a ledger entry is about: ('task', task_id) or ('redemption', redemption_id)."""
    source_type: str
    source_id: str


class Reservation(NamedTuple):
    """Handle on coins held by a reserve entry until it is finalized or reversed."""
    user_id: str
    source: SourceRef


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _require_amount(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


# =============================================================================
# Task catalog
# =============================================================================

@dataclass(frozen=True)
class TaskDefinition:
    """Immutable catalog entry."""
    id: str
    title: str
    category: TaskCategory
    proof_policy: ProofPolicy
    coins: int = 0
    xp: int = 0
    prerequisites: Tuple[str, ...] = ()
    description: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TaskDefinition':
        """Build a definition from a catalog document, validating every field."""
        if not isinstance(data, dict):
            raise ValidationError('Task definition must be an object')
        task_id = _require_text(data.get('id'), 'Task id')
        try:
            category = TaskCategory(data.get('category'))
        except ValueError:
            raise ValidationError(f"Task {task_id}: unknown category {data.get('category')!r}")
        try:
            policy = ProofPolicy(data.get('proof_policy', ProofPolicy.NONE.value))
        except ValueError:
            raise ValidationError(f"Task {task_id}: unknown proof policy {data.get('proof_policy')!r}")

        reward = data.get('reward') or {}
        prerequisites = data.get('prerequisites') or []
        if not isinstance(prerequisites, (list, tuple)):
            raise ValidationError(f"Task {task_id}: prerequisites must be a list")

        return cls(
            id=task_id,
            title=str(data.get('title') or task_id),
            category=category,
            proof_policy=policy,
            coins=_require_amount(reward.get('coins', 0), f"Task {task_id} coin reward"),
            xp=_require_amount(reward.get('xp', 0), f"Task {task_id} xp reward"),
            prerequisites=tuple(str(p) for p in prerequisites),
            description=str(data.get('description') or ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'category': self.category.value,
            'proof_policy': self.proof_policy.value,
            'reward': {'coins': self.coins, 'xp': self.xp},
            'prerequisites': list(self.prerequisites),
            'description': self.description,
        }


# =============================================================================
# Task progress
# =============================================================================

@dataclass
class UserTask:
    user_id: str
    task_id: str
    status: TaskStatus = TaskStatus.LOCKED
    attempts: int = 0
    proof_id: Optional[str] = None
    decision: Optional[str] = None
    reviewed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    coins_awarded: int = 0
    xp_awarded: int = 0
    created_at: Optional[str] = None
    unlocked_at: Optional[str] = None
    started_at: Optional[str] = None
    proof_requested_at: Optional[str] = None
    submitted_at: Optional[str] = None
    resolved_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def key(self) -> Dict[str, str]:
        return {'user_id': self.user_id, 'task_id': self.task_id}

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'UserTask':
        return cls(
            user_id=item['user_id'],
            task_id=item['task_id'],
            status=TaskStatus(item['status']),
            attempts=int(item.get('attempts', 0)),
            proof_id=item.get('proof_id'),
            decision=item.get('decision'),
            reviewed_by=item.get('reviewed_by'),
            rejection_reason=item.get('rejection_reason'),
            coins_awarded=int(item.get('coins_awarded', 0)),
            xp_awarded=int(item.get('xp_awarded', 0)),
            created_at=item.get('created_at'),
            unlocked_at=item.get('unlocked_at'),
            started_at=item.get('started_at'),
            proof_requested_at=item.get('proof_requested_at'),
            submitted_at=item.get('submitted_at'),
            resolved_at=item.get('resolved_at'),
            updated_at=item.get('updated_at'),
        )

    def to_item(self) -> Dict[str, Any]:
        item = {
            'user_id': self.user_id,
            'task_id': self.task_id,
            'status': self.status.value,
            'attempts': self.attempts,
            'coins_awarded': self.coins_awarded,
            'xp_awarded': self.xp_awarded,
        }
        for name in ('proof_id', 'decision', 'reviewed_by', 'rejection_reason',
                     'created_at', 'unlocked_at', 'started_at', 'proof_requested_at',
                     'submitted_at', 'resolved_at', 'updated_at'):
            value = getattr(self, name)
            if value is not None:
                item[name] = value
        return item


@dataclass(frozen=True)
class Proof:
    """Evidence attached to one attempt of a UserTask."""
    id: str
    user_id: str
    task_id: str
    proof_type: str
    submitted_at: str
    content: Optional[str] = None
    evidence: Optional[Dict[str, Any]] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size_bytes: Optional[int] = None
    mime_type: Optional[str] = None
    word_count: Optional[int] = None
    character_count: Optional[int] = None
    review_status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    reviewer_note: Optional[str] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Proof':
        size = item.get('file_size_bytes')
        words = item.get('word_count')
        chars = item.get('character_count')
        return cls(
            id=item['id'],
            user_id=item['user_id'],
            task_id=item['task_id'],
            proof_type=item['proof_type'],
            submitted_at=item['submitted_at'],
            content=item.get('content'),
            evidence=item.get('evidence'),
            file_url=item.get('file_url'),
            file_name=item.get('file_name'),
            file_size_bytes=int(size) if size is not None else None,
            mime_type=item.get('mime_type'),
            word_count=int(words) if words is not None else None,
            character_count=int(chars) if chars is not None else None,
            review_status=ReviewStatus(item.get('review_status', ReviewStatus.PENDING.value)),
            reviewed_by=item.get('reviewed_by'),
            reviewed_at=item.get('reviewed_at'),
            reviewer_note=item.get('reviewer_note'),
        )

    def to_item(self) -> Dict[str, Any]:
        item = {
            'id': self.id,
            'user_id': self.user_id,
            'task_id': self.task_id,
            'proof_type': self.proof_type,
            'submitted_at': self.submitted_at,
            'review_status': self.review_status.value,
        }
        for name in ('content', 'evidence', 'file_url', 'file_name', 'file_size_bytes',
                     'mime_type', 'word_count', 'character_count', 'reviewed_by',
                     'reviewed_at', 'reviewer_note'):
            value = getattr(self, name)
            if value is not None:
                item[name] = value
        return item


# =============================================================================
# Ledger
# =============================================================================

@dataclass(frozen=True)
class WalletTransaction:
    """Immutable ledger entry. ``amount`` is signed."""
    user_id: str
    transaction_id: str
    type: TransactionType
    amount: int
    balance_after: int
    source_type: str
    source_id: str
    description: str
    created_at: str

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'WalletTransaction':
        return cls(
            user_id=item['user_id'],
            transaction_id=item['transaction_id'],
            type=TransactionType(item['type']),
            amount=int(item['amount']),
            balance_after=int(item['balance_after']),
            source_type=item['source_type'],
            source_id=item['source_id'],
            description=item.get('description', ''),
            created_at=item['created_at'],
        )

    def to_item(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'transaction_id': self.transaction_id,
            'type': self.type.value,
            'amount': self.amount,
            'balance_after': self.balance_after,
            'source_type': self.source_type,
            'source_id': self.source_id,
            'description': self.description,
            'created_at': self.created_at,
        }


@dataclass(frozen=True)
class Wallet:
    """
    Cached aggregate of a user's ledger.

    balance == total_earned - total_spent - reserved, and balance >= 0.
    ``version`` counts the entries applied so far.
    """
    user_id: str
    balance: int = 0
    reserved: int = 0
    total_earned: int = 0
    total_spent: int = 0
    version: int = 0
    frozen: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def applied(self, kind: TransactionType, amount: int, now: Optional[str] = None) -> 'Wallet':
        """Return the wallet after one more entry of ``kind`` for ``amount`` coins."""
        if kind is TransactionType.EARN:
            changes = {'balance': self.balance + amount, 'total_earned': self.total_earned + amount}
        elif kind is TransactionType.RESERVE:
            changes = {'balance': self.balance - amount, 'reserved': self.reserved + amount}
        elif kind is TransactionType.SPEND:
            changes = {'reserved': self.reserved - amount, 'total_spent': self.total_spent + amount}
        else:
            changes = {'balance': self.balance + amount, 'reserved': self.reserved - amount}
        return replace(
            self,
            version=self.version + 1,
            created_at=self.created_at or now,
            updated_at=now or self.updated_at,
            **changes
        )

    @classmethod
    def from_entries(cls, user_id: str, entries: List[WalletTransaction]) -> 'Wallet':
        """Recompute a wallet from its transaction log."""
        wallet = cls(user_id=user_id)
        for entry in entries:
            wallet = wallet.applied(entry.type, abs(entry.amount))
        return wallet

    def same_totals(self, other: 'Wallet') -> bool:
        return (
            self.balance == other.balance
            and self.reserved == other.reserved
            and self.total_earned == other.total_earned
            and self.total_spent == other.total_spent
        )

    def holds_invariant(self) -> bool:
        return (
            self.balance >= 0
            and self.reserved >= 0
            and self.balance == self.total_earned - self.total_spent - self.reserved
        )

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Wallet':
        return cls(
            user_id=item['user_id'],
            balance=int(item.get('balance', 0)),
            reserved=int(item.get('reserved', 0)),
            total_earned=int(item.get('total_earned', 0)),
            total_spent=int(item.get('total_spent', 0)),
            version=int(item.get('version', 0)),
            frozen=bool(item.get('frozen', False)),
            created_at=item.get('created_at'),
            updated_at=item.get('updated_at'),
        )

    def to_item(self) -> Dict[str, Any]:
        item = {
            'user_id': self.user_id,
            'balance': self.balance,
            'reserved': self.reserved,
            'total_earned': self.total_earned,
            'total_spent': self.total_spent,
            'version': self.version,
            'frozen': self.frozen,
        }
        if self.created_at:
            item['created_at'] = self.created_at
        if self.updated_at:
            item['updated_at'] = self.updated_at
        return item


# =============================================================================
# Redemptions
# =============================================================================

@dataclass(frozen=True)
class Redemption:
    id: str
    student_id: str
    product_id: str
    product_name: str
    redemption_code: str
    one_time_token: str
    coins_redeemed: int
    created_at: str
    expires_at: str
    status: RedemptionStatus = RedemptionStatus.PENDING
    qr_data: str = ''
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    rejected_reason: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def reservation(self) -> Reservation:
        return Reservation(self.student_id, SourceRef('redemption', self.id))

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Redemption':
        return cls(
            id=item['id'],
            student_id=item['student_id'],
            product_id=item['product_id'],
            product_name=item.get('product_name', ''),
            redemption_code=item['redemption_code'],
            one_time_token=item['one_time_token'],
            coins_redeemed=int(item['coins_redeemed']),
            created_at=item['created_at'],
            expires_at=item['expires_at'],
            status=RedemptionStatus(item['status']),
            qr_data=item.get('qr_data', ''),
            verified_by=item.get('verified_by'),
            verified_at=item.get('verified_at'),
            rejected_reason=item.get('rejected_reason'),
            updated_at=item.get('updated_at'),
        )

    def to_item(self) -> Dict[str, Any]:
        item = {
            'id': self.id,
            'student_id': self.student_id,
            'product_id': self.product_id,
            'product_name': self.product_name,
            'redemption_code': self.redemption_code,
            'one_time_token': self.one_time_token,
            'coins_redeemed': self.coins_redeemed,
            'qr_data': self.qr_data,
            'status': self.status.value,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
            'updated_at': self.updated_at or self.created_at,
        }
        for name in ('verified_by', 'verified_at', 'rejected_reason'):
            value = getattr(self, name)
            if value is not None:
                item[name] = value
        return item


@dataclass
class RedemptionStats:
    total: int = 0
    pending: int = 0
    collected: int = 0
    rejected: int = 0
    expired: int = 0
    coins_spent: int = 0
    coins_reserved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'pending': self.pending,
            'collected': self.collected,
            'rejected': self.rejected,
            'expired': self.expired,
            'totalCoinsSpent': self.coins_spent,
            'coinsReserved': self.coins_reserved,
        }
