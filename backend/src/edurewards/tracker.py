"""
Task Progress Tracker - per-user task lifecycle.

Every status change is a conditional update keyed on the row's current
status and attempt counter. Operations re-read the row after a conflict, so
a retried call that already took effect returns the stored row.
"""
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import config
from .errors import AlreadyResolved, InvalidTransition, NotFound, ValidationError, WriteConflict
from .logging import logger
from .models import (
    Proof,
    ProofPolicy,
    ReviewStatus,
    SourceRef,
    TaskStatus,
    UserTask,
    check_task_transition,
)
from .store import Put, Update, eq
from .utils import SystemClock, to_iso

RESOLUTIONS = (TaskStatus.COMPLETED, TaskStatus.REJECTED)
# A proof for the current attempt has been stored
REVIEWED = (TaskStatus.UNDER_REVIEW,) + RESOLUTIONS
USER_TASKS_BY_STATUS_INDEX = 'byStatus'


def proof_id_for(user_id: str, task_id: str, attempt: int) -> str:
    """Deterministic proof id: one proof per attempt, retries reuse it."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"edurewards/proof/{user_id}/{task_id}/{attempt}"))


class TaskProgressTracker:
    """Moves UserTask rows through their lifecycle."""

    def __init__(self, store, catalog, ledger, proofs, clock=None):
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.proofs = proofs
        self.clock = clock or SystemClock()

    def _now(self) -> str:
        return to_iso(self.clock.now())

    # -------------------------------------------------------------------------
    # Row access
    # -------------------------------------------------------------------------

    def _read(self, user_id: str, task_id: str) -> Optional[UserTask]:
        item = self.store.get(config.USER_TASKS_TABLE, {'user_id': user_id, 'task_id': task_id})
        return UserTask.from_item(item) if item else None

    def _load(self, user_id: str, task_id: str) -> UserTask:
        return self._read(user_id, task_id) or self.track(user_id, task_id)

    def track(self, user_id: str, task_id: str) -> UserTask:
        """Create the user's row for a catalog task in 'locked' (no-op if it exists)."""
        self.catalog.get(task_id)
        now = self._now()
        user_task = UserTask(user_id=user_id, task_id=task_id, created_at=now, updated_at=now)
        try:
            self.store.transact([
                Put(config.USER_TASKS_TABLE, user_task.to_item(), if_absent='user_id')
            ])
        except WriteConflict:
            return self._read(user_id, task_id)
        return user_task

    def get(self, user_id: str, task_id: str) -> UserTask:
        """Current row, or an unsaved 'locked' row for a task never touched."""
        self.catalog.get(task_id)
        return self._read(user_id, task_id) or UserTask(user_id=user_id, task_id=task_id)

    def list_for_user(self, user_id: str) -> List[UserTask]:
        items = self.store.query(config.USER_TASKS_TABLE, 'user_id', user_id)
        return [UserTask.from_item(item) for item in items]

    def list_for_review(self, status=TaskStatus.UNDER_REVIEW, limit: Optional[int] = None) -> List[UserTask]:
        """
        Every student's tasks in a review status, for the teacher's queue.

        Tasks awaiting a decision come oldest submission first; resolved
        tasks come most recently submitted first.

        Args:
            status: under_review, completed or rejected
            limit: Max rows to return
        """
        try:
            status = TaskStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
        if status not in REVIEWED:
            raise ValidationError(f"Review queue status must be one of {[s.value for s in REVIEWED]}")

        items = self.store.query(
            config.USER_TASKS_TABLE,
            'status',
            status.value,
            index=USER_TASKS_BY_STATUS_INDEX,
            sort_key='submitted_at',
            limit=limit,
            descending=status is not TaskStatus.UNDER_REVIEW,
        )
        return [UserTask.from_item(item) for item in items]

    def get_proof(self, proof_id: str) -> Proof:
        item = self.store.get(config.PROOFS_TABLE, {'id': proof_id})
        if item is None:
            raise NotFound(f"Proof {proof_id} not found")
        return Proof.from_item(item)

    def _status_update(self, user_task: UserTask, target: TaskStatus, values: Dict[str, Any]) -> Update:
        check_task_transition(user_task.status, target)
        values = dict(values, status=target.value, updated_at=self._now())
        return Update(
            config.USER_TASKS_TABLE,
            user_task.key,
            values,
            [eq('status', user_task.status.value), eq('attempts', user_task.attempts)],
        )

    def _apply(
        self,
        user_task: UserTask,
        target: TaskStatus,
        values: Dict[str, Any],
        replayed: Callable[[UserTask], bool],
        extra_ops: Sequence[Any] = ()
    ) -> UserTask:
        """Commit one status change; on conflict return the row if the change already happened."""
        op = self._status_update(user_task, target, values)
        try:
            self.store.transact([*extra_ops, op])
        except WriteConflict:
            current = self._read(user_task.user_id, user_task.task_id)
            if current is not None and replayed(current):
                return current
            status = current.status.value if current else 'missing'
            raise InvalidTransition(
                f"Task {user_task.task_id} changed concurrently (now {status})",
                status=status,
            )
        logger.info(
            f"Task {user_task.task_id} for {user_task.user_id}: "
            f"{user_task.status.value} -> {target.value}"
        )
        return self._read(user_task.user_id, user_task.task_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def unlock(self, user_id: str, task_id: str) -> UserTask:
        """locked -> available once every prerequisite task is completed."""
        task = self.catalog.get(task_id)
        user_task = self._load(user_id, task_id)
        if user_task.status is not TaskStatus.LOCKED:
            return user_task

        unmet = [
            prerequisite for prerequisite in task.prerequisites
            if self.get(user_id, prerequisite).status is not TaskStatus.COMPLETED
        ]
        if unmet:
            raise InvalidTransition(
                f"Task {task_id} has unfinished prerequisites",
                status=user_task.status.value,
                unmet_prerequisites=unmet,
            )

        return self._apply(
            user_task,
            TaskStatus.AVAILABLE,
            {'unlocked_at': self._now()},
            replayed=lambda current: current.status is not TaskStatus.LOCKED,
        )

    def start(self, user_id: str, task_id: str) -> UserTask:
        """available -> in_progress. Starting a task already in progress is a no-op."""
        self.catalog.get(task_id)
        user_task = self._load(user_id, task_id)
        if user_task.status is TaskStatus.IN_PROGRESS:
            return user_task

        attempt = user_task.attempts + 1
        return self._apply(
            user_task,
            TaskStatus.IN_PROGRESS,
            {'started_at': self._now(), 'attempts': attempt},
            replayed=lambda current: (
                current.status is TaskStatus.IN_PROGRESS and current.attempts == attempt
            ),
        )

    def request_proof(self, user_id: str, task_id: str) -> UserTask:
        """
        in_progress -> awaiting_proof.

        Tasks with proof policy 'none' skip the proof step: a stub proof is
        stored and the task goes straight to under_review.
        """
        task = self.catalog.get(task_id)
        user_task = self._load(user_id, task_id)
        now = self._now()

        if task.proof_policy is not ProofPolicy.NONE:
            if user_task.status is TaskStatus.AWAITING_PROOF:
                return user_task
            return self._apply(
                user_task,
                TaskStatus.AWAITING_PROOF,
                {'proof_requested_at': now},
                replayed=lambda current: (
                    current.status is TaskStatus.AWAITING_PROOF
                    and current.attempts == user_task.attempts
                ),
            )

        proof_id = proof_id_for(user_id, task_id, user_task.attempts)
        if user_task.proof_id == proof_id and user_task.status in REVIEWED:
            return user_task

        proof = self.proofs.stub(task, user_id, proof_id)
        return self._apply(
            user_task,
            TaskStatus.UNDER_REVIEW,
            {'proof_id': proof_id, 'proof_requested_at': now, 'submitted_at': now},
            replayed=lambda current: current.proof_id == proof_id,
            extra_ops=[Put(config.PROOFS_TABLE, proof.to_item(), if_absent='id')],
        )

    def submit_proof(self, user_id: str, task_id: str, payload: Dict[str, Any]) -> UserTask:
        """
        Validate and store a proof, moving awaiting_proof -> under_review atomically.

        Args:
            user_id: Submitting user
            task_id: Catalog task id
            payload: Proof payload, see ProofSubmissionHandler.validate

        Returns:
            Updated UserTask (completed when an in-app proof is auto-approved)
        """
        task = self.catalog.get(task_id)
        user_task = self._load(user_id, task_id)
        proof_id = proof_id_for(user_id, task_id, user_task.attempts)

        if user_task.proof_id == proof_id and user_task.status in REVIEWED:
            return user_task
        if user_task.status is not TaskStatus.AWAITING_PROOF:
            raise InvalidTransition(
                f"Task {task_id} is not awaiting a proof",
                status=user_task.status.value,
            )

        proof = self.proofs.validate(task, payload, user_id, proof_id)
        result = self._apply(
            user_task,
            TaskStatus.UNDER_REVIEW,
            {'proof_id': proof_id, 'submitted_at': proof.submitted_at},
            replayed=lambda current: current.proof_id == proof_id,
            extra_ops=[Put(config.PROOFS_TABLE, proof.to_item(), if_absent='id')],
        )

        if (task.proof_policy is ProofPolicy.AUTO
                and config.AUTO_APPROVE_AUTO_PROOFS
                and result.status is TaskStatus.UNDER_REVIEW):
            result = self.resolve(user_id, task_id, TaskStatus.COMPLETED, config.AUTO_PROOF_REVIEWER)
        return result

    def resolve(
        self,
        user_id: str,
        task_id: str,
        decision,
        reviewer_id: str,
        reason: Optional[str] = None
    ) -> UserTask:
        """
        Record a review decision: under_review -> completed | rejected.

        Completion credits the task's coins in the same transaction as the
        status change, so the reward is paid exactly once.

        Raises:
            ValidationError: unknown decision, missing reviewer or rejection reason
            AlreadyResolved: the task was already resolved the other way
            InvalidTransition: the task is not under review
        """
        decision = self._decision(decision)
        if not reviewer_id:
            raise ValidationError('Reviewer is required')
        if decision is TaskStatus.REJECTED and not (reason and reason.strip()):
            raise ValidationError('A rejection reason is required')

        task = self.catalog.get(task_id)
        user_task = self._load(user_id, task_id)

        if task.proof_policy is ProofPolicy.NONE and user_task.status is TaskStatus.IN_PROGRESS:
            user_task = self.request_proof(user_id, task_id)
        if user_task.status in RESOLUTIONS:
            return self._resolved(user_task, decision)

        now = self._now()
        values = {
            'decision': decision.value,
            'reviewed_by': reviewer_id,
            'resolved_at': now,
        }
        if decision is TaskStatus.REJECTED:
            values['rejection_reason'] = reason.strip()
        else:
            values['coins_awarded'] = task.coins
            values['xp_awarded'] = task.xp
        status_op = self._status_update(user_task, decision, values)

        ops = [status_op]
        if user_task.proof_id:
            review = {
                'review_status': (
                    ReviewStatus.APPROVED if decision is TaskStatus.COMPLETED else ReviewStatus.REJECTED
                ).value,
                'reviewed_by': reviewer_id,
                'reviewed_at': now,
            }
            if reason:
                review['reviewer_note'] = reason.strip()
            ops.append(Update(
                config.PROOFS_TABLE,
                {'id': user_task.proof_id},
                review,
                [eq('review_status', ReviewStatus.PENDING.value)],
            ))

        try:
            if decision is TaskStatus.COMPLETED and task.coins > 0:
                self.ledger.credit(
                    user_id,
                    task.coins,
                    SourceRef('task', task_id),
                    f"Completed task: {task.title}",
                    extra_ops=ops,
                )
            else:
                self.store.transact(ops)
        except WriteConflict:
            current = self._read(user_id, task_id)
            if current is not None and current.status in RESOLUTIONS:
                return self._resolved(current, decision)
            raise InvalidTransition(
                f"Task {task_id} changed concurrently",
                status=current.status.value if current else 'missing',
            )

        logger.info(f"Task {task_id} for {user_id} resolved as {decision.value} by {reviewer_id}")
        return self._read(user_id, task_id)

    def _decision(self, decision) -> TaskStatus:
        try:
            decision = TaskStatus(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision}")
        if decision not in RESOLUTIONS:
            raise ValidationError(f"Decision must be completed or rejected, got {decision.value}")
        return decision

    def _resolved(self, user_task: UserTask, decision: TaskStatus) -> UserTask:
        if user_task.status is decision:
            return user_task
        raise AlreadyResolved(
            f"Task {user_task.task_id} was already {user_task.status.value}",
            status=user_task.status.value,
            reviewed_by=user_task.reviewed_by,
        )

    def retry(self, user_id: str, task_id: str) -> UserTask:
        """rejected -> available, so the task can be attempted again."""
        self.catalog.get(task_id)
        user_task = self._load(user_id, task_id)
        if user_task.status is TaskStatus.AVAILABLE:
            return user_task
        if user_task.status is not TaskStatus.REJECTED:
            raise InvalidTransition(
                f"Only rejected tasks can be retried (task {task_id} is {user_task.status.value})",
                status=user_task.status.value,
            )
        return self._apply(
            user_task,
            TaskStatus.AVAILABLE,
            {},
            replayed=lambda current: current.status is TaskStatus.AVAILABLE,
        )
