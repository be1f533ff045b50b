"""
Error taxonomy for the rewards engine.

Every domain error carries the HTTP status code the handlers answer with,
so a handler only needs ``error_response(e)`` to report it.
"""
from typing import Any, Dict, Iterable


class EngineError(Exception):
    """Base class for all errors surfaced to callers."""
    status_code = 500
    code = 'EngineError'

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {'error': self.code, 'message': self.message}
        body.update(self.details)
        return body


class ValidationError(EngineError):
    """Malformed input (proof, redemption code, amounts). The caller may fix it and retry."""
    status_code = 400
    code = 'ValidationError'


class Forbidden(EngineError):
    """Caller identity is not allowed to perform the operation."""
    status_code = 403
    code = 'Forbidden'


class InvalidTransition(EngineError):
    """Operation attempted from a state that does not allow it."""
    status_code = 409
    code = 'InvalidTransition'


class InsufficientBalance(EngineError):
    """Spend larger than the available wallet balance. Raised before any write."""
    status_code = 402
    code = 'InsufficientBalance'


class NotFound(EngineError):
    status_code = 404
    code = 'NotFound'


class Expired(EngineError):
    status_code = 410
    code = 'Expired'


class AlreadyResolved(EngineError):
    """A terminal decision was already recorded by someone else."""
    status_code = 409
    code = 'AlreadyResolved'


class ConsistencyError(EngineError):
    """
    Cached wallet diverges from its transaction log.
    Fatal: the wallet is frozen and an operator has to intervene.
    """
    status_code = 500
    code = 'ConsistencyError'


class StoreUnavailable(EngineError):
    """Transient infrastructure failure (throttling, service errors). Safe to retry."""
    status_code = 503
    code = 'StoreUnavailable'


class Contention(EngineError):
    """Optimistic-lock retries exhausted. Safe to retry."""
    status_code = 503
    code = 'Contention'


class WriteConflict(Exception):
    """
    Raised by a store when a conditional write fails.

    Carries the operations whose conditions did not hold so the component
    that built the transaction can decide what the conflict means.
    """

    def __init__(self, failed_ops: Iterable[Any]):
        self.failed_ops = list(failed_ops)
        super().__init__(f"{len(self.failed_ops)} conditional operation(s) failed")

    def failed(self, op: Any) -> bool:
        return any(failed is op for failed in self.failed_ops)
