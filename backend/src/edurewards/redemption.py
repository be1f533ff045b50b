"""
Redemption issuing and verification.

A student trades coins for a physical reward: issuing reserves the coins and
hands out a code (EDU-XXX-XXXX) plus a one-time token, both carried in a QR
payload. A teacher scans the QR (or types the code) and approves or rejects;
unclaimed redemptions expire after config.REDEMPTION_EXPIRY_HOURS and are
refunded.
"""
import hmac
import json
import re
import secrets
import string
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .config import config
from .errors import (
    AlreadyResolved,
    Contention,
    Expired,
    InsufficientBalance,
    NotFound,
    ValidationError,
    WriteConflict,
)
from .logging import logger
from .models import (
    Redemption,
    RedemptionStats,
    RedemptionStatus,
    SourceRef,
    check_redemption_transition,
)
from .store import Put, Update, eq, gte, lt
from .utils import SystemClock, epoch_ms, to_iso

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_PATTERN = re.compile(r'^EDU-[A-Z0-9]{3}-[A-Z0-9]{4}$')

REDEMPTIONS_BY_STUDENT_INDEX = 'byStudent'
QR_FIELDS = ('id', 'studentId', 'productId', 'redemptionCode', 'token', 'timestamp', 'expiry')


# =============================================================================
# Codes, tokens and QR payloads
# =============================================================================

def generate_code() -> str:
    """Random human-readable code, e.g. EDU-7QK-M2XD."""
    head = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(3))
    tail = ''.join(secrets.choice(CODE_ALPHABET) for _ in range(4))
    return f"EDU-{head}-{tail}"


def generate_token() -> str:
    return secrets.token_urlsafe(24)


def normalize_code(code: Any) -> str:
    """Trim and upper-case a typed or scanned code; ValidationError if malformed."""
    if not isinstance(code, str):
        raise ValidationError('Redemption code is required')
    normalized = code.strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise ValidationError(f"Malformed redemption code: {code}")
    return normalized


def encode_qr(redemption: Redemption) -> str:
    """QR payload with epoch-millisecond timestamps."""
    return json.dumps({
        'id': redemption.id,
        'studentId': redemption.student_id,
        'productId': redemption.product_id,
        'redemptionCode': redemption.redemption_code,
        'token': redemption.one_time_token,
        'timestamp': epoch_ms(redemption.created_at),
        'expiry': epoch_ms(redemption.expires_at),
    })


def decode_qr(qr_string: str) -> Dict[str, Any]:
    try:
        data = json.loads(qr_string)
    except (TypeError, ValueError):
        raise ValidationError('QR payload is not valid JSON')
    if not isinstance(data, dict):
        raise ValidationError('QR payload must be an object')
    missing = [name for name in QR_FIELDS if name not in data]
    if missing:
        raise ValidationError('QR payload is missing fields', missing=missing)
    return data


def _require(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _load_redemption(store, redemption_id: str) -> Optional[Redemption]:
    item = store.get(config.REDEMPTIONS_TABLE, {'id': redemption_id})
    return Redemption.from_item(item) if item else None


# =============================================================================
# Issuer
# =============================================================================

class RedemptionIssuer:
    """Creates pending redemptions with their coins reserved."""

    def __init__(self, store, ledger, clock=None, code_factory=None):
        self.store = store
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.code_factory = code_factory or generate_code

    def issue(
        self,
        student_id: str,
        product_id: str,
        coin_cost: int,
        product_name: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Redemption:
        """
        Reserve ``coin_cost`` coins and create a pending redemption.

        The reservation, the code claim and the redemption record commit in
        one transaction. A code already in use is regenerated.

        Args:
            student_id: Redeeming student
            product_id: Reward being claimed
            coin_cost: Positive coin price
            product_name: Display name, defaults to the product id
            request_id: Client request id; a repeated id returns the first redemption

        Returns:
            The pending Redemption (code, token and QR payload included)

        Raises:
            ValidationError: bad arguments
            InsufficientBalance: balance below coin_cost (nothing is written)
            Contention: no free code found within config.CODE_MAX_ATTEMPTS
        """
        student_id = _require(student_id, 'Student id')
        product_id = _require(product_id, 'Product id')
        if isinstance(coin_cost, bool) or not isinstance(coin_cost, int) or coin_cost <= 0:
            raise ValidationError('Coin cost must be a positive integer', coin_cost=coin_cost)
        product_name = (product_name or product_id).strip()

        if request_id:
            redemption_id = str(uuid.uuid5(
                uuid.NAMESPACE_URL, f"edurewards/redemption/{student_id}/{request_id}"
            ))
            existing = _load_redemption(self.store, redemption_id)
            if existing is not None:
                logger.info(f"Redemption request {request_id} already issued as {redemption_id}")
                return existing
        else:
            redemption_id = str(uuid.uuid4())

        wallet = self.ledger.get_wallet(student_id)
        if coin_cost > wallet.balance:
            raise InsufficientBalance(
                f"Balance {wallet.balance} is less than {coin_cost}",
                balance=wallet.balance,
                required=coin_cost,
            )

        now = self.clock.now()
        created_at = to_iso(now)
        expires_at = to_iso(now + timedelta(hours=config.REDEMPTION_EXPIRY_HOURS))
        token = generate_token()

        for attempt in range(1, config.CODE_MAX_ATTEMPTS + 1):
            code = self.code_factory()
            redemption = Redemption(
                id=redemption_id,
                student_id=student_id,
                product_id=product_id,
                product_name=product_name,
                redemption_code=code,
                one_time_token=token,
                coins_redeemed=coin_cost,
                created_at=created_at,
                expires_at=expires_at,
                updated_at=created_at,
            )
            redemption = replace(redemption, qr_data=encode_qr(redemption))

            record_put = Put(config.REDEMPTIONS_TABLE, redemption.to_item(), if_absent='id')
            code_put = Put(
                config.REDEMPTION_CODES_TABLE,
                {'redemption_code': code, 'redemption_id': redemption_id, 'created_at': created_at},
                if_absent='redemption_code',
            )
            try:
                self.ledger.reserve(
                    student_id,
                    coin_cost,
                    SourceRef('redemption', redemption_id),
                    f"Redeemed {product_name}",
                    extra_ops=[record_put, code_put],
                )
            except WriteConflict as e:
                if e.failed(record_put):
                    existing = _load_redemption(self.store, redemption_id)
                    if existing is not None:
                        return existing
                logger.warning(
                    f"Redemption code {code} already taken, regenerating "
                    f"({attempt}/{config.CODE_MAX_ATTEMPTS})"
                )
                continue

            logger.info(
                f"Issued redemption {redemption_id} ({code}) for {student_id}: "
                f"{coin_cost} coins for {product_id}, expires {expires_at}"
            )
            return redemption

        raise Contention('Could not allocate a unique redemption code, try again')


# =============================================================================
# Verifier
# =============================================================================

class RedemptionVerifier:
    """Teacher-side lookup, approval and rejection of redemption codes."""

    def __init__(self, store, ledger, clock=None):
        self.store = store
        self.ledger = ledger
        self.clock = clock or SystemClock()

    def _now(self) -> str:
        return to_iso(self.clock.now())

    def get(self, redemption_id: str) -> Redemption:
        redemption = _load_redemption(self.store, redemption_id)
        if redemption is None:
            raise NotFound(f"Redemption {redemption_id} not found")
        return redemption

    def find(self, code: str) -> Redemption:
        code = normalize_code(code)
        item = self.store.get(config.REDEMPTION_CODES_TABLE, {'redemption_code': code})
        if item is None:
            raise NotFound(f"Redemption code {code} not found")
        return self.get(item['redemption_id'])

    def _check_token(self, redemption: Redemption, token: Optional[str]) -> None:
        if token is None:
            return
        if not hmac.compare_digest(str(token).encode(), redemption.one_time_token.encode()):
            raise ValidationError('Token does not match this redemption code')

    def _check_pending(self, redemption: Redemption) -> None:
        if redemption.status is RedemptionStatus.EXPIRED:
            raise Expired(f"Redemption {redemption.redemption_code} has expired")
        if redemption.status is not RedemptionStatus.PENDING:
            raise AlreadyResolved(
                f"Redemption {redemption.redemption_code} is already {redemption.status.value}",
                status=redemption.status.value,
                verified_by=redemption.verified_by,
            )
        if self._now() > redemption.expires_at:
            self.expire(redemption)
            raise Expired(f"Redemption {redemption.redemption_code} has expired")

    def _status_op(self, redemption: Redemption, target: RedemptionStatus, values: Dict[str, Any], conditions) -> Update:
        check_redemption_transition(redemption.status, target)
        values = dict(values, status=target.value, updated_at=self._now())
        return Update(
            config.REDEMPTIONS_TABLE,
            {'id': redemption.id},
            values,
            [eq('status', RedemptionStatus.PENDING.value), *conditions],
        )

    def _settled_elsewhere(self, redemption_id: str, target: RedemptionStatus, verifier_id: str) -> Redemption:
        """Interpret a lost compare-and-swap on the redemption status."""
        current = self.get(redemption_id)
        if current.status is target and current.verified_by == verifier_id:
            return current
        if current.status is RedemptionStatus.PENDING:
            # Only the expiry guard can fail while still pending
            self.expire(current)
            raise Expired(f"Redemption {current.redemption_code} has expired")
        if current.status is RedemptionStatus.EXPIRED:
            raise Expired(f"Redemption {current.redemption_code} has expired")
        raise AlreadyResolved(
            f"Redemption {current.redemption_code} is already {current.status.value}",
            status=current.status.value,
            verified_by=current.verified_by,
        )

    def verify(self, code: str, verifier_id: str, token: Optional[str] = None) -> Redemption:
        """
        Check that a code can be collected right now.

        Raises:
            ValidationError: malformed code or token mismatch
            NotFound: unknown code
            Expired: past its expiry (the coins are refunded)
            AlreadyResolved: already collected or rejected
        """
        redemption = self.find(code)
        self._check_token(redemption, token)
        self._check_pending(redemption)
        logger.info(f"Redemption {redemption.redemption_code} verified by {verifier_id}")
        return redemption

    def verify_payload(self, qr_string: str, verifier_id: str) -> Redemption:
        """Verify a scanned QR payload (code and token together)."""
        data = decode_qr(qr_string)
        redemption = self.verify(data['redemptionCode'], verifier_id, token=data['token'])
        if data['id'] != redemption.id:
            raise ValidationError('QR payload does not match this redemption code')
        return redemption

    def approve(self, code: str, verifier_id: str, token: Optional[str] = None) -> Redemption:
        """pending -> collected; the reserved coins become spent."""
        verifier_id = _require(verifier_id, 'Verifier id')
        redemption = self.find(code)
        self._check_token(redemption, token)
        if redemption.status is RedemptionStatus.COLLECTED and redemption.verified_by == verifier_id:
            return redemption
        self._check_pending(redemption)

        now = self._now()
        op = self._status_op(
            redemption,
            RedemptionStatus.COLLECTED,
            {'verified_by': verifier_id, 'verified_at': now},
            [gte('expires_at', now)],
        )
        try:
            self.ledger.finalize(
                redemption.reservation,
                f"Collected {redemption.product_name}",
                extra_ops=[op],
            )
        except WriteConflict:
            return self._settled_elsewhere(redemption.id, RedemptionStatus.COLLECTED, verifier_id)

        logger.info(f"Redemption {redemption.redemption_code} collected, approved by {verifier_id}")
        return self.get(redemption.id)

    def reject(self, code: str, verifier_id: str, reason: str, token: Optional[str] = None) -> Redemption:
        """pending -> rejected; the reserved coins return to the student's balance."""
        verifier_id = _require(verifier_id, 'Verifier id')
        reason = _require(reason, 'Rejection reason')
        redemption = self.find(code)
        self._check_token(redemption, token)
        if redemption.status is RedemptionStatus.REJECTED and redemption.verified_by == verifier_id:
            return redemption
        self._check_pending(redemption)

        now = self._now()
        op = self._status_op(
            redemption,
            RedemptionStatus.REJECTED,
            {'verified_by': verifier_id, 'verified_at': now, 'rejected_reason': reason},
            [gte('expires_at', now)],
        )
        try:
            self.ledger.reverse(
                redemption.reservation,
                f"Rejected: {reason}",
                extra_ops=[op],
            )
        except WriteConflict:
            return self._settled_elsewhere(redemption.id, RedemptionStatus.REJECTED, verifier_id)

        logger.info(f"Redemption {redemption.redemption_code} rejected by {verifier_id}: {reason}")
        return self.get(redemption.id)

    def expire(self, redemption: Redemption) -> bool:
        """
        pending -> expired with a refund, if the redemption is past its expiry.

        Returns:
            True if this call expired it, False if it was not due or was settled elsewhere
        """
        now = self._now()
        if redemption.status is not RedemptionStatus.PENDING or not now > redemption.expires_at:
            return False

        op = self._status_op(redemption, RedemptionStatus.EXPIRED, {}, [lt('expires_at', now)])
        try:
            self.ledger.reverse(
                redemption.reservation,
                f"Expired: {redemption.product_name}",
                extra_ops=[op],
            )
        except WriteConflict:
            logger.info(f"Redemption {redemption.id} was settled before it could expire")
            return False

        logger.info(
            f"Redemption {redemption.id} expired, {redemption.coins_redeemed} coins "
            f"returned to {redemption.student_id}"
        )
        return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def list_for_student(self, student_id: str, limit: Optional[int] = None) -> List[Redemption]:
        """Newest first."""
        items = self.store.query(
            config.REDEMPTIONS_TABLE,
            'student_id',
            student_id,
            index=REDEMPTIONS_BY_STUDENT_INDEX,
            sort_key='created_at',
            limit=limit,
            descending=True,
        )
        return [Redemption.from_item(item) for item in items]

    def stats_for_student(self, student_id: str) -> RedemptionStats:
        stats = RedemptionStats()
        for redemption in self.list_for_student(student_id):
            stats.total += 1
            if redemption.status is RedemptionStatus.PENDING:
                stats.pending += 1
                stats.coins_reserved += redemption.coins_redeemed
            elif redemption.status is RedemptionStatus.COLLECTED:
                stats.collected += 1
                stats.coins_spent += redemption.coins_redeemed
            elif redemption.status is RedemptionStatus.REJECTED:
                stats.rejected += 1
            else:
                stats.expired += 1
        return stats
