"""
Expiry Sweeper - expires pending redemptions past their expiry and refunds them.
Run periodically (EventBridge schedule); safe to run concurrently with verifiers.
"""
from typing import Dict

from .config import config
from .errors import EngineError
from .logging import logger
from .models import Redemption, RedemptionStatus
from .utils import SystemClock, to_iso

PENDING_BY_EXPIRY_INDEX = 'byStatusExpiry'


class ExpirySweeper:

    def __init__(self, store, verifier, clock=None):
        self.store = store
        self.verifier = verifier
        self.clock = clock or SystemClock()

    def sweep(self, limit: int = None) -> Dict[str, int]:
        """
        Expire up to ``limit`` overdue pending redemptions.

        Redemptions settled by a verifier in the meantime are skipped.

        Returns:
            {'checked': <overdue redemptions seen>, 'expired': <expired by this run>}
        """
        now = to_iso(self.clock.now())
        items = self.store.query(
            config.REDEMPTIONS_TABLE,
            'status',
            RedemptionStatus.PENDING.value,
            index=PENDING_BY_EXPIRY_INDEX,
            sort_key='expires_at',
            below=now,
            limit=limit or config.SWEEP_BATCH_LIMIT,
        )
        logger.info(f"Found {len(items)} pending redemptions past expiry")

        expired = 0
        for item in items:
            redemption = Redemption.from_item(item)
            try:
                if self.verifier.expire(redemption):
                    expired += 1
            except EngineError as e:
                logger.error(f"Failed to expire redemption {redemption.id}: {e.message}")

        logger.info(f"Expired {expired}/{len(items)} redemptions")
        return {'checked': len(items), 'expired': expired}
