"""
Expire Redemptions Handler.
Triggered by EventBridge on a schedule to expire and refund unclaimed redemptions.
"""
from edurewards.logging import logger
from edurewards.service import get_services


def handler(event, context):
    """
    Scheduled handler. Should be triggered every few minutes by EventBridge.

    For each pending redemption past its expiry:
    1. Redemption status -> 'expired'
    2. Reserved coins -> back to the student's balance
    """
    logger.info("Running redemption expiry sweep...")
    result = get_services().sweeper.sweep()
    logger.info(f"Expiry sweep finished: {result}")
    return result
