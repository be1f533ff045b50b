"""
Get the caller's wallet.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response


def handler(event, context):
    """
    GET /student/wallet
    """
    log_event(event)
    try:
        user_id = get_user_sub(event)
        if not user_id:
            return format_response(401, {'message': 'Unauthorized'})

        wallet = get_services().ledger.get_wallet(user_id)
        return format_response(200, {
            'userId': wallet.user_id,
            'balance': wallet.balance,
            'reserved': wallet.reserved,
            'totalEarned': wallet.total_earned,
            'totalSpent': wallet.total_spent,
            'frozen': wallet.frozen,
            'currency': 'EduCoins',
            'updatedAt': wallet.updated_at,
        })

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error getting wallet: {e}")
        return format_response(500, {'message': 'Internal server error'})
