"""
List the caller's most recent ledger entries.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_query_param

MAX_LIMIT = 200


def handler(event, context):
    """
    GET /student/wallet/transactions?limit=50
    """
    log_event(event)
    try:
        user_id = get_user_sub(event)
        if not user_id:
            return format_response(401, {'message': 'Unauthorized'})

        try:
            limit = int(get_query_param(event, 'limit', '50'))
        except ValueError:
            raise ValidationError('limit must be a number')
        limit = max(1, min(limit, MAX_LIMIT))

        entries = get_services().ledger.transactions(user_id, limit=limit)
        return format_response(200, {
            'transactions': [entry.to_item() for entry in entries],
            'count': len(entries),
        })

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error listing transactions: {e}")
        return format_response(500, {'message': 'Internal server error'})
