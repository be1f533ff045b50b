"""
Teacher declines a redemption (e.g. out of stock): the coins are refunded.
"""
from edurewards.auth import require_teacher
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    """
    POST /teacher/redemptions/{code}/reject
    Body: { "reason": "Out of stock", "token": "..." }
    """
    log_event(event)
    try:
        verifier_id = require_teacher(event)
        code = get_path_param(event, 'code')
        if not code:
            raise ValidationError('Missing redemption code')

        body = parse_body(event)
        redemption = get_services().verifier.reject(
            code, verifier_id, body.get('reason'), token=body.get('token')
        )
        return format_response(200, redemption.to_item())

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error rejecting redemption: {e}")
        return format_response(500, {'message': 'Internal server error'})
