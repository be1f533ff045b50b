"""
Redeem coins for a reward: reserves the coins and returns the code and QR payload.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, parse_body


def handler(event, context):
    """
    POST /student/redemptions
    Body: { "productId": "...", "productName": "...", "coinCost": 300, "requestId": "..." }
    """
    log_event(event)
    try:
        student_id = get_user_sub(event)
        if not student_id:
            return format_response(401, {'message': 'Unauthorized'})

        body = parse_body(event)
        product_id = body.get('productId')
        coin_cost = body.get('coinCost')
        if not product_id or coin_cost is None:
            raise ValidationError('Missing productId or coinCost')

        redemption = get_services().issuer.issue(
            student_id,
            product_id,
            coin_cost,
            product_name=body.get('productName'),
            request_id=body.get('requestId'),
        )
        return format_response(201, redemption.to_item())

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error issuing redemption: {e}")
        return format_response(500, {'message': 'Internal server error'})
