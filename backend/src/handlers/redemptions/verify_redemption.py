"""
Teacher check of a scanned QR payload or a typed code before handing over the reward.
"""
from edurewards.auth import require_teacher
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, parse_body


def handler(event, context):
    """
    POST /teacher/redemptions/verify
    Body: { "qr": "<scanned payload>" } or { "code": "EDU-XXX-XXXX", "token": "..." }
    """
    log_event(event)
    try:
        verifier_id = require_teacher(event)
        body = parse_body(event)
        verifier = get_services().verifier

        if body.get('qr'):
            redemption = verifier.verify_payload(body['qr'], verifier_id)
        elif body.get('code'):
            redemption = verifier.verify(body['code'], verifier_id, token=body.get('token'))
        else:
            raise ValidationError('Missing qr or code')

        return format_response(200, redemption.to_item())

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error verifying redemption: {e}")
        return format_response(500, {'message': 'Internal server error'})
