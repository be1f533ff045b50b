"""
Fetch a proof for review, with a presigned URL for photo proofs.
"""
from edurewards.auth import get_user_sub, is_teacher
from edurewards.errors import EngineError, Forbidden, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_path_param


def handler(event, context):
    """
    GET /proofs/{proofId}
    Teachers see any proof; students only their own.
    """
    log_event(event)
    try:
        user_id = get_user_sub(event)
        if not user_id:
            return format_response(401, {'message': 'Unauthorized'})
        proof_id = get_path_param(event, 'proofId')
        if not proof_id:
            raise ValidationError('Missing proofId')

        services = get_services()
        proof = services.tracker.get_proof(proof_id)
        if proof.user_id != user_id and not is_teacher(event):
            raise Forbidden('Not authorized to view this proof')

        result = proof.to_item()
        photo_url = services.proofs.photo_url(proof)
        if photo_url:
            result['photo_url'] = photo_url
        return format_response(200, result)

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error getting proof: {e}")
        return format_response(500, {'message': 'Internal server error'})
