"""
List the caller's redemptions with per-status totals.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response


def handler(event, context):
    """
    GET /student/redemptions
    """
    log_event(event)
    try:
        student_id = get_user_sub(event)
        if not student_id:
            return format_response(401, {'message': 'Unauthorized'})

        verifier = get_services().verifier
        redemptions = verifier.list_for_student(student_id)
        return format_response(200, {
            'redemptions': [r.to_item() for r in redemptions],
            'stats': verifier.stats_for_student(student_id).to_dict(),
        })

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error listing redemptions: {e}")
        return format_response(500, {'message': 'Internal server error'})
