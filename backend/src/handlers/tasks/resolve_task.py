"""
Teacher review of a student's task: approve (credits the reward) or reject.
"""
from edurewards.auth import require_teacher
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    """
    POST /teacher/students/{userId}/tasks/{taskId}/resolve
    Body: { "decision": "completed" | "rejected", "reason": "..." }
    """
    log_event(event)
    try:
        reviewer_id = require_teacher(event)
        user_id = get_path_param(event, 'userId')
        task_id = get_path_param(event, 'taskId')
        if not user_id or not task_id:
            raise ValidationError('Missing userId or taskId')

        body = parse_body(event)
        decision = body.get('decision')
        if not decision:
            raise ValidationError('Missing decision')

        user_task = get_services().tracker.resolve(
            user_id, task_id, decision, reviewer_id, reason=body.get('reason')
        )
        return format_response(200, user_task.to_item())

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error resolving task: {e}")
        return format_response(500, {'message': 'Internal server error'})
