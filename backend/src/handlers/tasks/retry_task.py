"""
Make a rejected task available again.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_path_param


def handler(event, context):
    """
    POST /student/tasks/{taskId}/retry
    """
    log_event(event)
    try:
        user_id = get_user_sub(event)
        if not user_id:
            return format_response(401, {'message': 'Unauthorized'})
        task_id = get_path_param(event, 'taskId')
        if not task_id:
            raise ValidationError('Missing taskId')

        user_task = get_services().tracker.retry(user_id, task_id)
        return format_response(200, user_task.to_item())

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error in retry for task: {e}")
        return format_response(500, {'message': 'Internal server error'})
