"""
Submit the proof for a task awaiting one.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    """
    POST /student/tasks/{taskId}/proof
    Body (photo): { "type": "photo", "file_url": "proofs/...", "file_name": "...",
                    "file_size_bytes": 123, "mime_type": "image/jpeg" }
    Body (text):  { "type": "text", "content": "..." }
    Body (auto):  { "type": "auto", "evidence": { "score": 8, "total": 10 } }
    """
    log_event(event)
    try:
        user_id = get_user_sub(event)
        if not user_id:
            return format_response(401, {'message': 'Unauthorized'})
        task_id = get_path_param(event, 'taskId')
        if not task_id:
            raise ValidationError('Missing taskId')

        body = parse_body(event)
        if not body:
            raise ValidationError('Missing proof payload')

        user_task = get_services().tracker.submit_proof(user_id, task_id, body)
        return format_response(200, user_task.to_item())

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error submitting proof: {e}")
        return format_response(500, {'message': 'Internal server error'})
