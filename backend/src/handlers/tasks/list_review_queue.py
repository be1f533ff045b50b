"""
Teacher review queue: every student's tasks awaiting a decision (or already reviewed).
"""
from edurewards.auth import require_teacher
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_query_param

MAX_LIMIT = 200


def handler(event, context):
    """
    GET /teacher/tasks/review?status=under_review&limit=50
    """
    log_event(event)
    try:
        require_teacher(event)
        status = get_query_param(event, 'status', 'under_review')
        try:
            limit = int(get_query_param(event, 'limit', '50'))
        except ValueError:
            raise ValidationError('limit must be a number')
        limit = max(1, min(limit, MAX_LIMIT))

        services = get_services()
        rows = services.tracker.list_for_review(status, limit=limit)
        tasks = []
        for row in rows:
            entry = row.to_item()
            if row.task_id in services.catalog:
                entry['task'] = services.catalog.get(row.task_id).to_dict()
            tasks.append(entry)

        return format_response(200, {'tasks': tasks, 'count': len(tasks), 'status': status})

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error listing review queue: {e}")
        return format_response(500, {'message': 'Internal server error'})
