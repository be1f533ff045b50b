"""
List the caller's tasks: every catalog task with the caller's progress on it.
"""
from edurewards.auth import get_user_sub
from edurewards.errors import EngineError, ValidationError
from edurewards.logging import log_event, logger
from edurewards.models import UserTask
from edurewards.service import get_services
from edurewards.utils import error_response, format_response, get_query_param


def handler(event, context):
    """
    GET /student/tasks?category=village
    """
    log_event(event)
    try:
        user_id = get_user_sub(event)
        if not user_id:
            return format_response(401, {'message': 'Unauthorized'})

        services = get_services()
        category = get_query_param(event, 'category')
        if category:
            try:
                definitions = services.catalog.by_category(category)
            except ValueError:
                raise ValidationError(f"Unknown category: {category}")
        else:
            definitions = services.catalog.all()

        progress = {row.task_id: row for row in services.tracker.list_for_user(user_id)}
        tasks = []
        for definition in definitions:
            row = progress.get(definition.id) or UserTask(user_id=user_id, task_id=definition.id)
            tasks.append({**definition.to_dict(), 'progress': row.to_item()})

        return format_response(200, {'tasks': tasks, 'count': len(tasks)})

    except EngineError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error listing tasks: {e}")
        return format_response(500, {'message': 'Internal server error'})
