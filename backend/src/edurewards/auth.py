"""
Authentication utilities for extracting user info from Cognito tokens.
Session management itself lives in Cognito; handlers only read the claims.
"""
from typing import Optional

from .errors import Forbidden


def get_user_sub(event: dict) -> Optional[str]:
    """
    Extract user sub (unique ID) from Cognito authorizer claims.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        User sub string or None if not authenticated
    """
    try:
        return event['requestContext']['authorizer']['claims']['sub']
    except (KeyError, TypeError):
        return None


def get_user_groups(event: dict) -> list:
    """Extract user groups (student, teacher, admin) from Cognito claims."""
    try:
        groups = event['requestContext']['authorizer']['claims'].get('cognito:groups', '')
        if isinstance(groups, str):
            return groups.split(',') if groups else []
        return groups or []
    except (KeyError, TypeError, AttributeError):
        return []


def is_admin(event: dict) -> bool:
    """Check if user belongs to admin group."""
    return 'admin' in get_user_groups(event)


def is_teacher(event: dict) -> bool:
    """Check if user belongs to teacher group (admins review too)."""
    return 'teacher' in get_user_groups(event) or is_admin(event)


def require_teacher(event: dict) -> str:
    """Return the caller's sub, or raise Forbidden unless they may review/verify."""
    if not is_teacher(event):
        raise Forbidden('Only teachers can perform this action')
    return get_user_sub(event)
