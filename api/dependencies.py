"""
Shared FastAPI dependencies.
"""

import re

from fastapi import Request

from thanalytica.container import ServiceContainer

# Auth-provider user ids: letters, digits, dash and underscore
USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def get_container(request: Request) -> ServiceContainer:
    """The service container attached to the app at startup."""
    return request.app.state.container


def is_valid_user_id(user_id: str) -> bool:
    return bool(user_id) and USER_ID_PATTERN.match(user_id) is not None
