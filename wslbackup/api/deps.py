"""
Request dependencies shared by the v1 routers.
"""
from fastapi import Request

from wslbackup.services import Services


def get_services(request: Request) -> Services:
    """Service graph built by ``create_app``."""
    return request.app.state.services
