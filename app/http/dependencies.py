"""
Request-scoped dependencies shared by the controllers.
"""
from fastapi import Request

from app.services.platforms import PlatformRegistry


def get_platform_registry(request: Request) -> PlatformRegistry:
    """Registry built once at startup and stored on app.state."""
    return request.app.state.platforms
