"""
API module for the inventory core.

Provides the HTTP boundary: the handler factory that turns repositories
and services into aiohttp handlers, and the application that mounts them.

Invariants:
    - Handlers never talk to a backend directly; they go through
      repositories or services
    - Errors leave the boundary as {status, message, code}
"""

from .handler_factory import HandlerFactory
from .http_server import create_http_app

__all__ = [
    "HandlerFactory",
    "create_http_app",
]
