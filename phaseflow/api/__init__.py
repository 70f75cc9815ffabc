"""
API package - FastAPI routes and schemas.
"""

from phaseflow.api.routes import instances, websocket, workflows

__all__ = ["instances", "websocket", "workflows"]
