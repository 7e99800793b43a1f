"""
API package - FastAPI routes and schemas.
"""

from nodeflow.api.routes import presets, runs, scenarios, websocket

__all__ = ["presets", "runs", "scenarios", "websocket"]
