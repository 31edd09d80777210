"""
Hetu Model Service

Provides REST and WebSocket APIs over the model session.
"""

from .main import app

__all__ = ["app"]
