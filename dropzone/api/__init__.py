"""
API Module - ASGI Signaling Endpoints
"""

from .app import create_app, run_server, WebSocketTransport

__all__ = ['create_app', 'run_server', 'WebSocketTransport']
