"""Session Relay.

Encrypted session storage and WebSocket liveness tracking behind a small
aiohttp server.
"""
from .version import __version__
from .app import create_app, run
from .conf import ServerConfig
from .data import SessionData
from .store import SessionStore, MemorySessionStore
from .channels import SessionChannels
from .liveness import LivenessTracker, ConnectionLiveness

__all__ = (
    "__version__",
    "create_app",
    "run",
    "ServerConfig",
    "SessionData",
    "SessionStore",
    "MemorySessionStore",
    "SessionChannels",
    "LivenessTracker",
    "ConnectionLiveness",
)
