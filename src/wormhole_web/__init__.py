"""wormhole-web: browser-facing orchestration of wormhole file and text transfers."""

__version__ = "0.1.0"

from wormhole_web.server.app import create_app

__all__ = [
    "__version__",
    "create_app",
]
