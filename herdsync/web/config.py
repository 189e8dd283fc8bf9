"""Web application configuration."""

import os

# Server settings
HOST = os.environ.get("HERDSYNC_WEB_HOST", "0.0.0.0")
PORT = int(os.environ.get("HERDSYNC_WEB_PORT", "8000"))
