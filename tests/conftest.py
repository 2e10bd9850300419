from __future__ import annotations

# Import fixtures from testing/ so they are known by pytest
from testing.signaling_server import signaling_server  # noqa: F401
from testing.ssl import certificate  # noqa: F401
