"""stimlink server components.

Application bootstrap lives in :mod:`stimlink.server.app`, the orchestration
core and the control-channel transport in :mod:`stimlink.server.control`, and
configuration in :mod:`stimlink.server.config`.
"""

__all__ = []
