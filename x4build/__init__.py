"""X4Build — development build orchestrator.

Watches a project tree, rebuilds it through esbuild, notifies connected
browsers over a live-reload websocket and serves the built output.
"""

__version__ = "1.6.0"
__app_name__ = "X4Build"
