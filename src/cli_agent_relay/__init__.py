"""CLI Agent Relay - supervise CLI agent workers and stream their events.

Environment variables:
    CAR_HOST / CAR_PORT: bind address (default 127.0.0.1:3000)
    CAR_CWD: workspace directory
    CAR_WORKER_COMMAND / CAR_WORKER_ARGS: long-lived worker invocation
    CAR_PAUSE_MODE: signal | message

Usage:
    cli-agent-relay
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
