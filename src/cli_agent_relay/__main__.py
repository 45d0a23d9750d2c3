"""CLI Agent Relay entry point.

Supports: python -m cli_agent_relay
"""

from .app import main

if __name__ == "__main__":
    main()
