"""
Resilience Patterns

Backoff policy shared by the register, unregister and discover subcommands.
"""

from prometheus_sd.resilience.retry import ResilientConnector

__all__ = [
    "ResilientConnector",
]
