"""
Service Discovery and Registration

Registration writes entries into the shared registry; discovery mirrors the
registry into a Prometheus file_sd document.
"""

from prometheus_sd.service_discovery.discovery import (
    DiscoveryLoop,
    DiscoveryOutputState,
    DiscoveryState,
    Trigger,
)
from prometheus_sd.service_discovery.notifier import ChangeNotifier
from prometheus_sd.service_discovery.registry import RegistrationManager

__all__ = [
    "ChangeNotifier",
    "DiscoveryLoop",
    "DiscoveryOutputState",
    "DiscoveryState",
    "RegistrationManager",
    "Trigger",
]
