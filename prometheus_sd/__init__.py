"""
prometheus-sd

Service discovery for Prometheus via a shared Redis instance. Service
instances register themselves with `prometheus-sd register`; the machine
running Prometheus runs `prometheus-sd discover`, which mirrors the registry
into a file for Prometheus' file-based discovery.
"""

__version__ = "0.3.0"
