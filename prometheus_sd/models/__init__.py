from prometheus_sd.models.service import (
    DEFAULT_METRICS_PATH,
    RESERVED_LABELS,
    ServiceEntry,
    render_target_groups,
)

__all__ = [
    "DEFAULT_METRICS_PATH",
    "RESERVED_LABELS",
    "ServiceEntry",
    "render_target_groups",
]
