from .metrics import CallControlMetrics, get_metrics, reset_metrics

__all__ = [
    "CallControlMetrics",
    "get_metrics",
    "reset_metrics",
]
