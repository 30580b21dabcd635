"""
Métricas Prometheus do controle de chamadas.

Usa um CollectorRegistry próprio para não colidir com o registry global
da aplicação hospedeira; exponha com prometheus_client.generate_latest(
get_metrics().registry).
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

logger = logging.getLogger(__name__)


class CallControlMetrics:
    """Contadores de transferências e operações de chamada."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.transfers_total = Counter(
            'callcontrol_transfers_total',
            'Total transfer attempts by outcome',
            ['transfer_type', 'outcome'],
            registry=self.registry,
        )
        self.transfer_duration = Histogram(
            'callcontrol_transfer_duration_seconds',
            'Time from transfer initiation to terminal state',
            ['transfer_type'],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
            registry=self.registry,
        )
        self.call_operations_total = Counter(
            'callcontrol_call_operations_total',
            'CallSession operations by outcome',
            ['operation', 'outcome'],
            registry=self.registry,
        )

    def record_transfer(self, transfer_type: str, outcome: str, duration_seconds: Optional[float] = None) -> None:
        self.transfers_total.labels(transfer_type=transfer_type, outcome=outcome).inc()
        if duration_seconds is not None:
            self.transfer_duration.labels(transfer_type=transfer_type).observe(duration_seconds)

    def record_call_operation(self, operation: str, success: bool) -> None:
        outcome = "success" if success else "failure"
        self.call_operations_total.labels(operation=operation, outcome=outcome).inc()

    def get_sample(self, name: str, **labels) -> float:
        """Valor atual de uma amostra (0.0 se inexistente)."""
        value = self.registry.get_sample_value(name, labels)
        return value or 0.0


_metrics: Optional[CallControlMetrics] = None


def get_metrics() -> CallControlMetrics:
    """Retorna instância global de métricas."""
    global _metrics
    if _metrics is None:
        _metrics = CallControlMetrics()
    return _metrics


def reset_metrics() -> None:
    global _metrics
    _metrics = None
