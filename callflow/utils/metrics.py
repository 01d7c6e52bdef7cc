"""
Métricas Prometheus do controlador de chamadas.

Cada CallController recebe seu próprio CollectorRegistry, então várias
instâncias (e os testes) não colidem no registry global.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


class CallFlowMetrics:
    """Contadores do ciclo de vida da chamada."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.transitions_total = Counter(
            'callflow_transitions_total',
            'Canonical state transitions',
            ['from_state', 'to_state', 'synthesized'],
            registry=self.registry
        )
        self.admissions_total = Counter(
            'callflow_admissions_total',
            'Admission decisions',
            ['outcome'],
            registry=self.registry
        )
        self.watchdog_expired_total = Counter(
            'callflow_watchdog_expired_total',
            'Watchdog forced failures',
            ['state'],
            registry=self.registry
        )
        self.failures_total = Counter(
            'callflow_failures_total',
            'Call failures by classified kind',
            ['kind', 'user_facing'],
            registry=self.registry
        )
        self.stale_events_total = Counter(
            'callflow_stale_events_total',
            'Transport events dropped for an inactive call handle',
            registry=self.registry
        )
        self.call_duration = Histogram(
            'callflow_call_duration_seconds',
            'Answered call duration',
            ['status'],
            buckets=[5, 15, 30, 60, 120, 300, 600, 1800],
            registry=self.registry
        )
        self.active_call = Gauge(
            'callflow_active_call',
            '1 while a session exists',
            registry=self.registry
        )

    def record_transition(self, from_state: str, to_state: str, synthesized: bool = False) -> None:
        self.transitions_total.labels(
            from_state=from_state,
            to_state=to_state,
            synthesized=str(synthesized).lower()
        ).inc()

    def record_admission(self, outcome: str) -> None:
        """outcome: allowed, in_progress, no_audio, invalid_number, rate_limited"""
        self.admissions_total.labels(outcome=outcome).inc()

    def record_watchdog_expired(self, state: str) -> None:
        self.watchdog_expired_total.labels(state=state).inc()

    def record_failure(self, kind: str, user_facing: bool) -> None:
        self.failures_total.labels(kind=kind, user_facing=str(user_facing).lower()).inc()

    def record_stale_event(self) -> None:
        self.stale_events_total.inc()

    def record_call_finished(self, status: str, duration_seconds: float) -> None:
        self.active_call.set(0)
        if duration_seconds > 0:
            self.call_duration.labels(status=status).observe(duration_seconds)
        logger.debug(
            "Call finished",
            extra={"status": status, "duration_seconds": duration_seconds}
        )

    def session_started(self) -> None:
        self.active_call.set(1)

    def get_sample(self, name: str, labels: Optional[dict] = None) -> float:
        """Lê um valor do registry (0.0 se ausente)."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0
