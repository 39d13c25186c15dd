"""
Prometheus metrics for kube-dethrottler.
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from .detectors import Period, Verdict
from .load import LoadAverages

logger = logging.getLogger(__name__)


class DethrottlerMetrics:
    """Observability sink passed to the components that emit events.

    Owns its registry so that nothing is registered process-wide.
    """

    def __init__(self, node_name: str, registry: Optional[CollectorRegistry] = None):
        self.node_name = node_name
        self.registry = registry if registry is not None else CollectorRegistry()

        self.load_average_1m = Gauge(
            "kube_dethrottler_load_average_1m",
            "The 1-minute normalized load average (load/cpu_cores)",
            ["node"],
            registry=self.registry,
        )
        self.load_average_5m = Gauge(
            "kube_dethrottler_load_average_5m",
            "The 5-minute normalized load average (load/cpu_cores)",
            ["node"],
            registry=self.registry,
        )
        self.load_average_15m = Gauge(
            "kube_dethrottler_load_average_15m",
            "The 15-minute normalized load average (load/cpu_cores)",
            ["node"],
            registry=self.registry,
        )
        self.node_tainted = Gauge(
            "kube_dethrottler_node_tainted",
            "Whether the node is currently tainted (1 = tainted, 0 = not tainted)",
            ["node"],
            registry=self.registry,
        )
        self.taint_operations = Counter(
            "kube_dethrottler_taint_operations",
            "Total number of taint operations performed",
            ["node", "operation", "status"],
            registry=self.registry,
        )
        self.threshold_exceeded = Gauge(
            "kube_dethrottler_threshold_exceeded",
            "Whether a specific threshold is exceeded (1 = exceeded, 0 = normal)",
            ["node", "metric"],
            registry=self.registry,
        )

    def observe_load(self, normalized: LoadAverages):
        self.load_average_1m.labels(node=self.node_name).set(normalized.load_1m)
        self.load_average_5m.labels(node=self.node_name).set(normalized.load_5m)
        self.load_average_15m.labels(node=self.node_name).set(normalized.load_15m)

    def observe_verdict(self, verdict: Verdict):
        for period in Period:
            self.threshold_exceeded.labels(node=self.node_name, metric=period.value).set(
                1 if period in verdict.exceeded else 0
            )

    def set_tainted(self, tainted: bool):
        self.node_tainted.labels(node=self.node_name).set(1 if tainted else 0)

    def record_operation(self, operation: str, success: bool):
        status = "success" if success else "failure"
        self.taint_operations.labels(node=self.node_name, operation=operation, status=status).inc()

    def serve(self, port: int):
        """Expose the registry over HTTP on the given port"""
        start_http_server(port, registry=self.registry)
        logger.info(f"Serving metrics on :{port}/metrics")
