"""
Shared metrics configuration for the Access Layer permissions engine.
"""

import functools
import inspect
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info


class MetricsCollector:
    """Centralized metrics collector for the permissions engine.

    Each collector owns its registry unless one is passed in, so several
    engines (tests, embedded use) can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up the engine metrics."""
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["authorization_decisions_total"] = Counter(
            "authorization_decisions_total",
            "Total authorization decisions",
            ["entry_point", "outcome"],
            registry=self.registry
        )

        self._metrics["grant_resolutions_total"] = Counter(
            "grant_resolutions_total",
            "Total grant snapshot resolutions",
            ["source"],
            registry=self.registry
        )

        self._metrics["grant_resolution_duration_seconds"] = Histogram(
            "grant_resolution_duration_seconds",
            "Grant snapshot resolution duration in seconds",
            registry=self.registry
        )

        self._metrics["entitlement_registrations_total"] = Counter(
            "entitlement_registrations_total",
            "Total entitlement registrations",
            ["mode"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_decision(self, entry_point: str, outcome: str, count: int = 1):
        """Record authorization decisions."""
        self._metrics["authorization_decisions_total"].labels(
            entry_point=entry_point,
            outcome=outcome
        ).inc(count)

    def record_resolution(self, source: str):
        """Record where a grant snapshot came from."""
        self._metrics["grant_resolutions_total"].labels(source=source).inc()

    def record_registration(self, mode: str):
        """Record an entitlement registration (queued or immediate)."""
        self._metrics["entitlement_registrations_total"].labels(mode=mode).inc()

    def sample(self, name: str, **labels) -> float:
        """Read the current value of a sample from the registry."""
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            metric = self._metrics.get(operation_name)
            if metric is not None:
                if labels:
                    metric = metric.labels(**labels)
                metric.observe(duration)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)


def measure_time(metric_name: str, collector_attr: str = "metrics"):
    """Decorator timing a method into a histogram on `self.<collector_attr>`."""
    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(self, *args, **kwargs):
                collector = getattr(self, collector_attr, None)
                if collector is None:
                    return await func(self, *args, **kwargs)
                with collector.time_operation(metric_name):
                    return await func(self, *args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(self, *args, **kwargs):
            collector = getattr(self, collector_attr, None)
            if collector is None:
                return func(self, *args, **kwargs)
            with collector.time_operation(metric_name):
                return func(self, *args, **kwargs)

        return sync_wrapper
    return decorator
