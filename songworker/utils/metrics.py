"""Shared Prometheus metrics helpers used across the worker."""

from __future__ import annotations

from collections.abc import Sequence
from threading import RLock
from typing import Final

from prometheus_client import CollectorRegistry, Counter, Histogram

__all__ = [
    "counter",
    "get_registry",
    "histogram",
    "observe_stage_duration",
    "observe_tick",
    "record_stage_outcome",
    "reset_registry",
]


_DEFAULT_BUCKETS: Final[tuple[float, ...]] = (
    0.005,
    0.01,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
    30.0,
    60.0,
    180.0,
)

_registry_lock = RLock()
_registry: CollectorRegistry = CollectorRegistry()
_counters: dict[tuple[str, tuple[str, ...]], Counter] = {}
_histograms: dict[tuple[str, tuple[str, ...]], Histogram] = {}


def get_registry() -> CollectorRegistry:
    """Return the registry that backs the ``/metrics`` endpoint."""

    return _registry


def reset_registry() -> None:
    """Reset the registry and cached metric objects (used in tests)."""

    global _registry
    with _registry_lock:
        _registry = CollectorRegistry()
        _counters.clear()
        _histograms.clear()


def counter(
    name: str,
    documentation: str,
    *,
    label_names: Sequence[str] | None = None,
) -> Counter:
    """Return (or create) a labelled Prometheus counter."""

    labels = tuple(label_names or ())
    cache_key = (name, labels)
    with _registry_lock:
        metric = _counters.get(cache_key)
        if metric is None:
            metric = Counter(
                name,
                documentation,
                labelnames=labels,
                registry=_registry,
            )
            _counters[cache_key] = metric
        return metric


def histogram(
    name: str,
    documentation: str,
    *,
    label_names: Sequence[str] | None = None,
    buckets: Sequence[float] | None = None,
) -> Histogram:
    """Return (or create) a labelled Prometheus histogram."""

    labels = tuple(label_names or ())
    cache_key = (name, labels)
    with _registry_lock:
        metric = _histograms.get(cache_key)
        if metric is None:
            metric = Histogram(
                name,
                documentation,
                labelnames=labels,
                buckets=tuple(buckets or _DEFAULT_BUCKETS),
                registry=_registry,
            )
            _histograms[cache_key] = metric
        return metric


def record_stage_outcome(stage: str, outcome: str) -> None:
    """Count one stage processor run by its outcome."""

    counter(
        "songworker_stage_runs_total",
        "Stage processor runs grouped by stage and outcome.",
        label_names=("stage", "outcome"),
    ).labels(stage=stage, outcome=outcome).inc()


def observe_stage_duration(stage: str, seconds: float) -> None:
    histogram(
        "songworker_stage_duration_seconds",
        "Wall-clock duration of stage processor runs.",
        label_names=("stage",),
    ).labels(stage=stage).observe(max(0.0, seconds))


def observe_tick(status: str, seconds: float) -> None:
    """Record a scheduler tick and its duration."""

    counter(
        "songworker_ticks_total",
        "Scheduler ticks grouped by status.",
        label_names=("status",),
    ).labels(status=status).inc()
    histogram(
        "songworker_tick_duration_seconds",
        "Wall-clock duration of scheduler ticks.",
    ).observe(max(0.0, seconds))
