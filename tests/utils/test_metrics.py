from __future__ import annotations

from songworker.utils import metrics


def _collect_metric_samples() -> dict[tuple[str, tuple[tuple[str, str], ...]], float]:
    registry = metrics.get_registry()
    samples: dict[tuple[str, tuple[tuple[str, str], ...]], float] = {}
    for metric in registry.collect():
        for sample in metric.samples:
            labels = tuple(sorted(sample.labels.items()))
            samples[(sample.name, labels)] = sample.value
    return samples


def test_counter_is_created_once_per_name_and_labels() -> None:
    first = metrics.counter("songworker_test_total", "Test counter", label_names=("kind",))
    second = metrics.counter("songworker_test_total", "Test counter", label_names=("kind",))

    assert first is second
    first.labels(kind="a").inc()
    second.labels(kind="a").inc(2)

    samples = _collect_metric_samples()
    assert samples[("songworker_test_total", (("kind", "a"),))] == 3.0


def test_stage_and_tick_recorders() -> None:
    metrics.record_stage_outcome("cover", "failed")
    metrics.record_stage_outcome("cover", "failed")
    metrics.observe_stage_duration("cover", 0.2)
    metrics.observe_tick("ok", 0.01)

    samples = _collect_metric_samples()
    assert samples[("songworker_stage_runs_total", (("outcome", "failed"), ("stage", "cover")))] == 2.0
    assert samples[("songworker_stage_duration_seconds_count", (("stage", "cover"),))] == 1.0
    assert samples[("songworker_ticks_total", (("status", "ok"),))] == 1.0
    assert samples[("songworker_tick_duration_seconds_count", ())] == 1.0


def test_reset_registry_drops_collected_values() -> None:
    metrics.record_stage_outcome("metadata", "completed")
    metrics.reset_registry()

    samples = _collect_metric_samples()
    assert ("songworker_stage_runs_total", (("outcome", "completed"), ("stage", "metadata"))) not in samples
