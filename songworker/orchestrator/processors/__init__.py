"""Stage processors dispatched by the scheduler."""

from songworker.orchestrator.processors.audio import (
    build_submit_request,
    poll_song,
    process_poll,
    process_submit,
    save_song,
)
from songworker.orchestrator.processors.base import ProcessorDeps, truncate_error
from songworker.orchestrator.processors.cover import process_cover
from songworker.orchestrator.processors.metadata import (
    choose_distance,
    is_duplicate,
    process_metadata,
)
from songworker.orchestrator.processors.queue_keeper import planned_order_index, process_queue
from songworker.orchestrator.processors.retry import process_retries
from songworker.orchestrator.processors.stale import process_stale

__all__ = [
    "ProcessorDeps",
    "build_submit_request",
    "choose_distance",
    "is_duplicate",
    "planned_order_index",
    "poll_song",
    "process_cover",
    "process_metadata",
    "process_poll",
    "process_queue",
    "process_retries",
    "process_stale",
    "process_submit",
    "save_song",
    "truncate_error",
]
