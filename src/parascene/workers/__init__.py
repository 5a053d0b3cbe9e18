"""Creation job execution and dispatch."""

from parascene.workers.creation_job import make_job_runner, run_creation_job
from parascene.workers.dispatch import InProcessDispatcher, QueueDispatcher, build_dispatcher

__all__ = [
    "run_creation_job",
    "make_job_runner",
    "build_dispatcher",
    "InProcessDispatcher",
    "QueueDispatcher",
]
