"""Background workers for async processing tasks."""

from tryon.workers.status_sweep_worker import run_status_sweep_worker

__all__ = ["run_status_sweep_worker"]
