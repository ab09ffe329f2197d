"""VendorSign worker service.

PostgreSQL-backed background job runner for document signing jobs.

Usage:
    # Run as module
    python -m vendorsign.worker

    # Or via the console script
    vendorsign-worker
"""

from vendorsign.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
