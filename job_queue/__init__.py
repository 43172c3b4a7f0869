"""
Job Queue — Durable outbound notification queue and its worker.

- Producers (registration flow, webhook handler) enqueue Messages
- An external cron tick runs DispatchWorker.run_once()
- Supports SQL (PostgreSQL / SQLite) and in-memory backends
"""
from job_queue.message_queue import (
    BaseQueueStore,
    InMemoryQueueStore,
    backoff_delay,
    create_queue_store,
    make_dedupe_key,
)
from job_queue.consumer import DispatchWorker

__all__ = [
    "BaseQueueStore", "InMemoryQueueStore", "create_queue_store",
    "backoff_delay", "make_dedupe_key",
    "DispatchWorker",
]
