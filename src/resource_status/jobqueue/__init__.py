"""
Durable work queue for collection requests.

Components:
- models: request, state, backoff and handle types
- connection: self-healing SQLite connection with a logged state machine
- work_queue: enqueue/dequeue/ack/nack with retry, dead-letter and retention
"""

from resource_status.jobqueue.connection import ConnectionState, QueueConnection
from resource_status.jobqueue.models import (
    AckHandle,
    BackoffPolicy,
    CollectionRequest,
    EnqueueOptions,
    RequestState,
)
from resource_status.jobqueue.work_queue import WorkQueue

__all__ = [
    "AckHandle",
    "BackoffPolicy",
    "CollectionRequest",
    "ConnectionState",
    "EnqueueOptions",
    "QueueConnection",
    "RequestState",
    "WorkQueue",
]
