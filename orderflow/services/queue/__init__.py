"""
Durable order queue and its polling processor.
"""

from orderflow.services.queue.durable_queue import DurableQueue
from orderflow.services.queue.processor import BatchResult, QueueProcessor

__all__ = [
    "DurableQueue",
    "QueueProcessor",
    "BatchResult",
]
