"""
                Order Processing Pipeline

Queue-backed food-order processing: pricing, hybrid order storage,
payment links and restaurant notification with at-least-once delivery.

Version: 1.0.0
"""

__version__ = "1.0.0"
