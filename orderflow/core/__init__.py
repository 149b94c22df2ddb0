"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from orderflow.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from orderflow.core.exceptions import (
    OrderflowError,
    OrderValidationError,
    TransientInfraError,
    PermanentProcessingError,
    PaymentAmountError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "OrderflowError",
    "OrderValidationError",
    "TransientInfraError",
    "PermanentProcessingError",
    "PaymentAmountError",
]
