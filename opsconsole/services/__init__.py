"""Application services.

Services encapsulate reusable business capabilities and keep handlers thin.
"""

from .callback_recovery_service import CallbackRecoveryService
from .operation_lifecycle_service import OperationLifecycleService

__all__ = [
    "CallbackRecoveryService",
    "OperationLifecycleService",
]
