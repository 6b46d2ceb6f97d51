"""Batch illustration job orchestrator."""

from .errors import IlluBatchError
from .models import TaskPriority, TaskStatus
from .service import BatchService

__version__ = "0.1.0"

__all__ = ["BatchService", "IlluBatchError", "TaskPriority", "TaskStatus", "__version__"]
