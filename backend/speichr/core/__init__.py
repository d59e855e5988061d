"""
Speichr - Core Package
======================

Domain schemas, persistence ports and adapters, and the orchestration core.
"""

from speichr.core.config import settings
from speichr.core.errors import ErrorCode, OperationFailure

__all__ = ["ErrorCode", "OperationFailure", "settings"]
