"""
IR Playbook - Incident Response Command Pipeline

Authorized, audited execution of incident response actions (status,
isolation, forensic collection, process termination, memory capture)
against remote Windows endpoints.

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "IR Playbook Team"

from .core.config import Config
from .core.engine import CommandRequest, InvocationResult, PlaybookEngine
from .core.exceptions import (
    AuthorizationError,
    ExecutionError,
    ExecutionTimeoutError,
    ParseError,
    PlaybookError,
    ValidationError,
)

__all__ = [
    "PlaybookEngine",
    "CommandRequest",
    "InvocationResult",
    "Config",
    "PlaybookError",
    "ValidationError",
    "AuthorizationError",
    "ExecutionTimeoutError",
    "ExecutionError",
    "ParseError",
]
