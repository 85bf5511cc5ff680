"""
IR Playbook Core Module

Configuration, action catalogue and error hierarchy shared by every
subsystem. The pipeline engine lives in ``core.engine``.
"""

from .actions import Action, IncidentType, Permission
from .config import Config, Environment
from .exceptions import (
    AuthorizationError,
    ConfigurationError,
    ConnectivityError,
    ExecutionError,
    ExecutionTimeoutError,
    IncidentNotFoundError,
    IncidentStateError,
    ParseError,
    PlaybookError,
    SpawnError,
    ValidationError,
)

__all__ = [
    "Action",
    "IncidentType",
    "Permission",
    "Config",
    "Environment",
    "PlaybookError",
    "ValidationError",
    "AuthorizationError",
    "ConnectivityError",
    "ExecutionTimeoutError",
    "ExecutionError",
    "SpawnError",
    "ParseError",
    "IncidentNotFoundError",
    "IncidentStateError",
    "ConfigurationError",
]
