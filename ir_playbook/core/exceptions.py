"""
IR Playbook Exception Hierarchy

Classified errors for the command execution pipeline.
"""

from typing import Any, Dict, List, Optional


class PlaybookError(Exception):
    """Base exception for all IR Playbook errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "PLAYBOOK_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PlaybookError):
    """Raised when a request is malformed or missing input."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
    ):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={
                "field": field,
                "value": value,
            },
        )
        self.field = field
        self.value = value


class AuthorizationError(PlaybookError):
    """Raised when an actor lacks the permission for an action."""

    def __init__(
        self,
        message: str,
        actor_id: Optional[str] = None,
        role: Optional[str] = None,
        permission: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="AUTHORIZATION_DENIED",
            details={
                "actor_id": actor_id,
                "role": role,
                "permission": permission,
            },
        )
        self.actor_id = actor_id
        self.role = role
        self.permission = permission


class ConnectivityError(PlaybookError):
    """Raised when a target is unreachable before invocation."""

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        endpoint: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="TARGET_UNREACHABLE",
            details={
                "target": target,
                "endpoint": endpoint,
            },
        )
        self.target = target
        self.endpoint = endpoint


class ExecutionTimeoutError(PlaybookError):
    """Raised when a remote invocation exceeds its deadline."""

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        procedure: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="EXECUTION_TIMEOUT",
            details={
                "timeout_seconds": timeout_seconds,
                "procedure": procedure,
            },
        )
        self.timeout_seconds = timeout_seconds
        self.procedure = procedure


class ExecutionError(PlaybookError):
    """Raised when a remote procedure ran but signaled failure."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        remote_details: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="EXECUTION_FAILED",
            details={
                "exit_code": exit_code,
                "stderr": stderr,
                "remote_details": remote_details,
            },
        )
        self.exit_code = exit_code
        self.stderr = stderr
        self.remote_details = remote_details


class SpawnError(ExecutionError):
    """Raised when the invocation could not be started at all."""

    def __init__(self, message: str, executable: Optional[str] = None):
        super().__init__(message)
        self.code = "SPAWN_FAILED"
        self.details["executable"] = executable
        self.executable = executable


class ParseError(PlaybookError):
    """Raised when output cannot be normalized into a canonical value."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        excerpt: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="PARSE_ERROR",
            details={
                "stage": stage,
                "excerpt": excerpt,
            },
        )
        self.stage = stage
        self.excerpt = excerpt


class IncidentNotFoundError(PlaybookError):
    """Raised when an incident id is unknown."""

    def __init__(self, incident_id: str):
        super().__init__(
            f"Incident not found: {incident_id}",
            code="INCIDENT_NOT_FOUND",
            details={"incident_id": incident_id},
        )
        self.incident_id = incident_id


class IncidentStateError(PlaybookError):
    """Raised when an incident transition is not allowed from its state."""

    def __init__(
        self,
        message: str,
        incident_id: Optional[str] = None,
        status: Optional[str] = None,
    ):
        super().__init__(
            message,
            code="INCIDENT_STATE_ERROR",
            details={
                "incident_id": incident_id,
                "status": status,
            },
        )
        self.incident_id = incident_id
        self.status = status


class ConfigurationError(PlaybookError):
    """Raised when configuration is missing or inconsistent."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={
                "source": source,
                "errors": errors or [],
            },
        )
        self.source = source
        self.errors = errors or []
