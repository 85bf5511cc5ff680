"""
IR Playbook Core Engine

Main pipeline coordinating target resolution, authorization, remote
execution, result normalization, auditing and incident correlation.

Every request that reaches authorization is audited before its result is
returned to the caller.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .actions import Action
from .config import Config, Environment
from .exceptions import (
    AuthorizationError,
    ConfigurationError,
    ExecutionError,
    PlaybookError,
    ValidationError,
)
from ..audit import AuditLedger, AuditOutcome
from ..authorization import Actor, AuthorizationGate, RoleSnapshot
from ..executor import RemoteExecutor
from ..incidents import Incident, IncidentCorrelator
from ..normalizer import ResultNormalizer
from ..targets import ReachabilityProbe, TargetDirectory, TargetSnapshot

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Engine operational states."""
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class CommandRequest:
    """One operator command, consumed once."""
    actor: Actor
    action: Any
    target: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None
    incident_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandRequest":
        """Build a request from the command surface payload."""
        if not isinstance(data, dict):
            raise ValidationError("Command must be an object")

        actor_data = data.get("actor")
        if not isinstance(actor_data, dict) or not actor_data.get("id"):
            raise ValidationError("Actor id is required", field="actor")
        if isinstance(actor_data["id"], bool) or not isinstance(actor_data["id"], (str, int)):
            raise ValidationError("Actor id must be a string or integer", field="actor.id", value=actor_data["id"])
        if not isinstance(actor_data.get("name") or "", str):
            raise ValidationError("Actor name must be a string", field="actor.name", value=actor_data["name"])

        arguments = data.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise ValidationError("arguments must be an object", field="arguments")

        return cls(
            actor=Actor(id=str(actor_data["id"]), name=str(actor_data.get("name") or "")),
            action=data.get("action"),
            target=data.get("target"),
            arguments=arguments,
            timeout=data.get("timeout"),
            incident_id=data.get("incident_id"),
        )


@dataclass
class InvocationResult:
    """Outcome of one command: a canonical value or a classified error."""
    ok: bool
    action: str
    target: Optional[str]
    value: Any = None
    error: Optional[PlaybookError] = None
    resolved_target: Optional[str] = None
    audit_event_id: Optional[str] = None
    incident_id: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "ok": self.ok,
            "action": self.action,
            "target": self.target,
            "resolved_target": self.resolved_target,
            "audit_event_id": self.audit_event_id,
            "incident_id": self.incident_id,
            "duration_ms": round(self.duration_ms, 2),
        }
        if self.ok:
            data["value"] = self.value
        else:
            data.update(self.error.to_dict())
        return data


class PlaybookEngine:
    """
    Main IR Playbook engine.

    Coordinates all subsystems:
    - Target Directory and Reachability Probe
    - Authorization Gate
    - Remote Executor and Result Normalizer
    - Audit Ledger
    - Incident Correlator
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        targets: Optional[TargetDirectory] = None,
        gate: Optional[AuthorizationGate] = None,
        executor: Optional[RemoteExecutor] = None,
        normalizer: Optional[ResultNormalizer] = None,
        ledger: Optional[AuditLedger] = None,
        incidents: Optional[IncidentCorrelator] = None,
        probe: Optional[ReachabilityProbe] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Configuration object. Uses defaults if not provided.
            Remaining arguments replace the default subsystem instances.
        """
        from .. import __version__

        self.config = config or Config()
        self.state = EngineState.INITIALIZING
        self.engine_id = uuid4()
        self.start_time: Optional[datetime] = None

        self.targets = targets or TargetDirectory()
        self.gate = gate or AuthorizationGate()
        self.executor = executor or RemoteExecutor(self.config.execution)
        self.normalizer = normalizer or ResultNormalizer(self.config.normalizer)
        self.ledger = ledger or AuditLedger(self.config.audit, version=__version__)
        self.incidents = incidents or IncidentCorrelator()
        self.probe = probe or ReachabilityProbe(
            port=self.config.execution.winrm_port,
            timeout_seconds=self.config.execution.probe_timeout_seconds,
        )

        logger.info(f"PlaybookEngine initialized: {self.engine_id}")

    async def start(self) -> None:
        """Validate configuration, load snapshots and become ready."""
        logger.info("Starting IR Playbook engine...")

        try:
            errors = self.config.validate()
            if errors:
                raise ConfigurationError(
                    "Invalid configuration",
                    source="config",
                    errors=errors,
                )

            self._load_snapshots()

            if self.config.environment == Environment.PRODUCTION and self.gate.permissive:
                raise ConfigurationError(
                    "Production requires authentication; permissive authorization is not allowed",
                    source="roles",
                )

            if self.gate.permissive:
                logger.warning("Authorization is permissive: every actor may perform every action")

            self.state = EngineState.READY
            self.start_time = datetime.utcnow()
            logger.info("IR Playbook engine started successfully")

        except PlaybookError as e:
            self.state = EngineState.ERROR
            logger.error(f"Failed to start engine: {e}")
            raise

    async def stop(self) -> None:
        """Stop the engine, killing any in-flight invocation."""
        logger.info("Stopping IR Playbook engine...")
        self.state = EngineState.SHUTTING_DOWN
        await self.executor.stop()
        self.state = EngineState.STOPPED
        logger.info("IR Playbook engine stopped")

    def _load_snapshots(self) -> None:
        # Load both before swapping either
        targets = roles = None
        if self.config.targets_path:
            targets = TargetSnapshot.from_file(self.config.targets_path)
        if self.config.roles_path:
            roles = RoleSnapshot.from_file(self.config.roles_path)

        if targets is not None:
            self.targets.reload(targets)
        if roles is not None:
            self.gate.reload(roles)

    def reload(self) -> Dict[str, int]:
        """Re-read target and role files, swapping each snapshot whole."""
        self._load_snapshots()
        self.executor.registry.clear()
        return {
            "targets": len(self.targets.snapshot.targets),
            "roles": len(self.gate.snapshot.roles),
        }

    def management_addresses(self) -> List[str]:
        """Hosts kept reachable while a target is isolated."""
        return list(self.config.execution.management_addresses) or self.targets.management_addresses

    def _redact(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        text = self.executor.credentials.redact(text)
        for secret in self.config.secrets():
            text = text.replace(secret, "***")
        return text

    def _scrub(self, error: PlaybookError) -> PlaybookError:
        error.message = self._redact(error.message)
        error.args = (error.message,)
        for key, value in list(error.details.items()):
            if isinstance(value, str):
                error.details[key] = self._redact(value)
        return error

    def _validate(self, request: CommandRequest) -> Dict[str, Any]:
        action = Action.parse(request.action)
        spec = action.spec

        if spec.target_scoped:
            self.targets.validate(request.target)

        if request.timeout is not None:
            if isinstance(request.timeout, bool) or not isinstance(request.timeout, (int, float)) \
                    or request.timeout <= 0 \
                    or (isinstance(request.timeout, float) and not math.isfinite(request.timeout)):
                raise ValidationError("timeout must be a positive number", field="timeout", value=request.timeout)

        if action == Action.ISOLATE and not self.management_addresses():
            logger.warning("Isolating with no management addresses configured")

        params = spec.parameters(request.arguments, self.management_addresses())

        if request.incident_id is not None:
            if not isinstance(request.incident_id, str):
                raise ValidationError(
                    "incident_id must be a string",
                    field="incident_id",
                    value=request.incident_id,
                )
            incident = self.incidents.repository.get(request.incident_id)
            if incident is None:
                raise ValidationError(
                    f"Unknown incident: {request.incident_id}",
                    field="incident_id",
                    value=request.incident_id,
                )
            if not incident.is_open:
                raise ValidationError(
                    f"Incident {request.incident_id} is closed",
                    field="incident_id",
                    value=request.incident_id,
                )

        return {"action": action, "params": params}

    async def execute(self, request: CommandRequest) -> InvocationResult:
        """
        Run one command through the pipeline.

        Never raises for pipeline failures; the classified error is carried
        on the returned InvocationResult.
        """
        started = time.monotonic()
        actor = request.actor.to_dict()
        action_tag = str(request.action)

        try:
            validated = self._validate(request)
        except ValidationError as e:
            logger.warning(
                f"Rejected {action_tag} request from {actor['id']}: {e.message}",
                extra={"actor": actor["id"], "action": action_tag, "target": request.target},
            )
            return InvocationResult(
                ok=False,
                action=action_tag,
                target=request.target,
                error=e,
                duration_ms=(time.monotonic() - started) * 1000,
            )

        action: Action = validated["action"]
        spec = action.spec
        target = request.target.strip()
        resolved = self.targets.resolve(target)

        decision = self.gate.authorize(request.actor, action)
        if not decision.allowed:
            error = AuthorizationError(
                f"You do not have permission to perform {action.value}",
                actor_id=request.actor.id,
                role=decision.role,
                permission=decision.permission.value,
            )
            entry = self.ledger.record(
                action=spec.audit_name,
                actor=actor,
                target=target,
                outcome=AuditOutcome.DENIED,
                error=f"{error.message} ({decision.reason})",
                resolved_target=resolved,
            )
            return InvocationResult(
                ok=False,
                action=action.value,
                target=target,
                error=error,
                resolved_target=resolved,
                audit_event_id=entry["event_id"],
                duration_ms=(time.monotonic() - started) * 1000,
            )

        value = None
        error: Optional[PlaybookError] = None
        invoke_started = time.monotonic()
        try:
            if self.config.execution.preflight_check:
                await self.probe.check(resolved)
            raw = await self.executor.invoke(
                resolved,
                spec.procedure,
                validated["params"],
                timeout=request.timeout,
            )
            value = self.normalizer.normalize(raw)
        except PlaybookError as e:
            error = self._scrub(e)
        except Exception as e:
            logger.exception(f"Unexpected error executing {action.value} on {resolved}")
            error = self._scrub(ExecutionError(f"Unexpected error: {e}"))
        duration_ms = (time.monotonic() - invoke_started) * 1000

        incident = self._correlate(request, action, resolved, actor)
        incident_id = incident.incident_id if incident else None

        entry = self.ledger.record(
            action=spec.audit_name,
            actor=actor,
            target=target,
            outcome=AuditOutcome.SUCCESS if error is None else AuditOutcome.FAILED,
            details=value if error is None else None,
            error=error.message if error else None,
            resolved_target=resolved,
            incident_id=incident_id,
            duration_ms=duration_ms,
        )

        if incident:
            self._attach(incident, action, actor, entry, error)

        return InvocationResult(
            ok=error is None,
            action=action.value,
            target=target,
            value=value,
            error=error,
            resolved_target=resolved,
            audit_event_id=entry["event_id"],
            incident_id=incident_id,
            duration_ms=(time.monotonic() - started) * 1000,
        )

    def _correlate(
        self,
        request: CommandRequest,
        action: Action,
        resolved: str,
        actor: Dict[str, str],
    ) -> Optional[Incident]:
        if request.incident_id:
            return self.incidents.get(request.incident_id)

        incident = self.incidents.find_open(resolved)
        if incident:
            return incident

        spec = action.spec
        if spec.opens_incident and spec.incident_type:
            return self.incidents.open(spec.incident_type.value, resolved, actor)
        return None

    def _attach(
        self,
        incident: Incident,
        action: Action,
        actor: Dict[str, str],
        entry: Dict[str, Any],
        error: Optional[PlaybookError],
    ) -> None:
        record = {
            "action": action.spec.audit_name,
            "audit_event_id": entry["event_id"],
            "outcome": entry["outcome"],
            "actor": actor,
        }
        if error:
            record["error"] = error.message

        try:
            self.incidents.append_action(incident.incident_id, record)
        except PlaybookError as e:
            logger.warning(f"Could not attach {entry['event_id']} to {incident.incident_id}: {e.message}")

    def close_incident(self, incident_id: str, resolution: str, actor: Actor) -> Incident:
        """Close an incident and audit the close."""
        incident = self.incidents.close(incident_id, resolution, actor.to_dict())
        self.ledger.record(
            action="CLOSE_INCIDENT",
            actor=actor.to_dict(),
            target=incident.target,
            outcome=AuditOutcome.SUCCESS,
            details={"resolution": resolution},
            incident_id=incident_id,
        )
        return incident

    def add_incident_note(self, incident_id: str, text: str, actor: Actor) -> Incident:
        if not text or not text.strip():
            raise ValidationError("Note text is required", field="text")
        return self.incidents.add_note(incident_id, text.strip(), actor.to_dict())

    def get_status(self) -> Dict[str, Any]:
        uptime = (datetime.utcnow() - self.start_time).total_seconds() if self.start_time else 0.0
        return {
            "engine_id": str(self.engine_id),
            "state": self.state.value,
            "environment": self.config.environment.value,
            "uptime_seconds": uptime,
            "targets": len(self.targets.snapshot.targets),
            "roles": len(self.gate.snapshot.roles),
            "authentication_required": not self.gate.permissive,
            "active_invocations": self.executor.active_count,
            "open_incidents": len(self.incidents.list(status="OPEN")),
            "audit": self.ledger.get_stats(),
        }
