"""
IR Playbook Action Catalogue

Closed set of privileged actions, each bound to its permission, remote
procedure, parameter schema, audit name and incident type.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .exceptions import ValidationError


class Permission(Enum):
    """Permissions a role may hold."""
    STATUS = "status"
    ISOLATE = "isolate"
    COLLECT = "collect"
    TERMINATE = "terminate"
    MEMORY_CAPTURE = "memory-capture"


class Action(Enum):
    """Actions an operator can request."""
    STATUS = "status"
    ISOLATE = "isolate"
    RELEASE = "release"
    COLLECT = "collect"
    TERMINATE = "terminate"
    MEMORY_CAPTURE = "memory-capture"

    @classmethod
    def parse(cls, tag: Any) -> "Action":
        """Parse an action tag, raising ValidationError when unknown."""
        if isinstance(tag, Action):
            return tag
        if isinstance(tag, str):
            try:
                return cls(tag.strip().lower())
            except ValueError:
                pass
        raise ValidationError(f"Unknown action: {tag}", field="action", value=tag)

    @property
    def spec(self) -> "ActionSpec":
        return ACTION_SPECS[self]


class IncidentType(Enum):
    """Incident categories opened by privileged actions."""
    HOST_ISOLATION = "HOST_ISOLATION"
    FORENSIC_COLLECTION = "FORENSIC_COLLECTION"
    PROCESS_TERMINATION = "PROCESS_TERMINATION"
    MEMORY_ACQUISITION = "MEMORY_ACQUISITION"


PROCESS_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,128}$")
COLLECT_DAYS_DEFAULT = 7
COLLECT_DAYS_RANGE = (1, 365)

ParameterBuilder = Callable[[Dict[str, Any], List[str]], Dict[str, Any]]


def _status_params(arguments: Dict[str, Any], management: List[str]) -> Dict[str, Any]:
    return {}


def _isolate_params(arguments: Dict[str, Any], management: List[str]) -> Dict[str, Any]:
    return {"Isolate": True, "AllowedHosts": list(management)}


def _release_params(arguments: Dict[str, Any], management: List[str]) -> Dict[str, Any]:
    return {"Isolate": False}


def _collect_params(arguments: Dict[str, Any], management: List[str]) -> Dict[str, Any]:
    raw = arguments.get("days_back", COLLECT_DAYS_DEFAULT)
    if isinstance(raw, bool):
        raise ValidationError("days_back must be an integer", field="days_back", value=raw)
    try:
        days = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("days_back must be an integer", field="days_back", value=raw)
    if isinstance(raw, float) and not raw.is_integer():
        raise ValidationError("days_back must be an integer", field="days_back", value=raw)

    low, high = COLLECT_DAYS_RANGE
    if not low <= days <= high:
        raise ValidationError(
            f"days_back must be between {low} and {high}",
            field="days_back",
            value=raw,
        )
    return {"DaysBack": days}


def _process_argument(arguments: Dict[str, Any]) -> str:
    value = arguments.get("process")
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Missing required argument: process", field="process")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError("process must be a name or id", field="process", value=value)

    text = str(value).strip()
    if not PROCESS_IDENTIFIER_PATTERN.match(text):
        raise ValidationError("Invalid process identifier", field="process", value=value)
    return text


def _terminate_params(arguments: Dict[str, Any], management: List[str]) -> Dict[str, Any]:
    return {"ProcessIdentifier": _process_argument(arguments)}


def _memory_params(arguments: Dict[str, Any], management: List[str]) -> Dict[str, Any]:
    pid = _process_argument(arguments)
    if not pid.isdigit():
        raise ValidationError("Memory capture requires a numeric process id", field="process", value=pid)
    return {"ProcessId": pid}


@dataclass(frozen=True)
class ActionSpec:
    """Static binding of an action to its execution and record keeping."""
    permission: Permission
    procedure: str
    build_parameters: ParameterBuilder
    audit_name: str
    incident_type: Optional[IncidentType] = None
    opens_incident: bool = False
    target_scoped: bool = True

    def parameters(
        self,
        arguments: Optional[Dict[str, Any]],
        management_addresses: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Build remote procedure parameters from operator arguments."""
        return self.build_parameters(arguments or {}, management_addresses or [])


ACTION_SPECS: Dict[Action, ActionSpec] = {
    Action.STATUS: ActionSpec(
        permission=Permission.STATUS,
        procedure="Get-SystemInfo",
        build_parameters=_status_params,
        audit_name="STATUS",
    ),
    Action.ISOLATE: ActionSpec(
        permission=Permission.ISOLATE,
        procedure="Quarantine-Host",
        build_parameters=_isolate_params,
        audit_name="ISOLATE",
        incident_type=IncidentType.HOST_ISOLATION,
        opens_incident=True,
    ),
    Action.RELEASE: ActionSpec(
        permission=Permission.ISOLATE,
        procedure="Quarantine-Host",
        build_parameters=_release_params,
        audit_name="RELEASE_ISOLATION",
        incident_type=IncidentType.HOST_ISOLATION,
    ),
    Action.COLLECT: ActionSpec(
        permission=Permission.COLLECT,
        procedure="Collect-Logs",
        build_parameters=_collect_params,
        audit_name="COLLECT_LOGS",
        incident_type=IncidentType.FORENSIC_COLLECTION,
        opens_incident=True,
    ),
    Action.TERMINATE: ActionSpec(
        permission=Permission.TERMINATE,
        procedure="Kill-Process",
        build_parameters=_terminate_params,
        audit_name="TERMINATE_PROCESS",
        incident_type=IncidentType.PROCESS_TERMINATION,
        opens_incident=True,
    ),
    Action.MEMORY_CAPTURE: ActionSpec(
        permission=Permission.MEMORY_CAPTURE,
        procedure="Get-MemoryDump",
        build_parameters=_memory_params,
        audit_name="MEMORY_CAPTURE",
        incident_type=IncidentType.MEMORY_ACQUISITION,
        opens_incident=True,
    ),
}
