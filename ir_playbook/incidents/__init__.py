"""
IR Playbook Incident Correlator

Groups privileged actions against a target into incidents. Incident state
lives for the lifetime of the process only.
"""

import copy
import logging
import secrets
import string
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.exceptions import IncidentNotFoundError, IncidentStateError

logger = logging.getLogger(__name__)

INCIDENT_ID_ALPHABET = string.ascii_uppercase + string.digits


class IncidentStatus(Enum):
    """Incident lifecycle states."""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


def generate_incident_id(now: Optional[datetime] = None) -> str:
    """Generate a date-prefixed incident id: INC-YYYYMMDD-XXXXXX."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(INCIDENT_ID_ALPHABET) for _ in range(6))
    return f"INC-{now.strftime('%Y%m%d')}-{suffix}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Incident:
    """An incident and its ordered trail of actions and notes."""
    incident_id: str
    type: str
    target: str
    created_by: Dict[str, str]
    status: IncidentStatus = IncidentStatus.OPEN
    created_at: str = field(default_factory=_now)
    updated_at: Optional[str] = None
    actions: List[Dict[str, Any]] = field(default_factory=list)
    notes: List[Dict[str, Any]] = field(default_factory=list)
    closed_by: Optional[Dict[str, str]] = None
    closed_at: Optional[str] = None
    resolution: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == IncidentStatus.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "type": self.type,
            "target": self.target,
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "actions": list(self.actions),
            "notes": list(self.notes),
            "closed_by": self.closed_by,
            "closed_at": self.closed_at,
            "resolution": self.resolution,
        }


class IncidentRepository(ABC):
    """Storage for incidents."""

    @abstractmethod
    def add(self, incident: Incident) -> None:
        ...

    @abstractmethod
    def get(self, incident_id: str) -> Optional[Incident]:
        ...

    @abstractmethod
    def all(self) -> List[Incident]:
        ...


class InMemoryIncidentRepository(IncidentRepository):
    """Process-lifetime incident storage."""

    def __init__(self):
        self._incidents: Dict[str, Incident] = {}
        self._lock = threading.RLock()

    def add(self, incident: Incident) -> None:
        with self._lock:
            self._incidents[incident.incident_id] = incident

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            return self._incidents.get(incident_id)

    def all(self) -> List[Incident]:
        with self._lock:
            return list(self._incidents.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._incidents)


class IncidentCorrelator:
    """
    Incident lifecycle over a repository.

    All mutation happens under one lock. Callers receive copies, never the
    stored records.
    """

    def __init__(self, repository: Optional[IncidentRepository] = None):
        self.repository = repository or InMemoryIncidentRepository()
        self._lock = threading.RLock()

    def _require(self, incident_id: str) -> Incident:
        incident = self.repository.get(incident_id)
        if incident is None:
            raise IncidentNotFoundError(incident_id)
        return incident

    def open(self, incident_type: str, target: str, actor: Dict[str, str]) -> Incident:
        """Create a new OPEN incident."""
        with self._lock:
            incident_id = generate_incident_id()
            while self.repository.get(incident_id) is not None:
                incident_id = generate_incident_id()

            incident = Incident(
                incident_id=incident_id,
                type=incident_type,
                target=target,
                created_by=dict(actor),
            )
            self.repository.add(incident)

        logger.info(
            f"Incident {incident_id} opened ({incident_type}) for {target}",
            extra={"incident_id": incident_id, "target": target},
        )
        return copy.deepcopy(incident)

    def append_action(self, incident_id: str, action: Dict[str, Any]) -> Incident:
        """Append an action record. Closed incidents accept no further actions."""
        with self._lock:
            incident = self._require(incident_id)
            if not incident.is_open:
                raise IncidentStateError(
                    f"Incident {incident_id} is closed",
                    incident_id=incident_id,
                    status=incident.status.value,
                )
            incident.actions.append({**action, "timestamp": _now()})
            incident.updated_at = _now()
            return copy.deepcopy(incident)

    def add_note(self, incident_id: str, text: str, author: Dict[str, str]) -> Incident:
        with self._lock:
            incident = self._require(incident_id)
            incident.notes.append({
                "text": text,
                "author": dict(author),
                "timestamp": _now(),
            })
            incident.updated_at = _now()
            return copy.deepcopy(incident)

    def close(self, incident_id: str, resolution: str, actor: Dict[str, str]) -> Incident:
        """Transition OPEN to CLOSED. Closing a non-OPEN incident is an error."""
        with self._lock:
            incident = self._require(incident_id)
            if not incident.is_open:
                raise IncidentStateError(
                    f"Incident {incident_id} is already {incident.status.value}",
                    incident_id=incident_id,
                    status=incident.status.value,
                )
            incident.status = IncidentStatus.CLOSED
            incident.closed_by = dict(actor)
            incident.closed_at = _now()
            incident.updated_at = incident.closed_at
            incident.resolution = resolution
            closed = copy.deepcopy(incident)

        logger.info(
            f"Incident {incident_id} closed: {resolution}",
            extra={"incident_id": incident_id},
        )
        return closed

    def get(self, incident_id: str) -> Incident:
        with self._lock:
            return copy.deepcopy(self._require(incident_id))

    def list(
        self,
        status: Optional[str] = None,
        target: Optional[str] = None,
        incident_type: Optional[str] = None,
    ) -> List[Incident]:
        with self._lock:
            incidents = self.repository.all()
            if status:
                incidents = [i for i in incidents if i.status.value == status]
            if target:
                incidents = [i for i in incidents if i.target == target]
            if incident_type:
                incidents = [i for i in incidents if i.type == incident_type]
            incidents.sort(key=lambda i: i.created_at)
            return copy.deepcopy(incidents)

    def find_open(self, target: str) -> Optional[Incident]:
        """Most recently opened OPEN incident for a target, if any."""
        open_incidents = self.list(status=IncidentStatus.OPEN.value, target=target)
        return open_incidents[-1] if open_incidents else None
