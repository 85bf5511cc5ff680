"""
IR Playbook Audit Ledger

Append-only JSON-lines record of every authorized, denied and failed action:
- One whole line per entry, written with a single append
- Local log fallback when the store cannot be written
- Query, summary and CSV export
- Per-entry HMAC with per-day keys derived by HKDF
"""

import csv
import hashlib
import hmac
import io
import json
import logging
import os
import secrets
import string
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..core.config import AuditConfig
from ..core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

EVENT_ID_ALPHABET = string.ascii_uppercase + string.digits
CSV_HEADERS = [
    "Timestamp", "Event ID", "Action", "Actor ID", "Actor Name",
    "Target", "Outcome", "Incident ID", "Error",
]


class AuditOutcome(Enum):
    """Event outcomes."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    DENIED = "DENIED"


def generate_event_id(now: Optional[datetime] = None) -> str:
    """Generate a date-prefixed event id: IR-YYYYMMDD-XXXXXX."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(EVENT_ID_ALPHABET) for _ in range(6))
    return f"IR-{now.strftime('%Y%m%d')}-{suffix}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def parse_query_time(value: Optional[str], name: str) -> Optional[datetime]:
    """Parse an ISO-8601 filter bound, raising ValidationError when malformed."""
    if not value:
        return None
    ts = parse_timestamp(value)
    if ts is None:
        raise ValidationError(f"Invalid {name} timestamp", field=name, value=value)
    return ts


@dataclass
class AuditQuery:
    """Conjunctive filters over the ledger."""
    action: Optional[str] = None
    actor_id: Optional[str] = None
    target: Optional[str] = None
    outcome: Optional[str] = None
    incident_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = None

    def matches(self, entry: Dict[str, Any]) -> bool:
        if self.action and entry.get("action") != self.action:
            return False
        if self.actor_id and (entry.get("actor") or {}).get("id") != self.actor_id:
            return False
        if self.target and self.target not in (entry.get("target"), entry.get("resolved_target")):
            return False
        if self.outcome and entry.get("outcome") != self.outcome:
            return False
        if self.incident_id and entry.get("incident_id") != self.incident_id:
            return False

        if self.since or self.until:
            ts = parse_timestamp(entry.get("timestamp"))
            if ts is None:
                return False
            if self.since and ts < self.since:
                return False
            if self.until and ts > self.until:
                return False

        return True


@dataclass
class VerificationReport:
    """Result of re-computing entry HMACs."""
    total: int = 0
    verified: int = 0
    unsigned: int = 0
    malformed: int = 0
    mismatched: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.mismatched and not self.malformed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "total": self.total,
            "verified": self.verified,
            "unsigned": self.unsigned,
            "malformed": self.malformed,
            "mismatched": self.mismatched,
        }


class EntrySigner:
    """HMAC-SHA256 over canonical entry JSON with per-day HKDF keys."""

    def __init__(self, master_key: str):
        self._master_key = master_key.encode()
        self._day_keys: Dict[str, bytes] = {}

    def _derive_day_key(self, date_str: str) -> bytes:
        """Derive per-day key using HKDF."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"ir_playbook_audit_v1",
            info=date_str.encode(),
        )
        return hkdf.derive(self._master_key)

    def _day_key(self, timestamp: str) -> bytes:
        date_str = timestamp[:10]
        if date_str not in self._day_keys:
            self._day_keys[date_str] = self._derive_day_key(date_str)
        return self._day_keys[date_str]

    @staticmethod
    def canonical(entry: Dict[str, Any]) -> bytes:
        body = {k: v for k, v in entry.items() if k != "integrity"}
        return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode()

    def sign(self, entry: Dict[str, Any]) -> str:
        mac = hmac.new(self._day_key(entry["timestamp"]), self.canonical(entry), hashlib.sha256)
        return f"hmac-sha256:{mac.hexdigest()}"

    def verify(self, entry: Dict[str, Any]) -> bool:
        integrity = entry.get("integrity")
        if not isinstance(integrity, dict) or not isinstance(integrity.get("hmac"), str):
            return False
        return hmac.compare_digest(self.sign(entry), integrity["hmac"])


class AuditLedger:
    """
    Append-only audit store.

    Each entry is serialized completely before a single os.write on an
    O_APPEND descriptor, under a lock, so concurrent writers never interleave
    partial lines. A failed store write is logged with the full entry and
    counted; it never raises to the caller.
    """

    def __init__(self, config: AuditConfig, version: str = "1.0.0"):
        self.config = config
        self.log_path = Path(config.log_path)
        self.version = version
        self._lock = threading.Lock()
        self._signer = EntrySigner(config.integrity_key) if config.integrity_key else None
        self._stats = {
            "events_logged": 0,
            "events_failed": 0,
        }
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create audit log directory {self.log_path.parent}: {e}")

    @property
    def signing_enabled(self) -> bool:
        return self._signer is not None

    def record(
        self,
        action: str,
        actor: Dict[str, str],
        target: Optional[str],
        outcome: AuditOutcome,
        details: Optional[Any] = None,
        error: Optional[str] = None,
        resolved_target: Optional[str] = None,
        incident_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Record an audit event.

        Args:
            action: Audit action name (e.g. ISOLATE)
            actor: {"id", "name"} of the operator
            target: Target identifier as requested
            outcome: SUCCESS, FAILED or DENIED
            details: Result payload for successful actions
            error: Error message for failed or denied actions
            resolved_target: Network address the target resolved to
            incident_id: Incident the action was attached to
            duration_ms: Invocation duration

        Returns:
            The entry as written
        """
        now = datetime.now(timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": now.isoformat(),
            "event_id": generate_event_id(now),
            "action": action,
            "actor": {"id": actor.get("id"), "name": actor.get("name")},
            "target": target,
            "outcome": outcome.value,
            "details": details,
            "error": error,
            "metadata": {
                "hostname": self.config.hostname,
                "version": self.version,
            },
        }
        if resolved_target is not None:
            entry["resolved_target"] = resolved_target
        if incident_id is not None:
            entry["incident_id"] = incident_id
        if duration_ms is not None:
            entry["duration_ms"] = round(duration_ms, 2)
        if self._signer:
            entry["integrity"] = {"hmac": self._signer.sign(entry)}

        self._log_entry(entry, outcome)
        self._append(entry)
        return entry

    def _log_entry(self, entry: Dict[str, Any], outcome: AuditOutcome) -> None:
        if outcome == AuditOutcome.FAILED:
            level = logging.ERROR
        elif outcome == AuditOutcome.DENIED:
            level = logging.WARNING
        else:
            level = logging.INFO

        logger.log(
            level,
            f"Audit event {entry['event_id']}: {entry['action']} on {entry['target']} "
            f"by {entry['actor']['name']} -> {entry['outcome']}",
            extra={
                "event_id": entry["event_id"],
                "action": entry["action"],
                "actor": entry["actor"]["id"],
                "target": entry["target"],
                "incident_id": entry.get("incident_id"),
            },
        )

    def _append(self, entry: Dict[str, Any]) -> None:
        line = (json.dumps(entry, default=str) + "\n").encode("utf-8")

        with self._lock:
            try:
                fd = os.open(str(self.log_path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
                try:
                    os.write(fd, line)
                finally:
                    os.close(fd)
                self._stats["events_logged"] += 1
            except OSError as e:
                self._stats["events_failed"] += 1
                logger.error(
                    f"Failed to write audit log {self.log_path}: {e}; entry={line.decode().strip()}"
                )

    def _read_entries(self) -> List[Dict[str, Any]]:
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    logger.debug("Skipping malformed audit line")
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
        return entries

    def query(self, filters: Optional[AuditQuery] = None) -> List[Dict[str, Any]]:
        """Return matching entries, newest first."""
        filters = filters or AuditQuery()
        try:
            entries = [e for e in self._read_entries() if filters.matches(e)]
        except OSError as e:
            logger.error(f"Failed to query audit log: {e}")
            return []

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        entries.sort(key=lambda e: parse_timestamp(e.get("timestamp")) or epoch, reverse=True)

        if filters.limit and filters.limit > 0:
            entries = entries[:filters.limit]
        return entries

    def summarize(self, days: int = 7) -> Dict[str, Any]:
        """Aggregate counts over a trailing window of days."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        entries = self.query(AuditQuery(since=since))

        summary: Dict[str, Any] = {
            "period": f"Last {days} days",
            "total_events": len(entries),
            "by_action": {},
            "by_outcome": {o.value: 0 for o in AuditOutcome},
            "by_actor": {},
            "by_target": {},
        }

        for entry in entries:
            action = entry.get("action") or "UNKNOWN"
            summary["by_action"][action] = summary["by_action"].get(action, 0) + 1

            outcome = entry.get("outcome") or "UNKNOWN"
            summary["by_outcome"][outcome] = summary["by_outcome"].get(outcome, 0) + 1

            actor = (entry.get("actor") or {}).get("name") or "Unknown"
            summary["by_actor"][actor] = summary["by_actor"].get(actor, 0) + 1

            target = entry.get("target")
            if target:
                summary["by_target"][target] = summary["by_target"].get(target, 0) + 1

        return summary

    def export_csv(self, filters: Optional[AuditQuery] = None) -> str:
        """Render matching entries as CSV with a header row."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)

        for entry in self.query(filters):
            actor = entry.get("actor") or {}
            writer.writerow([
                entry.get("timestamp", ""),
                entry.get("event_id", ""),
                entry.get("action", ""),
                actor.get("id") or "",
                actor.get("name") or "",
                entry.get("target") or "",
                entry.get("outcome", ""),
                entry.get("incident_id") or "",
                entry.get("error") or "",
            ])

        return buffer.getvalue()

    def verify(self) -> VerificationReport:
        """Re-compute every entry HMAC and report mismatches."""
        if not self._signer:
            raise ConfigurationError(
                "Audit integrity key is not configured",
                source="audit.integrity_key",
            )

        report = VerificationReport()
        if not self.log_path.exists():
            return report

        with open(self.log_path, encoding="utf-8", errors="replace") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                report.total += 1

                try:
                    entry = json.loads(line)
                except ValueError:
                    report.malformed += 1
                    continue
                if not isinstance(entry, dict) or not isinstance(entry.get("timestamp"), str):
                    report.malformed += 1
                    continue

                if "integrity" not in entry:
                    report.unsigned += 1
                elif self._signer.verify(entry):
                    report.verified += 1
                else:
                    report.mismatched.append({
                        "line": line_number,
                        "event_id": entry.get("event_id"),
                    })

        if report.mismatched:
            logger.warning(f"Audit verification found {len(report.mismatched)} tampered entries")
        return report

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "log_path": str(self.log_path),
            "signing_enabled": self.signing_enabled,
        }
