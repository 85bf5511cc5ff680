"""
Tests for incident correlation.
"""

import re
import threading

import pytest

from ir_playbook.core.exceptions import IncidentNotFoundError, IncidentStateError
from ir_playbook.incidents import IncidentCorrelator, IncidentStatus, generate_incident_id

ALICE = {"id": "U-ANALYST", "name": "alice"}


class TestIncidentCorrelator:

    def setup_method(self):
        self.correlator = IncidentCorrelator()

    def test_id_format(self):
        assert re.match(r"^INC-\d{8}-[A-Z0-9]{6}$", generate_incident_id())

    def test_open(self):
        incident = self.correlator.open("HOST_ISOLATION", "10.0.0.5", ALICE)

        assert incident.is_open
        assert incident.created_by == ALICE
        assert self.correlator.get(incident.incident_id).target == "10.0.0.5"

    def test_append_action(self):
        incident = self.correlator.open("HOST_ISOLATION", "10.0.0.5", ALICE)

        self.correlator.append_action(incident.incident_id, {"action": "ISOLATE", "outcome": "SUCCESS"})
        updated = self.correlator.append_action(incident.incident_id, {"action": "COLLECT_LOGS"})

        assert [a["action"] for a in updated.actions] == ["ISOLATE", "COLLECT_LOGS"]
        assert "timestamp" in updated.actions[0]
        assert updated.updated_at is not None

    def test_returned_copies_are_detached(self):
        incident = self.correlator.open("HOST_ISOLATION", "10.0.0.5", ALICE)
        incident.actions.append({"action": "FORGED"})

        assert self.correlator.get(incident.incident_id).actions == []

    def test_close(self):
        incident = self.correlator.open("FORENSIC_COLLECTION", "10.0.0.5", ALICE)

        closed = self.correlator.close(incident.incident_id, "Contained", ALICE)

        assert closed.status == IncidentStatus.CLOSED
        assert closed.resolution == "Contained"
        assert closed.closed_by == ALICE

        with pytest.raises(IncidentStateError):
            self.correlator.close(incident.incident_id, "again", ALICE)
        with pytest.raises(IncidentStateError):
            self.correlator.append_action(incident.incident_id, {"action": "ISOLATE"})

    def test_notes_allowed_after_close(self):
        incident = self.correlator.open("HOST_ISOLATION", "10.0.0.5", ALICE)
        self.correlator.close(incident.incident_id, "done", ALICE)

        noted = self.correlator.add_note(incident.incident_id, "post-mortem filed", ALICE)

        assert noted.notes[0]["text"] == "post-mortem filed"

    def test_unknown_incident(self):
        with pytest.raises(IncidentNotFoundError):
            self.correlator.get("INC-19700101-XXXXXX")
        with pytest.raises(IncidentNotFoundError):
            self.correlator.add_note("INC-19700101-XXXXXX", "x", ALICE)

    def test_list_and_find_open(self):
        first = self.correlator.open("HOST_ISOLATION", "10.0.0.5", ALICE)
        self.correlator.open("PROCESS_TERMINATION", "10.0.0.6", ALICE)
        self.correlator.close(first.incident_id, "done", ALICE)
        latest = self.correlator.open("FORENSIC_COLLECTION", "10.0.0.5", ALICE)

        assert len(self.correlator.list()) == 3
        assert len(self.correlator.list(status="OPEN")) == 2
        assert [i.incident_id for i in self.correlator.list(target="10.0.0.5", status="CLOSED")] == [first.incident_id]
        assert len(self.correlator.list(incident_type="PROCESS_TERMINATION")) == 1
        assert self.correlator.find_open("10.0.0.5").incident_id == latest.incident_id
        assert self.correlator.find_open("10.0.0.99") is None

    def test_concurrent_appends(self):
        incident = self.correlator.open("HOST_ISOLATION", "10.0.0.5", ALICE)

        def worker(n):
            for i in range(25):
                self.correlator.append_action(incident.incident_id, {"action": f"A{n}-{i}"})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(self.correlator.get(incident.incident_id).actions) == 200
