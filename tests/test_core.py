"""
Tests for IR Playbook Core Module
"""

import pytest

from ir_playbook.core.actions import (
    ACTION_SPECS,
    Action,
    IncidentType,
    Permission,
)
from ir_playbook.core.config import Config, Environment
from ir_playbook.core.exceptions import (
    AuthorizationError,
    ExecutionError,
    IncidentNotFoundError,
    PlaybookError,
    SpawnError,
    ValidationError,
)


class TestConfig:
    """Tests for configuration management."""

    def test_default_config(self):
        """Test default configuration values."""
        config = Config()

        assert config.environment == Environment.DEVELOPMENT
        assert config.execution.timeout_seconds == 300.0
        assert config.execution.shell == "powershell.exe"
        assert config.normalizer.max_unwrap_depth == 8
        assert "PSComputerName" in config.normalizer.transport_fields
        assert config.validate() == []

    def test_config_from_dict(self):
        """Test configuration from dictionary."""
        data = {
            "environment": "lab",
            "execution": {"timeout_seconds": 60, "max_concurrent": 4},
            "audit": {"log_path": "/var/log/ir/audit.log"},
            "log_level": "DEBUG",
        }

        config = Config.from_dict(data)

        assert config.environment == Environment.LAB
        assert config.execution.timeout_seconds == 60
        assert config.execution.max_concurrent == 4
        assert config.audit.log_path == "/var/log/ir/audit.log"
        assert config.log_level == "DEBUG"

    def test_config_from_file_resolves_relative_paths(self, tmp_path):
        """Target and role paths are relative to the config file."""
        (tmp_path / "targets.yaml").write_text("targets: {}\n")
        config_file = tmp_path / "ir.yaml"
        config_file.write_text("environment: staging\ntargets_path: targets.yaml\n")

        config = Config.from_file(str(config_file))

        assert config.environment == Environment.STAGING
        assert config.targets_path == str(tmp_path / "targets.yaml")
        assert config.validate() == []

    def test_config_from_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_file(str(tmp_path / "missing.yaml"))

    def test_apply_env(self):
        """Environment variables override file settings."""
        config = Config().apply_env({
            "IR_USERNAME": "DOMAIN\\svc-ir",
            "IR_PASSWORD": "hunter2",
            "IR_COMMAND_TIMEOUT": "45",
            "IR_MANAGEMENT_ADDRESSES": "10.0.0.1, 10.0.0.2",
            "IR_AUDIT_KEY": "audit-secret",
            "LOG_LEVEL": "WARNING",
        })

        assert config.execution.username == "DOMAIN\\svc-ir"
        assert config.execution.password == "hunter2"
        assert config.execution.timeout_seconds == 45.0
        assert config.execution.management_addresses == ["10.0.0.1", "10.0.0.2"]
        assert config.audit.integrity_key == "audit-secret"
        assert config.log_level == "WARNING"
        assert set(config.secrets()) == {"hunter2", "audit-secret"}

    def test_secrets_masked(self):
        """Secrets never appear in repr or to_dict."""
        config = Config().apply_env({"IR_PASSWORD": "hunter2", "IR_API_TOKEN": "tok-123"})

        assert "hunter2" not in repr(config)
        assert "hunter2" not in str(config.to_dict())
        assert "tok-123" not in str(config.to_dict())
        assert config.to_dict()["execution"]["password"] == "***"

    def test_config_validation(self):
        """Test configuration validation."""
        config = Config()
        config.execution.timeout_seconds = 0
        config.normalizer.max_unwrap_depth = 0

        errors = config.validate()

        assert any("timeout" in e.lower() for e in errors)
        assert any("max_unwrap_depth" in e for e in errors)

    def test_production_requires_roles_and_credentials(self):
        config = Config(environment=Environment.PRODUCTION)

        errors = config.validate()

        assert any("roles" in e for e in errors)
        assert any("credentials" in e for e in errors)


class TestActions:
    """Tests for the action catalogue."""

    def test_every_action_has_a_spec(self):
        assert set(ACTION_SPECS) == set(Action)

    def test_parse(self):
        assert Action.parse("isolate") == Action.ISOLATE
        assert Action.parse(" Memory-Capture ") == Action.MEMORY_CAPTURE
        assert Action.parse(Action.STATUS) == Action.STATUS

    @pytest.mark.parametrize("tag", ["reboot", "", None, 3])
    def test_parse_unknown(self, tag):
        with pytest.raises(ValidationError) as exc_info:
            Action.parse(tag)
        assert exc_info.value.field == "action"

    def test_release_requires_isolate_permission(self):
        assert Action.RELEASE.spec.permission == Permission.ISOLATE
        assert Action.RELEASE.spec.procedure == Action.ISOLATE.spec.procedure
        assert not Action.RELEASE.spec.opens_incident

    def test_isolate_parameters(self):
        params = Action.ISOLATE.spec.parameters({}, ["192.168.100.1"])

        assert params == {"Isolate": True, "AllowedHosts": ["192.168.100.1"]}
        assert Action.RELEASE.spec.parameters({}) == {"Isolate": False}
        assert Action.ISOLATE.spec.incident_type == IncidentType.HOST_ISOLATION

    def test_collect_defaults_and_bounds(self):
        spec = Action.COLLECT.spec

        assert spec.parameters(None) == {"DaysBack": 7}
        assert spec.parameters({"days_back": 30}) == {"DaysBack": 30}
        assert spec.parameters({"days_back": "14"}) == {"DaysBack": 14}

        for bad in (0, 366, "abc", True, 2.5):
            with pytest.raises(ValidationError):
                spec.parameters({"days_back": bad})

    def test_terminate_requires_process(self):
        spec = Action.TERMINATE.spec

        assert spec.parameters({"process": "notepad.exe"}) == {"ProcessIdentifier": "notepad.exe"}
        assert spec.parameters({"process": 4321}) == {"ProcessIdentifier": "4321"}

        with pytest.raises(ValidationError) as exc_info:
            spec.parameters({})
        assert exc_info.value.field == "process"

        with pytest.raises(ValidationError):
            spec.parameters({"process": "evil'; Stop-Computer"})

    def test_memory_capture_requires_numeric_pid(self):
        spec = Action.MEMORY_CAPTURE.spec

        assert spec.parameters({"process": "1234"}) == {"ProcessId": "1234"}
        with pytest.raises(ValidationError):
            spec.parameters({"process": "lsass.exe"})


class TestExceptions:
    """Tests for exception hierarchy."""

    def test_base_error(self):
        error = PlaybookError("Test error", code="TEST", details={"key": "value"})

        assert error.message == "Test error"
        assert error.code == "TEST"
        assert error.to_dict() == {
            "error": "TEST",
            "message": "Test error",
            "details": {"key": "value"},
        }

    def test_authorization_error(self):
        error = AuthorizationError("Denied", actor_id="U1", role="SOC_TIER1", permission="isolate")

        assert error.code == "AUTHORIZATION_DENIED"
        assert error.details["permission"] == "isolate"
        assert isinstance(error, PlaybookError)

    def test_spawn_error_is_execution_error(self):
        error = SpawnError("no shell", executable="pwsh")

        assert isinstance(error, ExecutionError)
        assert error.code == "SPAWN_FAILED"
        assert error.details["executable"] == "pwsh"

    def test_incident_not_found(self):
        error = IncidentNotFoundError("INC-20260101-ABCDEF")

        assert "INC-20260101-ABCDEF" in error.message
        assert error.code == "INCIDENT_NOT_FOUND"
