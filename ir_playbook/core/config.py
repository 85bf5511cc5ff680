"""
IR Playbook Configuration Management

Centralized configuration for the command execution pipeline.
"""

import os
import socket
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    LAB = "lab"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class ExecutionConfig:
    """Remote invocation configuration."""
    shell: str = "powershell.exe"
    shell_args: List[str] = field(default_factory=lambda: [
        "-ExecutionPolicy", "Bypass",
        "-NoProfile",
        "-NonInteractive",
        "-Command",
    ])
    username: str = ""
    password: str = field(default="", repr=False)
    timeout_seconds: float = 300.0
    scripts_path: str = "scripts/remote"
    preflight_check: bool = False
    winrm_port: int = 5985
    probe_timeout_seconds: float = 5.0
    max_concurrent: int = 16
    management_addresses: List[str] = field(default_factory=list)


@dataclass
class NormalizerConfig:
    """Result normalization configuration."""
    max_unwrap_depth: int = 8
    success_key: str = "Success"
    data_key: str = "Data"
    error_key: str = "Error"
    details_key: str = "Details"
    transport_fields: List[str] = field(
        default_factory=lambda: ["PSComputerName", "RunspaceId"]
    )


@dataclass
class AuditConfig:
    """Audit ledger configuration."""
    log_path: str = "logs/audit.log"
    integrity_key: Optional[str] = field(default=None, repr=False)
    hostname: str = field(default_factory=socket.gethostname)


@dataclass
class RPCConfig:
    """Command API configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    api_token: Optional[str] = field(default=None, repr=False)


@dataclass
class Config:
    """
    Main configuration class for IR Playbook.

    Aggregates all subsystem configurations.
    """
    # Core settings
    environment: Environment = Environment.DEVELOPMENT
    targets_path: Optional[str] = None
    roles_path: Optional[str] = None

    # Subsystem configs
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)

    # Operational settings
    log_level: str = "INFO"
    json_logs: bool = True
    log_file: Optional[str] = None

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        config = cls.from_dict(data)

        # Relative paths in the file are relative to the file itself
        base = path.resolve().parent
        for attr in ("targets_path", "roles_path"):
            value = getattr(config, attr)
            if value and not Path(value).is_absolute():
                setattr(config, attr, str(base / value))

        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        # Core settings
        if "environment" in data:
            config.environment = Environment(data["environment"])
        if "targets_path" in data:
            config.targets_path = data["targets_path"]
        if "roles_path" in data:
            config.roles_path = data["roles_path"]

        # Subsystem configs
        if "execution" in data:
            config.execution = ExecutionConfig(**data["execution"])
        if "normalizer" in data:
            config.normalizer = NormalizerConfig(**data["normalizer"])
        if "audit" in data:
            config.audit = AuditConfig(**data["audit"])
        if "rpc" in data:
            config.rpc = RPCConfig(**data["rpc"])

        # Operational settings
        if "log_level" in data:
            config.log_level = data["log_level"]
        if "json_logs" in data:
            config.json_logs = data["json_logs"]
        if "log_file" in data:
            config.log_file = data["log_file"]

        return config

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "Config":
        """
        Overlay settings from environment variables.

        Credentials are expected to come from the environment rather than
        from the configuration file.
        """
        env = os.environ if environ is None else environ

        if env.get("IR_USERNAME"):
            self.execution.username = env["IR_USERNAME"]
        if env.get("IR_PASSWORD"):
            self.execution.password = env["IR_PASSWORD"]
        if env.get("IR_COMMAND_TIMEOUT"):
            self.execution.timeout_seconds = float(env["IR_COMMAND_TIMEOUT"])
        if env.get("IR_MANAGEMENT_ADDRESSES"):
            self.execution.management_addresses = [
                a.strip() for a in env["IR_MANAGEMENT_ADDRESSES"].split(",") if a.strip()
            ]
        if env.get("IR_AUDIT_LOG_PATH"):
            self.audit.log_path = env["IR_AUDIT_LOG_PATH"]
        if env.get("IR_AUDIT_KEY"):
            self.audit.integrity_key = env["IR_AUDIT_KEY"]
        if env.get("IR_API_TOKEN"):
            self.rpc.api_token = env["IR_API_TOKEN"]
        if env.get("IR_ENVIRONMENT"):
            self.environment = Environment(env["IR_ENVIRONMENT"])
        if env.get("LOG_LEVEL"):
            self.log_level = env["LOG_LEVEL"]

        return self

    def secrets(self) -> List[str]:
        """Secret values that must never appear in logs or messages."""
        values = [
            self.execution.password,
            self.audit.integrity_key,
            self.rpc.api_token,
        ]
        return [v for v in values if v]

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary with secrets masked."""
        return {
            "environment": self.environment.value,
            "targets_path": self.targets_path,
            "roles_path": self.roles_path,
            "execution": {
                "shell": self.execution.shell,
                "shell_args": self.execution.shell_args,
                "username": self.execution.username,
                "password": "***" if self.execution.password else "",
                "timeout_seconds": self.execution.timeout_seconds,
                "scripts_path": self.execution.scripts_path,
                "preflight_check": self.execution.preflight_check,
                "winrm_port": self.execution.winrm_port,
                "probe_timeout_seconds": self.execution.probe_timeout_seconds,
                "max_concurrent": self.execution.max_concurrent,
                "management_addresses": self.execution.management_addresses,
            },
            "normalizer": {
                "max_unwrap_depth": self.normalizer.max_unwrap_depth,
                "success_key": self.normalizer.success_key,
                "data_key": self.normalizer.data_key,
                "error_key": self.normalizer.error_key,
                "details_key": self.normalizer.details_key,
                "transport_fields": self.normalizer.transport_fields,
            },
            "audit": {
                "log_path": self.audit.log_path,
                "integrity_key": "***" if self.audit.integrity_key else None,
                "hostname": self.audit.hostname,
            },
            "rpc": {
                "host": self.rpc.host,
                "port": self.rpc.port,
                "api_token": "***" if self.rpc.api_token else None,
            },
            "log_level": self.log_level,
            "json_logs": self.json_logs,
            "log_file": self.log_file,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.execution.timeout_seconds <= 0:
            errors.append("Execution timeout must be positive")

        if self.execution.max_concurrent < 1:
            errors.append("Execution max_concurrent must be at least 1")

        if not self.execution.shell:
            errors.append("Execution shell must be set")

        if not 1 <= self.normalizer.max_unwrap_depth <= 64:
            errors.append("Normalizer max_unwrap_depth must be between 1 and 64")

        if not self.normalizer.transport_fields:
            errors.append("Normalizer transport_fields must not be empty")

        for attr in ("targets_path", "roles_path"):
            value = getattr(self, attr)
            if value and not Path(value).is_file():
                errors.append(f"{attr} does not exist: {value}")

        if self.environment == Environment.PRODUCTION:
            if not self.roles_path:
                errors.append("Production requires a roles file")
            if not self.execution.username or not self.execution.password:
                errors.append("Production requires remote credentials")

        return errors
