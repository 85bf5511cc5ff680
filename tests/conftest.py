"""
IR Playbook - Test Configuration

Repo root discovery plus shared fixtures. The running Python interpreter
stands in for the remote shell: each fake shell is a short Python script
passed via ``-c``, and the generated PowerShell command arrives as its last
argv entry.
"""

import os
import sys
import textwrap
from pathlib import Path
from typing import Callable, Dict, Optional

import pytest

from ir_playbook.authorization import AuthorizationGate, RoleSnapshot
from ir_playbook.core.actions import ACTION_SPECS
from ir_playbook.core.config import AuditConfig, Config, ExecutionConfig
from ir_playbook.core.engine import PlaybookEngine
from ir_playbook.targets import TargetDirectory, TargetSnapshot


def discover_repo_root() -> Path:
    """
    Discover the repository root.

    Priority:
    1. IR_PLAYBOOK_REPO_ROOT environment variable
    2. Path traversal from conftest.py location
    """
    env_root = os.environ.get("IR_PLAYBOOK_REPO_ROOT")
    if env_root:
        root = Path(env_root)
        if root.is_dir() and (root / "pyproject.toml").is_file():
            return root

    current = Path(__file__).resolve().parent
    for _ in range(10):  # Max 10 levels up
        if (current / "pyproject.toml").is_file():
            return current
        parent = current.parent
        if parent == current:
            break
        current = parent

    raise RuntimeError(
        "Could not discover repo root. Set IR_PLAYBOOK_REPO_ROOT environment variable "
        "or ensure tests are run from within the repository."
    )


REPO_ROOT = discover_repo_root()

TARGETS = {
    "targets": {
        "WS-FINANCE-01": {
            "address": "10.10.20.15",
            "description": "Finance workstation",
            "os": "Windows 11",
        },
        "SRV-DC-01": {
            "ip": "10.10.0.10",
            "description": "Domain controller",
        },
    },
    "aliases": {
        "Finance": "WS-FINANCE-01",
        "dc": "SRV-DC-01",
    },
    "management_addresses": ["192.168.100.1"],
}

ROLES = {
    "require_authentication": True,
    "default_role": "SOC_TIER1",
    "roles": {
        "IR_ANALYST": {"permissions": ["status", "isolate", "collect", "terminate", "memory-capture"]},
        "SOC_TIER2": {"permissions": ["status", "collect"]},
        "SOC_TIER1": {"permissions": ["status"]},
    },
    "assignments": {
        "U-ANALYST": "IR_ANALYST",
        "U-TIER2": "SOC_TIER2",
    },
}

SUCCESS_SHELL = """
import json
print(json.dumps({"Success": True, "Data": {"Hostname": "WS-FINANCE-01", "Uptime": 42}}))
"""


@pytest.fixture(scope="session")
def repo_root() -> Path:
    """Fixture providing the repository root path."""
    return REPO_ROOT


@pytest.fixture
def scripts_dir(tmp_path) -> Path:
    """Directory holding a body for every remote procedure."""
    path = tmp_path / "remote"
    path.mkdir()
    for spec in ACTION_SPECS.values():
        (path / f"{spec.procedure}.ps1").write_text(f"Write-Output '{spec.procedure}'\n")
    return path


@pytest.fixture
def shell_config(scripts_dir) -> Callable[..., ExecutionConfig]:
    """Factory for an ExecutionConfig whose shell runs the given Python source."""

    def factory(source: str, **overrides) -> ExecutionConfig:
        values = dict(
            shell=sys.executable,
            shell_args=["-c", textwrap.dedent(source)],
            timeout_seconds=10.0,
            scripts_path=str(scripts_dir),
        )
        values.update(overrides)
        return ExecutionConfig(**values)

    return factory


@pytest.fixture
def target_snapshot() -> TargetSnapshot:
    return TargetSnapshot.from_dict(TARGETS)


@pytest.fixture
def role_snapshot() -> RoleSnapshot:
    return RoleSnapshot.from_dict(ROLES)


@pytest.fixture
def make_engine(tmp_path, shell_config, target_snapshot, role_snapshot):
    """Factory for a started-ready PlaybookEngine around a fake shell."""

    def factory(
        source: str = SUCCESS_SHELL,
        integrity_key: Optional[str] = None,
        roles: Optional[RoleSnapshot] = None,
        **execution_overrides,
    ) -> PlaybookEngine:
        config = Config(
            execution=shell_config(source, **execution_overrides),
            audit=AuditConfig(
                log_path=str(tmp_path / "logs" / "audit.log"),
                integrity_key=integrity_key,
                hostname="test-host",
            ),
        )
        return PlaybookEngine(
            config,
            targets=TargetDirectory(target_snapshot),
            gate=AuthorizationGate(roles or role_snapshot),
        )

    return factory


@pytest.fixture
def analyst() -> Dict[str, str]:
    return {"id": "U-ANALYST", "name": "alice"}
