"""
IR Playbook Remote Execution

Builds remote PowerShell invocations from typed parameters and runs each one
in its own child process with a hard deadline.
"""

import asyncio
import logging
import math
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.config import ExecutionConfig
from ..core.exceptions import ExecutionTimeoutError, SpawnError, ValidationError

logger = logging.getLogger(__name__)

USER_ENV_VAR = "IR_REMOTE_USER"
PASSWORD_ENV_VAR = "IR_REMOTE_PASSWORD"

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PROCEDURE_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")

# PowerShell treats all of these as single-quote delimiters
SINGLE_QUOTES = ("'", "\u2018", "\u2019", "\u201a", "\u201b")


@dataclass(frozen=True)
class Credentials:
    """Remote channel credentials. The password never appears in repr."""
    username: str = ""
    password: str = field(default="", repr=False)

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    def redact(self, text: Optional[str]) -> Optional[str]:
        """Scrub the password from text."""
        if not text or not self.password:
            return text
        return text.replace(self.password, "***")

    def environment(self) -> Dict[str, str]:
        """Environment entries through which the child reads the credentials."""
        if not self.configured:
            return {}
        return {USER_ENV_VAR: self.username, PASSWORD_ENV_VAR: self.password}


class ParameterSerializer:
    """
    Renders typed values as PowerShell literals.

    Each value is rendered on its own; nothing is ever concatenated into a
    literal without escaping.
    """

    @staticmethod
    def quote(value: str) -> str:
        escaped = value
        for quote in SINGLE_QUOTES:
            escaped = escaped.replace(quote, quote * 2)
        return f"'{escaped}'"

    def literal(self, value: Any) -> str:
        if value is None:
            return "$null"
        if isinstance(value, bool):
            return "$true" if value else "$false"
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValidationError("Non-finite numeric parameter", value=value)
            return repr(value)
        if isinstance(value, str):
            return self.quote(value)
        if isinstance(value, (list, tuple)):
            return "@(" + ",".join(self.literal(item) for item in value) + ")"
        raise ValidationError(
            f"Unsupported parameter type: {type(value).__name__}",
            value=repr(value),
        )

    def assignments(self, params: Dict[str, Any]) -> List[str]:
        lines = []
        for name, value in params.items():
            if not isinstance(name, str) or not IDENTIFIER.match(name):
                raise ValidationError(f"Invalid parameter name: {name}", field=str(name))
            lines.append(f"${name} = {self.literal(value)}")
        return lines


class ProcedureRegistry:
    """Loads remote procedure bodies by name from a scripts directory."""

    def __init__(self, scripts_path: str):
        self.scripts_path = Path(scripts_path)
        self._cache: Dict[str, str] = {}

    def load(self, procedure: str) -> str:
        if not PROCEDURE_NAME.match(procedure or ""):
            raise SpawnError(f"Invalid procedure name: {procedure}")

        if procedure in self._cache:
            return self._cache[procedure]

        path = self.scripts_path / f"{procedure}.ps1"
        if not path.is_file():
            raise SpawnError(f"Remote procedure not found: {procedure}", executable=str(path))

        body = path.read_text(encoding="utf-8")
        self._cache[procedure] = body
        return body

    def available(self) -> List[str]:
        if not self.scripts_path.is_dir():
            return []
        return sorted(p.stem for p in self.scripts_path.glob("*.ps1"))

    def clear(self) -> None:
        self._cache.clear()


class RemoteCommandBuilder:
    """Assembles the local PowerShell command that runs a procedure remotely."""

    def __init__(self, serializer: Optional[ParameterSerializer] = None):
        self.serializer = serializer or ParameterSerializer()

    def build(
        self,
        address: str,
        body: str,
        params: Dict[str, Any],
        use_credentials: bool,
    ) -> str:
        assignments = self.serializer.assignments(params)
        computer = self.serializer.quote(address)

        lines = ["$ErrorActionPreference = 'Stop'"]
        credential_arg = ""
        if use_credentials:
            lines.extend([
                f"$securePassword = ConvertTo-SecureString $env:{PASSWORD_ENV_VAR} -AsPlainText -Force",
                "$credential = New-Object System.Management.Automation.PSCredential("
                f"$env:{USER_ENV_VAR}, $securePassword)",
            ])
            credential_arg = " -Credential $credential"

        lines.append("try {")
        lines.append(f"    $result = Invoke-Command -ComputerName {computer}{credential_arg} -ScriptBlock {{")
        lines.extend(f"        {line}" for line in assignments)
        lines.extend(f"        {line}" for line in body.splitlines())
        lines.append("    }")
        lines.append("    @{ Success = $true; Data = $result } | ConvertTo-Json -Depth 10 -Compress")
        lines.append("} catch {")
        lines.append(
            "    @{ Success = $false; Error = $_.Exception.Message; "
            "Details = $_.ToString() } | ConvertTo-Json -Depth 4 -Compress"
        )
        lines.append("}")
        return "\n".join(lines)


@dataclass
class RawOutput:
    """Captured result of one child process."""
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: float = 0.0


class RemoteExecutor:
    """
    Runs remote procedures, one child process per call.

    Non-zero exit codes are returned, not raised. A call that exceeds its
    deadline is killed and reaped before ExecutionTimeoutError is raised.
    There is no internal retry.
    """

    def __init__(
        self,
        config: ExecutionConfig,
        registry: Optional[ProcedureRegistry] = None,
        builder: Optional[RemoteCommandBuilder] = None,
    ):
        self.config = config
        self.credentials = Credentials(config.username, config.password)
        self.registry = registry or ProcedureRegistry(config.scripts_path)
        self.builder = builder or RemoteCommandBuilder()
        self._semaphore = asyncio.Semaphore(max(1, config.max_concurrent))
        self._active: Dict[int, asyncio.subprocess.Process] = {}

    def build_command(self, address: str, procedure: str, params: Dict[str, Any]) -> List[str]:
        body = self.registry.load(procedure)
        script = self.builder.build(
            address,
            body,
            params,
            use_credentials=self.credentials.configured,
        )
        return [self.config.shell, *self.config.shell_args, script]

    def child_environment(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.credentials.environment())
        return env

    async def invoke(
        self,
        address: str,
        procedure: str,
        params: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> RawOutput:
        """
        Run a procedure against a resolved address.

        Args:
            address: Resolved target address
            procedure: Remote procedure name
            params: Typed parameters for the procedure
            timeout: Deadline in seconds (defaults to configuration)

        Returns:
            Captured stdout, stderr and exit code
        """
        deadline = timeout if timeout and timeout > 0 else self.config.timeout_seconds
        argv = self.build_command(address, procedure, params)

        async with self._semaphore:
            start = time.monotonic()
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self.child_environment(),
                )
            except OSError as e:
                logger.error(f"Failed to start {self.config.shell}: {e}")
                raise SpawnError(
                    f"Could not start {self.config.shell}: {e.strerror or e}",
                    executable=self.config.shell,
                )

            self._active[process.pid] = process
            logger.debug(f"Invoking {procedure} on {address} (pid={process.pid}, timeout={deadline}s)")

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(),
                    timeout=deadline,
                )
            except asyncio.TimeoutError:
                await self._kill(process)
                logger.warning(f"{procedure} on {address} timed out after {deadline}s")
                raise ExecutionTimeoutError(
                    f"{procedure} on {address} timed out after {deadline}s",
                    timeout_seconds=deadline,
                    procedure=procedure,
                )
            except asyncio.CancelledError:
                logger.warning(f"{procedure} on {address} cancelled, killing pid={process.pid}")
                await self._kill(process)
                raise
            finally:
                self._active.pop(process.pid, None)

        duration_ms = (time.monotonic() - start) * 1000
        return RawOutput(
            stdout=self.credentials.redact(stdout.decode("utf-8", errors="replace")),
            stderr=self.credentials.redact(stderr.decode("utf-8", errors="replace")),
            exit_code=process.returncode if process.returncode is not None else -1,
            duration_ms=duration_ms,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def stop(self) -> None:
        """Kill any child still running."""
        for pid, process in list(self._active.items()):
            if process.returncode is None:
                logger.warning(f"Killing remote invocation pid={pid} on shutdown")
                await self._kill(process)
        self._active.clear()
