"""
IR Playbook Target Directory

Resolves operator identifiers (name, alias, address) to network addresses,
and optionally probes WS-Management reachability before invocation.
"""

import asyncio
import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import jsonschema
import yaml

from ..core.exceptions import ConfigurationError, ConnectivityError, ValidationError

logger = logging.getLogger(__name__)


TARGETS_SCHEMA = {
    "type": "object",
    "properties": {
        "targets": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "address": {"type": "string", "minLength": 1},
                    "ip": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "os": {"type": "string"},
                },
                "anyOf": [
                    {"required": ["address"]},
                    {"required": ["ip"]},
                ],
            },
        },
        "aliases": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "management_addresses": {
            "type": "array",
            "items": {"type": "string"},
        },
        "managementIPs": {
            "type": "array",
            "items": {"type": "string"},
        },
    },
    "additionalProperties": True,
}

HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


def is_ip_address(value: str) -> bool:
    """Check whether value is a literal IPv4 or IPv6 address."""
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def is_hostname(value: str) -> bool:
    """Check RFC 1123 hostname syntax."""
    if not value or len(value) > 253:
        return False
    labels = value[:-1].split(".") if value.endswith(".") else value.split(".")
    return all(HOSTNAME_LABEL.match(label) for label in labels)


@dataclass(frozen=True)
class Target:
    """A managed endpoint."""
    name: str
    address: str
    description: str = ""
    os: str = ""
    aliases: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "description": self.description,
            "os": self.os,
            "aliases": list(self.aliases),
        }


@dataclass(frozen=True)
class TargetSnapshot:
    """Immutable view of configured targets and aliases."""
    targets: Dict[str, Target] = field(default_factory=dict)
    aliases: Dict[str, str] = field(default_factory=dict)
    management_addresses: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetSnapshot":
        """
        Build a snapshot from a target definition mapping.

        Accepts both `address` and the legacy `ip` key per target.
        """
        try:
            jsonschema.validate(data, TARGETS_SCHEMA)
        except jsonschema.ValidationError as e:
            raise ConfigurationError(
                f"Invalid target definitions: {e.message}",
                source="targets",
                errors=[e.message],
            )

        raw_aliases = {k.lower(): v for k, v in (data.get("aliases") or {}).items()}

        targets = {}
        for name, entry in (data.get("targets") or {}).items():
            aliases = tuple(sorted(a for a, t in raw_aliases.items() if t == name))
            targets[name] = Target(
                name=name,
                address=entry.get("address") or entry["ip"],
                description=entry.get("description", ""),
                os=entry.get("os", ""),
                aliases=aliases,
            )

        for alias, name in raw_aliases.items():
            if name not in targets:
                logger.warning(f"Alias {alias} points to unknown target {name}")

        return cls(
            targets=targets,
            aliases=raw_aliases,
            management_addresses=tuple(
                data.get("management_addresses") or data.get("managementIPs") or ()
            ),
        )

    @classmethod
    def from_file(cls, path: str) -> "TargetSnapshot":
        """Load a snapshot from a YAML or JSON file."""
        file_path = Path(path)
        if not file_path.exists():
            raise ConfigurationError(f"Targets file not found: {path}", source=path)

        with open(file_path) as f:
            if file_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}

        snapshot = cls.from_dict(data)
        logger.info(f"Loaded {len(snapshot.targets)} targets from {path}")
        return snapshot


class TargetDirectory:
    """
    Name and alias resolution over a swappable snapshot.

    Each lookup reads the snapshot reference once, so a concurrent reload
    never produces a mixed view.
    """

    def __init__(self, snapshot: Optional[TargetSnapshot] = None):
        self._snapshot = snapshot or TargetSnapshot()

    @property
    def snapshot(self) -> TargetSnapshot:
        return self._snapshot

    @property
    def management_addresses(self) -> List[str]:
        return list(self._snapshot.management_addresses)

    def reload(self, snapshot: TargetSnapshot) -> None:
        """Replace the snapshot atomically."""
        self._snapshot = snapshot
        logger.info(f"Target directory reloaded ({len(snapshot.targets)} targets)")

    def _lookup(self, snapshot: TargetSnapshot, identifier: str) -> Optional[Target]:
        key = identifier.strip()
        name = snapshot.aliases.get(key.lower())
        if name and name in snapshot.targets:
            return snapshot.targets[name]
        return snapshot.targets.get(key)

    def resolve(self, identifier: str) -> str:
        """
        Resolve an identifier to a network address.

        Literal addresses pass through unchanged, then aliases, then known
        names. Anything else is returned as given and left to the remote
        channel's own name resolution.
        """
        snapshot = self._snapshot
        key = identifier.strip()

        if is_ip_address(key):
            return key

        target = self._lookup(snapshot, key)
        if target:
            return target.address

        return key

    def validate(self, identifier: Any) -> None:
        """Raise ValidationError unless identifier is known or well formed."""
        if not isinstance(identifier, str) or not identifier.strip():
            raise ValidationError("Target is required", field="target", value=identifier)

        snapshot = self._snapshot
        key = identifier.strip()
        if self._lookup(snapshot, key):
            return
        if is_ip_address(key) or is_hostname(key):
            return

        raise ValidationError(f"Invalid target: {identifier}", field="target", value=identifier)

    def is_known(self, identifier: str) -> bool:
        return self._lookup(self._snapshot, identifier) is not None

    def describe(self, identifier: str) -> Target:
        """Return the configured target, or a synthetic entry for unknown ones."""
        snapshot = self._snapshot
        target = self._lookup(snapshot, identifier)
        if target:
            return target

        for candidate in snapshot.targets.values():
            if candidate.address == identifier.strip():
                return candidate

        return Target(
            name=identifier,
            address=self.resolve(identifier),
            description="Unknown target",
            os="Unknown",
        )

    def list_targets(self) -> List[Target]:
        return sorted(self._snapshot.targets.values(), key=lambda t: t.name)


class ReachabilityProbe:
    """
    WS-Management pre-flight check.

    Any HTTP response from the listener counts as reachable; only connection
    failures and timeouts are reported.
    """

    IDENTIFY_BODY = (
        '<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope" '
        'xmlns:wsmid="http://schemas.dmtf.org/wbem/wsman/identity/1/wsmanidentity.xsd">'
        "<s:Header/><s:Body><wsmid:Identify/></s:Body></s:Envelope>"
    )

    def __init__(self, port: int = 5985, timeout_seconds: float = 5.0):
        self.port = port
        self.timeout_seconds = timeout_seconds

    def endpoint(self, address: str) -> str:
        host = f"[{address}]" if ":" in address else address
        return f"http://{host}:{self.port}/wsman"

    async def check(self, address: str) -> None:
        """Raise ConnectivityError if the listener cannot be reached."""
        url = self.endpoint(address)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    url,
                    data=self.IDENTIFY_BODY,
                    headers={"Content-Type": "application/soap+xml;charset=UTF-8"},
                ) as resp:
                    logger.debug(f"WS-Man probe {url} answered {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Target {address} unreachable at {url}: {e}")
            raise ConnectivityError(
                f"Target {address} is unreachable",
                target=address,
                endpoint=url,
            )
