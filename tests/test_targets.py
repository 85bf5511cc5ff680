"""
Tests for the target directory and reachability probe.
"""

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import unused_port

from ir_playbook.core.exceptions import ConfigurationError, ConnectivityError, ValidationError
from ir_playbook.targets import (
    ReachabilityProbe,
    TargetDirectory,
    TargetSnapshot,
    is_hostname,
    is_ip_address,
)


class TestSyntax:
    """Address and hostname syntax checks."""

    @pytest.mark.parametrize("value", ["10.0.0.5", "::1", "fe80::1", "192.168.100.1"])
    def test_ip_addresses(self, value):
        assert is_ip_address(value)

    @pytest.mark.parametrize("value", ["ws-01", "host.corp.example.com", "A1", "fqdn.example.com."])
    def test_hostnames(self, value):
        assert is_hostname(value)

    @pytest.mark.parametrize("value", ["", "-bad", "bad-", "has space", "semi;colon", "a" * 64, "x..y"])
    def test_invalid_hostnames(self, value):
        assert not is_hostname(value)


class TestTargetSnapshot:
    """Loading target definitions."""

    def test_from_dict_accepts_address_and_ip(self, target_snapshot):
        assert target_snapshot.targets["WS-FINANCE-01"].address == "10.10.20.15"
        assert target_snapshot.targets["SRV-DC-01"].address == "10.10.0.10"
        assert target_snapshot.targets["WS-FINANCE-01"].aliases == ("finance",)
        assert target_snapshot.management_addresses == ("192.168.100.1",)

    def test_legacy_management_key(self):
        snapshot = TargetSnapshot.from_dict({"targets": {}, "managementIPs": ["10.9.9.9"]})
        assert snapshot.management_addresses == ("10.9.9.9",)

    def test_rejects_target_without_address(self):
        with pytest.raises(ConfigurationError):
            TargetSnapshot.from_dict({"targets": {"ws": {"description": "no address"}}})

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "targets.yaml"
        path.write_text(
            "targets:\n"
            "  WS-01:\n"
            "    address: 10.1.1.1\n"
            "aliases:\n"
            "  one: WS-01\n"
        )

        snapshot = TargetSnapshot.from_file(str(path))

        assert snapshot.targets["WS-01"].address == "10.1.1.1"
        assert snapshot.aliases == {"one": "WS-01"}

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "targets.json"
        path.write_text(json.dumps({"targets": {"WS-02": {"ip": "10.1.1.2"}}}))

        snapshot = TargetSnapshot.from_file(str(path))

        assert snapshot.targets["WS-02"].address == "10.1.1.2"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            TargetSnapshot.from_file(str(tmp_path / "nope.yaml"))


class TestTargetDirectory:
    """Resolution order and validation."""

    def test_address_passes_through(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)
        assert directory.resolve("10.1.2.3") == "10.1.2.3"

    def test_alias_is_case_insensitive(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)
        assert directory.resolve("FINANCE") == "10.10.20.15"
        assert directory.resolve("finance") == "10.10.20.15"

    def test_known_name(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)
        assert directory.resolve("SRV-DC-01") == "10.10.0.10"

    def test_unknown_name_falls_through(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)
        assert directory.resolve("ws-unknown-77") == "ws-unknown-77"

    def test_validate(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)

        directory.validate("finance")
        directory.validate("10.0.0.1")
        directory.validate("ws-unknown-77.corp.local")

        for bad in ("", "   ", None, "host; rm -rf /", "$(whoami)"):
            with pytest.raises(ValidationError) as exc_info:
                directory.validate(bad)
            assert exc_info.value.field == "target"

    def test_describe(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)

        assert directory.describe("dc").name == "SRV-DC-01"
        assert directory.describe("10.10.20.15").name == "WS-FINANCE-01"

        unknown = directory.describe("10.99.99.99")
        assert unknown.description == "Unknown target"
        assert unknown.address == "10.99.99.99"

    def test_reload_swaps_snapshot(self, target_snapshot):
        directory = TargetDirectory(target_snapshot)
        directory.reload(TargetSnapshot.from_dict({"targets": {"WS-FINANCE-01": {"address": "10.0.0.99"}}}))

        assert directory.resolve("WS-FINANCE-01") == "10.0.0.99"
        assert directory.resolve("finance") == "finance"
        assert directory.management_addresses == []

    def test_list_targets_sorted(self, target_snapshot):
        names = [t.name for t in TargetDirectory(target_snapshot).list_targets()]
        assert names == ["SRV-DC-01", "WS-FINANCE-01"]


class TestReachabilityProbe:
    """WS-Man pre-flight probe."""

    def test_endpoint(self):
        probe = ReachabilityProbe(port=5985)
        assert probe.endpoint("10.0.0.5") == "http://10.0.0.5:5985/wsman"
        assert probe.endpoint("fe80::1") == "http://[fe80::1]:5985/wsman"

    @pytest.mark.asyncio
    async def test_any_http_response_is_reachable(self):
        async def wsman(request):
            return web.Response(status=401)

        app = web.Application()
        app.router.add_post("/wsman", wsman)
        runner = web.AppRunner(app)
        await runner.setup()
        port = unused_port()
        site = web.TCPSite(runner, "127.0.0.1", port)
        await site.start()

        try:
            await ReachabilityProbe(port=port, timeout_seconds=2).check("127.0.0.1")
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        probe = ReachabilityProbe(port=unused_port(), timeout_seconds=2)

        with pytest.raises(ConnectivityError) as exc_info:
            await probe.check("127.0.0.1")

        assert exc_info.value.target == "127.0.0.1"
        assert exc_info.value.endpoint.endswith("/wsman")
