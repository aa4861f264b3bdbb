#!/usr/bin/env python3
"""
Tests for deterministic port allocation and override rendering
"""

import re
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from branchbox_compose import PortMapping
from branchbox_ports import (
    OVERRIDE_SIGNATURE,
    PortAllocationError,
    PortAllocator,
    PortBucket,
    allocate,
    buckets_from_config,
    format_assignments,
    format_preview,
    generic_bucket,
    is_signed_override,
    load_override,
    override_ports,
    port_seed,
    render_override,
    resolve_bucket,
)
from branchbox_security import SecurityError


BINDINGS = {
    "web": [PortMapping(8080, 80), PortMapping(8443, 443)],
    "database": [PortMapping(5432, 5432)],
    "frontend": [PortMapping(3000, 3000)],
}


class TestBuckets:
    """Test semantic bucket resolution"""

    def test_well_known_web_ports(self):
        """Test that ports 80 and 443 map to the web block"""
        assert resolve_bucket(80).name == "web"
        assert resolve_bucket(443).name == "web"
        assert (resolve_bucket(80).start, resolve_bucket(80).end) == (8000, 8999)

    def test_prefix_blocks(self):
        """Test the 80xx, 30xx, 50xx, 60xx and 90xx blocks"""
        assert resolve_bucket(8080).name == "web"
        assert resolve_bucket(3000).name == "frontend"
        assert resolve_bucket(5050).name == "database"
        assert resolve_bucket(6001).name == "cache"
        assert resolve_bucket(9090).name == "monitoring"

    def test_postgres_stays_near_its_port(self):
        """Test that 5432 gets its own neighbourhood, not the 5000 block"""
        bucket = resolve_bucket(5432)

        assert bucket.name == "generic"
        assert (bucket.start, bucket.end) == (5432, 6431)

    def test_privileged_port_fallback(self):
        """Test that privileged ports fall back above 1024"""
        bucket = generic_bucket(22)

        assert (bucket.start, bucket.end) == (1024, 2023)

    def test_fallback_clamped_to_max_port(self):
        """Test that the generic range never passes 65535"""
        bucket = generic_bucket(65000)

        assert bucket.end == 65535
        assert bucket.size == 1000

    def test_project_buckets_take_precedence(self):
        """Test that configured buckets are checked first"""
        custom = PortBucket("redis", 6379, 6379, 16379, 16478)

        assert resolve_bucket(6379, [custom]) is custom
        assert resolve_bucket(6379).name == "generic"

    def test_buckets_from_config(self):
        """Test building buckets from project.yaml entries"""
        buckets = buckets_from_config([
            {"name": "redis", "match": [6379, 6379], "range": [16379, 16478]},
        ])

        assert buckets == [PortBucket("redis", 6379, 6379, 16379, 16478)]


class TestPortAllocator:
    """Test host port allocation"""

    def test_deterministic(self):
        """Test that the same worktree always gets the same ports"""
        first = format_assignments(allocate("feature-auth", BINDINGS))
        second = format_assignments(allocate("feature-auth", BINDINGS))

        assert first == second

    def test_differs_between_worktrees(self):
        """Test that different worktrees get different ports"""
        auth = format_assignments(allocate("feature-auth", BINDINGS)).splitlines()[0]
        payment = format_assignments(allocate("feature-payment", BINDINGS)).splitlines()[0]

        assert auth != payment

    def test_known_values(self):
        """Test the exact hash-derived ports for one worktree"""
        ports = {
            (a.service, a.container_port): a.host_port
            for a in allocate("feature-auth", BINDINGS)
        }

        assert ports == {
            ("database", 5432): 5881,
            ("frontend", 3000): 3115,
            ("web", 80): 8950,
            ("web", 443): 8740,
        }

    def test_seed_is_stable(self):
        """Test that the seed is the leading 32 bits of the sha256 digest"""
        assert port_seed("feature-auth", "database", 5432) == 1198444449

    def test_ports_stay_in_bucket(self):
        """Test bucket fidelity for every assignment"""
        for worktree in ("main", "feature-auth", "bugfix/login", "x" * 200):
            for a in allocate(worktree, BINDINGS):
                assert a.bucket.start <= a.host_port <= a.bucket.end

    def test_database_bucket(self):
        """Test that a Postgres port lands in the 5432-6431 range"""
        [assignment] = allocate("feature-auth", {"database": [PortMapping(5432, 5432)]})

        assert 5432 <= assignment.host_port <= 6431
        assert assignment.container_port == 5432

    def test_sorted_by_service(self):
        """Test that assignments come out in service order"""
        services = [a.service for a in allocate("feature-auth", BINDINGS)]

        assert services == ["database", "frontend", "web", "web"]

    def test_insertion_order_does_not_matter(self):
        """Test that binding order does not change the ports"""
        reordered = {
            "frontend": [PortMapping(3000, 3000)],
            "web": [PortMapping(8443, 443), PortMapping(8080, 80)],
            "database": [PortMapping(5432, 5432)],
        }

        assert allocate("feature-auth", reordered) == allocate("feature-auth", BINDINGS)

    def test_no_duplicate_ports_within_worktree(self):
        """Test probing when two mappings hash into a tiny bucket"""
        # Arrange
        tiny = PortBucket("tiny", 7000, 7000, 7100, 7101)
        bindings = {
            "a": [PortMapping(7000, 7000)],
            "b": [PortMapping(7001, 7000)],
        }

        # Act
        ports = [a.host_port for a in PortAllocator([tiny]).allocate("wt", bindings)]

        # Assert
        assert sorted(ports) == [7100, 7101]

    def test_original_host_ports_are_reserved(self):
        """Test that a worktree never takes a port the base file hardcodes"""
        tiny = PortBucket("tiny", 7000, 7000, 7000, 7001)

        [assignment] = PortAllocator([tiny]).allocate("wt", {"a": [PortMapping(7000, 7000)]})

        assert assignment.host_port == 7001

    def test_configured_reserved_ports(self):
        """Test that reserved_ports are skipped by probing"""
        # Arrange
        tiny = PortBucket("tiny", 7000, 7000, 7100, 7101)
        allocator = PortAllocator([tiny], reserved_ports=[7100])

        # Act
        [assignment] = allocator.allocate("wt", {"a": [PortMapping(7000, 7000)]})

        # Assert
        assert assignment.host_port == 7101

    def test_exhausted_bucket(self):
        """Test that a full bucket raises instead of reusing a port"""
        tiny = PortBucket("tiny", 7000, 7000, 7100, 7100)
        bindings = {
            "a": [PortMapping(7000, 7000)],
            "b": [PortMapping(7001, 7000)],
        }

        with pytest.raises(PortAllocationError):
            PortAllocator([tiny]).allocate("wt", bindings)

    def test_empty_bindings(self):
        """Test that nothing is allocated without hardcoded ports"""
        assert allocate("feature-auth", {}) == []

    def test_invalid_worktree_name(self):
        """Test that unsafe worktree names are rejected"""
        with pytest.raises(SecurityError):
            allocate("", BINDINGS)
        with pytest.raises(SecurityError):
            allocate("feature;rm -rf", BINDINGS)


class TestRendering:
    """Test the machine, preview and override renderings"""

    def test_assignment_format(self):
        """Test the service:host:container:bucketStart lines"""
        output = format_assignments(allocate("test-branch", BINDINGS))

        lines = output.splitlines()
        assert len(lines) == 4
        for line in lines:
            assert re.match(r"^[^:]*:[0-9]*:[0-9]*:[0-9]*$", line)

    def test_preview(self):
        """Test the preview header and one line per mapping"""
        output = format_preview("test-branch", allocate("test-branch", BINDINGS))

        assert output.startswith("Port assignments for worktree 'test-branch':")
        assert len(output.splitlines()) == 5

    def test_preview_without_ports(self):
        """Test the preview when nothing is hardcoded"""
        output = format_preview("test-branch", [])

        assert "no hardcoded ports" in output

    def test_override_has_signature_and_all_services(self):
        """Test the signature and one ports block per service"""
        content = render_override("test-branch", allocate("test-branch", BINDINGS))

        assert content.startswith(OVERRIDE_SIGNATURE)
        assert content.count("ports: !override") == 3
        assert is_signed_override(content)
        assert len(re.findall(r'"[0-9]+:[0-9]+"', content)) == 4

    def test_override_parses_to_assignments(self):
        """Test that the override reads back as the assigned ports"""
        # Arrange
        assignments = allocate("test-branch", BINDINGS)
        content = render_override("test-branch", assignments)

        # Act
        ports = override_ports(content)

        # Assert
        assert set(ports) == {"database", "frontend", "web"}
        web = [a for a in assignments if a.service == "web"]
        assert ports["web"] == [f"{a.host_port}:{a.container_port}" for a in web]

    def test_container_ports_preserved(self):
        """Test that container ports are never remapped"""
        content = render_override("test-branch", allocate("test-branch", BINDINGS))

        containers = sorted(int(m) for m in re.findall(r'"[0-9]+:([0-9]+)"', content))
        assert containers == [80, 443, 3000, 5432]

    def test_load_override_accepts_reset_tag(self):
        """Test that the Compose !reset tag parses"""
        document = load_override("services:\n  web:\n    ports: !reset []\n")

        assert document == {"services": {"web": {"ports": []}}}

    def test_hand_written_override_is_not_signed(self):
        """Test that a manual override has no signature"""
        assert not is_signed_override("# Manual override\nservices: {}\n")

    def test_yaml_keyword_service_names_are_quoted(self):
        """Test that service names YAML would coerce are read back as strings"""
        # Arrange
        bindings = {
            name: [PortMapping(8080 + i, 80)]
            for i, name in enumerate(["on", "yes", "null", "0x1f", "1.5"])
        }
        assignments = allocate("test-branch", bindings)

        # Act
        ports = override_ports(render_override("test-branch", assignments))

        # Assert
        assert sorted(ports) == sorted(bindings)
        for a in assignments:
            assert ports[a.service] == [f"{a.host_port}:{a.container_port}"]
