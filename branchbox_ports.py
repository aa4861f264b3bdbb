#!/usr/bin/env python3
"""
Port Allocator for the branchbox Port Doctor

Every worktree gets its own host ports, derived from a hash of the
worktree name so the same worktree always gets the same ports. Ports
stay inside a conventional range for the service's role (web ports in
8000-8999, frontends in 3000-3999 and so on) so that a port number
still hints at what is behind it.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import yaml

from branchbox_compose import PortMapping
from branchbox_security import validate_worktree_name

logger = logging.getLogger("branchbox.ports")

OVERRIDE_SIGNATURE = "# Generated by BranchBox Port Doctor"
MIN_COMPOSE_VERSION = "2.24.4"

MAX_PORT = 65535
FIRST_UNPRIVILEGED_PORT = 1024
GENERIC_RANGE_SIZE = 1000


class PortAllocationError(Exception):
    """Raised when a bucket has no free port left for a service"""
    pass


@dataclass(frozen=True)
class PortBucket:
    """A conventional port range for a service role

    Container ports in ``match_start..match_end`` are allocated host
    ports in ``start..end``.
    """

    name: str
    match_start: int
    match_end: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def matches(self, port: int) -> bool:
        return self.match_start <= port <= self.match_end

    def describe(self) -> str:
        return f"{self.name} {self.start}-{self.end}"


WEB_BUCKET = PortBucket("web", 8000, 8099, 8000, 8999)

DEFAULT_BUCKETS = (
    WEB_BUCKET,
    PortBucket("frontend", 3000, 3099, 3000, 3999),
    PortBucket("database", 5000, 5099, 5000, 5999),
    PortBucket("cache", 6000, 6099, 6000, 6999),
    PortBucket("monitoring", 9000, 9099, 9000, 9999),
)

# Privileged web ports are moved up into the web range
WELL_KNOWN_PORTS = {
    80: WEB_BUCKET,
    443: WEB_BUCKET,
}


@dataclass(frozen=True)
class PortAssignment:
    """The host port one worktree uses for one container port"""

    service: str
    host_port: int
    container_port: int
    original_host_port: int
    bucket: PortBucket

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "host_port": self.host_port,
            "container_port": self.container_port,
            "original_host_port": self.original_host_port,
            "bucket": self.bucket.name,
            "range": [self.bucket.start, self.bucket.end],
        }


def generic_bucket(container_port: int) -> PortBucket:
    """Fallback ``[port, port+999]`` range anchored at the container port"""
    start = max(container_port, FIRST_UNPRIVILEGED_PORT)
    end = start + GENERIC_RANGE_SIZE - 1
    if end > MAX_PORT:
        end = MAX_PORT
        start = end - GENERIC_RANGE_SIZE + 1
    return PortBucket("generic", container_port, container_port, start, end)


def buckets_from_config(entries: Iterable[Mapping[str, Any]]) -> List[PortBucket]:
    """Build buckets from validated ``port_doctor.buckets`` config entries"""
    return [
        PortBucket(
            entry["name"],
            entry["match"][0],
            entry["match"][1],
            entry["range"][0],
            entry["range"][1],
        )
        for entry in entries
    ]


def resolve_bucket(container_port: int, extra_buckets: Sequence[PortBucket] = ()) -> PortBucket:
    """Pick the bucket for a container port

    Project buckets win, then well-known ports, then the default
    prefix blocks, then the generic fallback.
    """
    for bucket in extra_buckets:
        if bucket.matches(container_port):
            return bucket

    if container_port in WELL_KNOWN_PORTS:
        return WELL_KNOWN_PORTS[container_port]

    for bucket in DEFAULT_BUCKETS:
        if bucket.matches(container_port):
            return bucket

    return generic_bucket(container_port)


def port_seed(worktree: str, service: str, container_port: int) -> int:
    """Stable 32-bit seed for one worktree/service/container port"""
    key = f"{worktree}:{service}:{container_port}".encode("utf-8")
    return int(hashlib.sha256(key).hexdigest()[:8], 16)


class PortAllocator:
    """Deterministic host port allocation for a worktree"""

    def __init__(
        self,
        extra_buckets: Optional[Sequence[PortBucket]] = None,
        reserved_ports: Iterable[int] = (),
    ):
        self.extra_buckets = list(extra_buckets or [])
        self.reserved_ports = frozenset(reserved_ports)

    def allocate(
        self, worktree: str, bindings: Mapping[str, Iterable[PortMapping]]
    ) -> List[PortAssignment]:
        """Assign a host port to every hardcoded mapping of every service

        Services and mappings are visited in sorted order, so the result
        depends only on the worktree name and the bindings. Ports already
        given out in this worktree, and the host ports hardcoded in the
        base Compose file, are skipped by probing upwards in the bucket.
        """
        worktree = validate_worktree_name(worktree)

        normalized = {service: sorted(set(mappings)) for service, mappings in bindings.items()}
        reserved = set(self.reserved_ports)
        reserved.update(m.host_port for ms in normalized.values() for m in ms)

        taken = set()
        assignments = []
        for service in sorted(normalized):
            for mapping in normalized[service]:
                bucket = resolve_bucket(mapping.container_port, self.extra_buckets)
                host_port = self._pick_port(worktree, service, mapping, bucket, taken | reserved)
                taken.add(host_port)
                assignments.append(
                    PortAssignment(
                        service=service,
                        host_port=host_port,
                        container_port=mapping.container_port,
                        original_host_port=mapping.host_port,
                        bucket=bucket,
                    )
                )
                logger.debug(
                    f"{worktree}: {service} {mapping} -> {host_port} ({bucket.describe()})"
                )

        return assignments

    @staticmethod
    def _pick_port(
        worktree: str, service: str, mapping: PortMapping, bucket: PortBucket, unavailable: set
    ) -> int:
        offset = port_seed(worktree, service, mapping.container_port) % bucket.size
        for step in range(bucket.size):
            candidate = bucket.start + (offset + step) % bucket.size
            if candidate not in unavailable:
                return candidate
        raise PortAllocationError(
            f"No free port for {service} ({mapping}) in {bucket.describe()}"
        )


def allocate(
    worktree: str,
    bindings: Mapping[str, Iterable[PortMapping]],
    allocator: Optional[PortAllocator] = None,
) -> List[PortAssignment]:
    """Allocate ports with the default bucket table"""
    return (allocator or PortAllocator()).allocate(worktree, bindings)


def format_assignments(assignments: Sequence[PortAssignment]) -> str:
    """One ``service:host:container:bucketStart`` line per mapping"""
    return "\n".join(
        f"{a.service}:{a.host_port}:{a.container_port}:{a.bucket.start}" for a in assignments
    )


def format_preview(worktree: str, assignments: Sequence[PortAssignment]) -> str:
    """Human-readable summary of a worktree's ports"""
    lines = [f"Port assignments for worktree '{worktree}':"]
    if not assignments:
        lines.append("  (no hardcoded ports)")
        return "\n".join(lines)

    width = max(len(a.service) for a in assignments)
    for a in assignments:
        lines.append(
            f"  {a.service:<{width}}  {a.original_host_port:>5} -> {a.host_port:<5} "
            f"(container {a.container_port}, {a.bucket.describe()})"
        )
    return "\n".join(lines)


def render_override(worktree: str, assignments: Sequence[PortAssignment]) -> str:
    """Render a signed Compose override that replaces each service's ports"""
    lines = [
        OVERRIDE_SIGNATURE,
        f"# Worktree: {worktree}",
        f"# Requires Docker Compose v{MIN_COMPOSE_VERSION} or newer (ports: !override)",
        f"# Regenerate with: branchbox doctor --fix --worktree {worktree}",
        "services:",
    ]

    by_service: Dict[str, List[PortAssignment]] = {}
    for a in assignments:
        by_service.setdefault(a.service, []).append(a)

    for service, service_assignments in by_service.items():
        lines.append(f'  "{service}":')
        lines.append("    ports: !override")
        for a in service_assignments:
            lines.append(f'      - "{a.host_port}:{a.container_port}"')

    return "\n".join(lines) + "\n"


def is_signed_override(text: str) -> bool:
    """Check whether override text was generated by the Port Doctor"""
    return OVERRIDE_SIGNATURE in text


class _OverrideLoader(yaml.SafeLoader):
    """SafeLoader that understands the Compose merge tags"""
    pass


def _construct_compose_tag(loader, node):
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    if isinstance(node, yaml.MappingNode):
        return loader.construct_mapping(node, deep=True)
    return loader.construct_scalar(node)


_OverrideLoader.add_constructor("!override", _construct_compose_tag)
_OverrideLoader.add_constructor("!reset", _construct_compose_tag)


def load_override(text: str) -> Dict[str, Any]:
    """Parse an override document, treating ``!override``/``!reset`` as plain values

    Raises:
        yaml.YAMLError: If the document is not valid YAML
    """
    return yaml.load(text, Loader=_OverrideLoader) or {}


def override_ports(text: str) -> Dict[str, List[str]]:
    """Return ``{service: [port strings]}`` from an override document"""
    document = load_override(text)
    services = document.get("services") if isinstance(document, dict) else None
    if not isinstance(services, dict):
        return {}
    ports = {}
    for name, body in services.items():
        if isinstance(body, dict) and isinstance(body.get("ports"), list):
            ports[str(name)] = [str(p) for p in body["ports"]]
    return ports
