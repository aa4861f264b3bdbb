#!/usr/bin/env python3
"""
Compose Scanner for the branchbox Port Doctor

Finds hardcoded ``host:container`` port mappings in a Docker Compose
file, and the services that own them. This is a line-oriented state
machine rather than a YAML parser: it understands only the ``services:``
block and each service's ``ports:`` list, and skips anything it does not
recognise.

A mapping is "hardcoded" when both sides are literal numbers
(``- "8080:80"``). Single-number entries (``- "8080"``) let Docker pick
a random host port and are never reported.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

from branchbox_config import DEFAULT_PROPERTY_INDENT, DEFAULT_SERVICE_INDENT
from branchbox_security import SecurityError, safe_file_read

logger = logging.getLogger("branchbox.compose")

COMPOSE_FILE_NAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

_TRAILING_COMMENT = re.compile(r"\s+#.*$")
_MAPPING_ITEM = re.compile(r"""^-\s*["']?(\d+):(\d+)["']?""")
_SERVICE_KEY = re.compile(r"^([A-Za-z0-9_.-]+):\s*$")
_PROPERTY_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*:(\s|$)")
_TOP_LEVEL_KEY = re.compile(r"^[A-Za-z]")


@dataclass(frozen=True, order=True)
class PortMapping:
    """A literal host:container port pair"""

    host_port: int
    container_port: int

    def __str__(self) -> str:
        return f"{self.host_port}:{self.container_port}"


@dataclass
class ScanResult:
    """Hardcoded mappings found in a Compose file, sorted and deduplicated"""

    mappings: List[PortMapping] = field(default_factory=list)
    bindings: Dict[str, List[PortMapping]] = field(default_factory=dict)
    compose_file: Optional[Path] = None

    @property
    def services(self) -> List[str]:
        return list(self.bindings)

    @property
    def has_hardcoded_ports(self) -> bool:
        return bool(self.mappings)

    @property
    def host_ports(self) -> List[int]:
        return sorted({m.host_port for m in self.mappings})


class ScanState(Enum):
    OUTSIDE_SERVICES = "outside-services"
    AWAITING_SERVICE = "awaiting-service"
    IN_SERVICE = "in-service"
    IN_PORTS = "in-ports"


class LineKind(Enum):
    IGNORED = "ignored"
    SERVICES_KEY = "services-key"
    TOP_LEVEL_KEY = "top-level-key"
    SERVICE_KEY = "service-key"
    PORTS_KEY = "ports-key"
    PROPERTY_KEY = "property-key"
    MAPPING_ITEM = "mapping-item"
    OTHER = "other"


class ClassifiedLine(NamedTuple):
    kind: LineKind
    name: Optional[str] = None
    mapping: Optional[PortMapping] = None


class ScanCursor(NamedTuple):
    """Where the scanner is: carried through the loop, never shared"""

    state: ScanState = ScanState.OUTSIDE_SERVICES
    service: Optional[str] = None
    reported: bool = False


# Missing (state, kind) pairs leave the state unchanged.
TRANSITIONS: Dict[Tuple[ScanState, LineKind], ScanState] = {
    (ScanState.OUTSIDE_SERVICES, LineKind.SERVICES_KEY): ScanState.AWAITING_SERVICE,
    (ScanState.AWAITING_SERVICE, LineKind.SERVICES_KEY): ScanState.AWAITING_SERVICE,
    (ScanState.IN_SERVICE, LineKind.SERVICES_KEY): ScanState.AWAITING_SERVICE,
    (ScanState.IN_PORTS, LineKind.SERVICES_KEY): ScanState.AWAITING_SERVICE,
    (ScanState.AWAITING_SERVICE, LineKind.TOP_LEVEL_KEY): ScanState.OUTSIDE_SERVICES,
    (ScanState.IN_SERVICE, LineKind.TOP_LEVEL_KEY): ScanState.OUTSIDE_SERVICES,
    (ScanState.IN_PORTS, LineKind.TOP_LEVEL_KEY): ScanState.OUTSIDE_SERVICES,
    (ScanState.AWAITING_SERVICE, LineKind.SERVICE_KEY): ScanState.IN_SERVICE,
    (ScanState.IN_SERVICE, LineKind.SERVICE_KEY): ScanState.IN_SERVICE,
    (ScanState.IN_PORTS, LineKind.SERVICE_KEY): ScanState.IN_SERVICE,
    (ScanState.IN_SERVICE, LineKind.PORTS_KEY): ScanState.IN_PORTS,
    (ScanState.IN_PORTS, LineKind.PORTS_KEY): ScanState.IN_PORTS,
    (ScanState.IN_PORTS, LineKind.PROPERTY_KEY): ScanState.IN_SERVICE,
}


class ComposeScanner:
    """Single-pass scanner for hardcoded ports in a Compose file"""

    def __init__(
        self,
        service_indent: int = DEFAULT_SERVICE_INDENT,
        property_indent: int = DEFAULT_PROPERTY_INDENT,
    ):
        self.service_indent = service_indent
        self.property_indent = property_indent

    def classify(self, line: str) -> ClassifiedLine:
        """Classify one raw line by indentation and shape"""
        line = line.rstrip("\r\n")
        content = line.lstrip(" ")
        if not content.strip() or content.startswith("#"):
            return ClassifiedLine(LineKind.IGNORED)

        indent = len(line) - len(content)
        content = _TRAILING_COMMENT.sub("", content).rstrip()

        # List items are recognised at any depth
        match = _MAPPING_ITEM.match(content)
        if match:
            mapping = PortMapping(int(match.group(1)), int(match.group(2)))
            return ClassifiedLine(LineKind.MAPPING_ITEM, mapping=mapping)

        if indent == 0:
            if content == "services:":
                return ClassifiedLine(LineKind.SERVICES_KEY)
            if _TOP_LEVEL_KEY.match(content):
                return ClassifiedLine(LineKind.TOP_LEVEL_KEY)
            return ClassifiedLine(LineKind.OTHER)

        if indent == self.service_indent:
            match = _SERVICE_KEY.match(content)
            if match:
                return ClassifiedLine(LineKind.SERVICE_KEY, name=match.group(1))

        if indent == self.property_indent:
            if content == "ports:":
                return ClassifiedLine(LineKind.PORTS_KEY)
            if _PROPERTY_KEY.match(content):
                return ClassifiedLine(LineKind.PROPERTY_KEY)

        return ClassifiedLine(LineKind.OTHER)

    def step(
        self, cursor: ScanCursor, line: str
    ) -> Tuple[ScanCursor, Optional[Tuple[str, PortMapping]]]:
        """Advance the cursor by one line

        Returns the new cursor and, when the line is a hardcoded mapping
        inside a service's ports list, the ``(service, mapping)`` it found.
        """
        classified = self.classify(line)
        if classified.kind is LineKind.IGNORED:
            return cursor, None

        if classified.kind is LineKind.MAPPING_ITEM:
            if cursor.state is ScanState.IN_PORTS and cursor.service:
                if not cursor.reported:
                    logger.debug(f"Service '{cursor.service}' has hardcoded ports")
                return cursor._replace(reported=True), (cursor.service, classified.mapping)
            return cursor, None

        key = (cursor.state, classified.kind)
        if key not in TRANSITIONS:
            return cursor, None
        new_state = TRANSITIONS[key]

        if classified.kind is LineKind.SERVICE_KEY:
            return ScanCursor(new_state, classified.name, False), None
        if classified.kind in (LineKind.SERVICES_KEY, LineKind.TOP_LEVEL_KEY):
            return ScanCursor(new_state), None
        return cursor._replace(state=new_state), None

    def scan_lines(self, lines: Iterable[str]) -> ScanResult:
        """Scan already-read Compose lines"""
        cursor = ScanCursor()
        found: Dict[str, set] = {}

        for line in lines:
            cursor, hit = self.step(cursor, line)
            if hit:
                service, mapping = hit
                found.setdefault(service, set()).add(mapping)

        bindings = {name: sorted(found[name]) for name in sorted(found)}
        mappings = sorted({m for ms in bindings.values() for m in ms})
        return ScanResult(mappings=mappings, bindings=bindings)

    def scan(self, compose_file: Union[str, Path]) -> ScanResult:
        """Scan a Compose file; a missing or unreadable file yields an empty result"""
        path = Path(os.path.abspath(compose_file))
        if not path.is_file():
            logger.debug(f"No compose file at {path}")
            return ScanResult(compose_file=None)

        try:
            content = safe_file_read(path)
        except SecurityError as e:
            logger.warning(f"Could not read compose file: {e}")
            return ScanResult(compose_file=path)

        if content.startswith("\ufeff"):
            content = content[1:]

        result = self.scan_lines(content.splitlines())
        result.compose_file = path
        logger.debug(
            f"Scanned {path.name}: {len(result.mappings)} hardcoded mapping(s) "
            f"in {len(result.bindings)} service(s)"
        )
        return result


def scan(compose_file: Union[str, Path], scanner: Optional[ComposeScanner] = None) -> ScanResult:
    """Scan a Compose file with default indentation rules"""
    return (scanner or ComposeScanner()).scan(compose_file)


def has_hardcoded_ports(compose_file: Union[str, Path]) -> bool:
    """Check if a Compose file has any hardcoded port mappings"""
    return scan(compose_file).has_hardcoded_ports


def find_compose_file(directory: Union[str, Path]) -> Optional[Path]:
    """Find the Compose file in a directory using the conventional names"""
    directory = Path(directory)
    for name in COMPOSE_FILE_NAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None
